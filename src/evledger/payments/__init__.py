"""Payment hold, capture and webhook handling."""
