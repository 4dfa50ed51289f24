"""evledger - billing and settlement engine for EV charging sessions."""

__version__ = "0.3.0"
