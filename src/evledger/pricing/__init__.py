"""Tariff resolution and session billing."""
