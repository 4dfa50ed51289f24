"""Database layer with SQLAlchemy Core abstraction.

Supports SQLite (default) and PostgreSQL for production.
"""

from .engine import create_db_engine, database_url, get_dialect, initialize_schema
from .repository import (
    ChargingSession,
    Database,
    DuplicatePeriodError,
    EndUser,
    PayoutLineItem,
    PayoutStatement,
    SessionClaimError,
    TariffAssignment,
    TariffProfile,
)
from .tables import SCHEMA_VERSION, metadata

__all__ = [
    "ChargingSession",
    "Database",
    "DuplicatePeriodError",
    "EndUser",
    "PayoutLineItem",
    "PayoutStatement",
    "SCHEMA_VERSION",
    "SessionClaimError",
    "TariffAssignment",
    "TariffProfile",
    "create_db_engine",
    "database_url",
    "get_dialect",
    "initialize_schema",
    "metadata",
]
