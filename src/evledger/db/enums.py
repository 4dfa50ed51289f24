"""Status vocabularies shared by tables, repository and services."""

from enum import Enum


class Lifecycle(str, Enum):
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class BillingStatus(str, Enum):
    NOT_BILLED = "NOT_BILLED"
    BILLED = "BILLED"


class PaymentStatus(str, Enum):
    NONE = "NONE"
    HOLD_PENDING = "HOLD_PENDING"
    HOLD_OK = "HOLD_OK"
    CAPTURED = "CAPTURED"
    FAILED = "FAILED"
    PARTIAL_FAILED = "PARTIAL_FAILED"
    RELEASED = "RELEASED"


class RoamingType(str, Enum):
    NONE = "NONE"
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


class ClearingStatus(str, Enum):
    NONE = "NONE"
    PENDING = "PENDING"
    MATCHED = "MATCHED"
    DISPUTED = "DISPUTED"
    REJECTED = "REJECTED"


class PayoutStatus(str, Enum):
    DRAFT = "DRAFT"
    ISSUED = "ISSUED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


def sql_in(enum_cls: type[Enum]) -> str:
    """Render an enum's values for a CHECK ... IN (...) constraint."""
    return ", ".join(f"'{member.value}'" for member in enum_cls)
