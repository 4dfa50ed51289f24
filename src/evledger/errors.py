"""Tagged results returned by engine operations.

Expected outcomes such as "not found" or "duplicate period" are returned as
values rather than raised, so the boundary layer can switch on ``kind``
instead of parsing messages.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Category of an engine error."""

    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    EXTERNAL_FAILURE = "external_failure"
    DATA_CONSISTENCY = "data_consistency"


@dataclass(frozen=True)
class EngineError:
    """Structured error: kind, human readable message, optional code.

    ``code`` carries a machine-friendly reason (``duplicate_period``,
    ``already_matched``) or the payment processor's error code.
    """

    kind: ErrorKind
    message: str
    code: str | None = None


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or an error."""

    value: T | None = None
    error: EngineError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, raising ValueError if this is an error result."""
        if self.error is not None:
            raise ValueError(f"{self.error.kind.value}: {self.error.message}")
        return self.value  # type: ignore[return-value]


def success(value: T) -> Result[T]:
    return Result(value=value)


def failure(kind: ErrorKind, message: str, code: str | None = None) -> Result:
    return Result(error=EngineError(kind=kind, message=message, code=code))


def not_found(message: str, code: str | None = None) -> Result:
    return failure(ErrorKind.NOT_FOUND, message, code)


def invalid(message: str, code: str | None = None) -> Result:
    return failure(ErrorKind.VALIDATION, message, code)


def conflict(message: str, code: str | None = None) -> Result:
    return failure(ErrorKind.CONFLICT, message, code)
