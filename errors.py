"""Typed domain errors and the ``Result`` value returned by write paths."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Optional, TypeVar

__all__ = [
    "DomainError",
    "StructureError",
    "OrphanEventError",
    "DuplicateAttendanceError",
    "InvalidContractError",
    "SchedulingConflictError",
    "ScheduleDriftWarning",
    "InvalidTransitionError",
    "DecodeError",
    "UnknownEntityError",
    "PersistenceError",
    "Result",
    "BatchReport",
]

T = TypeVar("T")


class DomainError(Exception):
    """Base class for every error that may cross the service boundary."""

    code = "domain_error"
    fatal = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.code,
            "message": self.message,
            "fatal": self.fatal,
            "details": {key: _jsonable(value) for key, value in self.details.items()},
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return str(value)


class StructureError(DomainError):
    """Raised when a formation's content structure is malformed."""

    code = "structure_error"
    fatal = True


class OrphanEventError(DomainError):
    """Raised when a completion event references an unknown leaf."""

    code = "orphan_event"


class DuplicateAttendanceError(DomainError):
    """Raised when a second record is submitted for the same student and session."""

    code = "duplicate_attendance"


class InvalidContractError(DomainError):
    """Raised when an alternance contract cannot be validated."""

    code = "invalid_contract"
    fatal = True


class SchedulingConflictError(DomainError):
    """Raised for a calendar week that is already held by another entry."""

    code = "scheduling_conflict"


class ScheduleDriftWarning(DomainError):
    """Advisory: cumulative center/company hours deviate from the contract."""

    code = "schedule_drift"


class InvalidTransitionError(DomainError):
    """Raised when a contract status transition is not allowed."""

    code = "invalid_transition"


class DecodeError(DomainError):
    """Raised when a boundary payload does not match its expected shape."""

    code = "decode_error"


class UnknownEntityError(DomainError):
    """Raised when a referenced student, formation or contract is unknown."""

    code = "unknown_entity"


class PersistenceError(DomainError):
    """Raised when a write could not be persisted after retries."""

    code = "persistence_error"


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or a :class:`DomainError`, never both."""

    value: Optional[T] = None
    error: Optional[DomainError] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value, error=None)

    @classmethod
    def failure(cls, error: DomainError) -> "Result[T]":
        return cls(value=None, error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""

        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


@dataclass
class BatchReport:
    """Per-run outcome of a batch where failures are isolated per item."""

    processed: int = 0
    succeeded: int = 0
    failures: List[DomainError] = field(default_factory=list)
    warnings: List[DomainError] = field(default_factory=list)

    def record_success(self) -> None:
        self.processed += 1
        self.succeeded += 1

    def record_failure(self, error: DomainError) -> None:
        self.processed += 1
        self.failures.append(error)

    @property
    def failed(self) -> int:
        return len(self.failures)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "failures": [error.to_dict() for error in self.failures],
            "warnings": [warning.to_dict() for warning in self.warnings],
        }
