"""Core data models for the hr-sync state-synchronization core."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from ulid import ULID

# Advisory version stamped on every stored payload as "_schemaVersion".
STATE_SCHEMA_VERSION: str = "1.0.0"
SCHEMA_VERSION_FIELD: str = "_schemaVersion"

_KEY_SEPARATOR = ":"


def utc_now() -> datetime:
    """Current wall-clock time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Mint an opaque, unique record identifier (ULID string)."""
    return str(ULID())


def make_key(record_type: str, record_id: str) -> str:
    """Build a namespaced state-store key ``"{type}:{id}"``.

    Raises:
        ValidationError: If either part is empty or the type contains the
            separator.
    """
    if not record_type or not record_id:
        raise ValidationError("record_type and record_id must be non-empty")
    if _KEY_SEPARATOR in record_type:
        raise ValidationError(
            f"record_type must not contain {_KEY_SEPARATOR!r}: {record_type!r}"
        )
    return f"{record_type}{_KEY_SEPARATOR}{record_id}"


def split_key(key: str) -> Tuple[str, str]:
    """Split a namespaced key into ``(record_type, record_id)``."""
    record_type, sep, record_id = key.partition(_KEY_SEPARATOR)
    if not sep or not record_type or not record_id:
        raise ValidationError(f"Not a namespaced key: {key!r}")
    return record_type, record_id


class Record(BaseModel):
    """Base class for every persisted entity.

    Unknown stored fields are ignored so that payloads written by a newer
    service version can still be read.
    """

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    id: str = Field(default_factory=new_id, min_length=1, description="Opaque unique id")
    created_at: datetime = Field(default_factory=utc_now, description="Server-assigned creation time")
    updated_at: datetime = Field(default_factory=utc_now, description="Server-assigned last update time")

    def touch(self, now: Optional[datetime] = None) -> None:
        """Advance ``updated_at``; never moves it backwards."""
        stamp = now or utc_now()
        if stamp > self.updated_at:
            self.updated_at = stamp


# Custom Exceptions
class HRSyncError(Exception):
    """Base exception for all library errors."""
    pass


class ValidationError(HRSyncError):
    """Malformed or constraint-violating input, rejected before any write."""

    def __init__(self, message: str, errors: Optional[Dict[str, List[str]]] = None) -> None:
        self.errors = errors or {}
        super().__init__(message)


class UnknownEventTypeError(ValidationError):
    """An event carried a tag this consumer does not understand."""

    def __init__(self, event_type: object) -> None:
        self.event_type = event_type
        super().__init__(f"Unknown event type: {event_type!r}")


class QueryFilterError(ValidationError):
    """A state-store query filter is not well formed."""
    pass


class ConflictError(HRSyncError):
    """Uniqueness violation or illegal state change; no partial effect."""
    pass


class DuplicateKeyError(ConflictError):
    """A natural key (secondary index) is already taken."""

    def __init__(self, index: str, value: str) -> None:
        self.index = index
        self.value = value
        super().__init__(f"{index} {value!r} already exists")


class EmailAlreadyExistsError(DuplicateKeyError):
    """An employee with this email is already indexed."""

    def __init__(self, email: str) -> None:
        super().__init__("email", email)


class ConcurrencyConflictError(ConflictError):
    """A version-token guarded write lost against a concurrent writer."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Concurrent modification detected for key {key!r}")


class ImmutableRecordError(ConflictError):
    """The record is frozen (e.g. a proposal in an approved merit cycle)."""
    pass


class BudgetExceededError(ConflictError):
    """Approving a merit cycle would spend more than its budget."""

    def __init__(self, cycle_id: str, total: Any, budget: Any) -> None:
        self.cycle_id = cycle_id
        self.total = total
        self.budget = budget
        self.variance = total - budget
        super().__init__(
            f"Merit cycle {cycle_id!r} exceeds budget by {self.variance} "
            f"(proposed {total}, budget {budget})"
        )


class NotFoundError(HRSyncError):
    """A referenced entity does not exist."""

    def __init__(self, resource: str, identifier: str) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} {identifier!r} not found")


class TransientError(HRSyncError):
    """Infrastructure unavailable; the operation may succeed if retried."""
    pass


class StoreUnavailableError(TransientError):
    """The state store rejected or failed a request."""
    pass


class ChannelUnavailableError(TransientError):
    """The event channel failed to accept a delivery."""
    pass


class ContentionError(HRSyncError):
    """Optimistic-concurrency retries were exhausted (high contention)."""

    def __init__(self, key: str, attempts: int) -> None:
        self.key = key
        self.attempts = attempts
        super().__init__(
            f"Failed to increment counter {key!r} after {attempts} attempts "
            f"due to high contention"
        )


# ── Error taxonomy for presentation collaborators ────────────────────────────


class ErrorKind(str, Enum):
    """User-visible error classes, independent of storage technology."""

    VALIDATION = "validation"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    INTERNAL = "internal"


_STATUS_CODES: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INTERNAL: 500,
}


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception onto the four user-visible error kinds."""
    if isinstance(exc, (ValidationError, PydanticValidationError)):
        return ErrorKind.VALIDATION
    if isinstance(exc, ConflictError):
        return ErrorKind.CONFLICT
    if isinstance(exc, NotFoundError):
        return ErrorKind.NOT_FOUND
    return ErrorKind.INTERNAL


class ErrorResponse(BaseModel):
    """Uniform error body rendered by presentation-layer collaborators."""

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    status_code: int
    message: str
    detail: Optional[str] = None
    errors: Dict[str, List[str]] = Field(default_factory=dict)
    trace_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_exception(
        cls, exc: BaseException, trace_id: Optional[str] = None
    ) -> "ErrorResponse":
        """Collapse an exception into an ErrorResponse.

        Internal errors never leak the underlying message as the headline;
        it is kept in ``detail`` for operators.
        """
        kind = classify_error(exc)
        errors: Dict[str, List[str]] = {}
        if isinstance(exc, ValidationError):
            errors = {k: list(v) for k, v in exc.errors.items()}
        elif isinstance(exc, PydanticValidationError):
            errors = pydantic_error_map(exc)

        if kind is ErrorKind.INTERNAL:
            message = "An internal error occurred"
        elif isinstance(exc, PydanticValidationError):
            message = "Validation failed"
        else:
            message = str(exc)
        return cls(
            kind=kind,
            status_code=_STATUS_CODES[kind],
            message=message,
            detail=str(exc) if kind is ErrorKind.INTERNAL else None,
            errors=errors,
            trace_id=trace_id,
        )


def dump_record(record: BaseModel) -> Dict[str, Any]:
    """Serialize a model to a JSON-compatible dict stamped with the schema version."""
    data: Dict[str, Any] = record.model_dump(mode="json")
    data[SCHEMA_VERSION_FIELD] = STATE_SCHEMA_VERSION
    return data


def pydantic_error_map(exc: PydanticValidationError) -> Dict[str, List[str]]:
    """Flatten pydantic errors into ``{"dotted.loc": [messages]}``."""
    errors: Dict[str, List[str]] = {}
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"]) or "__root__"
        errors.setdefault(loc, []).append(err["msg"])
    return errors
