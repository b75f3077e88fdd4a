"""Domain event contracts exchanged between the HR services.

Each event is a closed, versioned, tagged variant: a frozen payload model
with a literal ``event_type`` tag and ``extra="forbid"``. Payloads carry only
identifiers and the minimal fields known subscribers need, never full entity
snapshots. Consumers match on the tag and reject unknown shapes.

Sections:
    1. Constants (schema version, event type strings)
    2. Payload Models
    3. Envelope
    4. Parsing helpers
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, FrozenSet, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError

from hr_sync.models import (
    UnknownEventTypeError,
    ValidationError,
    new_id,
    pydantic_error_map,
    utc_now,
)

# ── Section 1: Constants ─────────────────────────────────────────────────────

EVENT_SCHEMA_VERSION: str = "1.0.0"

EMPLOYEE_CREATED: str = "EmployeeCreated"
EMPLOYEE_TERMINATED: str = "EmployeeTerminated"
ONBOARDING_COMPLETED: str = "OnboardingCompleted"
OFFBOARDING_COMPLETED: str = "OffboardingCompleted"
REVIEW_SUBMITTED: str = "ReviewSubmitted"
MERIT_APPLIED: str = "MeritApplied"

EVENT_TYPES: FrozenSet[str] = frozenset({
    EMPLOYEE_CREATED,
    EMPLOYEE_TERMINATED,
    ONBOARDING_COMPLETED,
    OFFBOARDING_COMPLETED,
    REVIEW_SUBMITTED,
    MERIT_APPLIED,
})

# ── Section 2: Payload Models ────────────────────────────────────────────────


class EmployeeCreatedPayload(BaseModel):
    """Published by the employee service after a new hire is committed."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    event_type: Literal["EmployeeCreated"] = "EmployeeCreated"
    employee_id: str = Field(..., min_length=1, description="Employee identifier")
    email: str = Field(..., min_length=3, description="Work email of the new hire")
    department_id: str = Field(..., min_length=1, description="Owning department")
    hire_date: date = Field(..., description="First day of employment")


class EmployeeTerminatedPayload(BaseModel):
    """Published when an employee enters the terminal Terminated status."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    event_type: Literal["EmployeeTerminated"] = "EmployeeTerminated"
    employee_id: str = Field(..., min_length=1)
    termination_date: date
    reason: Optional[str] = Field(None, description="Offboarding reason, if known")


class OnboardingCompletedPayload(BaseModel):
    """Emitted when every task of an onboarding case is completed."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    event_type: Literal["OnboardingCompleted"] = "OnboardingCompleted"
    employee_id: str = Field(..., min_length=1)
    case_id: str = Field(..., min_length=1)
    completed_at: datetime


class OffboardingCompletedPayload(BaseModel):
    """Emitted when every task of an offboarding case is completed."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    event_type: Literal["OffboardingCompleted"] = "OffboardingCompleted"
    employee_id: str = Field(..., min_length=1)
    case_id: str = Field(..., min_length=1)
    completed_at: datetime


class ReviewSubmittedPayload(BaseModel):
    """Published by the performance service when a review is finalized."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    event_type: Literal["ReviewSubmitted"] = "ReviewSubmitted"
    review_id: str = Field(..., min_length=1)
    employee_id: str = Field(..., min_length=1)
    cycle_id: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5)


class MeritAppliedPayload(BaseModel):
    """Published per proposal when an approved merit cycle is applied."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    event_type: Literal["MeritApplied"] = "MeritApplied"
    proposal_id: str = Field(..., min_length=1)
    cycle_id: str = Field(..., min_length=1)
    employee_id: str = Field(..., min_length=1)
    previous_salary: Decimal = Field(..., ge=0)
    new_salary: Decimal = Field(..., ge=0)
    effective_date: date


DomainEvent = Annotated[
    Union[
        EmployeeCreatedPayload,
        EmployeeTerminatedPayload,
        OnboardingCompletedPayload,
        OffboardingCompletedPayload,
        ReviewSubmittedPayload,
        MeritAppliedPayload,
    ],
    Field(discriminator="event_type"),
]

_DOMAIN_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(DomainEvent)

# ── Section 3: Envelope ──────────────────────────────────────────────────────


class EventEnvelope(BaseModel):
    """Wire envelope around a domain event payload."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    event_id: str = Field(default_factory=new_id, min_length=1, description="Unique delivery-independent id")
    event_type: str = Field(..., min_length=1, description="Tag; must equal data.event_type")
    source: str = Field(..., min_length=1, description="Publishing service name")
    timestamp: datetime = Field(default_factory=utc_now)
    schema_version: str = Field(
        default=EVENT_SCHEMA_VERSION,
        pattern=r"^\d+\.\d+\.\d+$",
        description="Event contract version (semver)",
    )
    data: DomainEvent

    @model_validator(mode="after")
    def _check_tag(self) -> "EventEnvelope":
        if self.event_type != self.data.event_type:
            raise ValueError(
                f"envelope event_type {self.event_type!r} does not match "
                f"payload event_type {self.data.event_type!r}"
            )
        major = self.schema_version.split(".", 1)[0]
        if major != EVENT_SCHEMA_VERSION.split(".", 1)[0]:
            raise ValueError(
                f"unsupported event schema version {self.schema_version!r}"
            )
        return self

    def to_message(self) -> Dict[str, Any]:
        """Serialize to the JSON-compatible dict put on the channel."""
        return self.model_dump(mode="json")


# ── Section 4: Parsing helpers ───────────────────────────────────────────────


def make_envelope(event: BaseModel, source: str) -> EventEnvelope:
    """Wrap a payload model in a fresh envelope."""
    event_type = getattr(event, "event_type", None)
    if event_type not in EVENT_TYPES:
        raise UnknownEventTypeError(event_type)
    return EventEnvelope(event_type=event_type, source=source, data=event)


def parse_envelope(raw: Mapping[str, Any]) -> EventEnvelope:
    """Decode a channel message into an envelope.

    Raises:
        UnknownEventTypeError: If the tag is not one of ``EVENT_TYPES``.
        ValidationError: If the message shape does not match the contract.
    """
    if not isinstance(raw, Mapping):
        raise ValidationError(f"Event message must be an object, got {type(raw).__name__}")
    event_type = raw.get("event_type")
    if event_type not in EVENT_TYPES:
        raise UnknownEventTypeError(event_type)
    try:
        return EventEnvelope.model_validate(dict(raw))
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Malformed {event_type} event: {exc.error_count()} validation error(s)",
            errors=pydantic_error_map(exc),
        ) from exc


def parse_event(raw: Mapping[str, Any]) -> Any:
    """Decode a bare payload dict into its tagged payload model."""
    if not isinstance(raw, Mapping):
        raise ValidationError(f"Event payload must be an object, got {type(raw).__name__}")
    event_type = raw.get("event_type")
    if event_type not in EVENT_TYPES:
        raise UnknownEventTypeError(event_type)
    try:
        return _DOMAIN_EVENT_ADAPTER.validate_python(dict(raw))
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Malformed {event_type} payload",
            errors=pydantic_error_map(exc),
        ) from exc
