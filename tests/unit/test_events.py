"""Unit tests for the tagged event contracts."""
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from hr_sync.events import (
    EMPLOYEE_CREATED,
    EVENT_SCHEMA_VERSION,
    EVENT_TYPES,
    EmployeeCreatedPayload,
    EventEnvelope,
    MeritAppliedPayload,
    OnboardingCompletedPayload,
    ReviewSubmittedPayload,
    make_envelope,
    parse_envelope,
    parse_event,
)
from hr_sync.models import UnknownEventTypeError, ValidationError


class Untagged(BaseModel):
    value: int = 1


def _created() -> EmployeeCreatedPayload:
    return EmployeeCreatedPayload(
        employee_id="E1", email="a@b.com", department_id="D1", hire_date=date(2026, 1, 1)
    )


class TestPayloads:
    def test_event_types_closed_set(self) -> None:
        assert EMPLOYEE_CREATED in EVENT_TYPES
        assert len(EVENT_TYPES) == 6
        assert isinstance(EVENT_TYPES, frozenset)

    def test_payload_is_frozen(self) -> None:
        payload = _created()
        with pytest.raises(PydanticValidationError):
            payload.employee_id = "E2"  # type: ignore[misc]

    def test_extra_fields_forbidden(self) -> None:
        with pytest.raises(PydanticValidationError):
            EmployeeCreatedPayload(
                employee_id="E1", email="a@b.com", department_id="D1",
                hire_date=date(2026, 1, 1), salary="90000",  # type: ignore[call-arg]
            )

    def test_rating_bounds(self) -> None:
        with pytest.raises(PydanticValidationError):
            ReviewSubmittedPayload(review_id="R1", employee_id="E1", cycle_id="C1", rating=6)

    def test_merit_amounts_are_decimal(self) -> None:
        payload = MeritAppliedPayload(
            proposal_id="P1", cycle_id="C1", employee_id="E1",
            previous_salary=Decimal("50000.00"), new_salary=Decimal("51500.00"),
            effective_date=date(2026, 4, 1),
        )
        assert payload.model_dump(mode="json")["new_salary"] == "51500.00"


class TestEnvelope:
    def test_make_envelope(self) -> None:
        envelope = make_envelope(_created(), "employee-service")
        assert envelope.event_type == EMPLOYEE_CREATED
        assert envelope.schema_version == EVENT_SCHEMA_VERSION
        assert envelope.source == "employee-service"
        assert envelope.event_id

    def test_message_round_trip(self) -> None:
        envelope = make_envelope(_created(), "employee-service")
        parsed = parse_envelope(envelope.to_message())
        assert parsed == envelope
        assert isinstance(parsed.data, EmployeeCreatedPayload)

    def test_tag_mismatch_rejected(self) -> None:
        with pytest.raises(PydanticValidationError):
            EventEnvelope(event_type="OnboardingCompleted", source="s", data=_created())

    def test_major_version_mismatch_rejected(self) -> None:
        message = make_envelope(_created(), "s").to_message()
        message["schema_version"] = "2.0.0"
        with pytest.raises(ValidationError):
            parse_envelope(message)

    def test_minor_version_accepted(self) -> None:
        message = make_envelope(_created(), "s").to_message()
        message["schema_version"] = "1.4.0"
        assert parse_envelope(message).schema_version == "1.4.0"

    def test_unknown_tag_rejected(self) -> None:
        message = make_envelope(_created(), "s").to_message()
        message["event_type"] = "EmployeePromoted"
        with pytest.raises(UnknownEventTypeError):
            parse_envelope(message)

    def test_malformed_payload_reports_fields(self) -> None:
        message = make_envelope(_created(), "s").to_message()
        del message["data"]["email"]
        with pytest.raises(ValidationError) as info:
            parse_envelope(message)
        assert any("email" in loc for loc in info.value.errors)

    def test_non_mapping_rejected(self) -> None:
        with pytest.raises(ValidationError):
            parse_envelope(["EmployeeCreated"])  # type: ignore[arg-type]

    def test_make_envelope_rejects_untagged_model(self) -> None:
        with pytest.raises(UnknownEventTypeError):
            make_envelope(Untagged(), "s")


class TestParseEvent:
    def test_dispatches_on_tag(self) -> None:
        event = parse_event({
            "event_type": "OnboardingCompleted",
            "employee_id": "E1",
            "case_id": "C1",
            "completed_at": datetime(2026, 2, 1, tzinfo=timezone.utc).isoformat(),
        })
        assert isinstance(event, OnboardingCompletedPayload)

    def test_unknown_tag(self) -> None:
        with pytest.raises(UnknownEventTypeError):
            parse_event({"event_type": "Nope"})

    def test_wrong_shape(self) -> None:
        with pytest.raises(ValidationError):
            parse_event({"event_type": "OnboardingCompleted", "employee_id": "E1"})
