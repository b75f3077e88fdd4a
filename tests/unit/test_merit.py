"""Unit tests for the Merit Calculation Engine and merit cycles."""
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List

import pytest
from pydantic import ValidationError as PydanticValidationError

from hr_sync.employees import CompensationChangeType
from hr_sync.events import MERIT_APPLIED
from hr_sync.lifecycle import EmployeeStatus
from hr_sync.merit import (
    GuidelineTable,
    MeritCycle,
    MeritCycleStatus,
    MeritGuideline,
    build_proposal,
    calculate_raise,
    check_budget,
    to_money,
    to_percentage,
)
from hr_sync.models import (
    BudgetExceededError,
    ConflictError,
    ErrorKind,
    ErrorResponse,
    ImmutableRecordError,
    NotFoundError,
    ValidationError,
)
from hr_sync.simulator import HRSimulator

GUIDELINES: List[Dict[str, Any]] = [
    {"rating": 3, "raise_percentage": "3"},
    {"rating": 4, "raise_percentage": "4.5"},
    {"rating": 5, "raise_percentage": "6", "bonus_percentage": "10"},
]
EFFECTIVE = date(2026, 4, 1)


def _table() -> GuidelineTable:
    return GuidelineTable(guidelines=[MeritGuideline(**g) for g in GUIDELINES])


@pytest.fixture
def rated(sim: HRSimulator, seed: Any) -> HRSimulator:
    """Three active employees with submitted reviews in cycle RC1.

    Guideline raises come to 3,000 + 4,500 + 3,000 = 10,500.
    """
    seed(sim.state, "E1", status=EmployeeStatus.ACTIVE, salary=Decimal("100000.00"))
    seed(sim.state, "E2", status=EmployeeStatus.ACTIVE, salary=Decimal("100000.00"))
    seed(sim.state, "E3", status=EmployeeStatus.ACTIVE, salary=Decimal("50000.00"))
    sim.reviews.submit_review("E1", "RC1", 3, "M1")
    sim.reviews.submit_review("E2", "RC1", 4, "M1")
    sim.reviews.submit_review("E3", "RC1", 5, "M1")
    return sim


def _cycle(sim: HRSimulator, budget: str = "10000.00") -> MeritCycle:
    return sim.merit.create_cycle("FY26 merit", "RC1", budget, EFFECTIVE, GUIDELINES)


class TestMoney:
    def test_half_up_to_cents(self) -> None:
        assert to_money("10.005") == Decimal("10.01")
        assert to_money(7) == Decimal("7.00")

    @pytest.mark.parametrize("value", [1.5, True, "abc", "NaN", None])
    def test_rejected(self, value: Any) -> None:
        with pytest.raises(ValidationError):
            to_money(value)

    def test_calculate_raise(self) -> None:
        assert calculate_raise(Decimal("33333.33"), Decimal("3")) == Decimal("1000.00")
        assert calculate_raise(Decimal("50000.00"), Decimal("4.5")) == Decimal("2250.00")

    def test_calculate_raise_refuses_float(self) -> None:
        with pytest.raises(ValidationError):
            calculate_raise(Decimal("50000.00"), 3.0)  # type: ignore[arg-type]

    @pytest.mark.parametrize("value", ["abc", "Infinity", None, 2.5])
    def test_bad_percentage_is_validation_error(self, value: Any) -> None:
        with pytest.raises(ValidationError):
            to_percentage(value)
        with pytest.raises(ValidationError):
            calculate_raise(Decimal("50000.00"), value)

    def test_to_percentage_keeps_precision(self) -> None:
        assert to_percentage("6.333") == Decimal("6.333")
        assert to_percentage(4) == Decimal(4)


class TestGuidelines:
    def test_sorted_and_unique(self) -> None:
        table = GuidelineTable(guidelines=[MeritGuideline(**g) for g in reversed(GUIDELINES)])
        assert [g.rating for g in table.guidelines] == [3, 4, 5]
        with pytest.raises(PydanticValidationError):
            GuidelineTable(guidelines=[MeritGuideline(rating=3, raise_percentage=Decimal(1))] * 2)

    def test_missing_rating(self) -> None:
        with pytest.raises(ValidationError):
            _table().for_rating(1)

    def test_build_proposal(self) -> None:
        proposal = build_proposal("MC1", "E1", Decimal("50000.00"), 5, _table())
        assert proposal.raise_amount == Decimal("3000.00")
        assert proposal.new_salary == Decimal("53000.00")
        assert proposal.bonus_amount == Decimal("5000.00")


class TestBudget:
    def test_variance_is_allocated_minus_total(self) -> None:
        table = _table()
        proposals = [
            build_proposal("MC1", "E1", Decimal("100000.00"), 3, table),
            build_proposal("MC1", "E2", Decimal("100000.00"), 4, table),
            build_proposal("MC1", "E3", Decimal("50000.00"), 5, table),
        ]
        check = check_budget(proposals, Decimal("10000.00"))
        assert check.allocated_budget == Decimal("10500.00")
        assert check.variance == Decimal("500.00")
        assert not check.within_budget
        assert check_budget(proposals, Decimal("10500")).within_budget

    def test_empty(self) -> None:
        check = check_budget([], Decimal("100"))
        assert check.allocated_budget == Decimal("0.00")
        assert check.within_budget


class TestCycles:
    def test_create_and_get(self, sim: HRSimulator) -> None:
        cycle = _cycle(sim)
        assert cycle.status is MeritCycleStatus.DRAFT
        assert cycle.total_budget == Decimal("10000.00")
        assert sim.merit.get_cycle(cycle.id) == cycle
        with pytest.raises(NotFoundError):
            sim.merit.get_cycle("nope")

    def test_float_budget_rejected(self, sim: HRSimulator) -> None:
        with pytest.raises(ValidationError):
            sim.merit.create_cycle("x", "RC1", 10000.0, EFFECTIVE, GUIDELINES)

    def test_duplicate_guidelines_rejected(self, sim: HRSimulator) -> None:
        with pytest.raises(ValidationError):
            sim.merit.create_cycle("x", "RC1", "1.00", EFFECTIVE, GUIDELINES + GUIDELINES[:1])

    def test_generate_proposals(self, rated: HRSimulator, seed: Any) -> None:
        seed(rated.state, "E4", status=EmployeeStatus.TERMINATED)
        rated.reviews.submit_review("E4", "RC1", 5, "M1")
        cycle = _cycle(rated)
        proposals = rated.merit.generate_proposals(cycle.id)
        assert [p.employee_id for p in proposals] == ["E1", "E2", "E3"]
        assert [p.raise_amount for p in proposals] == [
            Decimal("3000.00"), Decimal("4500.00"), Decimal("3000.00"),
        ]
        assert all(p.review_id for p in proposals)

    def test_regenerate_replaces(self, rated: HRSimulator) -> None:
        cycle = _cycle(rated)
        first = rated.merit.generate_proposals(cycle.id)
        second = rated.merit.generate_proposals(cycle.id)
        stored = rated.merit.list_proposals(cycle.id)
        assert {p.id for p in stored} == {p.id for p in second}
        assert not {p.id for p in stored} & {p.id for p in first}

    def test_rating_without_guideline(self, rated: HRSimulator, seed: Any) -> None:
        seed(rated.state, "E5", status=EmployeeStatus.ACTIVE)
        rated.reviews.submit_review("E5", "RC1", 1, "M1")
        cycle = _cycle(rated)
        with pytest.raises(ValidationError):
            rated.merit.generate_proposals(cycle.id)
        assert rated.merit.list_proposals(cycle.id) == []

    def test_over_budget_blocks_approval(self, rated: HRSimulator) -> None:
        cycle = _cycle(rated)
        rated.merit.generate_proposals(cycle.id)
        with pytest.raises(BudgetExceededError) as info:
            rated.merit.approve_cycle(cycle.id)
        assert info.value.variance == Decimal("500.00")
        assert rated.merit.get_cycle(cycle.id).status is MeritCycleStatus.DRAFT

    def test_adjustment_brings_cycle_within_budget(self, rated: HRSimulator) -> None:
        cycle = _cycle(rated)
        proposals = rated.merit.generate_proposals(cycle.id)
        e3 = next(p for p in proposals if p.employee_id == "E3")
        adjustment = rated.merit.adjust_proposal(e3.id, raise_amount="2300", reason="cap")
        assert adjustment.proposal.adjusted
        assert adjustment.proposal.new_salary == Decimal("52300.00")
        assert adjustment.proposal.raise_percentage == Decimal("4.6000")
        assert adjustment.budget.allocated_budget == Decimal("9800.00")
        assert adjustment.budget.within_budget
        approved = rated.merit.approve_cycle(cycle.id, approved_by="cfo")
        assert approved.status is MeritCycleStatus.APPROVED
        assert approved.approved_by == "cfo"

    def test_adjust_by_percentage(self, rated: HRSimulator) -> None:
        cycle = _cycle(rated)
        e1 = rated.merit.generate_proposals(cycle.id)[0]
        adjustment = rated.merit.adjust_proposal(e1.id, raise_percentage=Decimal("5"))
        assert adjustment.proposal.raise_amount == Decimal("5000.00")
        assert adjustment.budget.variance == Decimal("2500.00")

    def test_adjust_requires_exactly_one_input(self, rated: HRSimulator) -> None:
        cycle = _cycle(rated)
        e1 = rated.merit.generate_proposals(cycle.id)[0]
        with pytest.raises(ValidationError):
            rated.merit.adjust_proposal(e1.id)
        with pytest.raises(ValidationError):
            rated.merit.adjust_proposal(e1.id, raise_percentage="1", raise_amount="1")
        with pytest.raises(ValidationError):
            rated.merit.adjust_proposal(e1.id, raise_amount="-1")

    def test_non_numeric_percentage_maps_to_validation(self, rated: HRSimulator) -> None:
        cycle = _cycle(rated)
        e1 = rated.merit.generate_proposals(cycle.id)[0]
        with pytest.raises(ValidationError) as info:
            rated.merit.adjust_proposal(e1.id, raise_percentage="abc")
        response = ErrorResponse.from_exception(info.value)
        assert response.kind is ErrorKind.VALIDATION
        assert response.status_code == 400
        assert rated.merit.get_proposal(e1.id).adjusted is False

    def test_approved_cycle_is_frozen(self, rated: HRSimulator) -> None:
        cycle = _cycle(rated, budget="20000")
        e1 = rated.merit.generate_proposals(cycle.id)[0]
        rated.merit.approve_cycle(cycle.id)
        with pytest.raises(ImmutableRecordError):
            rated.merit.adjust_proposal(e1.id, raise_amount="1")
        with pytest.raises(ImmutableRecordError):
            rated.merit.generate_proposals(cycle.id)
        with pytest.raises(ConflictError):
            rated.merit.approve_cycle(cycle.id)

    def test_apply_requires_approval(self, rated: HRSimulator) -> None:
        cycle = _cycle(rated)
        with pytest.raises(ConflictError):
            rated.merit.apply_cycle(cycle.id)

    def test_apply_publishes_and_raises_salaries(self, rated: HRSimulator) -> None:
        cycle = _cycle(rated, budget="10500")
        rated.merit.generate_proposals(cycle.id)
        rated.merit.approve_cycle(cycle.id)
        results = rated.merit.apply_cycle(cycle.id)
        assert [r.delivered for r in results] == [True, True, True]
        assert {m["event_type"] for m in rated.channel.messages("merit-events")} == {MERIT_APPLIED}
        assert rated.merit.get_cycle(cycle.id).status is MeritCycleStatus.APPLIED
        assert rated.employees.get("E1").salary == Decimal("103000.00")
        assert rated.employees.get("E3").salary == Decimal("53000.00")
        history = rated.employees.compensation_history("E2")
        assert [h.change_type for h in history] == [CompensationChangeType.MERIT]
        assert history[0].effective_date == EFFECTIVE
        with pytest.raises(ConflictError):
            rated.merit.apply_cycle(cycle.id)
