"""Merit Calculation Engine and merit cycle service.

All money is ``Decimal`` quantized to cents with ROUND_HALF_UP. Floats are
rejected at the boundary so binary rounding never enters a salary.

For each rated employee::

    raise_amount = round_cents(current_salary * raise_percentage / 100)
    new_salary   = current_salary + raise_amount

``allocated_budget`` is the sum of raise amounts. A cycle whose allocated
budget exceeds its total budget cannot be approved; the variance
(allocated - total) is reported so guidelines or the budget can be changed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from hr_sync.config import HRSyncSettings
from hr_sync.employees import EmployeeDirectory
from hr_sync.events import MeritAppliedPayload
from hr_sync.lifecycle import EmployeeStatus
from hr_sync.models import (
    BudgetExceededError,
    ConflictError,
    ImmutableRecordError,
    NotFoundError,
    Record,
    ValidationError,
    make_key,
    pydantic_error_map,
    utc_now,
)
from hr_sync.performance import ReviewSource
from hr_sync.publisher import EventPublisher, PublishResult
from hr_sync.storage import StateStoreClient, TransactionOperation

logger = logging.getLogger("hr_sync.merit")

MERIT_CYCLE = "merit-cycle"
MERIT_PROPOSAL = "merit-proposal"

CENTS = Decimal("0.01")
_HUNDRED = Decimal(100)


def to_money(value: Any) -> Decimal:
    """Coerce an int, str or Decimal into cents; floats are refused."""
    if isinstance(value, (float, bool)):
        raise ValidationError(f"Money values must be Decimal, int or str, not {type(value).__name__}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f"Not a monetary amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValidationError(f"Not a monetary amount: {value!r}")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def to_percentage(value: Any) -> Decimal:
    """Coerce an int, str or Decimal percentage; floats are refused."""
    if isinstance(value, (float, bool)):
        raise ValidationError(f"Percentages must be Decimal, int or str, not {type(value).__name__}")
    try:
        percentage = value if isinstance(value, Decimal) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f"Not a percentage: {value!r}") from exc
    if not percentage.is_finite():
        raise ValidationError(f"Not a percentage: {value!r}")
    return percentage


def calculate_raise(current_salary: Decimal, raise_percentage: Decimal) -> Decimal:
    """``current_salary * raise_percentage / 100`` rounded half-up to cents."""
    salary = to_money(current_salary)
    return (salary * to_percentage(raise_percentage) / _HUNDRED).quantize(CENTS, rounding=ROUND_HALF_UP)


# ── Guidelines ───────────────────────────────────────────────────────────────


class MeritGuideline(BaseModel):
    """Raise (and optional bonus) granted for one performance rating."""

    model_config = ConfigDict(frozen=True)

    rating: int = Field(..., ge=1, le=5)
    raise_percentage: Decimal = Field(..., ge=0, le=100)
    bonus_percentage: Optional[Decimal] = Field(None, ge=0, le=100)


class GuidelineTable(BaseModel):
    """Rating -> guideline mapping with at most one entry per rating."""

    model_config = ConfigDict(frozen=True)

    guidelines: List[MeritGuideline] = Field(..., min_length=1)

    @field_validator("guidelines")
    @classmethod
    def _unique_ratings(cls, v: List[MeritGuideline]) -> List[MeritGuideline]:
        ratings = [g.rating for g in v]
        if len(ratings) != len(set(ratings)):
            raise ValueError("guideline ratings must be unique")
        return sorted(v, key=lambda g: g.rating)

    def for_rating(self, rating: int) -> MeritGuideline:
        for guideline in self.guidelines:
            if guideline.rating == rating:
                return guideline
        raise ValidationError(
            f"No merit guideline for rating {rating}",
            errors={"rating": [f"no guideline for rating {rating}"]},
        )


# ── Records ──────────────────────────────────────────────────────────────────


class MeritCycleStatus(str, Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    APPLIED = "applied"


class MeritCycle(Record):
    name: str = Field(..., min_length=1)
    review_cycle_id: str = Field(..., min_length=1, description="Review cycle whose ratings drive this cycle")
    total_budget: Decimal = Field(..., ge=0)
    effective_date: date
    guidelines: GuidelineTable
    status: MeritCycleStatus = MeritCycleStatus.DRAFT
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    applied_at: Optional[datetime] = None


class MeritProposal(Record):
    """Proposed raise for one employee. Frozen once its cycle leaves Draft."""

    cycle_id: str = Field(..., min_length=1)
    employee_id: str = Field(..., min_length=1)
    review_id: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    current_salary: Decimal = Field(..., ge=0)
    raise_percentage: Decimal = Field(..., ge=0)
    raise_amount: Decimal = Field(..., ge=0)
    new_salary: Decimal = Field(..., ge=0)
    bonus_amount: Optional[Decimal] = None
    adjusted: bool = False
    adjustment_reason: Optional[str] = None


def build_proposal(
    cycle_id: str,
    employee_id: str,
    current_salary: Decimal,
    rating: int,
    guidelines: GuidelineTable,
    review_id: Optional[str] = None,
) -> MeritProposal:
    guideline = guidelines.for_rating(rating)
    salary = to_money(current_salary)
    raise_amount = calculate_raise(salary, guideline.raise_percentage)
    bonus = None
    if guideline.bonus_percentage is not None:
        bonus = calculate_raise(salary, guideline.bonus_percentage)
    return MeritProposal(
        cycle_id=cycle_id,
        employee_id=employee_id,
        review_id=review_id,
        rating=rating,
        current_salary=salary,
        raise_percentage=guideline.raise_percentage,
        raise_amount=raise_amount,
        new_salary=salary + raise_amount,
        bonus_amount=bonus,
    )


@dataclass(frozen=True)
class BudgetCheck:
    """Aggregate budget position of a set of proposals."""

    total_budget: Decimal
    allocated_budget: Decimal
    variance: Decimal
    within_budget: bool


def check_budget(proposals: Iterable[MeritProposal], total_budget: Decimal) -> BudgetCheck:
    """Sum raise amounts and compare against the budget.

    ``variance`` is ``allocated - total``: positive means over budget.
    """
    total = to_money(total_budget)
    allocated = sum((p.raise_amount for p in proposals), Decimal("0.00"))
    variance = allocated - total
    return BudgetCheck(
        total_budget=total,
        allocated_budget=allocated,
        variance=variance,
        within_budget=allocated <= total,
    )


@dataclass(frozen=True)
class ProposalAdjustment:
    proposal: MeritProposal
    budget: BudgetCheck


# ── Service ──────────────────────────────────────────────────────────────────


class MeritService:
    """Plans, approves and applies merit cycles.

    Args:
        state: State store client.
        publisher: Publishes MeritApplied when a cycle is applied.
        directory: Supplies current salaries.
        reviews: Supplies the submitted reviews of a review cycle.
        settings: Topic names.
        clock: Injected for tests.
    """

    def __init__(
        self,
        state: StateStoreClient,
        publisher: EventPublisher,
        directory: EmployeeDirectory,
        reviews: ReviewSource,
        settings: Optional[HRSyncSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._state = state
        self._publisher = publisher
        self._directory = directory
        self._reviews = reviews
        self._settings = settings or HRSyncSettings()
        self._clock = clock

    # -- cycles -----------------------------------------------------------

    def create_cycle(
        self,
        name: str,
        review_cycle_id: str,
        total_budget: Any,
        effective_date: date,
        guidelines: Sequence[Any],
    ) -> MeritCycle:
        now = self._clock()
        try:
            cycle = MeritCycle(
                name=name,
                review_cycle_id=review_cycle_id,
                total_budget=to_money(total_budget),
                effective_date=effective_date,
                guidelines=GuidelineTable(guidelines=list(guidelines)),
                created_at=now,
                updated_at=now,
            )
        except PydanticValidationError as exc:
            raise ValidationError(
                "Validation failed for merit cycle", errors=pydantic_error_map(exc)
            ) from exc
        self._state.save(make_key(MERIT_CYCLE, cycle.id), cycle)
        logger.info(
            "Created merit cycle %s (%s) with budget %s", cycle.id, cycle.name, cycle.total_budget
        )
        return cycle

    def get_cycle(self, cycle_id: str) -> MeritCycle:
        cycle = self._state.get_model(make_key(MERIT_CYCLE, cycle_id), MeritCycle)
        if cycle is None:
            logger.warning("Merit cycle not found: %s", cycle_id)
            raise NotFoundError("MeritCycle", cycle_id)
        return cycle

    def list_proposals(self, cycle_id: str) -> List[MeritProposal]:
        return self._state.query_models(
            MERIT_PROPOSAL, MeritProposal, {"EQ": {"cycle_id": cycle_id}},
            sort=[("employee_id", "ASC")],
        )

    def get_proposal(self, proposal_id: str) -> MeritProposal:
        proposal = self._state.get_model(make_key(MERIT_PROPOSAL, proposal_id), MeritProposal)
        if proposal is None:
            logger.warning("Merit proposal not found: %s", proposal_id)
            raise NotFoundError("MeritProposal", proposal_id)
        return proposal

    @staticmethod
    def _ensure_draft(cycle: MeritCycle) -> None:
        if cycle.status is not MeritCycleStatus.DRAFT:
            raise ImmutableRecordError(
                f"Merit cycle {cycle.id!r} is {cycle.status.value}; proposals are frozen"
            )

    def generate_proposals(self, cycle_id: str) -> List[MeritProposal]:
        """(Re)build one proposal per submitted review of the cycle's review cycle.

        Existing proposals of the cycle are replaced in the same transaction.
        Terminated employees are skipped.
        """
        cycle = self.get_cycle(cycle_id)
        self._ensure_draft(cycle)
        now = self._clock()
        proposals: List[MeritProposal] = []
        for review in self._reviews.reviews_for_cycle(cycle.review_cycle_id):
            employee = self._directory.get_employee(review.employee_id)
            if employee.status is EmployeeStatus.TERMINATED:
                logger.warning(
                    "Skipping terminated employee %s in merit cycle %s", employee.id, cycle_id
                )
                continue
            proposal = build_proposal(
                cycle.id, employee.id, employee.salary, review.rating,
                cycle.guidelines, review_id=review.id,
            )
            proposal.created_at = now
            proposal.updated_at = now
            proposals.append(proposal)

        ops: List[Any] = [
            TransactionOperation(make_key(MERIT_PROPOSAL, old.id), operation="delete")
            for old in self.list_proposals(cycle_id)
        ]
        ops.extend((make_key(MERIT_PROPOSAL, p.id), p) for p in proposals)
        self._state.execute_transaction(ops)

        budget = check_budget(proposals, cycle.total_budget)
        logger.info(
            "Generated %d merit proposals for cycle %s: allocated %s of %s",
            len(proposals), cycle_id, budget.allocated_budget, budget.total_budget,
        )
        return proposals

    def adjust_proposal(
        self,
        proposal_id: str,
        raise_percentage: Optional[Any] = None,
        raise_amount: Optional[Any] = None,
        reason: Optional[str] = None,
    ) -> ProposalAdjustment:
        """Manually override a proposal's raise and re-run the budget check.

        Exactly one of ``raise_percentage`` or ``raise_amount`` must be given.

        Raises:
            ImmutableRecordError: The cycle is no longer Draft.
        """
        if (raise_percentage is None) == (raise_amount is None):
            raise ValidationError("Give exactly one of raise_percentage or raise_amount")
        proposal = self.get_proposal(proposal_id)
        cycle = self.get_cycle(proposal.cycle_id)
        self._ensure_draft(cycle)

        if raise_percentage is not None:
            percentage = to_percentage(raise_percentage)
            if percentage < 0:
                raise ValidationError("raise_percentage must not be negative")
            amount = calculate_raise(proposal.current_salary, percentage)
        else:
            amount = to_money(raise_amount)
            if amount < 0:
                raise ValidationError("raise_amount must not be negative")
            percentage = Decimal(0)
            if proposal.current_salary:
                percentage = (amount * _HUNDRED / proposal.current_salary).quantize(
                    Decimal("0.0001"), rounding=ROUND_HALF_UP
                )

        updated = proposal.model_copy(update={
            "raise_percentage": percentage,
            "raise_amount": amount,
            "new_salary": proposal.current_salary + amount,
            "adjusted": True,
            "adjustment_reason": reason,
        })
        updated.touch(self._clock())
        self._state.save(make_key(MERIT_PROPOSAL, updated.id), updated)

        proposals = [updated if p.id == updated.id else p for p in self.list_proposals(cycle.id)]
        budget = check_budget(proposals, cycle.total_budget)
        if not budget.within_budget:
            logger.warning(
                "Merit cycle %s is over budget by %s after adjusting proposal %s",
                cycle.id, budget.variance, proposal_id,
            )
        logger.info(
            "Adjusted proposal %s for employee %s: raise %s", proposal_id, updated.employee_id, amount
        )
        return ProposalAdjustment(proposal=updated, budget=budget)

    def budget_status(self, cycle_id: str) -> BudgetCheck:
        cycle = self.get_cycle(cycle_id)
        return check_budget(self.list_proposals(cycle_id), cycle.total_budget)

    def approve_cycle(self, cycle_id: str, approved_by: Optional[str] = None) -> MeritCycle:
        """Move a Draft cycle to Approved if it fits its budget.

        Raises:
            BudgetExceededError: Allocated budget exceeds the total; carries
                the variance.
            ConflictError: The cycle is not Draft.
        """
        cycle = self.get_cycle(cycle_id)
        if cycle.status is not MeritCycleStatus.DRAFT:
            raise ConflictError(
                f"Merit cycle {cycle_id!r} is {cycle.status.value}; only draft cycles can be approved"
            )
        budget = self.budget_status(cycle_id)
        if not budget.within_budget:
            logger.warning(
                "Merit cycle %s over budget: allocated %s, budget %s, variance %s",
                cycle_id, budget.allocated_budget, budget.total_budget, budget.variance,
            )
            raise BudgetExceededError(cycle_id, budget.allocated_budget, budget.total_budget)

        now = self._clock()
        cycle.status = MeritCycleStatus.APPROVED
        cycle.approved_at = now
        cycle.approved_by = approved_by
        cycle.touch(now)
        self._state.save(make_key(MERIT_CYCLE, cycle.id), cycle)
        logger.info("Merit cycle %s approved by %s", cycle_id, approved_by or "unknown")
        return cycle

    def apply_cycle(self, cycle_id: str) -> List[PublishResult]:
        """Mark an Approved cycle Applied and publish MeritApplied per proposal.

        The cycle is saved as Applied before any event is published.
        """
        cycle = self.get_cycle(cycle_id)
        if cycle.status is not MeritCycleStatus.APPROVED:
            raise ConflictError(
                f"Merit cycle {cycle_id!r} is {cycle.status.value}; only approved cycles can be applied"
            )
        proposals = self.list_proposals(cycle_id)
        now = self._clock()
        cycle.status = MeritCycleStatus.APPLIED
        cycle.applied_at = now
        cycle.touch(now)
        self._state.save(make_key(MERIT_CYCLE, cycle.id), cycle)
        logger.info("Applying merit cycle %s (%d proposals)", cycle_id, len(proposals))

        results: List[PublishResult] = []
        for proposal in proposals:
            results.append(self._publisher.publish(
                self._settings.topics.merit_events,
                MeritAppliedPayload(
                    proposal_id=proposal.id,
                    cycle_id=cycle.id,
                    employee_id=proposal.employee_id,
                    previous_salary=proposal.current_salary,
                    new_salary=proposal.new_salary,
                    effective_date=cycle.effective_date,
                ),
            ))
        return results
