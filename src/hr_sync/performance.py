"""Performance reviews, the input to merit cycles.

At most one review exists per employee and review cycle. The uniqueness is
enforced through ``review-index:{cycle_id}:{employee_id}``, written in the
same transaction as the review itself.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import Field
from pydantic import ValidationError as PydanticValidationError

from hr_sync.config import HRSyncSettings
from hr_sync.employees import EmployeeDirectory
from hr_sync.events import ReviewSubmittedPayload
from hr_sync.models import (
    ConcurrencyConflictError,
    DuplicateKeyError,
    NotFoundError,
    Record,
    ValidationError,
    make_key,
    pydantic_error_map,
    utc_now,
)
from hr_sync.publisher import EventPublisher
from hr_sync.storage import StateStoreClient, TransactionOperation

logger = logging.getLogger("hr_sync.performance")

REVIEW = "performance-review"
REVIEW_INDEX = "review-index"


class ReviewStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"


class PerformanceReview(Record):
    employee_id: str = Field(..., min_length=1)
    cycle_id: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5, description="Overall rating, 1 (lowest) to 5")
    reviewer_id: str = Field(..., min_length=1)
    comments: Optional[str] = None
    status: ReviewStatus = ReviewStatus.DRAFT
    submitted_at: Optional[datetime] = None


class ReviewSource(ABC):
    """The "fetch all reviews for cycle" call used by merit planning."""

    @abstractmethod
    def reviews_for_cycle(self, cycle_id: str) -> List[PerformanceReview]:
        """Submitted reviews of a cycle."""


def _index_key(cycle_id: str, employee_id: str) -> str:
    return make_key(REVIEW_INDEX, f"{cycle_id}:{employee_id}")


class ReviewService(ReviewSource):
    def __init__(
        self,
        state: StateStoreClient,
        publisher: EventPublisher,
        directory: EmployeeDirectory,
        settings: Optional[HRSyncSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._state = state
        self._publisher = publisher
        self._directory = directory
        self._settings = settings or HRSyncSettings()
        self._clock = clock

    def get_review(self, review_id: str) -> PerformanceReview:
        review = self._state.get_model(make_key(REVIEW, review_id), PerformanceReview)
        if review is None:
            logger.warning("Review not found: %s", review_id)
            raise NotFoundError("Review", review_id)
        return review

    def reviews_for_cycle(self, cycle_id: str) -> List[PerformanceReview]:
        return self._state.query_models(
            REVIEW, PerformanceReview,
            {"AND": [
                {"EQ": {"cycle_id": cycle_id}},
                {"EQ": {"status": ReviewStatus.SUBMITTED.value}},
            ]},
            sort=[("employee_id", "ASC")],
        )

    def reviews_for_employee(self, employee_id: str) -> List[PerformanceReview]:
        return self._state.query_models(
            REVIEW, PerformanceReview, {"EQ": {"employee_id": employee_id}},
            sort=[("created_at", "ASC")],
        )

    def save_draft(
        self,
        employee_id: str,
        cycle_id: str,
        rating: int,
        reviewer_id: str,
        comments: Optional[str] = None,
    ) -> PerformanceReview:
        """Create or overwrite the draft review for an employee and cycle."""
        return self._write(employee_id, cycle_id, rating, reviewer_id, comments, submit=False)

    def submit_review(
        self,
        employee_id: str,
        cycle_id: str,
        rating: int,
        reviewer_id: str,
        comments: Optional[str] = None,
    ) -> PerformanceReview:
        """Finalize the review for an employee and cycle and publish ReviewSubmitted.

        An existing draft is finalized in place.

        Raises:
            ValidationError: Bad rating or unknown employee.
            DuplicateKeyError: A submitted review already exists for this
                employee and cycle.
        """
        review = self._write(employee_id, cycle_id, rating, reviewer_id, comments, submit=True)
        self._publisher.publish(
            self._settings.topics.performance_events,
            ReviewSubmittedPayload(
                review_id=review.id,
                employee_id=review.employee_id,
                cycle_id=review.cycle_id,
                rating=review.rating,
            ),
        )
        return review

    def _write(
        self,
        employee_id: str,
        cycle_id: str,
        rating: int,
        reviewer_id: str,
        comments: Optional[str],
        submit: bool,
    ) -> PerformanceReview:
        now = self._clock()
        fields: Dict[str, Any] = {
            "employee_id": employee_id,
            "cycle_id": cycle_id,
            "rating": rating,
            "reviewer_id": reviewer_id,
            "comments": comments,
            "status": ReviewStatus.SUBMITTED if submit else ReviewStatus.DRAFT,
            "submitted_at": now if submit else None,
            "updated_at": now,
        }
        index_key = _index_key(cycle_id, employee_id)
        existing_id, index_etag = self._state.get_with_etag(index_key)
        if existing_id is not None:
            existing = self.get_review(existing_id)
            if existing.status is ReviewStatus.SUBMITTED:
                raise DuplicateKeyError("review", f"{employee_id}/{cycle_id}")
            fields.update(id=existing.id, created_at=existing.created_at)
        else:
            fields["created_at"] = now

        try:
            review = PerformanceReview.model_validate(fields)
        except PydanticValidationError as exc:
            raise ValidationError(
                "Validation failed for performance review", errors=pydantic_error_map(exc)
            ) from exc
        if not self._directory.employee_exists(employee_id):
            raise ValidationError(
                f"Employee {employee_id!r} does not exist",
                errors={"employee_id": [f"employee {employee_id!r} not found"]},
            )

        if existing_id is None:
            index_op = TransactionOperation(index_key, review.id, must_not_exist=True)
        else:
            index_op = TransactionOperation(index_key, review.id, etag=index_etag)
        try:
            self._state.execute_transaction([
                (make_key(REVIEW, review.id), review),
                index_op,
            ])
        except ConcurrencyConflictError as exc:
            raise DuplicateKeyError("review", f"{employee_id}/{cycle_id}") from exc
        logger.info(
            "%s review %s for employee %s in cycle %s (rating %d)",
            "Submitted" if submit else "Saved draft", review.id, employee_id, cycle_id, rating,
        )
        return review
