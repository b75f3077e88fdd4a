"""Workflow cases and the Case Completion Aggregator.

A case (onboarding or offboarding) exclusively owns an ordered list of
tasks and is persisted as one document; tasks have no storage key of their
own. ``completion_percentage`` and the case ``status`` are always derived
from the tasks and never trusted from storage.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from hr_sync.config import TaskTemplate, TaskType
from hr_sync.events import OffboardingCompletedPayload, OnboardingCompletedPayload
from hr_sync.lifecycle import TaskStatus, apply_task_transition
from hr_sync.models import NotFoundError, Record, new_id

logger = logging.getLogger("hr_sync.cases")


class CaseKind(str, Enum):
    ONBOARDING = "onboarding"
    OFFBOARDING = "offboarding"


CASE_RECORD_TYPES: Dict[CaseKind, str] = {
    CaseKind.ONBOARDING: "onboarding-case",
    CaseKind.OFFBOARDING: "offboarding-case",
}


class OffboardingReason(str, Enum):
    RESIGNATION = "resignation"
    RETIREMENT = "retirement"
    TERMINATION = "termination"
    END_OF_CONTRACT = "end_of_contract"
    OTHER = "other"


class CaseTask(BaseModel):
    """One unit of work inside a case.

    ``completed_date`` moves in lock-step with ``status``: it is set exactly
    when the task is Completed.
    """

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=new_id, min_length=1)
    description: str = Field(..., min_length=1)
    task_type: TaskType = TaskType.OTHER
    order: int = Field(0, ge=0)
    assigned_to: Optional[str] = None
    due_date: Optional[date] = None
    status: TaskStatus = TaskStatus.NOT_STARTED
    completed_date: Optional[datetime] = None
    completed_by: Optional[str] = None

    @model_validator(mode="after")
    def _completed_date_tracks_status(self) -> "CaseTask":
        if self.status is TaskStatus.COMPLETED and self.completed_date is None:
            raise ValueError("completed task requires completed_date")
        if self.status is not TaskStatus.COMPLETED and self.completed_date is not None:
            raise ValueError(f"{self.status.value} task must not carry completed_date")
        return self

    def transition(
        self, requested: TaskStatus, now: datetime, actor: Optional[str] = None
    ) -> "CaseTask":
        """Return a copy moved to ``requested``; raises TransitionError if illegal."""
        result = apply_task_transition(self.status, self.completed_date, requested, now)
        completed_by = self.completed_by
        if result.status is TaskStatus.COMPLETED:
            if self.status is not TaskStatus.COMPLETED:
                completed_by = actor
        else:
            completed_by = None
        return CaseTask.model_validate({
            **self.model_dump(),
            "status": result.status,
            "completed_date": result.completed_date,
            "completed_by": completed_by,
        })


class WorkflowCase(Record):
    """An onboarding or offboarding case for one employee."""

    kind: CaseKind
    employee_id: str = Field(..., min_length=1)
    status: TaskStatus = TaskStatus.NOT_STARTED
    start_date: date
    target_completion_date: Optional[date] = None
    actual_completion_date: Optional[datetime] = None
    tasks: List[CaseTask] = Field(default_factory=list)
    notes: Optional[str] = None
    reason: Optional[OffboardingReason] = None
    last_working_day: Optional[date] = None

    @property
    def record_type(self) -> str:
        return CASE_RECORD_TYPES[self.kind]

    @property
    def completion_percentage(self) -> float:
        return completion_percentage(self.tasks)

    @property
    def is_open(self) -> bool:
        return self.status is not TaskStatus.COMPLETED

    def find_task(self, task_id: str) -> CaseTask:
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise NotFoundError("Task", task_id)

    def replace_task(self, updated: CaseTask) -> "WorkflowCase":
        tasks = [updated if t.id == updated.id else t for t in self.tasks]
        return self.model_copy(update={"tasks": tasks})


def generate_tasks(templates: Sequence[TaskTemplate], start_date: date) -> List[CaseTask]:
    """Instantiate one NotStarted task per template, ordered by ``order``."""
    if not templates:
        logger.warning("No task templates configured. Creating empty task list.")
        return []
    tasks = [
        CaseTask(
            description=template.description,
            task_type=template.task_type,
            order=template.order,
            due_date=start_date + timedelta(days=template.due_date_offset_days),
        )
        for template in sorted(templates, key=lambda t: t.order)
    ]
    logger.info("Generated %d case tasks from templates", len(tasks))
    return tasks


# ── Aggregation ──────────────────────────────────────────────────────────────


def completion_percentage(tasks: Sequence[CaseTask]) -> float:
    """``100 * completed / total``, rounded to two places; 0.0 with no tasks."""
    if not tasks:
        return 0.0
    completed = sum(1 for t in tasks if t.status is TaskStatus.COMPLETED)
    return round(100.0 * completed / len(tasks), 2)


def derive_case_status(tasks: Sequence[CaseTask]) -> TaskStatus:
    """Case status implied by its tasks.

    Completed only when there is at least one task and all are Completed.
    Otherwise Blocked wins over progress, and any started or finished task
    makes the case InProgress.
    """
    if not tasks:
        return TaskStatus.NOT_STARTED
    statuses = {t.status for t in tasks}
    if statuses == {TaskStatus.COMPLETED}:
        return TaskStatus.COMPLETED
    if TaskStatus.BLOCKED in statuses:
        return TaskStatus.BLOCKED
    if statuses & {TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED}:
        return TaskStatus.IN_PROGRESS
    return TaskStatus.NOT_STARTED


CompletionEvent = Union[OnboardingCompletedPayload, OffboardingCompletedPayload]


@dataclass(frozen=True)
class CaseRecomputation:
    """Result of re-deriving a case from its tasks."""

    case: WorkflowCase
    previous_status: TaskStatus
    became_completed: bool
    reopened: bool


class CaseCompletionAggregator:
    """Derives case status from tasks and builds completion events."""

    def recompute(self, case: WorkflowCase, now: datetime) -> CaseRecomputation:
        previous = case.status
        status = derive_case_status(case.tasks)
        became_completed = status is TaskStatus.COMPLETED and previous is not TaskStatus.COMPLETED
        reopened = previous is TaskStatus.COMPLETED and status is not TaskStatus.COMPLETED

        actual_completion = case.actual_completion_date
        if status is TaskStatus.COMPLETED:
            actual_completion = actual_completion or now
        else:
            actual_completion = None

        updated = case.model_copy(update={
            "status": status,
            "actual_completion_date": actual_completion,
        })
        if became_completed:
            logger.info(
                "%s case %s for employee %s completed",
                case.kind.value, case.id, case.employee_id,
            )
        elif reopened:
            logger.info("%s case %s reopened", case.kind.value, case.id)
        return CaseRecomputation(
            case=updated,
            previous_status=previous,
            became_completed=became_completed,
            reopened=reopened,
        )

    def completion_event(
        self, case: WorkflowCase, now: Optional[datetime] = None
    ) -> CompletionEvent:
        completed_at = case.actual_completion_date or now or case.updated_at
        if case.kind is CaseKind.ONBOARDING:
            return OnboardingCompletedPayload(
                employee_id=case.employee_id, case_id=case.id, completed_at=completed_at
            )
        return OffboardingCompletedPayload(
            employee_id=case.employee_id, case_id=case.id, completed_at=completed_at
        )
