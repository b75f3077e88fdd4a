"""Case service shared by the onboarding and offboarding workflows.

A case is read, modified and written back as a whole document. Status and
completion percentage are re-derived from the tasks on every read and on
every task write; the completion event is published only when a write moves
the stored case into Completed.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Sequence

from hr_sync.cases import (
    CASE_RECORD_TYPES,
    CaseCompletionAggregator,
    CaseKind,
    OffboardingReason,
    WorkflowCase,
    generate_tasks,
)
from hr_sync.config import HRSyncSettings, TaskTemplate
from hr_sync.employees import EmployeeDirectory
from hr_sync.lifecycle import TaskStatus
from hr_sync.models import (
    ConflictError,
    NotFoundError,
    ValidationError,
    make_key,
    utc_now,
)
from hr_sync.publisher import EventPublisher
from hr_sync.storage import StateStoreClient

logger = logging.getLogger("hr_sync.workflow")


class CaseService:
    """Create, read and progress cases of one kind.

    Args:
        kind: Onboarding or offboarding.
        state: State store client.
        publisher: Publishes the completion event.
        directory: Answers "does employee X exist".
        templates: Task templates instantiated for every new case.
        settings: Topics and the default target completion window.
        clock: Injected for tests.
    """

    def __init__(
        self,
        kind: CaseKind,
        state: StateStoreClient,
        publisher: EventPublisher,
        directory: EmployeeDirectory,
        templates: Sequence[TaskTemplate],
        settings: Optional[HRSyncSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.kind = kind
        self._state = state
        self._publisher = publisher
        self._directory = directory
        self._templates = list(templates)
        self._settings = settings or HRSyncSettings()
        self._clock = clock
        self._aggregator = CaseCompletionAggregator()

    @property
    def record_type(self) -> str:
        return CASE_RECORD_TYPES[self.kind]

    @property
    def completion_topic(self) -> str:
        topics = self._settings.topics
        if self.kind is CaseKind.ONBOARDING:
            return topics.onboarding_events
        return topics.offboarding_events

    def _key(self, case_id: str) -> str:
        return make_key(self.record_type, case_id)

    # -- create -----------------------------------------------------------

    def create_case(
        self,
        employee_id: str,
        start_date: Optional[date] = None,
        notes: Optional[str] = None,
        reason: Optional[OffboardingReason] = None,
        last_working_day: Optional[date] = None,
        check_employee: bool = True,
    ) -> WorkflowCase:
        """Open a case with tasks generated from the configured templates.

        Raises:
            ValidationError: The employee does not exist.
            ConflictError: The employee already has an open case of this kind.
        """
        if not employee_id:
            raise ValidationError("employee_id is required", errors={"employee_id": ["required"]})
        if check_employee and not self._directory.employee_exists(employee_id):
            logger.warning("Cannot open %s case: employee %s not found", self.kind.value, employee_id)
            raise ValidationError(
                f"Employee {employee_id!r} does not exist",
                errors={"employee_id": [f"employee {employee_id!r} not found"]},
            )
        open_cases = [c for c in self.cases_for_employee(employee_id) if c.is_open]
        if open_cases:
            raise ConflictError(
                f"Employee {employee_id!r} already has an open {self.kind.value} case "
                f"{open_cases[0].id!r}"
            )

        now = self._clock()
        start = start_date or now.date()
        case = WorkflowCase(
            kind=self.kind,
            employee_id=employee_id,
            start_date=start,
            target_completion_date=start + timedelta(days=self._settings.case_target_completion_days),
            tasks=generate_tasks(self._templates, start),
            notes=notes,
            reason=reason,
            last_working_day=last_working_day,
            created_at=now,
            updated_at=now,
        )
        case = self._aggregator.recompute(case, now).case
        self._state.save(self._key(case.id), case)
        logger.info(
            "Created %s case %s for employee %s with %d tasks",
            self.kind.value, case.id, employee_id, len(case.tasks),
        )
        return case

    # -- reads ------------------------------------------------------------

    def _load(self, case_id: str) -> WorkflowCase:
        case = self._state.get_model(self._key(case_id), WorkflowCase)
        if case is None:
            logger.warning("%s case not found: %s", self.kind.value, case_id)
            raise NotFoundError("Case", case_id)
        return case

    def get_case(self, case_id: str) -> WorkflowCase:
        """Load a case with status and percentage re-derived from its tasks."""
        case = self._load(case_id)
        return self._aggregator.recompute(case, self._clock()).case

    def cases_for_employee(self, employee_id: str) -> List[WorkflowCase]:
        return self.list_cases(employee_id=employee_id)

    def list_cases(
        self,
        employee_id: Optional[str] = None,
        status: Optional[TaskStatus] = None,
    ) -> List[WorkflowCase]:
        query_filter = {"EQ": {"employee_id": employee_id}} if employee_id else {}
        now = self._clock()
        cases = [
            self._aggregator.recompute(c, now).case
            for c in self._state.query_models(
                self.record_type, WorkflowCase, query_filter, sort=[("created_at", "ASC")]
            )
        ]
        if status is not None:
            wanted = TaskStatus(status)
            cases = [c for c in cases if c.status is wanted]
        return cases

    def find_case_for_task(self, task_id: str) -> WorkflowCase:
        for case in self.list_cases():
            if any(t.id == task_id for t in case.tasks):
                return case
        logger.warning("No %s case owns task %s", self.kind.value, task_id)
        raise NotFoundError("Task", task_id)

    # -- writes -----------------------------------------------------------

    def update_task_status(
        self,
        case_id: str,
        task_id: str,
        status: TaskStatus,
        actor: Optional[str] = None,
    ) -> WorkflowCase:
        """Move one task to ``status`` and persist the whole case.

        Raises:
            NotFoundError: Unknown case or task.
            TransitionError: The move is not in the task transition table;
                nothing is written.
        """
        case = self._load(case_id)
        task = case.find_task(task_id)
        now = self._clock()
        updated_task = task.transition(status, now, actor)
        recomputed = self._aggregator.recompute(case.replace_task(updated_task), now)
        case = recomputed.case
        case.touch(now)
        self._state.save(self._key(case.id), case)
        logger.info(
            "Task %s of %s case %s moved from %s to %s (case %s, %.2f%% complete)",
            task_id, self.kind.value, case_id, task.status.value,
            updated_task.status.value, case.status.value, case.completion_percentage,
        )
        if recomputed.became_completed:
            self._publisher.publish(
                self.completion_topic, self._aggregator.completion_event(case, now)
            )
        return case

    def assign_task(self, case_id: str, task_id: str, assignee: Optional[str]) -> WorkflowCase:
        case = self._load(case_id)
        task = case.find_task(task_id)
        now = self._clock()
        case = case.replace_task(task.model_copy(update={"assigned_to": assignee}))
        case = self._aggregator.recompute(case, now).case
        case.touch(now)
        self._state.save(self._key(case.id), case)
        logger.info("Task %s of case %s assigned to %s", task_id, case_id, assignee)
        return case

    def delete_case(self, case_id: str) -> None:
        self._load(case_id)
        self._state.delete(self._key(case_id))
        logger.info("Deleted %s case %s", self.kind.value, case_id)
