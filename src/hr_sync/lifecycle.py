"""Lifecycle state machines for employees and case tasks.

Both machines are explicit transition tables. Employee transitions are
driven by external triggers (case completion, leave); task transitions are
requested directly and validated against the table.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from hr_sync.models import ConflictError

# ---------------------------------------------------------------------------
# Employee status
# ---------------------------------------------------------------------------


class EmployeeStatus(str, Enum):
    """Employment lifecycle states."""

    PENDING = "pending"
    ACTIVE = "active"
    ON_LEAVE = "on_leave"
    TERMINATED = "terminated"


class EmployeeTrigger(str, Enum):
    """External occurrences that move an employee between states."""

    ONBOARDING_COMPLETED = "onboarding_completed"
    LEAVE_STARTED = "leave_started"
    LEAVE_ENDED = "leave_ended"
    OFFBOARDING_COMPLETED = "offboarding_completed"


TERMINAL_EMPLOYEE_STATUSES: FrozenSet[EmployeeStatus] = frozenset({
    EmployeeStatus.TERMINATED,
})

_EMPLOYEE_TRANSITIONS: Dict[Tuple[EmployeeStatus, EmployeeTrigger], EmployeeStatus] = {
    (EmployeeStatus.PENDING, EmployeeTrigger.ONBOARDING_COMPLETED): EmployeeStatus.ACTIVE,
    (EmployeeStatus.ACTIVE, EmployeeTrigger.LEAVE_STARTED): EmployeeStatus.ON_LEAVE,
    (EmployeeStatus.ON_LEAVE, EmployeeTrigger.LEAVE_ENDED): EmployeeStatus.ACTIVE,
    (EmployeeStatus.ACTIVE, EmployeeTrigger.OFFBOARDING_COMPLETED): EmployeeStatus.TERMINATED,
    (EmployeeStatus.ON_LEAVE, EmployeeTrigger.OFFBOARDING_COMPLETED): EmployeeStatus.TERMINATED,
}


class TransitionError(ConflictError):
    """Raised when a lifecycle transition is not in the transition table."""

    def __init__(self, violations: Tuple[str, ...]) -> None:
        self.violations = violations
        super().__init__(f"Invalid transition: {'; '.join(violations)}")


def trigger_target(trigger: EmployeeTrigger) -> EmployeeStatus:
    """Status a trigger leads to, independent of the current status."""
    for (_, t), target in _EMPLOYEE_TRANSITIONS.items():
        if t is trigger:
            return target
    raise ValueError(f"Trigger {trigger} has no transition")  # pragma: no cover


def statuses_after(trigger: EmployeeTrigger) -> FrozenSet[EmployeeStatus]:
    """Statuses reachable once ``trigger`` has fired: its target and onward.

    Onboarding completion leads to Active, OnLeave or Terminated; offboarding
    completion only to Terminated.
    """
    reached = {trigger_target(trigger)}
    frontier = list(reached)
    while frontier:
        status = frontier.pop()
        for (source, _), target in _EMPLOYEE_TRANSITIONS.items():
            if source is status and target not in reached:
                reached.add(target)
                frontier.append(target)
    return frozenset(reached)


def next_employee_status(current: EmployeeStatus, trigger: EmployeeTrigger) -> EmployeeStatus:
    """Resolve the status reached by applying ``trigger`` in ``current``.

    Raises:
        TransitionError: If the pair is not in the table. Terminated is
            absorbing, so every trigger fails there.
    """
    if current in TERMINAL_EMPLOYEE_STATUSES:
        raise TransitionError((f"{current.value} is terminal; no transitions allowed",))
    target = _EMPLOYEE_TRANSITIONS.get((current, trigger))
    if target is None:
        raise TransitionError(
            (f"Trigger {trigger.value} is not allowed in status {current.value}",)
        )
    return target


# ---------------------------------------------------------------------------
# Task status
# ---------------------------------------------------------------------------


class TaskStatus(str, Enum):
    """Lifecycle of a single case task."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"


_ALLOWED_TASK_TRANSITIONS: FrozenSet[Tuple[TaskStatus, TaskStatus]] = frozenset({
    # Start / finish / park
    (TaskStatus.NOT_STARTED, TaskStatus.IN_PROGRESS),
    (TaskStatus.NOT_STARTED, TaskStatus.COMPLETED),
    (TaskStatus.NOT_STARTED, TaskStatus.BLOCKED),
    (TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED),
    (TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED),
    # Rollback
    (TaskStatus.IN_PROGRESS, TaskStatus.NOT_STARTED),
    # Reopen
    (TaskStatus.COMPLETED, TaskStatus.IN_PROGRESS),
    # Unblock
    (TaskStatus.BLOCKED, TaskStatus.NOT_STARTED),
    (TaskStatus.BLOCKED, TaskStatus.IN_PROGRESS),
})


@dataclass(frozen=True)
class TransitionValidationResult:
    """Result of validating a proposed status transition."""

    valid: bool
    violations: Tuple[str, ...] = ()


def is_task_transition_allowed(current: TaskStatus, requested: TaskStatus) -> bool:
    return current is requested or (current, requested) in _ALLOWED_TASK_TRANSITIONS


def validate_task_transition(
    current: TaskStatus, requested: TaskStatus
) -> TransitionValidationResult:
    """Validate a task status change against the transition table.

    This function never raises for an illegal pair; it reports it.
    Self-transitions are always legal.
    """
    current = TaskStatus(current)
    requested = TaskStatus(requested)
    violations: List[str] = []
    if not is_task_transition_allowed(current, requested):
        violations.append(
            f"Invalid status transition from {current.value} to {requested.value}"
        )
    return TransitionValidationResult(valid=not violations, violations=tuple(violations))


@dataclass(frozen=True)
class TaskTransition:
    """New status and completion stamp after an accepted transition."""

    status: TaskStatus
    completed_date: Optional[datetime]


def apply_task_transition(
    current: TaskStatus,
    completed_date: Optional[datetime],
    requested: TaskStatus,
    now: datetime,
) -> TaskTransition:
    """Compute the effect of moving a task to ``requested``.

    Entering Completed stamps ``completed_date`` with ``now`` if unset;
    any non-Completed status clears it.

    Raises:
        TransitionError: If the pair is not legal.
    """
    requested = TaskStatus(requested)
    result = validate_task_transition(current, requested)
    if not result.valid:
        raise TransitionError(result.violations)
    if requested is TaskStatus.COMPLETED:
        return TaskTransition(status=requested, completed_date=completed_date or now)
    return TaskTransition(status=requested, completed_date=None)
