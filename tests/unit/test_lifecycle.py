"""Unit tests for the employee and task state machines."""
from datetime import datetime, timezone
from itertools import product

import pytest

from hr_sync.lifecycle import (
    EmployeeStatus,
    EmployeeTrigger,
    TaskStatus,
    TransitionError,
    apply_task_transition,
    is_task_transition_allowed,
    next_employee_status,
    statuses_after,
    trigger_target,
    validate_task_transition,
)
from hr_sync.models import ConflictError

NOW = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)
EARLIER = datetime(2026, 1, 20, 8, 0, tzinfo=timezone.utc)

S = EmployeeStatus
T = EmployeeTrigger
K = TaskStatus

EMPLOYEE_TABLE = {
    (S.PENDING, T.ONBOARDING_COMPLETED): S.ACTIVE,
    (S.ACTIVE, T.LEAVE_STARTED): S.ON_LEAVE,
    (S.ON_LEAVE, T.LEAVE_ENDED): S.ACTIVE,
    (S.ACTIVE, T.OFFBOARDING_COMPLETED): S.TERMINATED,
    (S.ON_LEAVE, T.OFFBOARDING_COMPLETED): S.TERMINATED,
}

TASK_TABLE = {
    (K.NOT_STARTED, K.IN_PROGRESS),
    (K.NOT_STARTED, K.COMPLETED),
    (K.NOT_STARTED, K.BLOCKED),
    (K.IN_PROGRESS, K.COMPLETED),
    (K.IN_PROGRESS, K.BLOCKED),
    (K.IN_PROGRESS, K.NOT_STARTED),
    (K.COMPLETED, K.IN_PROGRESS),
    (K.BLOCKED, K.NOT_STARTED),
    (K.BLOCKED, K.IN_PROGRESS),
}


class TestEmployeeStateMachine:
    @pytest.mark.parametrize("status,trigger", list(product(S, T)))
    def test_every_pair(self, status: EmployeeStatus, trigger: EmployeeTrigger) -> None:
        expected = EMPLOYEE_TABLE.get((status, trigger))
        if expected is None:
            with pytest.raises(TransitionError):
                next_employee_status(status, trigger)
        else:
            assert next_employee_status(status, trigger) is expected

    @pytest.mark.parametrize("trigger", list(T))
    def test_terminated_is_absorbing(self, trigger: EmployeeTrigger) -> None:
        with pytest.raises(TransitionError) as info:
            next_employee_status(S.TERMINATED, trigger)
        assert "terminal" in str(info.value)

    def test_transition_error_is_conflict(self) -> None:
        with pytest.raises(ConflictError):
            next_employee_status(S.PENDING, T.LEAVE_STARTED)

    def test_trigger_target(self) -> None:
        assert trigger_target(T.ONBOARDING_COMPLETED) is S.ACTIVE
        assert trigger_target(T.OFFBOARDING_COMPLETED) is S.TERMINATED
        assert trigger_target(T.LEAVE_STARTED) is S.ON_LEAVE

    def test_statuses_after_trigger(self) -> None:
        assert statuses_after(T.ONBOARDING_COMPLETED) == {S.ACTIVE, S.ON_LEAVE, S.TERMINATED}
        assert statuses_after(T.OFFBOARDING_COMPLETED) == {S.TERMINATED}
        assert statuses_after(T.LEAVE_ENDED) == {S.ACTIVE, S.ON_LEAVE, S.TERMINATED}
        assert all(S.PENDING not in statuses_after(t) for t in T)


class TestTaskStateMachine:
    @pytest.mark.parametrize("current,requested", list(product(K, K)))
    def test_table(self, current: TaskStatus, requested: TaskStatus) -> None:
        allowed = current is requested or (current, requested) in TASK_TABLE
        assert is_task_transition_allowed(current, requested) is allowed
        result = validate_task_transition(current, requested)
        assert result.valid is allowed
        assert bool(result.violations) is not allowed

    def test_validate_accepts_raw_values(self) -> None:
        assert validate_task_transition("blocked", "in_progress").valid  # type: ignore[arg-type]

    def test_completed_to_blocked_rejected(self) -> None:
        result = validate_task_transition(K.COMPLETED, K.BLOCKED)
        assert result.violations == ("Invalid status transition from completed to blocked",)


class TestApplyTaskTransition:
    def test_completion_stamps_now(self) -> None:
        result = apply_task_transition(K.IN_PROGRESS, None, K.COMPLETED, NOW)
        assert result.status is K.COMPLETED
        assert result.completed_date == NOW

    def test_completed_self_transition_keeps_stamp(self) -> None:
        result = apply_task_transition(K.COMPLETED, EARLIER, K.COMPLETED, NOW)
        assert result.completed_date == EARLIER

    def test_reopen_clears_stamp(self) -> None:
        result = apply_task_transition(K.COMPLETED, EARLIER, K.IN_PROGRESS, NOW)
        assert result.status is K.IN_PROGRESS
        assert result.completed_date is None

    def test_illegal_raises(self) -> None:
        with pytest.raises(TransitionError) as info:
            apply_task_transition(K.BLOCKED, None, K.COMPLETED, NOW)
        assert info.value.violations
