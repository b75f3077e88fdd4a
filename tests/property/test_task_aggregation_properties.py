"""Property tests for task transitions and case completion aggregation."""
from datetime import datetime, timedelta, timezone
from typing import List

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from hr_sync.cases import CaseTask, completion_percentage, derive_case_status
from hr_sync.lifecycle import TaskStatus, TransitionError, is_task_transition_allowed

_BASE = datetime(2026, 1, 1, tzinfo=timezone.utc)

statuses = st.sampled_from(list(TaskStatus))


def _task(status: TaskStatus) -> CaseTask:
    return CaseTask(
        description="t",
        status=status,
        completed_date=_BASE if status is TaskStatus.COMPLETED else None,
    )


class TestTaskTransitionProperties:
    """Any sequence of requests keeps completed_date in lock-step with status."""

    @given(requests=st.lists(statuses, max_size=30))
    @settings(max_examples=200, deadline=None)
    def test_lock_step_under_random_requests(self, requests: List[TaskStatus]) -> None:
        task = _task(TaskStatus.NOT_STARTED)
        for step, requested in enumerate(requests):
            now = _BASE + timedelta(minutes=step)
            if is_task_transition_allowed(task.status, requested):
                task = task.transition(requested, now)
            else:
                before = task
                with pytest.raises(TransitionError):
                    task.transition(requested, now)
                assert task == before
            assert (task.status is TaskStatus.COMPLETED) == (task.completed_date is not None)

    @given(status=statuses)
    def test_self_transition_is_noop(self, status: TaskStatus) -> None:
        task = _task(status)
        assert task.transition(status, _BASE + timedelta(days=1)) == task


class TestAggregationProperties:
    """Derived case status and percentage agree for any task mix."""

    @given(task_statuses=st.lists(statuses, max_size=40))
    @settings(max_examples=300, deadline=None)
    def test_status_and_percentage_agree(self, task_statuses: List[TaskStatus]) -> None:
        tasks = [_task(s) for s in task_statuses]
        pct = completion_percentage(tasks)
        status = derive_case_status(tasks)
        assert 0.0 <= pct <= 100.0
        assert (status is TaskStatus.COMPLETED) == (bool(tasks) and pct == 100.0)
        if TaskStatus.BLOCKED in task_statuses:
            assert status is TaskStatus.BLOCKED
        if not tasks:
            assert pct == 0.0 and status is TaskStatus.NOT_STARTED

    @given(task_statuses=st.lists(statuses, min_size=1, max_size=40))
    def test_order_does_not_matter(self, task_statuses: List[TaskStatus]) -> None:
        tasks = [_task(s) for s in task_statuses]
        reversed_tasks = list(reversed(tasks))
        assert completion_percentage(tasks) == completion_percentage(reversed_tasks)
        assert derive_case_status(tasks) is derive_case_status(reversed_tasks)
