"""Shared pytest fixtures for all tests."""
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List

import pytest

from hr_sync.config import HRSyncSettings
from hr_sync.employees import EMPLOYEE, Employee
from hr_sync.lifecycle import EmployeeStatus
from hr_sync.models import make_key
from hr_sync.publisher import InMemoryEventChannel
from hr_sync.simulator import HRSimulator
from hr_sync.storage import InMemoryStateStore, StateStoreClient


class FrozenClock:
    """Deterministic clock; ``advance`` moves it forward."""

    def __init__(self, start: datetime = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class SleepRecorder:
    """Stands in for ``time.sleep``; records requested delays instead of waiting."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def make_new_employee(**overrides: Any) -> Dict[str, Any]:
    """Build a valid hire request with defaults for all required fields."""
    defaults: Dict[str, Any] = {
        "first_name": "Ada",
        "last_name": "Lovelace",
        "email": "ada@example.com",
        "department_id": "D1",
        "title": "Engineer",
        "level": 3,
        "salary": Decimal("90000.00"),
        "hire_date": date(2026, 1, 1),
    }
    defaults.update(overrides)
    return defaults


def seed_employee(
    state: StateStoreClient,
    employee_id: str = "E1",
    status: EmployeeStatus = EmployeeStatus.PENDING,
    **overrides: Any,
) -> Employee:
    """Write an employee record directly, bypassing the hire workflow."""
    fields: Dict[str, Any] = {
        "id": employee_id,
        "employee_number": f"EMP-{employee_id}",
        "first_name": "Test",
        "last_name": employee_id,
        "email": f"{employee_id.lower()}@example.com",
        "department_id": "D1",
        "salary": Decimal("50000.00"),
        "hire_date": date(2026, 1, 1),
        "status": status,
    }
    fields.update(overrides)
    employee = Employee(**fields)
    state.save(make_key(EMPLOYEE, employee.id), employee)
    return employee


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def no_sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def settings() -> HRSyncSettings:
    return HRSyncSettings()


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def state(store: InMemoryStateStore, settings: HRSyncSettings, no_sleep: SleepRecorder) -> StateStoreClient:
    return StateStoreClient(store, settings, sleep=no_sleep)


@pytest.fixture
def channel() -> InMemoryEventChannel:
    return InMemoryEventChannel()


@pytest.fixture
def sim(settings: HRSyncSettings, clock: FrozenClock, no_sleep: SleepRecorder) -> HRSimulator:
    return HRSimulator.build(settings, clock=clock, sleep=no_sleep)


@pytest.fixture
def employee_request() -> Callable[..., Dict[str, Any]]:
    """Factory for hire requests; see ``make_new_employee``."""
    return make_new_employee


@pytest.fixture
def seed() -> Callable[..., Employee]:
    """Factory writing employee records directly; see ``seed_employee``."""
    return seed_employee
