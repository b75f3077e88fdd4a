"""Onboarding workflow: one case per new hire, opened from EmployeeCreated."""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Callable, Optional

from hr_sync.cases import CaseKind, WorkflowCase
from hr_sync.config import HRSyncSettings
from hr_sync.consumer import IdempotentHandler
from hr_sync.employees import EmployeeDirectory
from hr_sync.events import EMPLOYEE_CREATED, EmployeeCreatedPayload
from hr_sync.models import utc_now
from hr_sync.publisher import EventPublisher
from hr_sync.storage import StateStoreClient
from hr_sync.workflow import CaseService

logger = logging.getLogger("hr_sync.onboarding")


class OnboardingService(CaseService):
    def __init__(
        self,
        state: StateStoreClient,
        publisher: EventPublisher,
        directory: EmployeeDirectory,
        settings: Optional[HRSyncSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        settings = settings or HRSyncSettings()
        super().__init__(
            CaseKind.ONBOARDING, state, publisher, directory,
            settings.onboarding_templates, settings, clock,
        )

    def start_onboarding(
        self, employee_id: str, start_date: Optional[date] = None, notes: Optional[str] = None
    ) -> WorkflowCase:
        logger.info("Starting onboarding for employee %s", employee_id)
        return self.create_case(employee_id, start_date=start_date, notes=notes)


class EmployeeCreatedHandler(IdempotentHandler[EmployeeCreatedPayload]):
    """Opens exactly one onboarding case per hired employee.

    The employee existence check is skipped: the event itself is proof
    that the employee record was committed.
    """

    event_type = EMPLOYEE_CREATED

    def __init__(self, onboarding: OnboardingService) -> None:
        self._onboarding = onboarding

    def dedup_key(self, event: EmployeeCreatedPayload) -> str:
        return event.employee_id

    def find_existing(self, event: EmployeeCreatedPayload, key: str) -> Optional[str]:
        cases = self._onboarding.cases_for_employee(key)
        return cases[0].id if cases else None

    def create(self, event: EmployeeCreatedPayload, key: str) -> str:
        case = self._onboarding.create_case(
            key,
            start_date=event.hire_date,
            notes=f"Automatically created from EmployeeCreated event for {event.email}",
            check_employee=False,
        )
        return case.id
