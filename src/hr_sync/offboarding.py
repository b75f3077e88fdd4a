"""Offboarding workflow for departing employees."""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Callable, Optional, Union

from hr_sync.cases import CaseKind, OffboardingReason, WorkflowCase
from hr_sync.config import HRSyncSettings
from hr_sync.employees import EmployeeDirectory
from hr_sync.lifecycle import EmployeeStatus
from hr_sync.models import ConflictError, NotFoundError, ValidationError, utc_now
from hr_sync.publisher import EventPublisher
from hr_sync.storage import StateStoreClient
from hr_sync.workflow import CaseService

logger = logging.getLogger("hr_sync.offboarding")

_OFFBOARDABLE = frozenset({EmployeeStatus.ACTIVE, EmployeeStatus.ON_LEAVE})


class OffboardingService(CaseService):
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
            CaseKind.OFFBOARDING, state, publisher, directory,
            settings.offboarding_templates, settings, clock,
        )

    def start_offboarding(
        self,
        employee_id: str,
        reason: Union[OffboardingReason, str],
        last_working_day: date,
        notes: Optional[str] = None,
    ) -> WorkflowCase:
        """Open an offboarding case for an Active or OnLeave employee.

        Raises:
            ValidationError: Unknown employee or reason.
            ConflictError: The employee cannot be offboarded from their
                current status, or already has an open offboarding case.
        """
        try:
            reason = OffboardingReason(reason)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown offboarding reason {reason!r}",
                errors={"reason": [f"must be one of {[r.value for r in OffboardingReason]}"]},
            ) from exc
        try:
            employee = self._directory.get_employee(employee_id)
        except NotFoundError as exc:
            raise ValidationError(
                f"Employee {employee_id!r} does not exist",
                errors={"employee_id": [f"employee {employee_id!r} not found"]},
            ) from exc
        if employee.status not in _OFFBOARDABLE:
            raise ConflictError(
                f"Employee {employee_id!r} is {employee.status.value}; "
                f"only active or on-leave employees can be offboarded"
            )
        logger.info(
            "Starting offboarding for employee %s (%s, last day %s)",
            employee_id, reason.value, last_working_day,
        )
        return self.create_case(
            employee_id,
            notes=notes,
            reason=reason,
            last_working_day=last_working_day,
            check_employee=False,
        )
