"""Employee records, departments, and the employee-side event handlers.

Storage layout (all keys namespaced ``"{type}:{id}"``):

- ``employee:{id}``: the employee record.
- ``email-index:{email}``: id of the employee holding a lowercased email.
  Terminated employees keep their entry so the address cannot be reused by
  an unrelated hire; ``EmployeeService.rehire`` is the only path that moves
  it.
- ``employee-counter:{year}``: sequence behind employee numbers.
- ``compensation-history:{id}``: one entry per salary change.
- ``department:{id}``: department records.

Employee writes are version-guarded; two concurrent edits of the same
employee never silently drop one of them.
"""
from __future__ import annotations

import logging
import math
import re
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from hr_sync.config import HRSyncSettings
from hr_sync.consumer import IdempotentHandler
from hr_sync.events import (
    MERIT_APPLIED,
    OFFBOARDING_COMPLETED,
    ONBOARDING_COMPLETED,
    EmployeeCreatedPayload,
    EmployeeTerminatedPayload,
    MeritAppliedPayload,
)
from hr_sync.lifecycle import (
    EmployeeStatus,
    EmployeeTrigger,
    next_employee_status,
    statuses_after,
)
from hr_sync.models import (
    ConcurrencyConflictError,
    ConflictError,
    EmailAlreadyExistsError,
    NotFoundError,
    Record,
    ValidationError,
    make_key,
    pydantic_error_map,
    utc_now,
)
from hr_sync.publisher import EventPublisher
from hr_sync.storage import StateStoreClient, TransactionOperation

logger = logging.getLogger("hr_sync.employees")

EMPLOYEE = "employee"
EMAIL_INDEX = "email-index"
EMPLOYEE_COUNTER = "employee-counter"
COMPENSATION_HISTORY = "compensation-history"
DEPARTMENT = "department"

MAX_SALARY = Decimal("10000000")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _check_email(value: str) -> str:
    value = value.strip()
    if not _EMAIL_RE.match(value):
        raise ValueError(f"{value!r} is not a valid email address")
    return value


Email = Annotated[str, AfterValidator(_check_email)]


def email_index_key(email: str) -> str:
    return make_key(EMAIL_INDEX, email.strip().lower())


# ── Models ───────────────────────────────────────────────────────────────────


class Employee(Record):
    """An employee record. ``status`` only changes through ``apply_lifecycle``."""

    employee_number: str = Field(..., min_length=1)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: Email
    department_id: str = Field(..., min_length=1)
    title: str = Field("", max_length=200)
    level: int = Field(1, ge=1, le=10)
    salary: Decimal = Field(..., ge=0, le=MAX_SALARY)
    hire_date: date
    termination_date: Optional[date] = None
    status: EmployeeStatus = EmployeeStatus.PENDING
    manager_id: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class NewEmployee(BaseModel):
    """Input for hiring an employee."""

    model_config = ConfigDict(extra="forbid")

    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: Email
    department_id: str = Field(..., min_length=1)
    title: str = Field("", max_length=200)
    level: int = Field(1, ge=1, le=10)
    salary: Decimal = Field(..., ge=0, le=MAX_SALARY)
    hire_date: date
    manager_id: Optional[str] = None


class EmployeeUpdate(BaseModel):
    """Partial update; only fields explicitly set are applied."""

    model_config = ConfigDict(extra="forbid")

    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[Email] = None
    department_id: Optional[str] = Field(None, min_length=1)
    title: Optional[str] = Field(None, max_length=200)
    level: Optional[int] = Field(None, ge=1, le=10)
    salary: Optional[Decimal] = Field(None, ge=0, le=MAX_SALARY)
    manager_id: Optional[str] = None
    termination_date: Optional[date] = None


class CompensationChangeType(str, Enum):
    HIRE = "hire"
    MERIT = "merit"
    CORRECTION = "correction"


class CompensationHistory(Record):
    """One salary change. ``source_ref`` names what caused it (e.g. a proposal id)."""

    employee_id: str = Field(..., min_length=1)
    effective_date: date
    previous_salary: Optional[Decimal] = None
    new_salary: Decimal = Field(..., ge=0)
    change_type: CompensationChangeType
    change_reason: Optional[str] = None
    approved_by: Optional[str] = None
    source_ref: Optional[str] = None


class Department(Record):
    name: str = Field(..., min_length=1, max_length=100)
    manager_id: Optional[str] = None


class EmployeePage(BaseModel):
    """One page of an employee listing."""

    model_config = ConfigDict(frozen=True)

    employees: List[Employee]
    page: int
    page_size: int
    total_count: int
    total_pages: int


def _validate_input(model: Any, data: Any, what: str) -> Any:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        logger.error("Validation failed for %s: %s", what, exc)
        raise ValidationError(
            f"Validation failed for {what}", errors=pydantic_error_map(exc)
        ) from exc


# ── Collaborator contract ────────────────────────────────────────────────────


class EmployeeDirectory(ABC):
    """The "does employee X exist" lookup used before opening a case."""

    @abstractmethod
    def get_employee(self, employee_id: str) -> Employee:
        """Return the employee or raise NotFoundError."""

    def employee_exists(self, employee_id: str) -> bool:
        """False only for a not-found outcome; other failures propagate."""
        try:
            self.get_employee(employee_id)
        except NotFoundError:
            return False
        return True


# ── Departments ──────────────────────────────────────────────────────────────


class DepartmentService:
    def __init__(self, state: StateStoreClient) -> None:
        self._state = state

    def create(self, name: str, manager_id: Optional[str] = None) -> Department:
        department = _validate_input(
            Department, {"name": name, "manager_id": manager_id}, "department"
        )
        self._state.save(make_key(DEPARTMENT, department.id), department)
        logger.info("Department created: %s (%s)", department.id, department.name)
        return department

    def get(self, department_id: str) -> Department:
        department = self._state.get_model(make_key(DEPARTMENT, department_id), Department)
        if department is None:
            logger.warning("Department not found: %s", department_id)
            raise NotFoundError("Department", department_id)
        return department

    def list(self) -> List[Department]:
        return self._state.query_models(DEPARTMENT, Department, sort=[("name", "ASC")])

    def exists(self, department_id: str) -> bool:
        return self._state.get(make_key(DEPARTMENT, department_id)) is not None

    def has_departments(self) -> bool:
        return bool(self._state.query(DEPARTMENT))

    def delete(self, department_id: str) -> None:
        self.get(department_id)
        self._state.delete(make_key(DEPARTMENT, department_id))
        logger.info("Department deleted: %s", department_id)


# ── Employees ────────────────────────────────────────────────────────────────


class EmployeeService(EmployeeDirectory):
    """Owns employee records and their lifecycle.

    Args:
        state: State store client shared with the other services.
        publisher: Publishes EmployeeCreated and EmployeeTerminated.
        settings: Topic names and the employee number prefix.
        departments: When given and at least one department exists, new
            hires must reference an existing department.
        clock: Injected for tests.
    """

    def __init__(
        self,
        state: StateStoreClient,
        publisher: EventPublisher,
        settings: Optional[HRSyncSettings] = None,
        departments: Optional[DepartmentService] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._state = state
        self._publisher = publisher
        self._settings = settings or HRSyncSettings()
        self._departments = departments
        self._clock = clock

    # -- reads ------------------------------------------------------------

    def get(self, employee_id: str) -> Employee:
        employee = self._state.get_model(make_key(EMPLOYEE, employee_id), Employee)
        if employee is None:
            logger.warning("Employee not found: %s", employee_id)
            raise NotFoundError("Employee", employee_id)
        return employee

    def get_employee(self, employee_id: str) -> Employee:
        return self.get(employee_id)

    def list(
        self,
        status: Optional[EmployeeStatus] = None,
        department_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> EmployeePage:
        """List employees sorted by last then first name, one page at a time."""
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be positive")
        clauses: List[Dict[str, Any]] = []
        if status is not None:
            clauses.append({"EQ": {"status": EmployeeStatus(status).value}})
        if department_id:
            clauses.append({"EQ": {"department_id": department_id}})
        query_filter: Dict[str, Any] = {}
        if len(clauses) == 1:
            query_filter = clauses[0]
        elif clauses:
            query_filter = {"AND": clauses}
        employees = self._state.query_models(
            EMPLOYEE, Employee, query_filter,
            sort=[("last_name", "ASC"), ("first_name", "ASC")],
        )
        total = len(employees)
        start = (page - 1) * page_size
        return EmployeePage(
            employees=employees[start:start + page_size],
            page=page,
            page_size=page_size,
            total_count=total,
            total_pages=math.ceil(total / page_size),
        )

    def compensation_history(self, employee_id: str) -> List[CompensationHistory]:
        return self._state.query_models(
            COMPENSATION_HISTORY, CompensationHistory,
            {"EQ": {"employee_id": employee_id}},
            sort=[("effective_date", "ASC"), ("created_at", "ASC")],
        )

    def find_compensation_change(self, source_ref: str) -> Optional[CompensationHistory]:
        found = self._state.query_models(
            COMPENSATION_HISTORY, CompensationHistory, {"EQ": {"source_ref": source_ref}}
        )
        return found[0] if found else None

    # -- hire -------------------------------------------------------------

    def create(self, request: Union[NewEmployee, Mapping[str, Any]]) -> Employee:
        """Hire a new employee in Pending status and publish EmployeeCreated.

        Raises:
            ValidationError: Malformed input or unknown department.
            EmailAlreadyExistsError: The email is indexed, even by a
                terminated employee.
            ContentionError: The employee-number counter could not be
                advanced.
        """
        req = _validate_input(NewEmployee, request, "employee creation")
        logger.info("Creating employee")
        self._check_department(req.department_id)

        index_key = email_index_key(req.email)
        if self._state.get(index_key) is not None:
            logger.warning("Email already exists: %s", req.email)
            raise EmailAlreadyExistsError(req.email)

        now = self._clock()
        employee = Employee(
            employee_number=self._next_employee_number(now.year),
            first_name=req.first_name,
            last_name=req.last_name,
            email=req.email,
            department_id=req.department_id,
            title=req.title,
            level=req.level,
            salary=req.salary,
            hire_date=req.hire_date,
            manager_id=req.manager_id,
            created_at=now,
            updated_at=now,
        )
        history = CompensationHistory(
            employee_id=employee.id,
            effective_date=req.hire_date,
            new_salary=req.salary,
            change_type=CompensationChangeType.HIRE,
            change_reason="Initial hire",
            created_at=now,
            updated_at=now,
        )
        self._commit_hire(employee, history, TransactionOperation(
            index_key, employee.id, must_not_exist=True,
        ))
        logger.info(
            "Employee created: %s (%s) with compensation history: %s",
            employee.id, employee.employee_number, history.id,
        )
        self._publish_created(employee)
        return employee

    def rehire(
        self,
        terminated_employee_id: str,
        hire_date: date,
        salary: Optional[Decimal] = None,
        department_id: Optional[str] = None,
        title: Optional[str] = None,
        level: Optional[int] = None,
    ) -> Employee:
        """Hire a former employee again under the email they already hold.

        A new employee record (new id and number, Pending) is created and the
        email index is moved to it in the same transaction. The old record
        stays Terminated.

        Raises:
            ConflictError: The referenced employee is not Terminated, or the
                email index no longer points at them.
        """
        previous = self.get(terminated_employee_id)
        if previous.status is not EmployeeStatus.TERMINATED:
            raise ConflictError(
                f"Employee {previous.id!r} is {previous.status.value}; only "
                f"terminated employees can be rehired"
            )
        index_key = email_index_key(previous.email)
        holder, etag = self._state.get_with_etag(index_key)
        if holder != previous.id:
            raise ConflictError(
                f"Email {previous.email!r} is held by another employee; cannot rehire"
            )
        request = _validate_input(NewEmployee, {
            "first_name": previous.first_name,
            "last_name": previous.last_name,
            "email": previous.email,
            "department_id": department_id or previous.department_id,
            "title": previous.title if title is None else title,
            "level": previous.level if level is None else level,
            "salary": previous.salary if salary is None else salary,
            "hire_date": hire_date,
            "manager_id": previous.manager_id,
        }, "rehire")
        self._check_department(request.department_id)

        now = self._clock()
        employee = Employee(
            employee_number=self._next_employee_number(now.year),
            created_at=now,
            updated_at=now,
            **request.model_dump(),
        )
        history = CompensationHistory(
            employee_id=employee.id,
            effective_date=hire_date,
            new_salary=employee.salary,
            change_type=CompensationChangeType.HIRE,
            change_reason=f"Rehire of former employee {previous.id}",
            source_ref=previous.id,
            created_at=now,
            updated_at=now,
        )
        self._commit_hire(employee, history, TransactionOperation(index_key, employee.id, etag=etag))
        logger.info("Employee %s rehired as %s", previous.id, employee.id)
        self._publish_created(employee)
        return employee

    def _commit_hire(
        self, employee: Employee, history: CompensationHistory, index_op: TransactionOperation
    ) -> None:
        try:
            self._state.execute_transaction([
                (make_key(EMPLOYEE, employee.id), employee),
                index_op,
                (make_key(COMPENSATION_HISTORY, history.id), history),
            ])
        except ConcurrencyConflictError as exc:
            if exc.key == index_op.key and index_op.must_not_exist:
                logger.warning("Email claimed concurrently: %s", employee.email)
                raise EmailAlreadyExistsError(employee.email) from exc
            raise

    def _publish_created(self, employee: Employee) -> None:
        self._publisher.publish(
            self._settings.topics.employee_events,
            EmployeeCreatedPayload(
                employee_id=employee.id,
                email=employee.email,
                department_id=employee.department_id,
                hire_date=employee.hire_date,
            ),
        )

    def _next_employee_number(self, year: int) -> str:
        counter = self._state.increment_counter(make_key(EMPLOYEE_COUNTER, str(year)))
        number = f"{self._settings.employee_number_prefix}{year}{counter:06d}"
        logger.info("Generated employee number: %s", number)
        return number

    def _check_department(self, department_id: str) -> None:
        if self._departments is None or not self._departments.has_departments():
            return
        if not self._departments.exists(department_id):
            raise ValidationError(
                f"Department {department_id!r} does not exist",
                errors={"department_id": [f"unknown department {department_id!r}"]},
            )

    # -- updates ----------------------------------------------------------

    def update(
        self,
        employee_id: str,
        changes: Union[EmployeeUpdate, Mapping[str, Any]],
        admin_correction: bool = False,
        changed_by: Optional[str] = None,
    ) -> Employee:
        """Apply a partial update under an etag guard.

        Terminated employees are read-only unless ``admin_correction`` is set.
        A salary change writes a correction entry to compensation history in
        the same transaction.

        Raises:
            ConflictError: Terminated without admin correction, or the new
                email is taken.
            ConcurrencyConflictError: The record changed since it was read.
        """
        update = _validate_input(EmployeeUpdate, changes, "employee update")
        key = make_key(EMPLOYEE, employee_id)
        employee, etag = self._state.get_model_with_etag(key, Employee)
        if employee is None:
            logger.warning("Employee not found for update: %s", employee_id)
            raise NotFoundError("Employee", employee_id)

        if employee.status is EmployeeStatus.TERMINATED:
            if not admin_correction:
                raise ConflictError(
                    f"Employee {employee_id!r} is terminated; updates require an admin correction"
                )
            logger.warning(
                "Admin correction on terminated employee %s by %s: %s",
                employee_id, changed_by or "unknown", sorted(update.model_fields_set),
            )

        fields = update.model_dump(exclude_unset=True)
        if "department_id" in fields:
            self._check_department(fields["department_id"])

        now = self._clock()
        try:
            updated = Employee.model_validate({**employee.model_dump(), **fields})
        except PydanticValidationError as exc:
            raise ValidationError(
                "Validation failed for employee update", errors=pydantic_error_map(exc)
            ) from exc
        updated.touch(now)

        ops: List[Any] = [TransactionOperation(key, updated, etag=etag)]
        old_index = email_index_key(employee.email)
        new_index = email_index_key(updated.email)
        if new_index != old_index:
            ops.append(TransactionOperation(old_index, operation="delete"))
            ops.append(TransactionOperation(new_index, updated.id, must_not_exist=True))
        if updated.salary != employee.salary:
            history = CompensationHistory(
                employee_id=employee.id,
                effective_date=now.date(),
                previous_salary=employee.salary,
                new_salary=updated.salary,
                change_type=CompensationChangeType.CORRECTION,
                change_reason="Salary corrected",
                approved_by=changed_by,
                created_at=now,
                updated_at=now,
            )
            ops.append((make_key(COMPENSATION_HISTORY, history.id), history))

        try:
            self._state.execute_transaction(ops)
        except ConcurrencyConflictError as exc:
            if exc.key == new_index:
                raise EmailAlreadyExistsError(updated.email) from exc
            raise
        if new_index != old_index:
            logger.info(
                "Email index updated for employee %s: %s -> %s",
                employee_id, employee.email, updated.email,
            )
        logger.info("Employee updated: %s", employee_id)
        return updated

    def apply_lifecycle(
        self,
        employee_id: str,
        trigger: EmployeeTrigger,
        effective_date: Optional[date] = None,
        reason: Optional[str] = None,
    ) -> Employee:
        """Move an employee through the lifecycle state machine.

        Entering Terminated stamps ``termination_date`` and publishes
        EmployeeTerminated.

        Raises:
            TransitionError: The trigger is not legal in the current status.
        """
        key = make_key(EMPLOYEE, employee_id)
        employee, etag = self._state.get_model_with_etag(key, Employee)
        if employee is None:
            logger.warning("Employee not found for lifecycle change: %s", employee_id)
            raise NotFoundError("Employee", employee_id)

        trigger = EmployeeTrigger(trigger)
        target = next_employee_status(employee.status, trigger)
        now = self._clock()
        previous = employee.status
        employee.status = target
        if target is EmployeeStatus.TERMINATED:
            employee.termination_date = effective_date or now.date()
        employee.touch(now)
        self._state.save_if_match(key, employee, etag)
        logger.info(
            "Employee %s moved from %s to %s on %s",
            employee_id, previous.value, target.value, trigger.value,
        )

        if target is EmployeeStatus.TERMINATED:
            self._publisher.publish(
                self._settings.topics.employee_events,
                EmployeeTerminatedPayload(
                    employee_id=employee.id,
                    termination_date=employee.termination_date,
                    reason=reason,
                ),
            )
        return employee

    def start_leave(self, employee_id: str) -> Employee:
        return self.apply_lifecycle(employee_id, EmployeeTrigger.LEAVE_STARTED)

    def end_leave(self, employee_id: str) -> Employee:
        return self.apply_lifecycle(employee_id, EmployeeTrigger.LEAVE_ENDED)

    def apply_merit(
        self,
        employee_id: str,
        new_salary: Decimal,
        effective_date: date,
        source_ref: str,
        approved_by: Optional[str] = None,
    ) -> CompensationHistory:
        """Set a new salary and record it in compensation history atomically."""
        key = make_key(EMPLOYEE, employee_id)
        employee, etag = self._state.get_model_with_etag(key, Employee)
        if employee is None:
            raise NotFoundError("Employee", employee_id)
        if employee.status is EmployeeStatus.TERMINATED:
            raise ConflictError(f"Employee {employee_id!r} is terminated; merit not applied")

        now = self._clock()
        history = CompensationHistory(
            employee_id=employee_id,
            effective_date=effective_date,
            previous_salary=employee.salary,
            new_salary=new_salary,
            change_type=CompensationChangeType.MERIT,
            change_reason="Merit increase",
            approved_by=approved_by,
            source_ref=source_ref,
            created_at=now,
            updated_at=now,
        )
        employee.salary = new_salary
        employee.touch(now)
        self._state.execute_transaction([
            TransactionOperation(key, employee, etag=etag),
            (make_key(COMPENSATION_HISTORY, history.id), history),
        ])
        logger.info(
            "Applied merit %s to employee %s: %s -> %s",
            source_ref, employee_id, history.previous_salary, new_salary,
        )
        return history


# ── Event handlers ───────────────────────────────────────────────────────────


class LifecycleEventHandler(IdempotentHandler[Any]):
    """Drives the employee state machine from case completion events.

    The dependent state is the employee's status. An employee already in
    the trigger's target status, or in any status only reachable after it,
    means the event was processed before; redeliveries can arrive after the
    employee has moved on (e.g. OnboardingCompleted while OnLeave).
    """

    trigger: EmployeeTrigger

    def __init__(self, employees: EmployeeService) -> None:
        self._employees = employees

    def dedup_key(self, event: Any) -> str:
        return f"{event.employee_id}:{self.trigger.value}"

    def find_existing(self, event: Any, key: str) -> Optional[str]:
        employee = self._employees.get(event.employee_id)
        if employee.status in statuses_after(self.trigger):
            return employee.id
        return None

    def create(self, event: Any, key: str) -> str:
        employee = self._employees.apply_lifecycle(
            event.employee_id, self.trigger, effective_date=event.completed_at.date()
        )
        return employee.id


class OnboardingCompletedHandler(LifecycleEventHandler):
    event_type = ONBOARDING_COMPLETED
    trigger = EmployeeTrigger.ONBOARDING_COMPLETED


class OffboardingCompletedHandler(LifecycleEventHandler):
    event_type = OFFBOARDING_COMPLETED
    trigger = EmployeeTrigger.OFFBOARDING_COMPLETED


class MeritAppliedHandler(IdempotentHandler[MeritAppliedPayload]):
    """Applies a merit raise once per proposal."""

    event_type = MERIT_APPLIED

    def __init__(self, employees: EmployeeService) -> None:
        self._employees = employees

    def dedup_key(self, event: MeritAppliedPayload) -> str:
        return event.proposal_id

    def find_existing(self, event: MeritAppliedPayload, key: str) -> Optional[str]:
        existing = self._employees.find_compensation_change(key)
        return None if existing is None else existing.id

    def create(self, event: MeritAppliedPayload, key: str) -> str:
        history = self._employees.apply_merit(
            event.employee_id,
            event.new_salary,
            event.effective_date,
            source_ref=key,
        )
        return history.id
