"""
hr-sync: State-synchronization core for event-driven HR services.

This library provides the pieces an HR back office needs to keep employee,
onboarding, offboarding, performance and merit data consistent across
independently deployed services: a key-value State Store Client with
optimistic concurrency, a best-effort Event Publisher, idempotent event
consumers, lifecycle state machines, case completion aggregation and a
Decimal merit calculation engine.

Example:
    >>> from datetime import date
    >>> from decimal import Decimal
    >>> from hr_sync import HRSimulator
    >>> sim = HRSimulator.build()
    >>> emp = sim.employees.create({
    ...     "first_name": "Ada", "last_name": "Lovelace", "email": "ada@example.com",
    ...     "department_id": "D1", "salary": Decimal("90000"), "hire_date": date(2026, 1, 1),
    ... })
    >>> [case.status.value for case in sim.onboarding.cases_for_employee(emp.id)]
    ['not_started']
"""

__version__ = "1.0.0"

# Core data models and errors
from hr_sync.models import (
    STATE_SCHEMA_VERSION,
    BudgetExceededError,
    ChannelUnavailableError,
    ConcurrencyConflictError,
    ConflictError,
    ContentionError,
    DuplicateKeyError,
    EmailAlreadyExistsError,
    ErrorKind,
    ErrorResponse,
    HRSyncError,
    ImmutableRecordError,
    NotFoundError,
    QueryFilterError,
    Record,
    StoreUnavailableError,
    TransientError,
    UnknownEventTypeError,
    ValidationError,
    classify_error,
    make_key,
    split_key,
)

# Configuration
from hr_sync.config import (
    HRSyncSettings,
    RetryPolicy,
    TaskTemplate,
    TaskType,
    Topics,
    load_settings,
)

# State store
from hr_sync.storage import (
    InMemoryStateStore,
    StateStore,
    StateStoreClient,
    TransactionOperation,
)

# Event contracts
from hr_sync.events import (
    EMPLOYEE_CREATED,
    EMPLOYEE_TERMINATED,
    EVENT_SCHEMA_VERSION,
    EVENT_TYPES,
    MERIT_APPLIED,
    OFFBOARDING_COMPLETED,
    ONBOARDING_COMPLETED,
    REVIEW_SUBMITTED,
    EmployeeCreatedPayload,
    EmployeeTerminatedPayload,
    EventEnvelope,
    MeritAppliedPayload,
    OffboardingCompletedPayload,
    OnboardingCompletedPayload,
    ReviewSubmittedPayload,
    make_envelope,
    parse_envelope,
    parse_event,
)

# Publishing and consumption
from hr_sync.publisher import (
    EventChannel,
    EventPublisher,
    InMemoryEventChannel,
    PublisherStats,
    PublishResult,
)
from hr_sync.consumer import (
    ConsumeOutcome,
    ConsumeResult,
    EventDispatcher,
    IdempotentHandler,
)

# Lifecycle state machines
from hr_sync.lifecycle import (
    EmployeeStatus,
    EmployeeTrigger,
    TaskStatus,
    TransitionError,
    TransitionValidationResult,
    next_employee_status,
    statuses_after,
    validate_task_transition,
)

# Cases
from hr_sync.cases import (
    CaseCompletionAggregator,
    CaseKind,
    CaseRecomputation,
    CaseTask,
    OffboardingReason,
    WorkflowCase,
    completion_percentage,
    derive_case_status,
    generate_tasks,
)
from hr_sync.workflow import CaseService
from hr_sync.onboarding import EmployeeCreatedHandler, OnboardingService
from hr_sync.offboarding import OffboardingService

# Employees
from hr_sync.employees import (
    CompensationHistory,
    Department,
    DepartmentService,
    Employee,
    EmployeeDirectory,
    EmployeeService,
    MeritAppliedHandler,
    NewEmployee,
    OffboardingCompletedHandler,
    OnboardingCompletedHandler,
)

# Performance and merit
from hr_sync.performance import PerformanceReview, ReviewService, ReviewSource
from hr_sync.merit import (
    BudgetCheck,
    GuidelineTable,
    MeritCycle,
    MeritCycleStatus,
    MeritGuideline,
    MeritProposal,
    MeritService,
    build_proposal,
    calculate_raise,
    check_budget,
)

# Wiring
from hr_sync.simulator import HRSimulator

__all__ = [
    # Version
    "__version__",
    # Models and errors
    "STATE_SCHEMA_VERSION",
    "Record",
    "make_key",
    "split_key",
    "HRSyncError",
    "ValidationError",
    "UnknownEventTypeError",
    "QueryFilterError",
    "ConflictError",
    "DuplicateKeyError",
    "EmailAlreadyExistsError",
    "ConcurrencyConflictError",
    "ImmutableRecordError",
    "BudgetExceededError",
    "NotFoundError",
    "TransientError",
    "StoreUnavailableError",
    "ChannelUnavailableError",
    "ContentionError",
    "ErrorKind",
    "ErrorResponse",
    "classify_error",
    # Configuration
    "HRSyncSettings",
    "RetryPolicy",
    "TaskTemplate",
    "TaskType",
    "Topics",
    "load_settings",
    # State store
    "StateStore",
    "InMemoryStateStore",
    "StateStoreClient",
    "TransactionOperation",
    # Events
    "EVENT_SCHEMA_VERSION",
    "EVENT_TYPES",
    "EMPLOYEE_CREATED",
    "EMPLOYEE_TERMINATED",
    "ONBOARDING_COMPLETED",
    "OFFBOARDING_COMPLETED",
    "REVIEW_SUBMITTED",
    "MERIT_APPLIED",
    "EmployeeCreatedPayload",
    "EmployeeTerminatedPayload",
    "OnboardingCompletedPayload",
    "OffboardingCompletedPayload",
    "ReviewSubmittedPayload",
    "MeritAppliedPayload",
    "EventEnvelope",
    "make_envelope",
    "parse_envelope",
    "parse_event",
    # Publishing and consumption
    "EventChannel",
    "InMemoryEventChannel",
    "EventPublisher",
    "PublisherStats",
    "PublishResult",
    "ConsumeOutcome",
    "ConsumeResult",
    "IdempotentHandler",
    "EventDispatcher",
    # Lifecycle
    "EmployeeStatus",
    "EmployeeTrigger",
    "TaskStatus",
    "TransitionError",
    "TransitionValidationResult",
    "next_employee_status",
    "statuses_after",
    "validate_task_transition",
    # Cases
    "CaseKind",
    "CaseTask",
    "WorkflowCase",
    "OffboardingReason",
    "CaseCompletionAggregator",
    "CaseRecomputation",
    "completion_percentage",
    "derive_case_status",
    "generate_tasks",
    "CaseService",
    "OnboardingService",
    "EmployeeCreatedHandler",
    "OffboardingService",
    # Employees
    "Employee",
    "NewEmployee",
    "CompensationHistory",
    "Department",
    "DepartmentService",
    "EmployeeDirectory",
    "EmployeeService",
    "OnboardingCompletedHandler",
    "OffboardingCompletedHandler",
    "MeritAppliedHandler",
    # Performance and merit
    "PerformanceReview",
    "ReviewSource",
    "ReviewService",
    "MeritGuideline",
    "GuidelineTable",
    "MeritCycle",
    "MeritCycleStatus",
    "MeritProposal",
    "MeritService",
    "BudgetCheck",
    "build_proposal",
    "calculate_raise",
    "check_budget",
    # Wiring
    "HRSimulator",
]
