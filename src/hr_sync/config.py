"""Runtime configuration for the hr-sync services.

Settings are plain pydantic models so a JSON settings file is validated with
the same machinery as every other payload in the library.
"""
from __future__ import annotations

import json
import logging
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from hr_sync.models import ValidationError

logger = logging.getLogger("hr_sync.config")


class RetryPolicy(BaseModel):
    """Bounded linear backoff: the n-th retry waits ``n * base_delay_seconds``."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(..., ge=1, description="Total attempts, including the first")
    base_delay_seconds: float = Field(..., ge=0.0, description="Linear backoff step")
    jitter: bool = Field(False, description="Add up to one extra step of random delay")

    def delay_for(self, attempt: int, jitter_fraction: float = 0.0) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = self.base_delay_seconds * attempt
        if self.jitter:
            delay += self.base_delay_seconds * jitter_fraction
        return delay


class TaskType(str, Enum):
    """Kinds of work a case task represents."""

    PAPERWORK = "paperwork"
    TRAINING = "training"
    EQUIPMENT = "equipment"
    ACCESS = "access"
    KNOWLEDGE_TRANSFER = "knowledge_transfer"
    EXIT_INTERVIEW = "exit_interview"
    OTHER = "other"


class TaskTemplate(BaseModel):
    """Template from which a case task is generated when the case is opened."""

    model_config = ConfigDict(frozen=True)

    description: str = Field(..., min_length=1)
    task_type: TaskType = TaskType.OTHER
    order: int = Field(0, ge=0)
    due_date_offset_days: int = Field(0, ge=0)


class Topics(BaseModel):
    """Pub/sub component and topic names used by the services."""

    model_config = ConfigDict(frozen=True)

    pubsub_name: str = "pubsub"
    employee_events: str = "employee-events"
    onboarding_events: str = "onboarding-events"
    offboarding_events: str = "offboarding-events"
    performance_events: str = "performance-events"
    merit_events: str = "merit-events"


DEFAULT_ONBOARDING_TEMPLATES: List[TaskTemplate] = [
    TaskTemplate(description="Complete I-9 and tax forms", task_type=TaskType.PAPERWORK, order=1, due_date_offset_days=1),
    TaskTemplate(description="Provision laptop", task_type=TaskType.EQUIPMENT, order=2, due_date_offset_days=1),
    TaskTemplate(description="Grant system access", task_type=TaskType.ACCESS, order=3, due_date_offset_days=2),
    TaskTemplate(description="Security awareness training", task_type=TaskType.TRAINING, order=4, due_date_offset_days=7),
]

DEFAULT_OFFBOARDING_TEMPLATES: List[TaskTemplate] = [
    TaskTemplate(description="Knowledge transfer", task_type=TaskType.KNOWLEDGE_TRANSFER, order=1, due_date_offset_days=0),
    TaskTemplate(description="Exit interview", task_type=TaskType.EXIT_INTERVIEW, order=2, due_date_offset_days=0),
    TaskTemplate(description="Return equipment", task_type=TaskType.EQUIPMENT, order=3, due_date_offset_days=0),
    TaskTemplate(description="Revoke system access", task_type=TaskType.ACCESS, order=4, due_date_offset_days=1),
]


class HRSyncSettings(BaseModel):
    """Top-level settings shared by every service."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    store_name: str = Field("statestore", min_length=1)
    topics: Topics = Field(default_factory=Topics)
    counter_retry: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(max_attempts=10, base_delay_seconds=0.05, jitter=True)
    )
    publish_retry: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(max_attempts=3, base_delay_seconds=0.1)
    )
    onboarding_templates: List[TaskTemplate] = Field(
        default_factory=lambda: list(DEFAULT_ONBOARDING_TEMPLATES)
    )
    offboarding_templates: List[TaskTemplate] = Field(
        default_factory=lambda: list(DEFAULT_OFFBOARDING_TEMPLATES)
    )
    case_target_completion_days: int = Field(30, ge=1)
    employee_number_prefix: str = Field("EMP", min_length=1)

    @field_validator("onboarding_templates", "offboarding_templates")
    @classmethod
    def _unique_order(cls, v: List[TaskTemplate]) -> List[TaskTemplate]:
        orders = [t.order for t in v]
        if len(orders) != len(set(orders)):
            raise ValueError("task template order values must be unique")
        return v


def load_settings(path: Optional[Union[str, Path]] = None) -> HRSyncSettings:
    """Load settings from a JSON file, or return the defaults.

    Raises:
        ValidationError: If the file is not valid JSON or fails validation.
    """
    if path is None:
        return HRSyncSettings()
    settings_path = Path(path)
    try:
        raw = json.loads(settings_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Settings file {settings_path} is not valid JSON: {exc}") from exc
    try:
        settings = HRSyncSettings.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid settings in {settings_path}: {exc}") from exc
    logger.info("Loaded settings from %s", settings_path)
    return settings
