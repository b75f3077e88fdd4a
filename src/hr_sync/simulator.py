"""In-process wiring of every service over one store and one channel.

Each service gets its own publisher (stamped with its own source name) but
they share the state store, the channel and one ``PublisherStats``, the way
independently deployed services share a state-store component and a broker.
Delivery is synchronous, so a call such as ``employees.create(...)`` returns
only after every subscriber has reacted to the events it caused.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from hr_sync.config import HRSyncSettings
from hr_sync.consumer import EventDispatcher
from hr_sync.employees import (
    DepartmentService,
    EmployeeService,
    MeritAppliedHandler,
    OffboardingCompletedHandler,
    OnboardingCompletedHandler,
)
from hr_sync.merit import MeritService
from hr_sync.models import utc_now
from hr_sync.offboarding import OffboardingService
from hr_sync.onboarding import EmployeeCreatedHandler, OnboardingService
from hr_sync.performance import ReviewService
from hr_sync.publisher import EventPublisher, InMemoryEventChannel, PublisherStats
from hr_sync.storage import InMemoryStateStore, StateStoreClient


@dataclass
class HRSimulator:
    settings: HRSyncSettings
    store: InMemoryStateStore
    channel: InMemoryEventChannel
    state: StateStoreClient
    publish_stats: PublisherStats
    departments: DepartmentService
    employees: EmployeeService
    onboarding: OnboardingService
    offboarding: OffboardingService
    reviews: ReviewService
    merit: MeritService
    employee_consumer: EventDispatcher
    onboarding_consumer: EventDispatcher

    @classmethod
    def build(
        cls,
        settings: Optional[HRSyncSettings] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "HRSimulator":
        settings = settings or HRSyncSettings()
        store = InMemoryStateStore()
        channel = InMemoryEventChannel()
        state = StateStoreClient(store, settings, sleep=sleep)
        stats = PublisherStats()

        def publisher(source: str) -> EventPublisher:
            return EventPublisher(channel, source, settings, sleep=sleep, stats=stats)

        departments = DepartmentService(state)
        employees = EmployeeService(
            state, publisher("employee-service"), settings, departments=departments, clock=clock
        )
        onboarding = OnboardingService(
            state, publisher("onboarding-service"), employees, settings, clock=clock
        )
        offboarding = OffboardingService(
            state, publisher("offboarding-service"), employees, settings, clock=clock
        )
        reviews = ReviewService(
            state, publisher("performance-service"), employees, settings, clock=clock
        )
        merit = MeritService(
            state, publisher("merit-service"), employees, reviews, settings, clock=clock
        )

        topics = settings.topics
        onboarding_consumer = EventDispatcher("onboarding-service")
        onboarding_consumer.register(EmployeeCreatedHandler(onboarding))
        onboarding_consumer.subscribe(channel, topics.employee_events, topics.pubsub_name)

        employee_consumer = EventDispatcher("employee-service")
        employee_consumer.register(OnboardingCompletedHandler(employees))
        employee_consumer.register(OffboardingCompletedHandler(employees))
        employee_consumer.register(MeritAppliedHandler(employees))
        for topic in (topics.onboarding_events, topics.offboarding_events, topics.merit_events):
            employee_consumer.subscribe(channel, topic, topics.pubsub_name)

        return cls(
            settings=settings,
            store=store,
            channel=channel,
            state=state,
            publish_stats=stats,
            departments=departments,
            employees=employees,
            onboarding=onboarding,
            offboarding=offboarding,
            reviews=reviews,
            merit=merit,
            employee_consumer=employee_consumer,
            onboarding_consumer=onboarding_consumer,
        )
