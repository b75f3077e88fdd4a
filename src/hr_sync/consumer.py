"""Idempotent event consumption.

Redelivery is expected. Every handler follows the same guard:

1. derive a natural dedup key from the event,
2. look for dependent records already created for that key,
3. if any exist, do nothing and report ``skipped``,
4. otherwise create the records and report ``processed``.

Exceptions are never swallowed here. A handler that fails before its write
is retried by the channel; one that fails after its write is covered by the
check in step 2 on redelivery.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import deque
from enum import Enum
from typing import Any, Deque, Dict, Generic, List, Mapping, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from hr_sync.events import EVENT_TYPES, EventEnvelope, parse_envelope
from hr_sync.models import UnknownEventTypeError
from hr_sync.publisher import InMemoryEventChannel

logger = logging.getLogger("hr_sync.consumer")

E = TypeVar("E", bound=BaseModel)

#: Recent results kept per dispatcher for inspection.
RESULT_HISTORY_SIZE = 1000


class ConsumeOutcome(str, Enum):
    """What a handler did with one delivery."""

    PROCESSED = "processed"
    SKIPPED = "skipped"


class ConsumeResult(BaseModel):
    """Caller-visible outcome of handling one event."""

    model_config = ConfigDict(frozen=True)

    outcome: ConsumeOutcome
    event_type: str = Field(..., min_length=1)
    dedup_key: str = Field(..., min_length=1)
    record_id: Optional[str] = Field(
        None, description="Id of the record created, or of the one that already existed"
    )

    @property
    def processed(self) -> bool:
        return self.outcome is ConsumeOutcome.PROCESSED


class IdempotentHandler(ABC, Generic[E]):
    """Check-before-write handler for one event type."""

    #: Tag of the event this handler accepts.
    event_type: str = ""

    @abstractmethod
    def dedup_key(self, event: E) -> str:
        """Natural key identifying the dependent state this event produces."""

    @abstractmethod
    def find_existing(self, event: E, key: str) -> Optional[str]:
        """Return the id of already-created dependent state, if any."""

    @abstractmethod
    def create(self, event: E, key: str) -> str:
        """Create the dependent state and return its id."""

    def handle(self, event: E) -> ConsumeResult:
        key = self.dedup_key(event)
        existing = self.find_existing(event, key)
        if existing is not None:
            logger.warning(
                "%s already processed for %s (record %s). Skipping (idempotent processing).",
                self.event_type, key, existing,
            )
            return ConsumeResult(
                outcome=ConsumeOutcome.SKIPPED,
                event_type=self.event_type,
                dedup_key=key,
                record_id=existing,
            )
        record_id = self.create(event, key)
        logger.info("Processed %s for %s: created %s", self.event_type, key, record_id)
        return ConsumeResult(
            outcome=ConsumeOutcome.PROCESSED,
            event_type=self.event_type,
            dedup_key=key,
            record_id=record_id,
        )


class EventDispatcher:
    """Routes decoded envelopes to the handler registered for their tag.

    Messages whose tag is outside the closed event set, or whose shape does
    not match the contract, are rejected. Known event types that this
    service does not subscribe to are acknowledged and ignored, since topics
    are shared by several event types.

    ``results`` keeps only the most recent ``history_size`` outcomes.
    """

    def __init__(self, name: str, history_size: int = RESULT_HISTORY_SIZE) -> None:
        self.name = name
        self._handlers: Dict[str, IdempotentHandler[Any]] = {}
        self.results: Deque[ConsumeResult] = deque(maxlen=history_size)

    def register(self, handler: IdempotentHandler[Any]) -> None:
        if handler.event_type not in EVENT_TYPES:
            raise UnknownEventTypeError(handler.event_type)
        self._handlers[handler.event_type] = handler

    @property
    def event_types(self) -> List[str]:
        return sorted(self._handlers)

    def dispatch(self, message: Mapping[str, Any]) -> Optional[ConsumeResult]:
        envelope = parse_envelope(message)
        return self.dispatch_envelope(envelope)

    def dispatch_envelope(self, envelope: EventEnvelope) -> Optional[ConsumeResult]:
        handler = self._handlers.get(envelope.event_type)
        if handler is None:
            logger.debug("%s ignoring %s event %s", self.name, envelope.event_type, envelope.event_id)
            return None
        logger.info(
            "%s received %s event %s from %s",
            self.name, envelope.event_type, envelope.event_id, envelope.source,
        )
        try:
            result = handler.handle(envelope.data)
        except Exception:
            logger.error(
                "%s failed processing %s event %s",
                self.name, envelope.event_type, envelope.event_id, exc_info=True,
            )
            raise
        self.results.append(result)
        return result

    def subscribe(
        self, channel: InMemoryEventChannel, topic: str, pubsub_name: str = "pubsub"
    ) -> None:
        channel.subscribe(topic, self.dispatch, pubsub_name=pubsub_name)
