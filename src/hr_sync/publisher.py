"""Event channel abstraction and the best-effort Event Publisher.

Delivery contract: a publish is attempted a bounded number of times with
linearly increasing delay. When every attempt fails the failure is logged,
counted in ``PublisherStats.exhausted``, and the caller still gets a normal
return. The state change that triggered the event has already been
committed, so losing the event must never undo or fail it. Drift caused by
exhausted publishes is left to reconciliation or manual recovery; the
``exhausted`` counter is how operators detect it.
"""
from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel

from hr_sync.config import HRSyncSettings
from hr_sync.events import EventEnvelope, make_envelope
from hr_sync.models import ChannelUnavailableError

logger = logging.getLogger("hr_sync.publisher")

Message = Dict[str, Any]
Subscriber = Callable[[Message], Any]


class EventChannel(ABC):
    """Contract for the asynchronous, at-least-once event channel."""

    @abstractmethod
    def deliver(self, pubsub_name: str, topic: str, message: Message) -> None:
        """Hand one message to the channel; raising means delivery failed."""


class InMemoryEventChannel(EventChannel):
    """Synchronous in-process channel used by the simulator and tests.

    Subscribers are invoked in registration order. A subscriber that raises
    makes the whole delivery fail, which is how a broker reacts to a non-2xx
    response from a consumer endpoint; the publisher then redelivers, so
    subscribers that already succeeded see the message again.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[Tuple[str, str], List[Subscriber]] = {}
        self._log: List[Tuple[str, str, Message]] = []
        self._lock = threading.RLock()
        self._available = True

    def set_available(self, available: bool) -> None:
        """Simulate a broker outage; deliveries fail while unavailable."""
        self._available = available

    def subscribe(self, topic: str, handler: Subscriber, pubsub_name: str = "pubsub") -> None:
        with self._lock:
            self._subscribers.setdefault((pubsub_name, topic), []).append(handler)

    def deliver(self, pubsub_name: str, topic: str, message: Message) -> None:
        if not self._available:
            raise ChannelUnavailableError(f"channel unavailable for topic {topic!r}")
        with self._lock:
            self._log.append((pubsub_name, topic, message))
            handlers = list(self._subscribers.get((pubsub_name, topic), ()))
        for handler in handlers:
            handler(message)

    def messages(self, topic: Optional[str] = None) -> List[Message]:
        """Messages accepted so far (including failed deliveries), oldest first."""
        with self._lock:
            return [m for _, t, m in self._log if topic is None or t == topic]

    def redeliver(self, topic: str, pubsub_name: str = "pubsub") -> int:
        """Replay every logged message of a topic to its subscribers.

        Simulates at-least-once duplicates. Returns the number replayed.
        """
        with self._lock:
            replay = [m for p, t, m in self._log if p == pubsub_name and t == topic]
            handlers = list(self._subscribers.get((pubsub_name, topic), ()))
        for message in replay:
            for handler in handlers:
                handler(message)
        return len(replay)


@dataclass
class PublisherStats:
    """Observable counters for the publish path."""

    published: int = 0
    retried: int = 0
    exhausted: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def bump(self, name: str) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + 1)


@dataclass(frozen=True)
class PublishResult:
    """Outcome of one publish call. Never signals failure by raising."""

    event_id: str
    event_type: str
    topic: str
    delivered: bool
    attempts: int


class EventPublisher:
    """Publishes domain events with bounded retry.

    Args:
        channel: Where events are delivered.
        source: Name of the publishing service, stamped on each envelope.
        settings: Supplies the pub/sub component name and retry policy.
        sleep: Injected for tests; called with seconds between attempts.
    """

    def __init__(
        self,
        channel: EventChannel,
        source: str,
        settings: Optional[HRSyncSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
        stats: Optional[PublisherStats] = None,
    ) -> None:
        self._channel = channel
        self._source = source
        self._settings = settings or HRSyncSettings()
        self._sleep = sleep
        self.stats = stats or PublisherStats()

    def publish(self, topic: str, event: BaseModel) -> PublishResult:
        envelope = make_envelope(event, self._source)
        return self.publish_envelope(topic, envelope)

    def publish_envelope(self, topic: str, envelope: EventEnvelope) -> PublishResult:
        policy = self._settings.publish_retry
        pubsub = self._settings.topics.pubsub_name
        message = envelope.to_message()
        subject = getattr(envelope.data, "employee_id", envelope.event_id)

        attempt = 0
        while True:
            attempt += 1
            logger.info(
                "Publishing %s event for %s to topic %s (attempt %d/%d)",
                envelope.event_type, subject, topic, attempt, policy.max_attempts,
            )
            try:
                self._channel.deliver(pubsub, topic, message)
            except Exception as exc:
                if attempt < policy.max_attempts:
                    logger.warning(
                        "Failed to publish %s event for %s (attempt %d/%d): %s. Retrying...",
                        envelope.event_type, subject, attempt, policy.max_attempts, exc,
                    )
                    self.stats.bump("retried")
                    self._sleep(policy.delay_for(attempt))
                    continue
                # The triggering write is already committed; report, count,
                # and return normally.
                logger.error(
                    "Failed to publish %s event %s for %s after %d attempts. "
                    "Event will not be published.",
                    envelope.event_type, envelope.event_id, subject,
                    policy.max_attempts, exc_info=True,
                )
                self.stats.bump("exhausted")
                return PublishResult(
                    event_id=envelope.event_id,
                    event_type=envelope.event_type,
                    topic=topic,
                    delivered=False,
                    attempts=attempt,
                )
            logger.info(
                "Successfully published %s event %s for %s",
                envelope.event_type, envelope.event_id, subject,
            )
            self.stats.bump("published")
            return PublishResult(
                event_id=envelope.event_id,
                event_type=envelope.event_type,
                topic=topic,
                delivered=True,
                attempts=attempt,
            )
