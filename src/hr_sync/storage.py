"""State store abstractions and the State Store Client.

``StateStore`` is the contract of the remote key-value backend. It is kept
deliberately narrow so the backing store can be swapped without callers
noticing; ``InMemoryStateStore`` is the reference adapter used by tests and
the simulator.

``StateStoreClient`` is what services use. It adds model (de)serialization,
structural queries, atomic transactions, and the optimistic-concurrency
counter. Plain ``save`` is last-writer-wins; ``save_if_match`` and
transaction operations carrying an ``etag`` detect concurrent writers.
"""
from __future__ import annotations

import json
import logging
import random
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
    Union,
)

from pydantic import BaseModel

from hr_sync.config import HRSyncSettings, RetryPolicy
from hr_sync.models import (
    SCHEMA_VERSION_FIELD,
    STATE_SCHEMA_VERSION,
    ConcurrencyConflictError,
    ContentionError,
    HRSyncError,
    StoreUnavailableError,
    ValidationError,
    dump_record,
)
from hr_sync.query import Filter, SortSpec, apply_sort, matches, validate_filter

logger = logging.getLogger("hr_sync.storage")

M = TypeVar("M", bound=BaseModel)


@dataclass(frozen=True)
class TransactionOperation:
    """One step of a state transaction: upsert ``value`` or delete ``key``.

    ``etag`` makes the whole transaction conditional on the key still being
    at that version; ``must_not_exist`` makes it conditional on the key
    being absent.
    """

    key: str
    value: Any = None
    operation: str = "upsert"
    etag: Optional[str] = None
    must_not_exist: bool = False

    def __post_init__(self) -> None:
        if self.operation not in ("upsert", "delete"):
            raise ValidationError(f"Unknown transaction operation {self.operation!r}")
        if not self.key:
            raise ValidationError("Transaction operation key must be non-empty")
        if self.etag is not None and self.must_not_exist:
            raise ValidationError("etag and must_not_exist are mutually exclusive")


class StateStore(ABC):
    """Contract for a remote key-value state backend.

    Values are JSON-compatible documents. ``etag`` is an opaque version
    token that changes on every write to a key.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None when the key is absent."""

    @abstractmethod
    def get_with_etag(self, key: str) -> Tuple[Optional[Any], Optional[str]]:
        """Return ``(value, etag)``; both None when the key is absent."""

    @abstractmethod
    def save(self, key: str, value: Any) -> None:
        """Unconditional upsert."""

    @abstractmethod
    def try_save(self, key: str, value: Any, etag: Optional[str]) -> bool:
        """Write only if the key's current etag equals ``etag``.

        ``etag=None`` means the key must not exist yet. Returns False on a
        version mismatch instead of raising.
        """

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a key; absent keys are not an error."""

    @abstractmethod
    def items(self, prefix: str) -> List[Tuple[str, Any]]:
        """Return every ``(key, value)`` whose key starts with ``prefix``."""

    @abstractmethod
    def execute_transaction(self, operations: Sequence[TransactionOperation]) -> None:
        """Apply every operation, or none of them.

        Raises:
            ConcurrencyConflictError: If any operation's precondition does
                not hold; nothing is applied.
        """


def _copy_json(value: Any) -> Any:
    """Deep-copy a value, rejecting anything that is not JSON-compatible."""
    try:
        return json.loads(json.dumps(value))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"State value is not JSON serializable: {exc}") from exc


class InMemoryStateStore(StateStore):
    """Thread-safe in-memory backend with per-write version tokens."""

    def __init__(self) -> None:
        self._data: Dict[str, Tuple[Any, int]] = {}
        self._version = 0
        self._lock = threading.RLock()

    def _next_etag(self) -> int:
        self._version += 1
        return self._version

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._data.get(key)
            return None if entry is None else _copy_json(entry[0])

    def get_with_etag(self, key: str) -> Tuple[Optional[Any], Optional[str]]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None, None
            return _copy_json(entry[0]), str(entry[1])

    def save(self, key: str, value: Any) -> None:
        stored = _copy_json(value)
        with self._lock:
            self._data[key] = (stored, self._next_etag())

    def try_save(self, key: str, value: Any, etag: Optional[str]) -> bool:
        stored = _copy_json(value)
        with self._lock:
            entry = self._data.get(key)
            current = None if entry is None else str(entry[1])
            if current != etag:
                return False
            self._data[key] = (stored, self._next_etag())
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def items(self, prefix: str) -> List[Tuple[str, Any]]:
        with self._lock:
            return [
                (key, _copy_json(value))
                for key, (value, _) in self._data.items()
                if key.startswith(prefix)
            ]

    def execute_transaction(self, operations: Sequence[TransactionOperation]) -> None:
        # Copy everything before taking the lock so a bad value aborts the
        # whole transaction with nothing applied.
        staged = [
            (op.key, _copy_json(op.value) if op.operation == "upsert" else None, op.operation)
            for op in operations
        ]
        with self._lock:
            for op in operations:
                entry = self._data.get(op.key)
                if op.must_not_exist and entry is not None:
                    raise ConcurrencyConflictError(op.key)
                if op.etag is not None and (entry is None or str(entry[1]) != op.etag):
                    raise ConcurrencyConflictError(op.key)
            for key, value, operation in staged:
                if operation == "delete":
                    self._data.pop(key, None)
                else:
                    self._data[key] = (value, self._next_etag())

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


StateValue = Union[BaseModel, Dict[str, Any], List[Any], str, int, float, bool, None]


def _serialize(value: StateValue) -> Any:
    if isinstance(value, BaseModel):
        return dump_record(value)
    return value


class StateStoreClient:
    """Service-facing client over a ``StateStore`` backend.

    Args:
        store: The backend.
        settings: Supplies the counter retry policy.
        sleep: Injected for tests; called with seconds to wait between
            counter retries.
        rng: Source of jitter for counter backoff.
    """

    def __init__(
        self,
        store: StateStore,
        settings: Optional[HRSyncSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._store = store
        self._settings = settings or HRSyncSettings()
        self._sleep = sleep
        self._rng = rng or random.Random()

    @property
    def counter_retry(self) -> RetryPolicy:
        return self._settings.counter_retry

    def _call(self, description: str, key: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except HRSyncError:
            raise
        except Exception as exc:
            logger.error("Error %s for key: %s", description, key, exc_info=True)
            raise StoreUnavailableError(f"State store failed {description} for {key!r}: {exc}") from exc

    # -- single-key operations -------------------------------------------

    def get(self, key: str) -> Optional[Any]:
        logger.debug("Getting state for key: %s", key)
        value = self._call("getting state", key, lambda: self._store.get(key))
        if value is None:
            logger.debug("No state found for key: %s", key)
        return value

    def get_model(self, key: str, model: Type[M]) -> Optional[M]:
        """Load and validate a stored record, tolerating unknown schema versions."""
        value = self.get(key)
        if value is None:
            return None
        return self._to_model(key, value, model)

    def get_with_etag(self, key: str) -> Tuple[Optional[Any], Optional[str]]:
        logger.debug("Getting state and etag for key: %s", key)
        return self._call("getting state", key, lambda: self._store.get_with_etag(key))

    def get_model_with_etag(self, key: str, model: Type[M]) -> Tuple[Optional[M], Optional[str]]:
        value, etag = self.get_with_etag(key)
        if value is None:
            return None, None
        return self._to_model(key, value, model), etag

    def save(self, key: str, value: StateValue) -> None:
        logger.debug("Saving state for key: %s", key)
        payload = _serialize(value)
        self._call("saving state", key, lambda: self._store.save(key, payload))

    def save_if_match(self, key: str, value: StateValue, etag: Optional[str]) -> None:
        """Version-token guarded save.

        Raises:
            ConcurrencyConflictError: If another writer changed the key since
                ``etag`` was read.
        """
        payload = _serialize(value)
        ok = self._call("saving state", key, lambda: self._store.try_save(key, payload, etag))
        if not ok:
            logger.warning("Version conflict saving key: %s", key)
            raise ConcurrencyConflictError(key)

    def delete(self, key: str) -> None:
        logger.debug("Deleting state for key: %s", key)
        self._call("deleting state", key, lambda: self._store.delete(key))

    # -- queries ----------------------------------------------------------

    def query(
        self,
        record_type: str,
        query_filter: Optional[Filter] = None,
        sort: Optional[SortSpec] = None,
    ) -> List[Dict[str, Any]]:
        """Return every stored document of ``record_type`` matching the filter."""
        query_filter = query_filter or {}
        validate_filter(query_filter)
        prefix = f"{record_type}:"
        logger.debug("Querying %s with filter: %s", record_type, query_filter)
        entries = self._call("querying state", prefix, lambda: self._store.items(prefix))
        results = [
            value for _, value in entries
            if isinstance(value, dict) and matches(value, query_filter)
        ]
        results = apply_sort(results, sort)
        logger.debug("Query returned %d results", len(results))
        return results

    def query_models(
        self,
        record_type: str,
        model: Type[M],
        query_filter: Optional[Filter] = None,
        sort: Optional[SortSpec] = None,
    ) -> List[M]:
        return [
            self._to_model(record_type, doc, model)
            for doc in self.query(record_type, query_filter, sort)
        ]

    # -- multi-key primitives --------------------------------------------

    def execute_transaction(
        self,
        operations: Sequence[Union[TransactionOperation, Tuple[str, StateValue]]],
    ) -> None:
        """Apply upserts (and deletes) atomically.

        Plain ``(key, value)`` tuples are upserts, and ``(key, None)`` deletes
        the key. Pass a ``TransactionOperation`` to attach an ``etag`` or
        ``must_not_exist`` precondition.
        """
        ops: List[TransactionOperation] = []
        for op in operations:
            if isinstance(op, TransactionOperation):
                ops.append(
                    TransactionOperation(
                        op.key, _serialize(op.value), op.operation,
                        etag=op.etag, must_not_exist=op.must_not_exist,
                    )
                    if op.operation == "upsert" else op
                )
            else:
                key, value = op
                if value is None:
                    ops.append(TransactionOperation(key, operation="delete"))
                else:
                    ops.append(TransactionOperation(key, _serialize(value)))
        if not ops:
            return
        keys = [op.key for op in ops]
        if len(keys) != len(set(keys)):
            raise ValidationError(f"Transaction touches a key more than once: {keys}")
        logger.debug("Executing state transaction over keys: %s", keys)
        self._call("executing transaction", ",".join(keys), lambda: self._store.execute_transaction(ops))

    def increment_counter(self, key: str) -> int:
        """Atomically increment an integer counter and return the new value.

        Read-modify-write conditioned on the etag. On a version conflict the
        loop backs off ``attempt * base_delay`` (plus jitter) and retries.

        Raises:
            ContentionError: If every attempt lost against another writer.
        """
        policy = self.counter_retry
        for attempt in range(1, policy.max_attempts + 1):
            logger.debug("Incrementing counter for key: %s (attempt %d)", key, attempt)
            value, etag = self.get_with_etag(key)
            if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
                raise ValidationError(f"Counter {key!r} holds a non-integer value: {value!r}")
            new_value = (value or 0) + 1
            saved = self._call(
                "incrementing counter", key,
                lambda: self._store.try_save(key, new_value, etag),
            )
            if saved:
                logger.debug("Incremented counter %s to %d", key, new_value)
                return new_value
            logger.debug(
                "Counter increment for %s lost a version race, retrying (attempt %d)",
                key, attempt,
            )
            if attempt < policy.max_attempts:
                self._sleep(policy.delay_for(attempt, self._rng.random()))
        logger.error("Counter %s exhausted %d attempts", key, policy.max_attempts)
        raise ContentionError(key, policy.max_attempts)

    # -- helpers ----------------------------------------------------------

    @staticmethod
    def _to_model(key: str, value: Any, model: Type[M]) -> M:
        if isinstance(value, dict):
            version = value.get(SCHEMA_VERSION_FIELD)
            if version is not None and version != STATE_SCHEMA_VERSION:
                logger.debug("Reading %s written with schema version %s", key, version)
            value = {k: v for k, v in value.items() if k != SCHEMA_VERSION_FIELD}
        return model.model_validate(value)
