"""Per-client attempt throttling with an injectable counter store."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Protocol

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(slots=True)
class AttemptRecord:
    count: int
    window_started: float
    locked_until: float | None = None


class AttemptStore(Protocol):
    """Storage for attempt counters; records expire after ``ttl`` seconds."""

    def get(self, key: str) -> AttemptRecord | None: ...

    def put(self, key: str, record: AttemptRecord, ttl: float) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryAttemptStore:
    """Process-local store; expired records are dropped lazily on access."""

    def __init__(self, *, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._records: Dict[str, tuple[AttemptRecord, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> AttemptRecord | None:
        with self._lock:
            entry = self._records.get(key)
            if entry is None:
                return None
            record, expires_at = entry
            if expires_at <= self._clock():
                del self._records[key]
                return None
            return record

    def put(self, key: str, record: AttemptRecord, ttl: float) -> None:
        with self._lock:
            self._records[key] = (record, self._clock() + max(ttl, 0.0))

    def delete(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class AttemptLimiter:
    """Lock a key out for ``lock_seconds`` after ``max_attempts`` failures in one window."""

    def __init__(
        self,
        store: AttemptStore,
        *,
        max_attempts: int = 5,
        lock_seconds: float = 15 * 60,
        clock: Clock = time.monotonic,
    ) -> None:
        self._store = store
        self._max_attempts = max(1, max_attempts)
        self._lock_seconds = max(0.0, float(lock_seconds))
        self._clock = clock

    def retry_after(self, key: str) -> float:
        """Seconds until ``key`` may try again; ``0.0`` when it is not locked."""

        record = self._store.get(key)
        if record is None or record.locked_until is None:
            return 0.0
        return max(0.0, record.locked_until - self._clock())

    def register_failure(self, key: str) -> bool:
        """Count a failed attempt and return True when the key is now locked."""

        now = self._clock()
        record = self._store.get(key)
        if record is None:
            record = AttemptRecord(count=0, window_started=now)
        record.count += 1
        if record.count >= self._max_attempts:
            record.locked_until = now + self._lock_seconds
            logger.warning("ratelimit.locked key=%s attempts=%s lock_seconds=%s", key, record.count, self._lock_seconds)
        remaining = self._lock_seconds - (now - record.window_started)
        if record.locked_until is not None:
            remaining = record.locked_until - now
        self._store.put(key, record, remaining)
        return record.locked_until is not None

    def reset(self, key: str) -> None:
        self._store.delete(key)
