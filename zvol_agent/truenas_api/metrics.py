"""
Call counters and the operation event log.

Both are plain objects owned by a client/backend instance, so several
storages in one process keep independent numbers.
"""

import logging
import threading
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional

from zvol_agent.models.events import OperationEvent, OperationOutcome

logger = logging.getLogger(__name__)


class CallMetrics:
    """Thread-safe attempt/retry/failure/latency counters for one client."""

    def __init__(self):
        self._lock = threading.Lock()
        self.attempts = 0
        self.retries = 0
        self.failures = 0
        self.successes = 0
        self.total_latency_ms = 0.0
        self.max_latency_ms = 0.0
        self.per_method: Dict[str, Dict[str, int]] = defaultdict(
            lambda: {"attempts": 0, "retries": 0, "failures": 0, "successes": 0}
        )

    def record_attempt(self, method: str):
        with self._lock:
            self.attempts += 1
            self.per_method[method]["attempts"] += 1

    def record_retry(self, method: str):
        with self._lock:
            self.retries += 1
            self.per_method[method]["retries"] += 1

    def record_failure(self, method: str):
        with self._lock:
            self.failures += 1
            self.per_method[method]["failures"] += 1

    def record_success(self, method: str, latency_ms: float):
        with self._lock:
            self.successes += 1
            self.per_method[method]["successes"] += 1
            self.total_latency_ms += latency_ms
            self.max_latency_ms = max(self.max_latency_ms, latency_ms)

    def snapshot(self) -> dict:
        with self._lock:
            avg = self.total_latency_ms / self.successes if self.successes else 0.0
            return {
                "attempts": self.attempts,
                "retries": self.retries,
                "failures": self.failures,
                "successes": self.successes,
                "avg_latency_ms": round(avg, 2),
                "max_latency_ms": round(self.max_latency_ms, 2),
                "per_method": {k: dict(v) for k, v in self.per_method.items()},
            }


class EventLog:
    """Bounded in-memory list of OperationEvents plus subscriber callbacks."""

    def __init__(self, max_events: int = 500):
        self._events = deque(maxlen=max_events)
        self._subscribers: List[Callable[[OperationEvent], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[OperationEvent], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def record(self, event: OperationEvent):
        with self._lock:
            self._events.append(event)
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event subscriber failed for {event.operation}: {e}")

    def events(self, limit: Optional[int] = None) -> List[OperationEvent]:
        with self._lock:
            items = list(self._events)
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items

    @contextmanager
    def track(self, operation: str, storage_id: Optional[str], resources: List[str]):
        """
        Record one event for the wrapped block. ``resources`` may be extended
        by the block; the final list is what gets recorded.
        """
        start = time.monotonic()
        try:
            yield resources
        except Exception as exc:
            self.record(OperationEvent(
                operation=operation,
                storage_id=storage_id,
                resources=list(resources),
                outcome=OperationOutcome.FAILED,
                duration_ms=int((time.monotonic() - start) * 1000),
                error=str(exc),
                error_type=type(exc).__name__,
                step=getattr(exc, "step", None),
            ))
            raise
        self.record(OperationEvent(
            operation=operation,
            storage_id=storage_id,
            resources=list(resources),
            outcome=OperationOutcome.SUCCESS,
            duration_ms=int((time.monotonic() - start) * 1000),
        ))
