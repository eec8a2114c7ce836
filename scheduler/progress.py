"""
Shared progress and event reporting for both schedulers.

ActiveJobRegistry holds the live jobs; callers polling for status receive
dictionary snapshots so they never touch objects a worker is mutating.
EventRecorder appends to the event log and mirrors each event to logging.
"""

import logging
import threading
from typing import Any, Callable, Generic, Hashable, Protocol, TypeVar

from db.event_operations import EventLogRepository
from db.models import EventOutcome

logger = logging.getLogger(__name__)


class EventType:
    """Event types written to the event log."""
    BATCH_START = "batch_start"
    BATCH_COMPLETE = "batch_complete"
    BATCH_INTERRUPTED = "batch_interrupted"
    BATCH_FAILED = "batch_failed"
    AI_PROCESSING = "ai_processing"
    STOCK_UPLOAD = "stock_upload"
    UPLOAD_COMPLETE = "upload_complete"
    UPLOAD_QUEUE_FULL = "upload_queue_full"
    PHOTO_STATUS_CHANGED = "photo_status_changed"
    RECOVERY = "recovery"


class Snapshotable(Protocol):
    def to_dict(self) -> dict[str, Any]: ...


K = TypeVar("K", bound=Hashable)
J = TypeVar("J", bound=Snapshotable)


class ActiveJobRegistry(Generic[K, J]):
    """
    Thread-safe map of jobs currently in progress.

    Writes (register, update, deregister) and snapshot reads take the
    same short-lived lock; no I/O happens while it is held.
    """

    def __init__(self):
        self._jobs: dict[K, J] = {}
        self._lock = threading.Lock()

    def register(self, key: K, job: J) -> None:
        with self._lock:
            self._jobs[key] = job

    def deregister(self, key: K) -> J | None:
        with self._lock:
            return self._jobs.pop(key, None)

    def update(self, key: K, func: Callable[[J], None]) -> bool:
        """
        Apply a mutation to a registered job under the lock.

        Returns:
            False if no job is registered for key.
        """
        with self._lock:
            job = self._jobs.get(key)
            if job is None:
                return False
            func(job)
            return True

    def get_snapshot(self, key: K) -> dict[str, Any] | None:
        with self._lock:
            job = self._jobs.get(key)
            return job.to_dict() if job is not None else None

    def snapshot(self) -> list[dict[str, Any]]:
        with self._lock:
            return [job.to_dict() for job in self._jobs.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._jobs


_LOG_LEVELS = {
    EventOutcome.STARTED: logging.INFO,
    EventOutcome.PROGRESS: logging.DEBUG,
    EventOutcome.SUCCESS: logging.INFO,
    EventOutcome.WARNING: logging.WARNING,
    EventOutcome.FAILED: logging.ERROR,
}


class EventRecorder:
    """Writes audit events to the store and to the application log."""

    def __init__(self, repository: EventLogRepository | None = None):
        self.repository = repository or EventLogRepository()

    def record(
        self,
        event_type: str,
        outcome: EventOutcome,
        message: str,
        batch_id: int | None = None,
        photo_id: int | None = None,
        detail: dict[str, Any] | None = None,
        progress: int = 0,
    ) -> None:
        """
        Record an event.

        A failure to write the event is logged and otherwise ignored so
        that auditing never interrupts processing.
        """
        logger.log(_LOG_LEVELS[outcome], f"[{event_type}] {message}")
        try:
            self.repository.log(
                event_type=event_type,
                outcome=outcome,
                message=message,
                batch_id=batch_id,
                photo_id=photo_id,
                detail=detail,
                progress=progress,
            )
        except Exception as e:
            logger.error(f"Failed to record {event_type} event: {e}")
