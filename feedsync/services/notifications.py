"""In-process notification fan-out for sync lifecycle events."""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

SYNC_STARTED = "sync-started"
SYNC_PROGRESS = "sync-progress"
SYNC_COMPLETED = "sync-completed"
SYNC_FAILED = "sync-failed"


@dataclass
class SyncEvent:
    """Informational snapshot of a sync run at a lifecycle point."""

    event: str
    run_id: int
    sync_type: str
    status: str
    counters: Dict[str, int] = field(default_factory=dict)
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SyncNotifier:
    """Delivers sync events to callbacks and bounded queue subscribers.

    Delivery is fire-and-forget: a failing callback is logged and skipped,
    and a full subscriber queue drops the event.
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._callbacks: List[Callable[[SyncEvent], Any]] = []
        self._queues: List[asyncio.Queue] = []

    def add_callback(self, callback: Callable[[SyncEvent], Any]) -> None:
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[SyncEvent], Any]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def subscribe(self) -> asyncio.Queue:
        """Register a new queue subscriber and return its queue."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks) + len(self._queues)

    def publish(self, event: SyncEvent) -> None:
        """Deliver an event to every subscriber without blocking."""
        for callback in list(self._callbacks):
            try:
                result = callback(event)
                if asyncio.iscoroutine(result):
                    task = asyncio.ensure_future(result)
                    task.add_done_callback(self._log_callback_failure)
            except Exception as e:
                logger.error(f"Notification callback failed for {event.event} on run {event.run_id}: {e}")

        for queue in list(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Subscriber queue full, dropping {event.event} for run {event.run_id}")

    @staticmethod
    def _log_callback_failure(task: asyncio.Future) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Async notification callback failed: {error}")
