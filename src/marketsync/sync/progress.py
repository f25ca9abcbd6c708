"""
In-memory progress fan-out for live observers.

Each execution gets a bounded history buffer. A new subscriber first receives
the buffered history, then live events. Subscriber callbacks run
synchronously inside publish(); an exception from one is logged and never
reaches the publishing stage.

Buffers are dropped by an explicit cleanup() call, normally scheduled a grace
period after the run finishes so late subscribers still see the outcome.
"""
import asyncio
import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Deque, Dict, List, Optional

from marketsync.clock import utcnow

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 50
FINAL_STATUSES = ("completed", "failed")

Subscriber = Callable[["ProgressUpdate"], None]


@dataclass
class ProgressUpdate:
    execution_id: int
    stage_name: str
    stage_label: str
    status: str  # "started", "progress", "completed", "failed"
    step: Optional[str] = None
    processed: int = 0
    total: Optional[int] = None
    page: Optional[int] = None
    duration_ms: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class ProgressBroadcaster:
    def __init__(self, history_size: int = DEFAULT_HISTORY_SIZE):
        self.history_size = history_size
        self._history: Dict[int, Deque[ProgressUpdate]] = {}
        self._subscribers: Dict[int, List[Subscriber]] = {}
        self._cleanup_handles: Dict[int, asyncio.TimerHandle] = {}

    def publish(self, update: ProgressUpdate) -> None:
        buffer = self._history.setdefault(
            update.execution_id, deque(maxlen=self.history_size)
        )
        buffer.append(update)
        for callback in list(self._subscribers.get(update.execution_id, [])):
            self._deliver(callback, update)

    def subscribe(self, execution_id: int, callback: Subscriber) -> Callable[[], None]:
        """Replay history to `callback`, then register it. Returns an unsubscribe function."""
        for update in list(self._history.get(execution_id, [])):
            self._deliver(callback, update)
        self._subscribers.setdefault(execution_id, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(execution_id)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._subscribers[execution_id]

        return unsubscribe

    def history(self, execution_id: int) -> List[ProgressUpdate]:
        return list(self._history.get(execution_id, []))

    def subscriber_count(self, execution_id: int) -> int:
        return len(self._subscribers.get(execution_id, []))

    def cleanup(self, execution_id: int) -> None:
        self._history.pop(execution_id, None)
        self._subscribers.pop(execution_id, None)
        handle = self._cleanup_handles.pop(execution_id, None)
        if handle is not None:
            handle.cancel()
        logger.debug("Cleaned up progress buffer for execution %s", execution_id)

    def schedule_cleanup(self, execution_id: int, delay: float) -> None:
        """Drop the execution's buffer after `delay` seconds on the running loop.

        Without a running loop the buffer is dropped immediately.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.cleanup(execution_id)
            return
        previous = self._cleanup_handles.pop(execution_id, None)
        if previous is not None:
            previous.cancel()
        self._cleanup_handles[execution_id] = loop.call_later(
            delay, self.cleanup, execution_id
        )

    async def stream(self, execution_id: int) -> AsyncIterator[ProgressUpdate]:
        """Yield history then live updates until a completed/failed update arrives."""
        queue: "asyncio.Queue[ProgressUpdate]" = asyncio.Queue()
        unsubscribe = self.subscribe(execution_id, queue.put_nowait)
        try:
            while True:
                update = await queue.get()
                yield update
                if update.status in FINAL_STATUSES:
                    return
        finally:
            unsubscribe()

    @staticmethod
    def _deliver(callback: Subscriber, update: ProgressUpdate) -> None:
        try:
            callback(update)
        except Exception:
            logger.exception(
                "Progress subscriber failed for execution %s", update.execution_id
            )


class ProgressReporter:
    """Publishes updates for one execution with its stage name and label filled in."""

    def __init__(
        self,
        broadcaster: ProgressBroadcaster,
        execution_id: int,
        stage_name: str,
        stage_label: str,
    ):
        self.broadcaster = broadcaster
        self.execution_id = execution_id
        self.stage_name = stage_name
        self.stage_label = stage_label

    def _publish(self, status: str, **kwargs) -> None:
        self.broadcaster.publish(
            ProgressUpdate(
                execution_id=self.execution_id,
                stage_name=self.stage_name,
                stage_label=self.stage_label,
                status=status,
                **kwargs,
            )
        )

    def started(self, step: Optional[str] = None, **metadata) -> None:
        self._publish("started", step=step or f"Starting {self.stage_label}", metadata=metadata)

    def progress(
        self,
        processed: int,
        step: Optional[str] = None,
        total: Optional[int] = None,
        page: Optional[int] = None,
        **metadata,
    ) -> None:
        self._publish(
            "progress",
            step=step,
            processed=processed,
            total=total,
            page=page,
            metadata=metadata,
        )

    def completed(self, processed: int, duration_ms: int, **metadata) -> None:
        self._publish(
            "completed",
            step=f"{self.stage_label} completed",
            processed=processed,
            duration_ms=duration_ms,
            metadata=metadata,
        )

    def failed(self, error: str, processed: int = 0, duration_ms: Optional[int] = None) -> None:
        self._publish(
            "failed",
            step=f"{self.stage_label} failed",
            processed=processed,
            duration_ms=duration_ms,
            error=error,
        )
