"""Outbound events for external hook consumers.

Publishing never blocks the ingesting thread: events go onto a queue that a
daemon worker thread drains. Subscriber exceptions are logged and dropped.
"""

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class SourceCreatedEvent:
    """Emitted after a source has been written to disk and the store."""

    id: str
    title: str
    content_type: str
    created_at: str
    projects: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    source_path: str = ""
    content_hash: str = ""
    sync_source: str = ""
    original_file: str = ""


Subscriber = Callable[[SourceCreatedEvent], None]

_STOP = object()


class EventBus:
    """Queue-backed publish/subscribe channel for SourceCreated events."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._queue: queue.Queue = queue.Queue()
        self._worker: threading.Thread | None = None
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> None:
        """Register a callback invoked for every published event."""
        with self._lock:
            self._subscribers.append(callback)

    def publish(self, event: SourceCreatedEvent) -> None:
        """Queue an event for delivery. Returns immediately."""
        with self._lock:
            if not self._subscribers:
                return
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(
                    target=self._drain, name="lore-events", daemon=True
                )
                self._worker.start()
        self._queue.put(event)

    def _drain(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    return
                with self._lock:
                    subscribers = list(self._subscribers)
                for callback in subscribers:
                    try:
                        callback(event)
                    except Exception:
                        logger.exception("Event subscriber failed for source %s", event.id)
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Wait until every queued event has been delivered."""
        if self._worker is None:
            return
        self._queue.join()

    def close(self) -> None:
        """Deliver pending events and stop the worker thread."""
        if self._worker is None or not self._worker.is_alive():
            return
        self._queue.put(_STOP)
        self._worker.join()
        self._worker = None
