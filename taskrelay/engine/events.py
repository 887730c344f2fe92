"""Lifecycle events and the in-process event bus that fans them out to sinks."""

import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..logger import get_logger

_log = get_logger(__name__)


class EventType(Enum):
    SUBMITTED = "submitted"
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class TaskEvent:
    type: EventType
    task_id: str
    detail: str = ""          # error text, route name, or result path
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


EventSink = Callable[[TaskEvent], None]

# Maximum number of events kept in history (ring buffer)
_MAX_HISTORY = 200


class EventBus:
    """Thread-safe fan-out of task events to subscribed sinks.

    Delivery is synchronous on the emitting thread. A sink that raises is
    logged and skipped; it never affects the emitter.
    """

    def __init__(self, max_history: int = _MAX_HISTORY):
        self._sinks: List[EventSink] = []
        self._lock = threading.Lock()
        self._history: deque[TaskEvent] = deque(maxlen=max_history)

    def subscribe(self, sink: EventSink) -> Callable[[], None]:
        """Register a sink; returns a callable that unsubscribes it."""
        with self._lock:
            self._sinks.append(sink)

        def _unsubscribe():
            with self._lock:
                if sink in self._sinks:
                    self._sinks.remove(sink)

        return _unsubscribe

    def emit(self, event: TaskEvent) -> None:
        with self._lock:
            self._history.append(event)
            sinks = list(self._sinks)
        for sink in sinks:
            try:
                sink(event)
            except Exception as e:
                _log.warning("Event sink %r failed on %s/%s: %s",
                             sink, event.type.value, event.task_id, e)

    def history(self, task_id: Optional[str] = None) -> List[TaskEvent]:
        """Return a snapshot of recent events, optionally for one task."""
        with self._lock:
            events = list(self._history)
        if task_id is None:
            return events
        return [e for e in events if e.task_id == task_id]
