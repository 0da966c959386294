"""Named lifecycle events shared by every pipeline component.

Components publish through an ``EventBus``; subscribers (logging, the quality
monitor, the HTTP façade's recorder, tests) attach by event name or to every
event. A failing subscriber is logged and skipped, so publishing never raises.
"""

import logging
import threading
from collections import defaultdict, deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import utcnow

logger = logging.getLogger(__name__)


class PipelineEvent(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    source: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


Handler = Callable[[PipelineEvent], None]


class EventBus:
    """Thread-safe synchronous pub-sub keyed by event name."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._global_handlers: List[Handler] = []

    def subscribe(self, name: str, handler: Handler) -> None:
        with self._lock:
            self._handlers[name].append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, name: str, handler: Handler) -> bool:
        with self._lock:
            try:
                self._handlers.get(name, []).remove(handler)
                return True
            except ValueError:
                return False

    def publish(self, name: str, source: str, **payload: Any) -> PipelineEvent:
        event = PipelineEvent(name=name, source=source, payload=payload)
        with self._lock:
            handlers = list(self._global_handlers) + list(self._handlers.get(name, []))

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Error in handler %r for event %s", handler, name)
        return event

    def handler_count(self, name: Optional[str] = None) -> int:
        with self._lock:
            if name is not None:
                return len(self._handlers.get(name, []))
            return sum(len(hs) for hs in self._handlers.values()) + len(
                self._global_handlers
            )


class EventRecorder:
    """Bounded in-memory history of published events."""

    def __init__(self, max_size: int = 500) -> None:
        self._events: Deque[PipelineEvent] = deque(maxlen=max_size or None)
        self._lock = threading.Lock()

    def __call__(self, event: PipelineEvent) -> None:
        self.append(event)

    def append(self, event: PipelineEvent) -> None:
        with self._lock:
            self._events.append(event)

    def query(self, name: Optional[str] = None, limit: int = 0) -> List[PipelineEvent]:
        with self._lock:
            events = list(self._events)
        if name is not None:
            events = [e for e in events if e.name == name]
        if limit > 0:
            events = events[-limit:]
        return events

    def names(self) -> List[str]:
        return [e.name for e in self.query()]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
