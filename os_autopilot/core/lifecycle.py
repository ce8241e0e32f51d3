# os_autopilot/core/lifecycle.py
"""
Typed task events and the subscription bus that delivers them.

Subscribers own a queue; publishers never call back into subscriber code, so
a slow history writer or UI cannot stall the pipeline.
"""
import logging
import queue
import threading
from datetime import datetime, timezone
from typing import List, Optional, Tuple, Type

from pydantic import BaseModel, Field

from os_autopilot.core.tal import ClassificationKind, ErrorKind

logger = logging.getLogger(__name__)


class AutopilotEvent(BaseModel):
    task_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def name(self) -> str:
        return type(self).__name__


class TaskStarted(AutopilotEvent):
    command_text: str


class StepStarted(AutopilotEvent):
    attempt_number: int
    description: str


class StepCompleted(AutopilotEvent):
    attempt_number: int
    success: bool
    detail: Optional[str] = None


class RecoveryStarted(AutopilotEvent):
    attempt_number: int
    reason: str


class TaskSucceeded(AutopilotEvent):
    message: str
    attempts: int


class TaskFailed(AutopilotEvent):
    error: str
    error_kind: Optional[ErrorKind] = None
    attempts: int = 0


class TaskTimedOut(AutopilotEvent):
    timeout_seconds: float
    attempts: int = 0


class TaskCancelled(AutopilotEvent):
    reason: str


class TextReply(AutopilotEvent):
    kind: ClassificationKind
    text: str


class Subscription:
    def __init__(self, bus: "EventBus", event_types: Tuple[Type[AutopilotEvent], ...] = ()):
        self._bus = bus
        self.event_types = event_types
        self.queue: "queue.Queue[AutopilotEvent]" = queue.Queue()

    def accepts(self, event: AutopilotEvent) -> bool:
        return not self.event_types or isinstance(event, self.event_types)

    def get(self, timeout: Optional[float] = None) -> Optional[AutopilotEvent]:
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[AutopilotEvent]:
        events = []
        while True:
            try:
                events.append(self.queue.get_nowait())
            except queue.Empty:
                return events

    def close(self):
        self._bus.unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class EventBus:
    def __init__(self):
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, *event_types: Type[AutopilotEvent]) -> Subscription:
        sub = Subscription(self, tuple(event_types))
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription):
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def emit(self, event: AutopilotEvent):
        logger.debug("[Lifecycle] %s task=%s", event.name, event.task_id)
        with self._lock:
            targets = [s for s in self._subscriptions if s.accepts(event)]
        for sub in targets:
            sub.queue.put_nowait(event)
