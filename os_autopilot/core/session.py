# os_autopilot/core/session.py
import logging
import threading
import uuid
from typing import Any, Callable, List, Optional

from os_autopilot.core.tal import Command, ErrorKind, ExecutionAttempt, TaskStatus

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag checked by the pipeline between steps."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled"):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def sleep(self, seconds: float) -> bool:
        """Wait up to ``seconds``; returns True if cancelled meanwhile."""
        return self._event.wait(seconds)


class TaskSession:
    """
    The single in-flight task. Only the orchestrator mutates it.

    The first terminal transition wins: whichever of completion, timeout or
    cancellation calls ``finish`` first decides the status, later calls are
    ignored.
    """

    def __init__(self, command: Command, task_id: Optional[str] = None):
        self.task_id = task_id or uuid.uuid4().hex[:12]
        self.command = command
        self.token = CancellationToken()
        self.status = TaskStatus.RUNNING
        self.message: Optional[str] = None
        self.error: Optional[str] = None
        self.error_kind: Optional[ErrorKind] = None
        self._attempts: List[ExecutionAttempt] = []
        self._browser: Any = None
        self._lock = threading.Lock()
        self._done = threading.Event()

    @property
    def cancel_requested(self) -> bool:
        return self.token.cancelled

    @property
    def attempts(self) -> List[ExecutionAttempt]:
        with self._lock:
            return list(self._attempts)

    @property
    def attempt_count(self) -> int:
        with self._lock:
            return len(self._attempts)

    @property
    def is_finished(self) -> bool:
        return self._done.is_set()

    def next_attempt_number(self) -> int:
        return self.attempt_count + 1

    def record_attempt(self, attempt: ExecutionAttempt) -> bool:
        with self._lock:
            if self.status is not TaskStatus.RUNNING or self.token.cancelled:
                logger.debug("Dropping attempt %d for finished task %s", attempt.attempt_number, self.task_id)
                return False
            self._attempts.append(attempt)
            return True

    def request_cancel(self, reason: str = "cancelled"):
        self.token.cancel(reason)

    def finish(
        self,
        status: TaskStatus,
        message: Optional[str] = None,
        error: Optional[str] = None,
        error_kind: Optional[ErrorKind] = None,
    ) -> bool:
        if not status.is_terminal:
            raise ValueError("finish() needs a terminal status")
        with self._lock:
            if self.status is not TaskStatus.RUNNING:
                return False
            self.status = status
            self.message = message
            self.error = error
            self.error_kind = error_kind
        if status in (TaskStatus.TIMED_OUT, TaskStatus.CANCELLED):
            self.token.cancel(status.value)
        self.close_browser()
        self._done.set()
        logger.info("Task %s finished: %s", self.task_id, status.value)
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def ensure_browser(self, factory: Callable[[], Any]) -> Any:
        """Lazily open the browser session owned by this task (None once finished)."""
        with self._lock:
            if self.status is not TaskStatus.RUNNING:
                return None
            if self._browser is None:
                self._browser = factory()
            return self._browser

    def close_browser(self):
        with self._lock:
            browser, self._browser = self._browser, None
        if browser is None:
            return
        try:
            browser.close()
        except Exception as e:
            logger.warning("Browser teardown for task %s failed: %s", self.task_id, e)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "task_id": self.task_id,
                "command": self.command.text,
                "status": self.status.value,
                "attempts": len(self._attempts),
                "cancel_requested": self.token.cancelled,
            }


class ContextExpiry:
    """
    Re-armable inactivity timer. Each ``arm`` supersedes the previous one; a
    superseded timer that fires late is ignored via its generation number.
    """

    def __init__(self, ttl: float, on_expire: Callable[[], None], timer_factory=threading.Timer):
        self.ttl = ttl
        self._on_expire = on_expire
        self._timer_factory = timer_factory
        self._timer = None
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def armed(self) -> bool:
        return self._timer is not None

    def arm(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            timer = self._timer_factory(self.ttl, self._fire, args=(self._generation,))
            timer.daemon = True
            self._timer = timer
        timer.start()

    def cancel(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            self._generation += 1

    def _fire(self, generation: int):
        with self._lock:
            if generation != self._generation:
                return
            self._timer = None
        logger.debug("Retained context expired after %.0fs of inactivity", self.ttl)
        self._on_expire()
