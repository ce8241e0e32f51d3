import pytest

from fakes import FakeBrowser, TimerRecorder
from os_autopilot.core.session import CancellationToken, ContextExpiry, TaskSession
from os_autopilot.core.tal import AttemptOutcome, Command, ErrorKind, ExecutionAttempt, TaskStatus


def attempt(n):
    return ExecutionAttempt(attempt_number=n, command_text="open notes", outcome=AttemptOutcome(success=False, reason="x"))


def test_first_terminal_transition_wins():
    session = TaskSession(Command(text="open notes"))
    assert session.finish(TaskStatus.TIMED_OUT, error="too slow", error_kind=ErrorKind.TIMEOUT)
    assert not session.finish(TaskStatus.SUCCEEDED, message="done")
    assert session.status is TaskStatus.TIMED_OUT
    assert session.cancel_requested
    assert session.wait(0)


def test_success_does_not_set_cancel_flag():
    session = TaskSession(Command(text="open notes"))
    session.finish(TaskStatus.SUCCEEDED, message="ok")
    assert not session.cancel_requested


def test_finish_requires_terminal_status():
    with pytest.raises(ValueError):
        TaskSession(Command(text="x")).finish(TaskStatus.RUNNING)


def test_attempts_refused_after_cancel_or_finish():
    session = TaskSession(Command(text="open notes"))
    assert session.record_attempt(attempt(1))
    session.request_cancel("superseded")
    assert not session.record_attempt(attempt(2))
    assert session.attempt_count == 1

    done = TaskSession(Command(text="open notes"))
    done.finish(TaskStatus.FAILED)
    assert not done.record_attempt(attempt(1))


def test_browser_is_closed_once_on_finish():
    session = TaskSession(Command(text="search cats"))
    browser = FakeBrowser()
    assert session.ensure_browser(lambda: browser) is browser
    assert session.ensure_browser(lambda: FakeBrowser()) is browser

    session.finish(TaskStatus.CANCELLED)
    session.close_browser()
    assert browser.close_calls == 1
    assert session.ensure_browser(lambda: FakeBrowser()) is None


def test_cancellation_token():
    token = CancellationToken()
    assert token.sleep(0) is False
    token.cancel("first")
    token.cancel("second")
    assert token.cancelled and token.reason == "first"
    assert token.sleep(10) is True


def test_context_expiry_rearm_and_cancel():
    timers = TimerRecorder()
    fired = []
    expiry = ContextExpiry(120, lambda: fired.append(True), timer_factory=timers)

    expiry.arm()
    expiry.arm()
    assert timers.timers[0].cancelled and timers.timers[1].daemon
    timers.timers[0].fire()
    assert fired == []

    expiry.cancel()
    assert not expiry.armed
    timers.timers[1].fire()
    assert fired == []

    expiry.arm()
    timers.timers[2].fire()
    assert fired == [True] and not expiry.armed
