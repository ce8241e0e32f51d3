import sys
import threading
import time

import pytest

from fakes import FakeBrowser, FakeOsAdapter
from os_autopilot.agents.executor_agent import DEFAULT_SUCCESS_MESSAGE, ActionExecutor
from os_autopilot.core.session import CancellationToken
from os_autopilot.core.tal import ErrorKind, ExecutionOutcome, ExecutionPlan, PlanKind, ProcessResult, WebStep
from os_autopilot.repos.osascript_adapter import OsaScriptAdapter


@pytest.mark.skipif(sys.platform.startswith("win"), reason="needs a POSIX shell")
def test_shell_echo_runs_for_real():
    executor = ActionExecutor(OsaScriptAdapter())
    outcome = executor.execute(ExecutionPlan(kind=PlanKind.SHELL, payload="echo hello", explanation="Say hello."))
    assert outcome.success is True
    assert outcome.message == "hello"


@pytest.mark.skipif(sys.platform.startswith("win"), reason="needs a POSIX shell")
def test_shell_failure_reports_stderr():
    executor = ActionExecutor(OsaScriptAdapter())
    outcome = executor.execute(
        ExecutionPlan(kind=PlanKind.SHELL, payload="echo broken >&2; exit 3", explanation="Fail.")
    )
    assert outcome.success is False
    assert outcome.exit_code == 3
    assert outcome.error == "broken"
    assert outcome.error_kind is ErrorKind.EXECUTION_FAILED


@pytest.mark.skipif(sys.platform.startswith("win"), reason="needs a POSIX shell")
def test_cancelled_shell_command_is_killed():
    token = CancellationToken()
    timer = threading.Timer(0.2, token.cancel, args=("superseded",))
    timer.start()
    started = time.monotonic()
    try:
        outcome = ActionExecutor(OsaScriptAdapter()).execute(
            ExecutionPlan(kind=PlanKind.SHELL, payload="sleep 5", explanation="Wait."), cancel_token=token
        )
    finally:
        timer.cancel()

    assert outcome.success is False
    assert outcome.error == "cancelled"
    assert time.monotonic() - started < 3


def test_script_lines_become_separate_arguments():
    adapter = OsaScriptAdapter()
    argv = adapter.build_script_argv(['tell application "Notes" to activate', 'display dialog "it\'s done"'])
    assert argv == [
        "osascript",
        "-e",
        'tell application "Notes" to activate',
        "-e",
        'display dialog "it\'s done"',
    ]


def test_script_plan_dispatch_and_empty_stdout():
    os_adapter = FakeOsAdapter(results=[ProcessResult(exit_code=0, stdout="  \n")])
    executor = ActionExecutor(os_adapter)
    plan = ExecutionPlan(kind=PlanKind.SCRIPT, payload='tell application "Mail" to activate\n\ndelay 1', explanation="x")

    outcome = executor.execute(plan)
    assert outcome.success
    assert outcome.message == DEFAULT_SUCCESS_MESSAGE
    assert os_adapter.scripts == [['tell application "Mail" to activate', "delay 1"]]


def test_spawn_error_is_execution_failure():
    os_adapter = FakeOsAdapter(results=[ProcessResult(exit_code=-1, error="No such file or directory: 'osascript'")])
    outcome = ActionExecutor(os_adapter).execute(ExecutionPlan(kind=PlanKind.SCRIPT, payload="beep", explanation="x"))
    assert not outcome.success
    assert "osascript" in outcome.error


def test_web_steps_use_given_browser_and_report_failing_step():
    failing = ExecutionOutcome(
        success=False, error="Step 2 (click) failed: element not found: #go", error_kind=ErrorKind.EXECUTION_FAILED,
        failed_step=2, failed_action="click",
    )
    browser = FakeBrowser(outcome=failing)
    plan = ExecutionPlan(
        kind=PlanKind.WEB_STEPS,
        payload=[WebStep(action="navigate", url="https://example.com"), WebStep(action="click", selector="#go")],
        explanation="x",
    )
    outcome = ActionExecutor(FakeOsAdapter()).execute(plan, browser=browser)
    assert outcome.failed_step == 2 and outcome.failed_action == "click"
    # caller-owned browser stays open
    assert browser.close_calls == 0


def test_web_steps_without_browser_open_and_close_their_own():
    browser = FakeBrowser()
    executor = ActionExecutor(FakeOsAdapter(), browser_factory=lambda: browser)
    plan = ExecutionPlan(kind=PlanKind.WEB_STEPS, payload=[{"action": "navigate", "url": "https://a.b"}], explanation="x")
    assert executor.execute(plan).success
    assert browser.close_calls == 1


def test_cancelled_token_short_circuits():
    token = CancellationToken()
    token.cancel("superseded")
    os_adapter = FakeOsAdapter()
    outcome = ActionExecutor(os_adapter).execute(
        ExecutionPlan(kind=PlanKind.SHELL, payload="ls", explanation="x"), cancel_token=token
    )
    assert outcome.error_kind is ErrorKind.CANCELLED
    assert os_adapter.shell == []


def test_error_plan_is_never_executed():
    os_adapter = FakeOsAdapter()
    outcome = ActionExecutor(os_adapter).execute(ExecutionPlan(kind=PlanKind.ERROR, explanation="Nope."))
    assert outcome.error == "Nope." and outcome.error_kind is ErrorKind.USER_FACING
    assert os_adapter.scripts == [] and os_adapter.shell == []
