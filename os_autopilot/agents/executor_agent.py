# os_autopilot/agents/executor_agent.py
import logging
from typing import Callable, Optional

from os_autopilot.core.session import CancellationToken
from os_autopilot.core.tal import ErrorKind, ExecutionOutcome, ExecutionPlan, PlanKind, ProcessResult
from os_autopilot.repos.osascript_adapter import OsaScriptAdapter

logger = logging.getLogger(__name__)

DEFAULT_SUCCESS_MESSAGE = "Command completed successfully"


class ActionExecutor:
    """
    Dispatches a validated plan to the matching OS-level mechanism and
    reports the raw outcome. It does not retry; that is the orchestrator's job.
    """

    def __init__(self, os_adapter: Optional[OsaScriptAdapter] = None, browser_factory: Optional[Callable] = None):
        self.os_adapter = os_adapter or OsaScriptAdapter()
        self.browser_factory = browser_factory

    def execute(self, plan: ExecutionPlan, browser=None, cancel_token: Optional[CancellationToken] = None) -> ExecutionOutcome:
        if cancel_token is not None and cancel_token.cancelled:
            return ExecutionOutcome(success=False, error="Cancelled before execution", error_kind=ErrorKind.CANCELLED)

        logger.info("Executing %s plan: %s", plan.kind.value, plan.explanation)

        if plan.kind is PlanKind.SCRIPT:
            return self._from_process(self.os_adapter.run_script(plan.script_lines(), cancel_token=cancel_token))
        if plan.kind is PlanKind.SHELL:
            return self._from_process(self.os_adapter.run_shell(plan.payload, cancel_token=cancel_token))
        if plan.kind is PlanKind.WEB_STEPS:
            return self._run_web_steps(plan, browser, cancel_token)
        if plan.kind is PlanKind.ERROR:
            return ExecutionOutcome(success=False, error=plan.explanation, error_kind=ErrorKind.USER_FACING)
        raise ValueError(f"Unhandled plan kind: {plan.kind}")

    def _from_process(self, proc: ProcessResult) -> ExecutionOutcome:
        if not proc.ok:
            logger.warning("Execution failed (exit %s): %s", proc.exit_code, proc.failure_text())
            return ExecutionOutcome(
                success=False,
                error=proc.failure_text(),
                error_kind=ErrorKind.EXECUTION_FAILED,
                exit_code=proc.exit_code,
                stdout=proc.stdout,
                stderr=proc.stderr,
            )
        message = proc.stdout.strip() or DEFAULT_SUCCESS_MESSAGE
        return ExecutionOutcome(
            success=True, message=message, exit_code=proc.exit_code, stdout=proc.stdout, stderr=proc.stderr
        )

    def _run_web_steps(self, plan: ExecutionPlan, browser, cancel_token) -> ExecutionOutcome:
        owns_browser = browser is None
        if owns_browser:
            if self.browser_factory is None:
                return ExecutionOutcome(
                    success=False, error="No browser automation available", error_kind=ErrorKind.EXECUTION_FAILED
                )
            browser = self.browser_factory()
        try:
            return browser.run_steps(plan.payload, cancel_token=cancel_token)
        finally:
            if owns_browser:
                browser.close()
