# os_autopilot/core/orchestrator.py
import logging
import re
import threading
import time
from concurrent.futures import Future
from typing import Optional

from os_autopilot.agents.classifier import CommandClassifier
from os_autopilot.agents.executor_agent import ActionExecutor
from os_autopilot.agents.planner_agent import PlannerAgent
from os_autopilot.agents.vision_agent import VisualFeedbackLoop
from os_autopilot.core.adapters import PointerTool
from os_autopilot.core.config import AppConfig, load_config
from os_autopilot.core.lifecycle import (
    EventBus,
    RecoveryStarted,
    StepCompleted,
    StepStarted,
    TaskCancelled,
    TaskFailed,
    TaskStarted,
    TaskSucceeded,
    TaskTimedOut,
    TextReply,
)
from os_autopilot.core.registry import registry
from os_autopilot.core.session import TaskSession
from os_autopilot.core.tal import (
    AttemptOutcome,
    ClassificationKind,
    ClassificationResult,
    Command,
    CommandSource,
    ErrorKind,
    ExecutionAttempt,
    PlanKind,
    TaskOutcome,
    TaskStatus,
)
from os_autopilot.repos.chrome_devtools_adapter import ChromeDevToolsAdapter
from os_autopilot.repos.osascript_adapter import OsaScriptAdapter
from os_autopilot.tools.cliclick_tool import CliclickTool
from os_autopilot.tools.pyautogui.py_auto_tool import PyAutoTool

logger = logging.getLogger(__name__)

CLARIFICATION_MESSAGE = "Could you please be more specific about what you'd like me to do?"
TEXT_FALLBACK_MESSAGE = "Sorry, I couldn't generate a response to that question."

UI_KEYWORDS = re.compile(
    r"\b(click|press|type|field|search|dialog|scroll|button|menu|select|fill|checkbox|tab)\b", re.IGNORECASE
)


def needs_visual_context(text: str) -> bool:
    return bool(UI_KEYWORDS.search(text or ""))


def register_default_adapters():
    registry.register_adapter("osascript", OsaScriptAdapter)
    registry.register_adapter("cliclick", CliclickTool)
    registry.register_adapter("pyautogui", PyAutoTool)
    registry.register_adapter("chrome_devtools", ChromeDevToolsAdapter)


def select_pointer_tool(preferred: Optional[str] = None) -> Optional[PointerTool]:
    """First available precision pointer, trying ``preferred`` before the others."""
    names = registry.find_by_capability("precision_click")
    if preferred in names:
        names.remove(preferred)
        names.insert(0, preferred)
    for name in names:
        tool = registry.create(name)
        if tool.is_available():
            logger.debug("Using pointer tool '%s'", name)
            return tool
    logger.info("No precision pointer tool available, clicks go through AppleScript")
    return None


class Orchestrator:
    """
    Owns the single in-flight TaskSession.

    ``run`` classifies a command and either answers it directly or runs the
    classify -> plan -> execute -> recover pipeline on a worker thread, racing
    it against the task timeout. A new task command cancels the running one.
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        classifier: Optional[CommandClassifier] = None,
        planner: Optional[PlannerAgent] = None,
        executor: Optional[ActionExecutor] = None,
        vision: Optional[VisualFeedbackLoop] = None,
        bus: Optional[EventBus] = None,
        browser_factory=None,
    ):
        self.config = config or load_config()
        register_default_adapters()

        tools = self.config.default_tools
        if browser_factory is None:
            browser_cls = registry.get_adapter(tools.get("browser", "chrome_devtools"))
            if browser_cls is None:
                raise ValueError(f"Browser adapter '{tools.get('browser')}' is not registered in registry!")

            def browser_factory():
                return browser_cls.from_config(self.config)

        self.browser_factory = browser_factory

        self.bus = bus or EventBus()
        self.classifier = classifier or CommandClassifier()
        self.planner = planner or PlannerAgent.from_config(self.config)
        os_adapter = OsaScriptAdapter(
            script_timeout=self.config.script_timeout, shell_timeout=self.config.shell_timeout
        )
        self.executor = executor or ActionExecutor(os_adapter, browser_factory=self.browser_factory)
        self.vision = vision or VisualFeedbackLoop.from_config(
            self.config, pointer=select_pointer_tool(tools.get("pointer")), os_adapter=os_adapter
        )

        self._lock = threading.Lock()
        self._session: Optional[TaskSession] = None

        if vision is None:
            self.vision.screenshots.sweep_stale()

    # =====================================================================
    # Public API
    # =====================================================================
    def run(self, text, source: CommandSource = CommandSource.MANUAL) -> TaskOutcome:
        deadline = time.monotonic() + self.config.task_timeout
        command = Command(text=text if isinstance(text, str) else "", source=source)

        classification = self.classifier.classify(text)
        logger.info("Command %r classified as %s (%.2f)", command.text, classification.kind.value, classification.confidence)

        if classification.kind is ClassificationKind.AMBIGUOUS and self.config.ai_disambiguation:
            classification = self._disambiguate(command, classification)

        kind = classification.kind
        if kind is ClassificationKind.TASK_EXECUTION:
            return self._run_task(command, classification, deadline)
        if kind is ClassificationKind.STOP:
            stopped = self.stop()
            return self._reply(command, classification, "Stopped the current task." if stopped else "Nothing is running.")
        if kind is ClassificationKind.TEXT_RESPONSE:
            answer = self.planner.generate_text_response(command.text)
            if answer.success:
                return self._reply(command, classification, answer.value)
            return self._reply(
                command, classification, TEXT_FALLBACK_MESSAGE, success=False, error=answer.error, error_kind=answer.error_kind
            )
        if kind is ClassificationKind.CLARIFICATION:
            return self._reply(command, classification, CLARIFICATION_MESSAGE)
        if kind is ClassificationKind.AMBIGUOUS:
            return self._reply(
                command,
                classification,
                CLARIFICATION_MESSAGE,
                success=False,
                error="Could not tell whether this is a task or a question",
                error_kind=ErrorKind.CLASSIFICATION_AMBIGUOUS,
            )
        raise ValueError(f"Unhandled classification: {kind}")

    def submit(self, text, source: CommandSource = CommandSource.MANUAL) -> "Future[TaskOutcome]":
        """Non-blocking ``run``; the returned future resolves to the TaskOutcome."""
        future: Future = Future()

        def _target():
            try:
                future.set_result(self.run(text, source))
            except Exception as e:
                logger.exception("run() failed for %r", text)
                future.set_exception(e)

        threading.Thread(target=_target, name="autopilot-submit", daemon=True).start()
        return future

    def stop(self) -> bool:
        with self._lock:
            session = self._session
        if session is None or session.is_finished:
            return False
        return self._finish(session, TaskStatus.CANCELLED, error="Stopped by user", error_kind=ErrorKind.CANCELLED)

    def status(self) -> dict:
        with self._lock:
            session = self._session
        if session is None or session.is_finished:
            return {"status": "idle"}
        return session.snapshot()

    def subscribe(self, *event_types):
        return self.bus.subscribe(*event_types)

    def shutdown(self):
        self.stop()
        self.planner.close()

    # =====================================================================
    # Replies
    # =====================================================================
    def _reply(self, command, classification, text, success=True, error=None, error_kind=None) -> TaskOutcome:
        self.bus.emit(TextReply(kind=classification.kind, text=text))
        return TaskOutcome(
            command=command,
            classification=classification,
            success=success,
            message=text,
            error=error,
            error_kind=error_kind,
        )

    def _disambiguate(self, command: Command, classification: ClassificationResult) -> ClassificationResult:
        ai = self.planner.classify_with_ai(command.text)
        if not ai.success:
            return classification
        logger.info("AI disambiguation: %s", ai.value.value)
        return ClassificationResult(kind=ai.value, confidence=classification.confidence, reasoning="AI disambiguation")

    # =====================================================================
    # Task lifecycle
    # =====================================================================
    def _run_task(self, command: Command, classification: ClassificationResult, deadline: float) -> TaskOutcome:
        session = TaskSession(command)
        with self._lock:
            previous, self._session = self._session, session
        if previous is not None and not previous.is_finished:
            logger.info("Cancelling task %s for new command", previous.task_id)
            self._finish(
                previous, TaskStatus.CANCELLED, error="Superseded by a new command", error_kind=ErrorKind.CANCELLED
            )

        self.bus.emit(TaskStarted(task_id=session.task_id, command_text=command.text))
        # one thread per pipeline; superseded ones may still be blocked in a service call
        threading.Thread(
            target=self._pipeline_guarded, args=(session,), name=f"autopilot-task-{session.task_id}", daemon=True
        ).start()

        if not session.wait(max(0.0, deadline - time.monotonic())):
            self._finish(
                session,
                TaskStatus.TIMED_OUT,
                error=f"Task timed out after {self.config.task_timeout:g}s",
                error_kind=ErrorKind.TIMEOUT,
            )
        session.wait()

        with self._lock:
            if self._session is session:
                self._session = None

        return TaskOutcome(
            task_id=session.task_id,
            command=command,
            classification=classification,
            status=session.status,
            success=session.status is TaskStatus.SUCCEEDED,
            message=session.message,
            error=session.error,
            error_kind=session.error_kind,
            attempts=session.attempts,
        )

    def _finish(self, session: TaskSession, status: TaskStatus, message=None, error=None, error_kind=None) -> bool:
        if not session.finish(status, message=message, error=error, error_kind=error_kind):
            return False
        attempts = session.attempt_count
        if status is TaskStatus.SUCCEEDED:
            event = TaskSucceeded(task_id=session.task_id, message=message or "", attempts=attempts)
        elif status is TaskStatus.FAILED:
            event = TaskFailed(task_id=session.task_id, error=error or "", error_kind=error_kind, attempts=attempts)
        elif status is TaskStatus.TIMED_OUT:
            event = TaskTimedOut(task_id=session.task_id, timeout_seconds=self.config.task_timeout, attempts=attempts)
        else:
            event = TaskCancelled(task_id=session.task_id, reason=error or "cancelled")
        self.bus.emit(event)
        return True

    def _pipeline_guarded(self, session: TaskSession):
        try:
            self._pipeline(session)
        except Exception as e:
            logger.exception("Task %s crashed", session.task_id)
            self._finish(session, TaskStatus.FAILED, error=f"Unexpected error: {e}", error_kind=ErrorKind.EXECUTION_FAILED)

    # ---------------------------------------------------------
    # Pipeline (worker thread)
    # ---------------------------------------------------------
    def _pipeline(self, session: TaskSession):
        token = session.token
        text = session.command.text

        plan = self.planner.shortcut_plan(text)
        vision_context = None
        if plan is None and needs_visual_context(text):
            scene = self.vision.analyze_scene(text, "Which on-screen elements are needed to carry out this task?")
            if scene.success:
                vision_context = scene.value
            else:
                logger.info("Scene analysis unavailable (%s), planning without it", scene.error)

        current_text = text
        errors = []
        while not token.cancelled:
            number = session.next_attempt_number()

            if plan is None:
                self.bus.emit(StepStarted(task_id=session.task_id, attempt_number=number, description=f"Planning: {current_text}"))
                planned = self.planner.generate_plan(current_text, vision_context)
                if token.cancelled:
                    return
                if not planned.success and planned.error_kind is ErrorKind.USER_FACING:
                    self._finish(session, TaskStatus.FAILED, error=planned.error, error_kind=ErrorKind.USER_FACING)
                    return
                plan = planned.value

            if plan is None:
                success, detail, failure_kind, message = False, planned.error, planned.error_kind, None
            else:
                self.bus.emit(StepStarted(task_id=session.task_id, attempt_number=number, description=plan.explanation))
                browser = session.ensure_browser(self.browser_factory) if plan.kind is PlanKind.WEB_STEPS else None
                outcome = self.executor.execute(plan, browser=browser, cancel_token=token)
                if token.cancelled:
                    return
                success, detail, failure_kind, message = outcome.success, outcome.error, outcome.error_kind, outcome.message

            attempt = ExecutionAttempt(
                attempt_number=number,
                command_text=current_text,
                plan=plan,
                outcome=AttemptOutcome(success=success, reason=None if success else detail),
            )
            if not session.record_attempt(attempt):
                return
            self.bus.emit(StepCompleted(task_id=session.task_id, attempt_number=number, success=success, detail=detail or message))

            if success:
                self.planner.record_outcome(text, f"done ({plan.kind.value}: {plan.explanation})")
                self._finish(session, TaskStatus.SUCCEEDED, message=message)
                return

            errors.append(f"attempt {number}: {detail}")
            if session.attempt_count >= self.config.max_attempts:
                self._finish(
                    session,
                    TaskStatus.FAILED,
                    error=f"Failed after {session.attempt_count} attempts: " + "; ".join(errors),
                    error_kind=failure_kind,
                )
                return

            self.bus.emit(RecoveryStarted(task_id=session.task_id, attempt_number=number, reason=detail or "unknown error"))
            current_text, plan, vision_context = self._recover(session, current_text, plan, vision_context, detail)

    def _recover(self, session: TaskSession, command_text: str, plan, vision_context, failure: Optional[str]):
        """Ask vision what went wrong and the planner for a better command; returns the next (text, plan, context)."""
        scene = self.vision.analyze_scene(
            command_text,
            f'The command "{command_text}" just failed with: {failure}. What went wrong and how can it be fixed?',
        )
        analysis = scene.value if scene.success else None
        if not scene.success:
            logger.info("Recovery without vision analysis: %s", scene.error)
        if session.cancel_requested:
            return command_text, plan, vision_context

        improved = self.planner.improve_command(command_text, failure or "unknown error", analysis)
        if improved.success and improved.value.strip().lower() != command_text.strip().lower():
            logger.info("Retrying with improved command: %r", improved.value)
            return improved.value, None, analysis or vision_context

        logger.info("Retrying the same plan for %r", command_text)
        return command_text, plan, analysis or vision_context
