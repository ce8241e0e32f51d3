# os_autopilot/agents/vision_agent.py
import logging
import time
from typing import Callable, List, Optional, Tuple

from openai import OpenAIError
from pydantic import ValidationError

from os_autopilot.agents.llm_client import VisionService, parse_json_object
from os_autopilot.core.adapters import PointerTool
from os_autopilot.core.config import ClickSettings
from os_autopilot.core.session import CancellationToken
from os_autopilot.core.tal import ErrorKind, ProcessResult, Result, VisualAction, VisualActionKind, VisualActionOutcome
from os_autopilot.repos.osascript_adapter import OsaScriptAdapter
from os_autopilot.tools.screenshot import ScreenshotCapture
from os_autopilot.utils.process import escape_applescript_str

logger = logging.getLogger(__name__)

# Primary method names
PRECISION_CLICK = "precision tool click"
FRONTMOST_CLICK = "AppleScript click in frontmost app"
ELEMENT_CLICK = "UI element click chain"
CLIPBOARD_PASTE = "clipboard paste"
KEY_PRESS = "key press"
SCROLL = "scroll"
WAIT = "wait"

# Click fallback chain, in order
FALLBACK_COORDINATE = "AppleScript click at coordinates"
FALLBACK_MOUSE_MOVE = "Mouse move and click"
FALLBACK_PRECISION = "Precision tool click"
FALLBACK_CENTER = "Click center of screen"

ACTION_PROMPT = """You are a visual UI automation expert. Analyze this screenshot and determine the exact next action to take.

CURRENT TASK: {task}
CURRENT STEP: {step}

AVAILABLE ACTIONS:
- CLICK: click at [x, y] screen coordinates, or on a named element ("target")
- TYPE: type "text" into the focused element
- SCROLL: scroll the frontmost window ("target": "up" or "down")
- WAIT: wait for the UI to settle
- KEY_PRESS: press "key" (Enter, Tab, Escape, ...)

Return ONLY a JSON object in this exact format:
{{"success": true, "action": "CLICK|TYPE|SCROLL|WAIT|KEY_PRESS", "target": "...", "coordinates": [x, y], "text": "...", "key": "...", "description": "...", "confidence": 0.9}}"""

SCENE_PROMPT = """You are looking at the user's screen while helping with this task:
{task}

{question}

Answer in a few sentences: name the frontmost application, the relevant visible
UI elements and where they are."""

_APPLESCRIPT_KEYS = {
    "enter": "keystroke return",
    "return": "keystroke return",
    "tab": "keystroke tab",
    "space": "keystroke space",
    "escape": "key code 53",
    "esc": "key code 53",
    "delete": "key code 51",
    "backspace": "key code 51",
    "left": "key code 123",
    "right": "key code 124",
    "down": "key code 125",
    "up": "key code 126",
}


def _system_events(*body: str) -> List[str]:
    return ['tell application "System Events"', *body, "end tell"]


def _frontmost(*body: str) -> List[str]:
    return _system_events("tell (first application process whose frontmost is true)", *body, "end tell")


class VisualFeedbackLoop:
    """
    Screenshot -> vision service -> VisualAction -> OS interaction.

    Every screenshot taken here is transient and removed on all exit paths.
    Clicks that fail go through an ordered fallback chain.
    """

    def __init__(
        self,
        vision: Optional[VisionService] = None,
        screenshots: Optional[ScreenshotCapture] = None,
        os_adapter: Optional[OsaScriptAdapter] = None,
        pointer: Optional[PointerTool] = None,
        clicks: Optional[ClickSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.vision = vision or VisionService()
        self.screenshots = screenshots or ScreenshotCapture()
        self.os_adapter = os_adapter or OsaScriptAdapter()
        self.pointer = pointer
        self.clicks = clicks or ClickSettings()
        self._sleep = sleep

    @classmethod
    def from_config(cls, config, vision=None, pointer=None, os_adapter=None, screenshots=None) -> "VisualFeedbackLoop":
        return cls(
            vision=vision
            or VisionService(model=config.vision_model, api_key=config.openai_api_key, timeout=config.request_timeout),
            screenshots=screenshots or ScreenshotCapture(config.screenshots),
            os_adapter=os_adapter
            or OsaScriptAdapter(script_timeout=config.script_timeout, shell_timeout=config.shell_timeout),
            pointer=pointer,
            clicks=config.clicks,
        )

    # =====================================================================
    # Entry points
    # =====================================================================
    def perform_visual_guided_action(
        self, task: str, step_description: str, cancel_token: Optional[CancellationToken] = None
    ) -> VisualActionOutcome:
        logger.info("Visual step for %r: %s", task, step_description)
        with self.screenshots.transient("visual") as shot:
            if not shot.success:
                return VisualActionOutcome(success=False, error=shot.error, error_kind=ErrorKind.SCREENSHOT_FAILED)

            analysis = self.request_action(str(shot.value), task, step_description)
            if not analysis.success:
                return VisualActionOutcome(success=False, error=analysis.error, error_kind=analysis.error_kind)

            action: VisualAction = analysis.value
            logger.info("Vision suggested %s (confidence %.2f): %s", action.kind.value, action.confidence, action.description)
            return self.execute_visual_action(action, cancel_token)

    def analyze_scene(self, task: str, question: str) -> Result:
        """Natural-language description of the current screen."""
        with self.screenshots.transient("scene") as shot:
            if not shot.success:
                return Result.fail(shot.error, ErrorKind.SCREENSHOT_FAILED)
            try:
                reply = self.vision.ask(str(shot.value), SCENE_PROMPT.format(task=task, question=question))
            except (OpenAIError, OSError) as e:
                logger.warning("Scene analysis failed: %s", e)
                return Result.fail(f"Vision service error: {e}", ErrorKind.VISION_ANALYSIS_FAILED)
        if not reply or not reply.strip():
            return Result.fail("Vision service returned no analysis", ErrorKind.VISION_ANALYSIS_FAILED)
        return Result.ok(reply.strip())

    # =====================================================================
    # Vision request / parse
    # =====================================================================
    def request_action(self, image_path: str, task: str, step_description: str) -> Result:
        try:
            reply = self.vision.ask(image_path, ACTION_PROMPT.format(task=task, step=step_description), json_mode=True)
        except (OpenAIError, OSError) as e:
            logger.warning("Vision request failed: %s", e)
            return Result.fail(f"Vision service error: {e}", ErrorKind.VISION_ANALYSIS_FAILED)
        return self.parse_action(reply)

    def parse_action(self, reply: str) -> Result:
        try:
            data = parse_json_object(reply)
        except ValueError as e:
            return Result.fail(f"Unparseable vision reply: {e}", ErrorKind.VISION_ANALYSIS_FAILED)
        if data.get("success") is False:
            return Result.fail(data.get("error") or "Vision service found no action", ErrorKind.VISION_ANALYSIS_FAILED)
        try:
            return Result.ok(VisualAction.model_validate(data))
        except ValidationError as e:
            return Result.fail(f"Invalid visual action: {e.errors()[0]['msg']}", ErrorKind.VISION_ANALYSIS_FAILED)

    # =====================================================================
    # Execution
    # =====================================================================
    def _precision_tool(self) -> Optional[PointerTool]:
        if self.pointer is not None and self.pointer.is_available():
            return self.pointer
        return None

    def _run(self, lines: List[str]) -> ProcessResult:
        return self.os_adapter.run_script(lines)

    def _primary(self, action: VisualAction, cancel_token) -> Tuple[str, ProcessResult]:
        kind = action.kind

        if kind is VisualActionKind.CLICK:
            if action.coordinates:
                x, y = action.coordinates
                tool = self._precision_tool()
                if tool is not None:
                    return PRECISION_CLICK, tool.click(x, y)
                return FRONTMOST_CLICK, self._run(_frontmost(f"click at {{{x}, {y}}}"))
            target = escape_applescript_str(action.target or "button 1")
            dx, dy = self.clicks.default_point
            return ELEMENT_CLICK, self._run(_frontmost(
                "try",
                f'click UI element "{target}" of window 1',
                "on error",
                "try",
                f'click button "{target}" of window 1',
                "on error",
                "try",
                "click first button of window 1",
                "on error",
                f"click at {{{dx}, {dy}}}",
                "end try",
                "end try",
                "end try",
            ))

        if kind is VisualActionKind.TYPE:
            if action.text is None:
                return CLIPBOARD_PASTE, ProcessResult(exit_code=1, error="TYPE action without text")
            return CLIPBOARD_PASTE, self._run([
                f'set the clipboard to "{escape_applescript_str(action.text)}"',
                *_system_events("delay 0.5", 'keystroke "v" using command down'),
            ])

        if kind is VisualActionKind.KEY_PRESS:
            if not action.key:
                return KEY_PRESS, ProcessResult(exit_code=1, error="KEY_PRESS action without key")
            stroke = _APPLESCRIPT_KEYS.get(action.key.strip().lower())
            if stroke is None:
                stroke = f'keystroke "{escape_applescript_str(action.key)}"'
            return KEY_PRESS, self._run([f'tell application "System Events" to {stroke}'])

        if kind is VisualActionKind.SCROLL:
            hint = " ".join(filter(None, [action.target, action.text, action.key, action.description])).lower()
            code = 126 if "up" in hint.split() else 125
            return SCROLL, self._run(_frontmost(
                f"repeat {self.clicks.scroll_amount} times", f"key code {code}", "end repeat"
            ))

        if kind is VisualActionKind.WAIT:
            if cancel_token is None:
                self._sleep(self.clicks.wait_seconds)
            elif cancel_token.sleep(self.clicks.wait_seconds):
                return WAIT, ProcessResult(exit_code=1, error="cancelled")
            return WAIT, ProcessResult(exit_code=0)

        raise ValueError(f"Unhandled visual action kind: {kind}")

    def execute_visual_action(
        self, action: VisualAction, cancel_token: Optional[CancellationToken] = None
    ) -> VisualActionOutcome:
        method, proc = self._primary(action, cancel_token)
        if proc.ok:
            return VisualActionOutcome(
                success=True, action=action, confidence=action.confidence, attempted_methods=[method]
            )

        logger.warning("Primary %s failed: %s", method, proc.failure_text())
        if action.kind is not VisualActionKind.CLICK:
            return VisualActionOutcome(
                success=False,
                error=proc.failure_text(),
                error_kind=ErrorKind.EXECUTION_FAILED,
                action=action,
                confidence=action.confidence,
                attempted_methods=[method],
            )
        return self._click_fallbacks(action, [method], cancel_token)

    def _fallback_chain(self, action: VisualAction) -> List[Tuple[str, Callable[[], ProcessResult]]]:
        chain = []
        if action.coordinates:
            x, y = action.coordinates
            chain.append((FALLBACK_COORDINATE, lambda: self._run([f'tell application "System Events" to click at {{{x}, {y}}}'])))
            chain.append((FALLBACK_MOUSE_MOVE, lambda: self._run(_system_events(
                f"set the mouse location to {{{x}, {y}}}", "delay 0.1", "click at the mouse location"
            ))))
            tool = self._precision_tool()
            if tool is not None:
                chain.append((FALLBACK_PRECISION, lambda: tool.click(x, y)))
        cx, cy = self.clicks.fallback_center
        chain.append((FALLBACK_CENTER, lambda: self._run([f'tell application "System Events" to click at {{{cx}, {cy}}}'])))
        return chain

    def _click_fallbacks(self, action: VisualAction, attempted: List[str], cancel_token) -> VisualActionOutcome:
        chain = self._fallback_chain(action)
        last_error = None
        for i, (name, attempt) in enumerate(chain, start=1):
            if cancel_token is not None and cancel_token.cancelled:
                return VisualActionOutcome(
                    success=False, error="Cancelled during click fallbacks", error_kind=ErrorKind.CANCELLED,
                    action=action, attempted_methods=attempted,
                )
            logger.info("Trying fallback %d/%d: %s", i, len(chain), name)
            attempted.append(name)
            proc = attempt()
            if proc.ok:
                return VisualActionOutcome(
                    success=True,
                    action=action,
                    confidence=action.confidence,
                    used_fallback=True,
                    fallback_method=name,
                    attempted_methods=attempted,
                )
            last_error = proc.failure_text()
            logger.debug("Fallback %s failed: %s", name, last_error)
            if i < len(chain):
                self._sleep(self.clicks.fallback_delay)

        return VisualActionOutcome(
            success=False,
            error=f"All {len(chain)} fallback methods failed (last error: {last_error})",
            error_kind=ErrorKind.ALL_FALLBACKS_EXHAUSTED,
            action=action,
            confidence=action.confidence,
            attempted_methods=attempted,
        )
