# os_autopilot/agents/planner_agent.py
import logging
import re
import threading
from collections import deque
from typing import List, Optional

from openai import OpenAIError
from pydantic import ValidationError

from os_autopilot.agents.llm_client import ReasoningService, parse_json_object
from os_autopilot.core.session import ContextExpiry
from os_autopilot.core.tal import ClassificationKind, ErrorKind, ExecutionPlan, PlanKind, Result

logger = logging.getLogger(__name__)


PLAN_SYSTEM_PROMPT = """
You are a macOS automation planner.
Turn the user's command into exactly ONE executable plan of one of these kinds:

- "script": AppleScript source, one statement per line. Use for app control,
  keystrokes, menus and anything done through System Events.
- "shell": a single shell command string. Use for files, folders and system
  utilities.
- "web_steps": an ordered list of browser steps. Each step is an object with
  "action" in navigate | click | type | press | wait and its parameter:
  navigate -> "url", click -> "selector", type -> "text" (optional "selector"),
  press -> "key", wait -> "seconds".
- "error": the command cannot or must not be automated. Explain why to the user
  in "explanation".

Examples:

User: "open Notes and start a new note"
{"kind": "script", "command": "tell application \\"Notes\\" to activate\\ntell application \\"System Events\\" to keystroke \\"n\\" using command down", "explanation": "Activate Notes, then create a note with Cmd+N."}

User: "show me what's in my downloads folder"
{"kind": "shell", "command": "open ~/Downloads", "explanation": "Open the Downloads folder in Finder."}

User: "search google for python tutorials"
{"kind": "web_steps", "command": [{"action": "navigate", "url": "https://www.google.com"}, {"action": "type", "selector": "textarea[name=q]", "text": "python tutorials"}, {"action": "press", "key": "Enter"}], "explanation": "Open Google and search for the query."}

User: "format my hard drive"
{"kind": "error", "command": "", "explanation": "I won't erase disks. Please do that yourself in Disk Utility."}
""".strip()

_REPLY_CONTRACT = """
Reply with a single JSON object and nothing else:
{"kind": "script" | "shell" | "web_steps" | "error", "command": <string or list of steps>, "explanation": <non-empty string>}
""".strip()

IMPROVE_SYSTEM_PROMPT = """
You repair failed desktop automation commands.
Given the original command, why it failed and a description of the current
screen, produce a clearer, more specific command that is more likely to work.
If the original command is already the best option, return it unchanged.
Reply with JSON: {"improved_command": "<command>"}
""".strip()

CLASSIFY_PROMPT = """You are a command classifier. Classify this user input as one of:
- TASK_EXECUTION: Commands that should execute system actions (open apps, control system, navigate, etc.)
- TEXT_RESPONSE: Questions or requests that need a conversational response (weather, explanations, etc.)

User input: "{text}"

Respond with only: TASK_EXECUTION or TEXT_RESPONSE"""

_KIND_ALIASES = {
    "applescript": PlanKind.SCRIPT,
    "osascript": PlanKind.SCRIPT,
    "websteps": PlanKind.WEB_STEPS,
    "web": PlanKind.WEB_STEPS,
}

# =====================================================================
# Direct app shortcuts (no reasoning round-trip)
# =====================================================================

_APPS = {
    "notes": "Notes",
    "note": "Notes",
    "slack": "Slack",
    "finder": "Finder",
    "terminal": "Terminal",
    "mail": "Mail",
    "messages": "Messages",
    "discord": "Discord",
    "spotify": "Spotify",
    "calendar": "Calendar",
    "chrome": "Google Chrome",
    "google chrome": "Google Chrome",
    "safari": "Safari",
    "arc": "Arc",
}

_FOLDERS = {
    "trash": "~/.Trash",
    "bin": "~/.Trash",
    "downloads": "~/Downloads",
    "documents": "~/Documents",
    "desktop": "~/Desktop",
}

_APP_RE = re.compile(
    r"^(?:please\s+)?(open|launch|start|quit|close)\s+(?:the\s+)?(?:app\s+)?("
    + "|".join(sorted(map(re.escape, _APPS), key=len, reverse=True))
    + r")(?:\s+app)?[.!]?$"
)
_FOLDER_RE = re.compile(
    r"^(?:please\s+)?open\s+(?:the\s+|my\s+)?(" + "|".join(_FOLDERS) + r")(?:\s+folder)?[.!]?$"
)


class PlannerAgent:
    """
    Execution plan generator.

    Turns a command (plus optional screen context) into a typed ExecutionPlan
    via the reasoning service. Also repairs failed commands for the recovery
    loop and answers conversational questions.
    """

    def __init__(
        self,
        reasoning: Optional[ReasoningService] = None,
        context_ttl: float = 120.0,
        system_prompt: Optional[str] = None,
        history_size: int = 5,
        direct_app_shortcuts: bool = True,
        timer_factory=threading.Timer,
    ):
        self.reasoning = reasoning or ReasoningService()
        self.system_prompt = system_prompt or PLAN_SYSTEM_PROMPT
        self.direct_app_shortcuts = direct_app_shortcuts
        self._history = deque(maxlen=max(1, history_size))
        self._lock = threading.Lock()
        self.expiry = ContextExpiry(context_ttl, self.clear_context, timer_factory=timer_factory)

    @classmethod
    def from_config(cls, config, reasoning: Optional[ReasoningService] = None) -> "PlannerAgent":
        reasoning = reasoning or ReasoningService(
            model=config.text_model, api_key=config.openai_api_key, timeout=config.request_timeout
        )
        return cls(
            reasoning=reasoning,
            context_ttl=config.context_ttl,
            system_prompt=config.system_prompt,
            history_size=config.history_size,
            direct_app_shortcuts=config.direct_app_shortcuts,
        )

    # -----------------------------------------------------
    # Retained context
    # -----------------------------------------------------
    @property
    def retained_context(self) -> List[str]:
        with self._lock:
            return list(self._history)

    def record_outcome(self, command_text: str, summary: str):
        with self._lock:
            self._history.append(f"{command_text} -> {summary}")

    def clear_context(self):
        with self._lock:
            self._history.clear()
        logger.debug("Planner context cleared")

    def close(self):
        self.expiry.cancel()

    # -----------------------------------------------------
    # Plan generation
    # -----------------------------------------------------
    def _build_plan_prompt(self, command: str, vision_context: Optional[str]) -> str:
        parts = []
        history = self.retained_context
        if history:
            parts.append("Recent commands (oldest first):\n" + "\n".join(f"- {h}" for h in history))
        if vision_context:
            parts.append(f"Visual context (what is currently on screen):\n{vision_context.strip()}")
        parts.append(f'Current user command: "{command}"')
        return "\n\n".join(parts)

    def generate_plan(self, command: str, vision_context: Optional[str] = None) -> Result:
        system = f"{self.system_prompt}\n\n{_REPLY_CONTRACT}"
        prompt = self._build_plan_prompt(command, vision_context)

        try:
            reply = self.reasoning.complete(system, prompt, json_mode=True)
        except OpenAIError as e:
            logger.error("Reasoning service failed while planning: %s", e)
            return Result.fail(f"Reasoning service error: {e}", ErrorKind.PLAN_GENERATION_FAILED)

        result = self.parse_plan(reply)
        if result.success:
            self.expiry.arm()
            logger.info("Plan (%s): %s", result.value.kind.value, result.value.explanation)
        else:
            logger.warning("Plan generation failed [%s]: %s", result.error_kind.value, result.error)
        return result

    def parse_plan(self, reply: str) -> Result:
        """Validate a structured reply into an ExecutionPlan. Never raises."""
        text = (reply or "").strip()
        if text.startswith("ERROR:"):
            return Result.fail(text[len("ERROR:"):].strip(), ErrorKind.USER_FACING)

        try:
            data = parse_json_object(text)
        except ValueError as e:
            return Result.fail(f"Unparseable plan reply: {e}", ErrorKind.PLAN_GENERATION_FAILED)

        kind_raw = data.get("kind")
        explanation = data.get("explanation")
        if not isinstance(kind_raw, str) or not kind_raw.strip():
            return Result.fail("Plan reply is missing 'kind'", ErrorKind.PLAN_GENERATION_FAILED)
        if not isinstance(explanation, str) or not explanation.strip():
            return Result.fail("Plan reply is missing 'explanation'", ErrorKind.PLAN_GENERATION_FAILED)

        token = kind_raw.strip().lower().replace("-", "_").replace(" ", "_")
        try:
            kind = _KIND_ALIASES.get(token) or PlanKind(token)
        except ValueError:
            return Result.fail(f"Unknown plan kind '{kind_raw}'", ErrorKind.PLAN_GENERATION_FAILED)

        if kind is PlanKind.ERROR:
            return Result.fail(explanation, ErrorKind.USER_FACING)

        payload = data.get("command")
        if payload in (None, "", []):
            payload = data.get("payload", data.get("steps"))
        if payload in (None, "", []):
            return Result.fail(f"Plan reply of kind '{kind.value}' is missing its payload", ErrorKind.PLAN_GENERATION_FAILED)
        if kind is PlanKind.SCRIPT and isinstance(payload, list) and all(isinstance(p, str) for p in payload):
            payload = "\n".join(payload)

        try:
            plan = ExecutionPlan(kind=kind, payload=payload, explanation=explanation)
        except ValidationError as e:
            return Result.fail(f"Invalid plan: {e.errors()[0]['msg']}", ErrorKind.PLAN_GENERATION_FAILED)
        return Result.ok(plan)

    def shortcut_plan(self, text: str) -> Optional[ExecutionPlan]:
        """Plans for plain app launch/quit and folder commands, built without the reasoning service."""
        if not self.direct_app_shortcuts:
            return None
        clean = re.sub(r"\s+", " ", text.strip().lower())

        m = _FOLDER_RE.match(clean)
        if m:
            path = _FOLDERS[m.group(1)]
            return ExecutionPlan(kind=PlanKind.SHELL, payload=f"open {path}", explanation=f"Open {path} in Finder.")

        m = _APP_RE.match(clean)
        if m:
            verb, app = m.group(1), _APPS[m.group(2)]
            if verb in ("quit", "close"):
                return ExecutionPlan(
                    kind=PlanKind.SCRIPT, payload=f'tell application "{app}" to quit', explanation=f"Quit {app}."
                )
            return ExecutionPlan(
                kind=PlanKind.SCRIPT, payload=f'tell application "{app}" to activate', explanation=f"Open {app}."
            )
        return None

    # -----------------------------------------------------
    # Recovery & conversation
    # -----------------------------------------------------
    def improve_command(self, command_text: str, failure_reason: str, vision_analysis: Optional[str] = None) -> Result:
        prompt = (
            f'Original command: "{command_text}"\n'
            f"Failure: {failure_reason}\n"
            f"Current screen: {vision_analysis or 'unavailable'}"
        )
        try:
            reply = self.reasoning.complete(IMPROVE_SYSTEM_PROMPT, prompt, json_mode=True)
            improved = parse_json_object(reply).get("improved_command")
        except (OpenAIError, ValueError) as e:
            logger.warning("Command improvement failed: %s", e)
            return Result.fail(f"Command improvement failed: {e}", ErrorKind.PLAN_GENERATION_FAILED)

        if not isinstance(improved, str) or not improved.strip():
            return Result.fail("Improvement reply had no command", ErrorKind.PLAN_GENERATION_FAILED)
        return Result.ok(improved.strip())

    def generate_text_response(self, text: str) -> Result:
        try:
            reply = self.reasoning.complete(
                "You are a helpful desktop assistant. Answer conversationally and briefly.", text
            )
        except OpenAIError as e:
            logger.error("Text response failed: %s", e)
            return Result.fail(str(e), ErrorKind.USER_FACING)
        if not reply.strip():
            return Result.fail("Empty response", ErrorKind.USER_FACING)
        return Result.ok(reply.strip())

    def classify_with_ai(self, text: str) -> Result:
        try:
            reply = self.reasoning.complete("Classify commands.", CLASSIFY_PROMPT.format(text=text))
        except OpenAIError as e:
            logger.warning("AI classification failed: %s", e)
            return Result.fail(str(e), ErrorKind.CLASSIFICATION_AMBIGUOUS)

        upper = reply.upper()
        if "TASK_EXECUTION" in upper:
            return Result.ok(ClassificationKind.TASK_EXECUTION)
        if "TEXT_RESPONSE" in upper:
            return Result.ok(ClassificationKind.TEXT_RESPONSE)
        return Result.ok(ClassificationKind.CLARIFICATION)
