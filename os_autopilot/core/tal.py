# os_autopilot/core/tal.py
"""
Task abstraction layer: the shared vocabulary passed between the classifier,
planner, executors, vision loop and orchestrator.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# =====================================================================
# Closed enumerations
# =====================================================================

class CommandSource(str, Enum):
    VOICE = "voice"
    MANUAL = "manual"


class ClassificationKind(str, Enum):
    TASK_EXECUTION = "task_execution"
    TEXT_RESPONSE = "text_response"
    CLARIFICATION = "clarification"
    AMBIGUOUS = "ambiguous"
    STOP = "stop"


class PlanKind(str, Enum):
    SCRIPT = "script"
    SHELL = "shell"
    WEB_STEPS = "web_steps"
    ERROR = "error"


class WebAction(str, Enum):
    NAVIGATE = "navigate"
    CLICK = "click"
    TYPE = "type"
    PRESS = "press"
    WAIT = "wait"


class VisualActionKind(str, Enum):
    CLICK = "click"
    TYPE = "type"
    SCROLL = "scroll"
    WAIT = "wait"
    KEY_PRESS = "key_press"


class TaskStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not TaskStatus.RUNNING


class ErrorKind(str, Enum):
    CLASSIFICATION_AMBIGUOUS = "classification_ambiguous"
    PLAN_GENERATION_FAILED = "plan_generation_failed"
    USER_FACING = "user_facing_error"
    EXECUTION_FAILED = "execution_failed"
    VISION_ANALYSIS_FAILED = "vision_analysis_failed"
    SCREENSHOT_FAILED = "screenshot_failed"
    ALL_FALLBACKS_EXHAUSTED = "all_fallbacks_exhausted"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


def _normalize_token(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower().replace("-", "_").replace(" ", "_")
    return value


# =====================================================================
# Commands & classification
# =====================================================================

class Command(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    source: CommandSource = CommandSource.MANUAL
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ClassificationResult(BaseModel):
    kind: ClassificationKind
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""


# =====================================================================
# Plans
# =====================================================================

_REQUIRED_WEB_FIELDS = {
    WebAction.NAVIGATE: "url",
    WebAction.CLICK: "selector",
    WebAction.TYPE: "text",
    WebAction.PRESS: "key",
}


class WebStep(BaseModel):
    action: WebAction
    url: Optional[str] = None
    selector: Optional[str] = None
    text: Optional[str] = None
    key: Optional[str] = None
    seconds: Optional[float] = None

    @field_validator("action", mode="before")
    @classmethod
    def _lower_action(cls, v):
        return _normalize_token(v)

    @model_validator(mode="after")
    def _check_params(self):
        field = _REQUIRED_WEB_FIELDS.get(self.action)
        if field and not getattr(self, field):
            raise ValueError(f"web step '{self.action.value}' requires '{field}'")
        return self

    def describe(self) -> str:
        detail = self.url or self.selector or self.text or self.key
        if self.action is WebAction.WAIT:
            detail = f"{self.seconds or 1}s"
        return f"{self.action.value} {detail}".strip()


class ExecutionPlan(BaseModel):
    kind: PlanKind
    payload: Union[List[WebStep], str] = ""
    explanation: str

    @model_validator(mode="after")
    def _check_invariants(self):
        if not self.explanation or not self.explanation.strip():
            raise ValueError("plan explanation must not be empty")
        if self.kind is PlanKind.ERROR:
            return self
        if self.kind is PlanKind.WEB_STEPS:
            if not isinstance(self.payload, list):
                raise ValueError("web_steps plans carry a list of steps")
        elif not isinstance(self.payload, str):
            raise ValueError(f"{self.kind.value} plans carry a string payload")
        if not self.payload or (isinstance(self.payload, str) and not self.payload.strip()):
            raise ValueError(f"{self.kind.value} plan requires a non-empty payload")
        return self

    def script_lines(self) -> List[str]:
        if not isinstance(self.payload, str):
            return []
        return [line.strip() for line in self.payload.splitlines() if line.strip()]

    def summary(self) -> str:
        if isinstance(self.payload, list):
            return " -> ".join(step.describe() for step in self.payload)
        return self.payload


# =====================================================================
# Vision
# =====================================================================

class VisualAction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: VisualActionKind = Field(alias="action")
    target: Optional[str] = None
    coordinates: Optional[Tuple[int, int]] = None
    text: Optional[str] = None
    key: Optional[str] = None
    description: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, v):
        v = _normalize_token(v)
        if v == "keypress":
            return "key_press"
        return v

    @field_validator("coordinates", mode="before")
    @classmethod
    def _coerce_coordinates(cls, v):
        if v is None or v == [] or v == ():
            return None
        if isinstance(v, dict):
            v = (v.get("x"), v.get("y"))
        if isinstance(v, (list, tuple)) and len(v) == 2:
            try:
                return tuple(int(round(float(c))) for c in v)
            except (TypeError, ValueError, OverflowError) as e:
                raise ValueError(f"coordinates must be two numbers, got {v!r}") from e
        return v

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v):
        if v is None:
            return 0.0
        try:
            return min(1.0, max(0.0, float(v)))
        except (TypeError, ValueError) as e:
            raise ValueError(f"confidence must be a number, got {v!r}") from e


# =====================================================================
# Results
# =====================================================================

class Result(BaseModel):
    """Uniform success/error envelope returned across component boundaries."""

    success: bool
    value: Any = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def ok(cls, value: Any = None) -> "Result":
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: str, kind: ErrorKind) -> "Result":
        return cls(success=False, error=error, error_kind=kind)


class ProcessResult(BaseModel):
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and self.error is None

    def failure_text(self) -> str:
        return (self.stderr or self.error or f"exit code {self.exit_code}").strip()


class ExecutionOutcome(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    exit_code: Optional[int] = None
    stdout: Optional[str] = None
    stderr: Optional[str] = None
    failed_step: Optional[int] = None
    failed_action: Optional[str] = None


class VisualActionOutcome(BaseModel):
    success: bool
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    action: Optional[VisualAction] = None
    confidence: Optional[float] = None
    used_fallback: bool = False
    fallback_method: Optional[str] = None
    attempted_methods: List[str] = Field(default_factory=list)


# =====================================================================
# Attempts & task outcome
# =====================================================================

class AttemptOutcome(BaseModel):
    success: bool
    reason: Optional[str] = None


class ExecutionAttempt(BaseModel):
    attempt_number: int = Field(ge=1)
    command_text: str
    plan: Optional[ExecutionPlan] = None
    action: Optional[VisualAction] = None
    outcome: AttemptOutcome
    screenshot_ref: Optional[str] = None


class TaskOutcome(BaseModel):
    task_id: Optional[str] = None
    command: Command
    classification: ClassificationResult
    status: Optional[TaskStatus] = None
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    attempts: List[ExecutionAttempt] = Field(default_factory=list)

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)
