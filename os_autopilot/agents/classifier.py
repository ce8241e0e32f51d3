# os_autopilot/agents/classifier.py
import logging
import re
import threading
from typing import Dict, List, Pattern, Tuple

from os_autopilot.core.tal import ClassificationKind, ClassificationResult

logger = logging.getLogger(__name__)

DECISION_THRESHOLD = 0.6
ACTION_WORD_WEIGHT = 0.3

_VERBS = r"open|launch|start|run|quit|close|minimize|maximize|set|adjust|increase|decrease|play|search|find|take|create"

# (pattern, weight). Weights of matching patterns combine as independent evidence.
TASK_PATTERNS: List[Tuple[str, float]] = [
    (r"^(open|launch|start|run|execute|play|pause|quit|close|minimize|maximize)\b", 0.9),
    (r"^(click|tap|press|type|enter|input)\b", 0.9),
    (r"^(go to|navigate to|navigate|visit|browse)\b", 0.9),
    (r"^(increase|decrease|set|adjust|change|turn)\b", 0.85),
    (r"^(take|capture|screenshot|record)\b", 0.85),
    (r"^(copy|paste|cut|save|delete|move|create|make|write|send|empty)\b", 0.85),
    (r"^(search for|search|find|look for|look up)\b", 0.85),
    (r"^(refresh|reload|update|hide|show|toggle|mute|unmute)\b", 0.8),
    (rf"^(can you|could you|would you|please)\b.*\b({_VERBS})\b", 0.85),
    (r"\b(open|launch|start|run|quit|close)\b.*\b(app|application|program)\b", 0.7),
    (r"\b(notes|slack|chrome|safari|finder|terminal|mail|messages|discord|spotify|calendar|firefox|arc)\b", 0.4),
    (r"\b(brightness|volume|screenshot|window|trash|downloads|desktop|documents)\b", 0.4),
]

QUESTION_PATTERNS: List[Tuple[str, float]] = [
    (r"^(what|who|when|where|why|how|which)\b", 0.8),
    (r"^(can you tell me|do you know|tell me about|explain|describe)\b", 0.8),
    (r"^(is|are|was|were|will|would|could|should|does|do|did)\b", 0.6),
    (r"\?$", 0.7),
    (r"^(help|assistance|definition|meaning|translate)\b", 0.7),
    (r"\b(weather|time|date|definition|meaning|translation)\b", 0.3),
]

STOP_PATTERN = re.compile(r"^(stop|cancel|halt|abort)\b")
FILLER_PATTERN = re.compile(r"^(um+|uh+|er+|hmm+|wait|hold on|actually|nevermind|never mind)\b")

ACTION_WORDS = frozenset(
    """
    open launch start run execute quit close minimize maximize play pause stop
    increase decrease set adjust take capture click type press go navigate visit
    browse search find copy paste cut save delete move refresh reload update hide
    show toggle turn create make write send
    """.split()
)


def _compile(patterns: List[Tuple[str, float]]) -> List[Tuple[Pattern, float]]:
    return [(re.compile(p, re.IGNORECASE), w) for p, w in patterns]


def _combine(weights: List[float]) -> float:
    remaining = 1.0
    for w in weights:
        remaining *= 1.0 - w
    return round(1.0 - remaining, 4)


def normalize(text: str) -> str:
    return re.sub(r"\s+", " ", text.strip().lower())


class CommandClassifier:
    """
    Pattern-based command categorization with memoization.

    Results are cached by normalized text for the life of the process; the
    cache is cleared explicitly or whenever the pattern set changes.
    """

    def __init__(self):
        self.task_patterns = _compile(TASK_PATTERNS)
        self.question_patterns = _compile(QUESTION_PATTERNS)
        self._cache: Dict[str, ClassificationResult] = {}
        self._lock = threading.Lock()

    # -----------------------------------------------------
    # Public API
    # -----------------------------------------------------
    def classify(self, text) -> ClassificationResult:
        if not isinstance(text, str) or not text.strip():
            return ClassificationResult(
                kind=ClassificationKind.CLARIFICATION, confidence=0.0, reasoning="Empty or invalid input"
            )

        key = normalize(text)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        result = self._decide(key)
        with self._lock:
            self._cache[key] = result
        logger.debug("classify(%r) -> %s (%.2f)", key, result.kind.value, result.confidence)
        return result

    def clear_cache(self):
        with self._lock:
            self._cache.clear()

    def cache_size(self) -> int:
        with self._lock:
            return len(self._cache)

    def add_task_pattern(self, pattern: str, weight: float = 0.85):
        self.task_patterns.append((re.compile(pattern, re.IGNORECASE), weight))
        self.clear_cache()

    def add_question_pattern(self, pattern: str, weight: float = 0.8):
        self.question_patterns.append((re.compile(pattern, re.IGNORECASE), weight))
        self.clear_cache()

    # -----------------------------------------------------
    # Scoring
    # -----------------------------------------------------
    def has_action_words(self, text: str) -> bool:
        return any(word in ACTION_WORDS for word in re.findall(r"[a-z]+", text))

    def _score(self, text: str) -> Tuple[float, float]:
        task_hits = [w for p, w in self.task_patterns if p.search(text)]
        if self.has_action_words(text):
            task_hits.append(ACTION_WORD_WEIGHT)
        question_hits = [w for p, w in self.question_patterns if p.search(text)]
        return _combine(task_hits), _combine(question_hits)

    def _decide(self, text: str) -> ClassificationResult:
        if STOP_PATTERN.search(text):
            return ClassificationResult(
                kind=ClassificationKind.STOP, confidence=0.95, reasoning="Stop/cancel keyword detected"
            )
        if len(text) < 3:
            return ClassificationResult(
                kind=ClassificationKind.CLARIFICATION, confidence=0.9, reasoning="Command too short"
            )
        filler = FILLER_PATTERN.match(text)
        if filler:
            if not self.has_action_words(text):
                return ClassificationResult(
                    kind=ClassificationKind.CLARIFICATION, confidence=0.7, reasoning="Hesitation without an action"
                )
            text = text[filler.end():].lstrip(" ,.") or text

        task, question = self._score(text)
        if task > question and task > DECISION_THRESHOLD:
            return ClassificationResult(
                kind=ClassificationKind.TASK_EXECUTION, confidence=task, reasoning="Matches task patterns"
            )
        if question > DECISION_THRESHOLD:
            return ClassificationResult(
                kind=ClassificationKind.TEXT_RESPONSE, confidence=question, reasoning="Matches question patterns"
            )
        return ClassificationResult(
            kind=ClassificationKind.AMBIGUOUS,
            confidence=max(task, question),
            reasoning="No clear pattern match",
        )
