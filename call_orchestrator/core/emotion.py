"""
Emotion classification for caller utterances.

Scores text against the AFINN sentiment lexicon, normalizes the score by the
number of tokens (the "comparative" score) and maps it onto a seven-step
emotion scale plus an intensity. A short per-conversation history feeds the
emotional trend used for prompt guidance.
"""

import re
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Protocol

from afinn import Afinn

from ..logging_config import get_logger

logger = get_logger(__name__)

HISTORY_LIMIT = 5
TREND_SPAN = 3
TREND_THRESHOLD = 0.1
HISTORY_MAX_AGE_SEC = 30 * 60

NEGATIVE_EMOTIONS = frozenset({"very_negative", "frustrated", "slightly_negative"})

_TOKEN_RE = re.compile(r"[a-z0-9']+")


class Lexicon(Protocol):
    def score(self, text: str) -> float:
        ...


@dataclass(frozen=True)
class EmotionResult:
    emotion: str
    intensity: str
    score: float
    comparative: float

    @property
    def is_negative(self) -> bool:
        return self.emotion in NEGATIVE_EMOTIONS


@dataclass(frozen=True)
class EmotionModifier:
    tone: str
    modifier: str


@dataclass
class _Sample:
    emotion: str
    comparative: float
    timestamp: float


def classify(comparative: float) -> str:
    if comparative <= -0.5:
        return "very_negative"
    if comparative < -0.2:
        return "frustrated"
    if comparative < -0.05:
        return "slightly_negative"
    if comparative < 0.05:
        return "neutral"
    if comparative < 0.2:
        return "slightly_positive"
    if comparative < 0.5:
        return "positive"
    return "excited"


def intensity_for(comparative: float) -> str:
    magnitude = abs(comparative)
    if magnitude >= 0.5:
        return "high"
    if magnitude >= 0.2:
        return "medium"
    return "low"


def emotion_modifier(emotion: str, intensity: str) -> EmotionModifier:
    """Tone guidance injected into the generation prompt."""
    if emotion in ("very_negative", "frustrated"):
        if intensity == "high":
            return EmotionModifier(
                "empathetic",
                "The caller seems very upset or frustrated. Be extremely empathetic, validate "
                "their feelings, speak calmly and reassuringly. Use phrases like \"I totally "
                "understand\", \"That sounds really frustrating\", \"I hear you\". Avoid being "
                "too cheerful.",
            )
        return EmotionModifier(
            "empathetic",
            "The caller seems a bit frustrated. Be understanding and helpful. Acknowledge "
            "their concern and show you care.",
        )
    if emotion == "slightly_negative":
        return EmotionModifier(
            "supportive",
            "The caller seems uncertain or mildly concerned. Be supportive and encouraging. "
            "Help them feel comfortable.",
        )
    if emotion == "neutral":
        return EmotionModifier(
            "balanced",
            "The caller seems calm and neutral. Maintain a friendly, balanced tone. Be "
            "helpful without being overly enthusiastic.",
        )
    if emotion == "slightly_positive":
        return EmotionModifier(
            "warm",
            "The caller seems pleasant. Match their warmth with a friendly, approachable tone.",
        )
    if emotion == "positive":
        return EmotionModifier(
            "upbeat",
            "The caller seems happy and engaged. Match their positive energy with enthusiasm "
            "and warmth.",
        )
    if emotion == "excited":
        if intensity == "high":
            return EmotionModifier(
                "enthusiastic",
                "The caller is very excited! Match their high energy! Be enthusiastic and share "
                "in their excitement. Use exclamation points and upbeat language!",
            )
        return EmotionModifier(
            "enthusiastic",
            "The caller seems excited. Be enthusiastic and positive to match their energy.",
        )
    return EmotionModifier("neutral", "Maintain a balanced, friendly tone.")


class EmotionClassifier:
    """Scores utterances and keeps a bounded emotion history per key."""

    def __init__(
        self,
        lexicon: Optional[Lexicon] = None,
        history_limit: int = HISTORY_LIMIT,
        clock: Callable[[], float] = time.time,
    ):
        self._lexicon = lexicon if lexicon is not None else Afinn()
        self._history_limit = history_limit
        self._clock = clock
        self._history: Dict[str, Deque[_Sample]] = {}

    def analyze(self, text: str) -> EmotionResult:
        """Classify text without touching any history."""
        tokens = _TOKEN_RE.findall((text or "").lower())
        if not tokens:
            return EmotionResult("neutral", "low", 0.0, 0.0)
        score = float(self._lexicon.score(text))
        comparative = score / len(tokens)
        return EmotionResult(
            emotion=classify(comparative),
            intensity=intensity_for(comparative),
            score=score,
            comparative=comparative,
        )

    def detect(self, text: str, key: str) -> EmotionResult:
        """Classify text and append the result to the history for key."""
        result = self.analyze(text)
        history = self._history.get(key)
        if history is None:
            history = deque(maxlen=self._history_limit)
            self._history[key] = history
        history.append(_Sample(result.emotion, result.comparative, self._clock()))
        logger.debug(
            "Emotion detected",
            key=key,
            emotion=result.emotion,
            intensity=result.intensity,
            comparative=round(result.comparative, 3),
        )
        return result

    def trend(self, key: str) -> str:
        """improving | declining | stable over the last few samples."""
        history = self._history.get(key)
        if not history or len(history) < 2:
            return "stable"
        recent = list(history)[-TREND_SPAN:]
        delta = recent[-1].comparative - recent[0].comparative
        if delta > TREND_THRESHOLD:
            return "improving"
        if delta < -TREND_THRESHOLD:
            return "declining"
        return "stable"

    def history_size(self, key: str) -> int:
        history = self._history.get(key)
        return len(history) if history else 0

    def clear(self, key: str) -> None:
        self._history.pop(key, None)

    def sweep_expired(self, max_age: float = HISTORY_MAX_AGE_SEC, now: Optional[float] = None) -> int:
        """Drop histories whose newest sample is older than max_age seconds."""
        now = self._clock() if now is None else now
        stale = [
            key
            for key, history in list(self._history.items())
            if not history or now - history[-1].timestamp > max_age
        ]
        for key in stale:
            self._history.pop(key, None)
        return len(stale)
