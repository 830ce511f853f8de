"""
Core data models for the call orchestrator.

Typed records for everything the Call Registry owns. Timestamps are unix
seconds (float) taken from the registry clock.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class CallStatus(str, Enum):
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BUSY = "busy"
    NO_ANSWER = "no-answer"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        # All terminal statuses share the top rank
        return _STATUS_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> Optional["CallStatus"]:
        """Parse a gateway status string; unknown values return None."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


TERMINAL_STATUSES = frozenset({
    CallStatus.COMPLETED,
    CallStatus.FAILED,
    CallStatus.BUSY,
    CallStatus.NO_ANSWER,
})

_STATUS_RANK = {
    CallStatus.INITIATED: 0,
    CallStatus.RINGING: 1,
    CallStatus.IN_PROGRESS: 2,
    CallStatus.COMPLETED: 3,
    CallStatus.FAILED: 3,
    CallStatus.BUSY: 3,
    CallStatus.NO_ANSWER: 3,
}


class SilenceKind(str, Enum):
    GENTLE_PROMPT = "gentle_prompt"
    GRACEFUL_END = "graceful_end"


def iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class TranscriptEntry:
    role: str  # user | assistant
    text: str
    timestamp: float


@dataclass
class EmotionSample:
    label: str
    intensity: str
    score: float
    timestamp: float


@dataclass
class SentimentSummary:
    overall: str = "neutral"  # positive | neutral | negative
    average: float = 0.0
    samples: int = 0


@dataclass
class SilenceEvent:
    kind: SilenceKind
    count: int
    timestamp: float


@dataclass
class ToolInvocation:
    name: str
    parameters: Dict[str, Any]
    success: bool
    result: Any
    timestamp: float


@dataclass
class CallConfig:
    """Per-call configuration snapshot taken at placement time."""
    tts_provider: str = "elevenlabs"
    voice_id: Optional[str] = None
    conversation_mode: str = "interactive"  # interactive | scripted | faq
    agent_mode: bool = False
    agent_id: Optional[str] = None
    contact_id: Optional[str] = None
    max_duration: int = 600
    qualification_questions: List[str] = field(default_factory=list)
    transfer_number: Optional[str] = None
    transfer_conditions: List[str] = field(default_factory=list)
    record_call: bool = False
    callback_url: Optional[str] = None
    language: str = "en"
    system_prompt: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CallRecord:
    """Complete in-memory state for one tracked call."""
    call_id: str
    conversation_id: str
    config: CallConfig = field(default_factory=CallConfig)
    status: CallStatus = CallStatus.INITIATED

    start_time: float = 0.0
    connected_time: Optional[float] = None
    end_time: Optional[float] = None
    last_update: float = 0.0
    duration: int = 0

    transcript: List[TranscriptEntry] = field(default_factory=list)
    emotions: List[EmotionSample] = field(default_factory=list)
    sentiment: SentimentSummary = field(default_factory=SentimentSummary)

    silence_count: int = 0
    silence_events: List[SilenceEvent] = field(default_factory=list)
    last_speech_time: Optional[float] = None

    tool_calls: List[ToolInvocation] = field(default_factory=list)

    agent_conversation_id: Optional[str] = None
    recording_url: Optional[str] = None
    lead_qualification: Dict[str, Any] = field(default_factory=dict)

    @property
    def current_emotion(self) -> Optional[EmotionSample]:
        return self.emotions[-1] if self.emotions else None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal
