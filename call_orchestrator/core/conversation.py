"""
Turn-based conversation engine.

Holds the dialog state of every logical conversation and produces the next
assistant line for a caller utterance: normalize, classify emotion, evaluate
the exit policy, then either close politely or ask the response generator for
a reply. Provider failures never propagate; an emotion-keyed fallback line is
returned instead so the call never goes silent.
"""

import asyncio
import random
import re
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Sequence

from ..errors import ProviderError
from ..logging_config import get_logger
from ..providers.base import ChatMessage, GenerationRequest, ResponseGenerator
from .emotion import EmotionClassifier, EmotionResult, emotion_modifier

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are a professional appointment setter calling business owners to schedule meetings for advertising sales representatives.

YOUR ROLE:
- You work for an advertising company
- Your goal is to set appointments for sales reps to present advertising packages
- You are calling business owners who may be busy or skeptical

PERSONALITY:
- Professional but friendly and conversational
- Respectful of their time
- Quick to read the room and know when to exit gracefully

CONVERSATION RULES:
1. Keep responses VERY brief (1-2 sentences max) - this is a phone call
2. Be natural and conversational, use contractions
3. Get to the point quickly - business owners are busy
4. If they're interested, get their availability for a meeting
5. If they're clearly not interested, politely exit
6. NEVER be pushy or aggressive

EMOTIONAL INTELLIGENCE - WHEN TO EXIT:
- If caller is RUDE, CONDESCENDING, or SARCASTIC, end the call politely
- If caller says "not interested" multiple times, exit gracefully
- If caller is hostile or aggressive, end immediately
- If conversation is going nowhere after 3-4 exchanges, exit politely

POLITE EXIT PHRASES (use these when needed):
- "Well alright, thank you so much for your time!"
- "I completely understand. Thanks for taking my call!"
- "No problem at all! Have a great day!"
- "I appreciate you letting me know. Take care!"

Remember: This is outbound sales. Not everyone will be interested. Know when to move on professionally."""

DEFAULT_CLOSING_LINES = (
    "Well alright, thank you so much for your time!",
    "I completely understand. Thanks for taking my call!",
    "No problem at all! Have a great day!",
    "I appreciate you letting me know. Take care!",
)

DEFAULT_FALLBACK_LINES = {
    "very_negative": (
        "I understand. Thanks for your time!",
        "No problem at all. Have a good day!",
        "I appreciate you letting me know.",
    ),
    "frustrated": (
        "I completely get it. Thanks anyway!",
        "No worries at all. Take care!",
        "I understand. Thanks for listening!",
    ),
    "neutral": (
        "I hear you. Would a quick meeting work for you?",
        "Makes sense. When might be a better time?",
        "I understand. Can I share just one quick detail?",
    ),
    "positive": (
        "Great! When would work best for you?",
        "Awesome! What day looks good for a meeting?",
        "Perfect! Let's get something on the calendar.",
    ),
    "excited": (
        "That's great to hear! When can we meet?",
        "Excellent! What time works for you?",
        "Wonderful! Let's set up a time to talk more!",
    ),
}

DEFAULT_REJECTION_PHRASES = (
    "not interested",
    "don't call",
    "remove me",
    "take me off",
    "stop calling",
    "never call",
    "no thanks",
    "not now",
)

DEFAULT_SARCASTIC_PHRASES = (
    "wow really",
    "oh great",
    "sure thing",
    "yeah right",
    "sounds amazing",
    "how exciting",
)

MODE_INSTRUCTIONS = {
    "scripted": "CONVERSATION MODE: Scripted - Follow the provided script closely.",
    "faq": "CONVERSATION MODE: FAQ - Focus on answering questions directly and concisely.",
}
CONVERSATION_MODES = ("interactive", "scripted", "faq")

_FILLER_RE = re.compile(r"\b(um|uh|uhm|er|ah|like|you know|i mean|sort of|kind of)\b", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_input(text: str) -> str:
    """Strip filler words and collapse whitespace."""
    cleaned = _FILLER_RE.sub("", text or "")
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    EXITING = "exiting"
    ENDED = "ended"


@dataclass
class ExitPolicy:
    """Phrase lists and thresholds that decide when to close the call."""
    rejection_phrases: Sequence[str] = DEFAULT_REJECTION_PHRASES
    sarcastic_phrases: Sequence[str] = DEFAULT_SARCASTIC_PHRASES
    rejection_threshold: int = 2
    stalled_turn_threshold: int = 6

    def is_rejection(self, text: str) -> bool:
        lowered = text.lower()
        return any(phrase in lowered for phrase in self.rejection_phrases)

    def is_sarcastic(self, text: str) -> bool:
        lowered = text.lower()
        return any(phrase in lowered for phrase in self.sarcastic_phrases)

    def evaluate(self, state: "ConversationState", text: str, emotion: EmotionResult) -> Optional[str]:
        """
        Return the exit reason, or None to continue.

        Counts a rejection on the state as a side effect; the counter never
        decreases.
        """
        if self.is_rejection(text):
            state.rejection_count += 1
        if state.rejection_count >= self.rejection_threshold:
            return "repeated_rejection"
        if emotion.emotion == "very_negative" and emotion.intensity == "high":
            return "hostile"
        if state.turn_count >= self.stalled_turn_threshold and state.rejection_count > 0:
            return "stalled"
        if emotion.is_negative and self.is_sarcastic(text):
            return "sarcasm"
        return None


@dataclass
class HistoryEntry:
    role: str
    content: str
    timestamp: float


@dataclass
class EmotionSnapshot:
    emotion: str
    intensity: str
    tone: str
    trend: str
    comparative: float = 0.0


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    conversation_total: int = 0
    error: bool = False


@dataclass
class TurnResult:
    response_text: str
    should_end_call: bool
    emotion: EmotionSnapshot
    token_usage: TokenUsage
    exit_reason: Optional[str] = None


@dataclass
class EmotionRecord:
    emotion: str
    score: float
    comparative: float
    timestamp: float


@dataclass
class ConversationState:
    conversation_id: str
    start_time: float
    history: Deque[HistoryEntry]
    emotions: Deque[EmotionRecord]
    status: ConversationStatus = ConversationStatus.ACTIVE
    turn_count: int = 0
    rejection_count: int = 0
    should_exit: bool = False
    total_tokens: int = 0
    system_prompt: Optional[str] = None
    mode: str = "interactive"
    model: str = "gpt-4o-mini"
    max_tokens: int = 150
    temperature: float = 0.7
    max_duration: int = 600
    language: str = "en"
    enable_emotion_detection: bool = True
    qualification_questions: List[str] = field(default_factory=list)
    transfer_number: Optional[str] = None
    transfer_conditions: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


class ConversationEngine:
    """Owns every ConversationState, keyed by conversation id."""

    def __init__(
        self,
        generator: ResponseGenerator,
        classifier: EmotionClassifier,
        *,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        model: str = "gpt-4o-mini",
        max_tokens: int = 150,
        temperature: float = 0.7,
        min_temperature: float = 0.0,
        max_temperature: float = 2.0,
        presence_penalty: float = 0.6,
        frequency_penalty: float = 0.3,
        history_limit: int = 10,
        emotion_window: int = 5,
        max_age_sec: float = 30 * 60,
        max_duration_sec: int = 600,
        closing_lines: Iterable[str] = DEFAULT_CLOSING_LINES,
        fallback_lines: Optional[Dict[str, Sequence[str]]] = None,
        exit_policy: Optional[ExitPolicy] = None,
        selector: Callable[[Sequence[str]], str] = random.choice,
        clock: Callable[[], float] = time.time,
    ):
        self._generator = generator
        self._classifier = classifier
        self.system_prompt = system_prompt
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.min_temperature = min_temperature
        self.max_temperature = max_temperature
        self.presence_penalty = presence_penalty
        self.frequency_penalty = frequency_penalty
        self.history_limit = history_limit
        self.emotion_window = emotion_window
        self.max_age_sec = max_age_sec
        self.max_duration_sec = max_duration_sec
        self.closing_lines = tuple(closing_lines)
        self.fallback_lines = {
            k: tuple(v) for k, v in (fallback_lines or DEFAULT_FALLBACK_LINES).items()
        }
        self.exit_policy = exit_policy or ExitPolicy()
        self._select = selector
        self._clock = clock
        self._conversations: Dict[str, ConversationState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # -- state ---------------------------------------------------------

    def _new_state(self, conversation_id: str) -> ConversationState:
        return ConversationState(
            conversation_id=conversation_id,
            start_time=self._clock(),
            history=deque(maxlen=self.history_limit),
            emotions=deque(maxlen=self.emotion_window),
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            max_duration=self.max_duration_sec,
        )

    def start(self, conversation_id: str, **settings: Any) -> ConversationState:
        """
        Create (or reset) a conversation with per-call settings.

        Recognized settings: system_prompt, mode, model, max_tokens,
        temperature, max_duration, language, enable_emotion_detection,
        qualification_questions, transfer_number, transfer_conditions,
        metadata. None values keep the engine default.
        """
        state = self._new_state(conversation_id)
        for key, value in settings.items():
            if value is None:
                continue
            if not hasattr(state, key) or key in ("conversation_id", "history", "emotions", "start_time"):
                logger.debug("Ignoring unknown conversation setting", conversation_id=conversation_id, setting=key)
                continue
            if key == "mode" and value not in CONVERSATION_MODES:
                logger.warning("Unknown conversation mode, using interactive", conversation_id=conversation_id, mode=value)
                value = "interactive"
            setattr(state, key, value)
        self._conversations[conversation_id] = state
        logger.info(
            "Conversation initialized",
            conversation_id=conversation_id,
            mode=state.mode,
            max_duration=state.max_duration,
            has_custom_prompt=bool(state.system_prompt),
            model=state.model,
            max_tokens=state.max_tokens,
            temperature=state.temperature,
        )
        return state

    def get(self, conversation_id: str) -> ConversationState:
        """Return the conversation, creating it with defaults on first use."""
        state = self._conversations.get(conversation_id)
        if state is None:
            state = self._new_state(conversation_id)
            self._conversations[conversation_id] = state
        return state

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._conversations

    def active_count(self) -> int:
        return len(self._conversations)

    def is_max_duration_exceeded(self, conversation_id: str) -> bool:
        state = self._conversations.get(conversation_id)
        if state is None:
            return False
        return self._clock() - state.start_time >= state.max_duration

    def update_metadata(self, conversation_id: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
        state = self.get(conversation_id)
        state.metadata.update(metadata or {})
        return state.metadata

    def recent_context(self, conversation_id: str, count: int = 3) -> List[str]:
        """The last `count` user utterances still in the history window."""
        state = self._conversations.get(conversation_id)
        if state is None:
            return []
        user_lines = [entry.content for entry in state.history if entry.role == "user"]
        return user_lines[-count:] if count > 0 else []

    # -- turns ---------------------------------------------------------

    async def respond(self, conversation_id: str, user_input: str) -> TurnResult:
        """Produce the assistant's next line for one caller utterance."""
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        async with lock:
            return await self._respond(conversation_id, user_input)

    async def _respond(self, conversation_id: str, user_input: str) -> TurnResult:
        state = self.get(conversation_id)
        text = normalize_input(user_input)
        emotion = self._classifier.detect(text, conversation_id)

        if state.status is not ConversationStatus.ACTIVE:
            return self._closing_turn(state, emotion, reason="already_ended")

        reason = self.exit_policy.evaluate(state, text, emotion)
        if reason is not None:
            return self._closing_turn(state, emotion, reason=reason)

        now = self._clock()
        state.emotions.append(EmotionRecord(emotion.emotion, emotion.score, emotion.comparative, now))
        state.history.append(HistoryEntry("user", text, now))

        modifier = emotion_modifier(emotion.emotion, emotion.intensity)
        trend = self._classifier.trend(conversation_id)
        snapshot = EmotionSnapshot(emotion.emotion, emotion.intensity, modifier.tone, trend, emotion.comparative)

        request = GenerationRequest(
            model=state.model,
            messages=self.build_messages(state, modifier.modifier, trend),
            max_tokens=state.max_tokens,
            temperature=self.adjust_temperature(state.temperature, emotion.emotion),
            presence_penalty=self.presence_penalty,
            frequency_penalty=self.frequency_penalty,
            call_id=conversation_id,
        )

        try:
            response = await self._generator.generate(request)
            reply = (response.text or "").strip()
            if not reply:
                raise ProviderError("generator", "empty response")
        except ProviderError as exc:
            logger.warning(
                "Response generation failed, using fallback",
                conversation_id=conversation_id,
                provider=exc.provider,
                status=exc.status,
                error=str(exc),
            )
            fallback = self._select(self.fallback_lines.get(emotion.emotion) or self.fallback_lines["neutral"])
            self._complete_turn(state, fallback)
            return TurnResult(
                response_text=fallback,
                should_end_call=False,
                emotion=snapshot,
                token_usage=TokenUsage(conversation_total=state.total_tokens, error=True),
            )

        state.total_tokens += response.total_tokens
        self._complete_turn(state, reply)
        logger.debug(
            "Turn completed",
            conversation_id=conversation_id,
            turn=state.turn_count,
            emotion=emotion.emotion,
            tokens=response.total_tokens,
        )
        return TurnResult(
            response_text=reply,
            should_end_call=False,
            emotion=snapshot,
            token_usage=TokenUsage(
                prompt_tokens=response.prompt_tokens,
                completion_tokens=response.completion_tokens,
                total_tokens=response.total_tokens,
                conversation_total=state.total_tokens,
            ),
        )

    def _complete_turn(self, state: ConversationState, reply: str) -> None:
        state.history.append(HistoryEntry("assistant", reply, self._clock()))
        state.turn_count += 1

    def _closing_turn(self, state: ConversationState, emotion: EmotionResult, reason: str) -> TurnResult:
        state.status = ConversationStatus.EXITING
        state.should_exit = True
        line = self._select(self.closing_lines)
        state.status = ConversationStatus.ENDED
        logger.info(
            "Conversation exiting",
            conversation_id=state.conversation_id,
            reason=reason,
            turns=state.turn_count,
            rejections=state.rejection_count,
            emotion=emotion.emotion,
        )
        return TurnResult(
            response_text=line,
            should_end_call=True,
            emotion=EmotionSnapshot(emotion.emotion, emotion.intensity, "exiting", "ending", emotion.comparative),
            token_usage=TokenUsage(conversation_total=state.total_tokens),
            exit_reason=reason,
        )

    def adjust_temperature(self, base: float, emotion: str) -> float:
        if emotion == "positive":
            return min(self.max_temperature, base + 0.1)
        if emotion in ("frustrated", "very_negative"):
            return max(self.min_temperature, base - 0.2)
        return base

    def build_messages(self, state: ConversationState, modifier: str, trend: str) -> List[ChatMessage]:
        prompt = (state.system_prompt or self.system_prompt) + "\n\n"
        if state.enable_emotion_detection:
            prompt += f"CURRENT CALLER EMOTIONAL STATE:\n{modifier}\n"
            if trend != "stable":
                prompt += f"\nEMOTIONAL TREND: The caller's mood is {trend}. "
                if trend == "improving":
                    prompt += "They seem more receptive. This is a good sign!"
                else:
                    prompt += "They seem less interested. Consider wrapping up politely."
        mode_instruction = MODE_INSTRUCTIONS.get(state.mode)
        if mode_instruction:
            prompt += "\n\n" + mode_instruction

        messages = [ChatMessage("system", prompt)]
        messages.extend(ChatMessage(entry.role, entry.content) for entry in state.history)
        return messages

    # -- teardown ------------------------------------------------------

    def summary(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        state = self._conversations.get(conversation_id)
        if state is None:
            return None
        return {
            "turns": state.turn_count,
            "duration": int(self._clock() - state.start_time),
            "rejections": state.rejection_count,
            "topicsDiscussed": self.recent_context(conversation_id, 5),
            "totalTokensUsed": state.total_tokens,
            "outcome": "not_interested" if state.should_exit else "completed",
            "conversationMode": state.mode,
            "metadata": dict(state.metadata),
            "emotions": [
                {"emotion": e.emotion, "score": e.score, "timestamp": e.timestamp}
                for e in state.emotions
            ],
            "transcript": [{"role": h.role, "content": h.content} for h in state.history],
        }

    def mark_ended(self, conversation_id: str) -> bool:
        """Stop further turns but keep the state for the final summary."""
        state = self._conversations.get(conversation_id)
        if state is None:
            return False
        state.status = ConversationStatus.ENDED
        return True

    def end(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        """Summarize and drop the conversation along with its emotion history."""
        summary = self.summary(conversation_id)
        self._conversations.pop(conversation_id, None)
        self._locks.pop(conversation_id, None)
        self._classifier.clear(conversation_id)
        if summary is not None:
            logger.info(
                "Conversation ended",
                conversation_id=conversation_id,
                turns=summary["turns"],
                outcome=summary["outcome"],
            )
        return summary

    def sweep_expired(self, now: Optional[float] = None) -> List[str]:
        """Purge conversations older than max_age_sec and their emotion history."""
        now = self._clock() if now is None else now
        expired = [
            cid
            for cid, state in list(self._conversations.items())
            if now - state.start_time > self.max_age_sec
        ]
        for cid in expired:
            self._conversations.pop(cid, None)
            self._locks.pop(cid, None)
            self._classifier.clear(cid)
        self._classifier.sweep_expired(self.max_age_sec, now=now)
        if expired:
            logger.info("Swept expired conversations", count=len(expired), remaining=len(self._conversations))
        return expired
