"""
In-memory registry of active calls.

Every operation is keyed by the gateway call id and is a synchronous
read-modify-write, so each one is atomic with respect to the event loop.
Sequences that span an ``await`` take the per-call lock from ``lock()``.

Operations on an unknown call id are no-ops that return None: gateway
callbacks routinely race the cleanup sweep and must never raise.
"""

import asyncio
import time
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional

from ..logging_config import get_logger
from .models import (
    CallConfig,
    CallRecord,
    CallStatus,
    EmotionSample,
    SentimentSummary,
    SilenceEvent,
    SilenceKind,
    ToolInvocation,
    TranscriptEntry,
    iso,
)

logger = get_logger(__name__)

SENTIMENT_WINDOW = 5
SENTIMENT_THRESHOLD = 0.1
DEFAULT_CLEANUP_MAX_AGE_SEC = 30 * 60


def summarize_sentiment(scores: List[float]) -> SentimentSummary:
    """Average the most recent scores and bucket at +/-0.1."""
    recent = list(scores)[-SENTIMENT_WINDOW:]
    if not recent:
        return SentimentSummary()
    avg = sum(recent) / len(recent)
    if avg > SENTIMENT_THRESHOLD:
        overall = "positive"
    elif avg < -SENTIMENT_THRESHOLD:
        overall = "negative"
    else:
        overall = "neutral"
    return SentimentSummary(overall=overall, average=round(avg, 2), samples=len(recent))


def format_transcript(record: CallRecord) -> str:
    return "\n".join(f"{entry.role}: {entry.text}" for entry in record.transcript)


class CallRegistry:
    """Owns every CallRecord, keyed by call id."""

    def __init__(
        self,
        cleanup_max_age_sec: float = DEFAULT_CLEANUP_MAX_AGE_SEC,
        clock: Callable[[], float] = time.time,
    ):
        self.cleanup_max_age_sec = cleanup_max_age_sec
        self._clock = clock
        self._calls: Dict[str, CallRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # -- lifecycle -----------------------------------------------------

    def create(
        self,
        call_id: str,
        config: Optional[CallConfig] = None,
        conversation_id: Optional[str] = None,
    ) -> CallRecord:
        """Register a call. An existing record under the same id is replaced."""
        now = self._clock()
        if call_id in self._calls:
            logger.warning("Overwriting existing call record", call_id=call_id)
        record = CallRecord(
            call_id=call_id,
            conversation_id=conversation_id or f"conv_{call_id}",
            config=config or CallConfig(),
            start_time=now,
            last_update=now,
            last_speech_time=now,
        )
        self._calls[call_id] = record
        logger.debug("Call registered", call_id=call_id, conversation_id=record.conversation_id)
        return record

    def get(self, call_id: str) -> Optional[CallRecord]:
        return self._calls.get(call_id)

    def __contains__(self, call_id: str) -> bool:
        return call_id in self._calls

    def active_count(self) -> int:
        return len(self._calls)

    def call_ids(self) -> List[str]:
        return list(self._calls.keys())

    def lock(self, call_id: str) -> asyncio.Lock:
        """Per-call lock for read-modify-write sequences that cross an await."""
        lock = self._locks.get(call_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[call_id] = lock
        return lock

    def remove(self, call_id: str) -> Optional[CallRecord]:
        self._locks.pop(call_id, None)
        record = self._calls.pop(call_id, None)
        if record is not None:
            logger.debug("Call removed", call_id=call_id)
        return record

    def sweep_expired(self, max_age: Optional[float] = None, now: Optional[float] = None) -> List[str]:
        """
        Drop every record older than max_age seconds, regardless of status.

        Works on a snapshot of the keys so it is safe to run while calls are
        being mutated.
        """
        max_age = self.cleanup_max_age_sec if max_age is None else max_age
        now = self._clock() if now is None else now
        expired = [
            call_id
            for call_id, record in list(self._calls.items())
            if now - record.start_time > max_age
        ]
        for call_id in expired:
            self.remove(call_id)
        if expired:
            logger.info("Swept expired calls", count=len(expired), remaining=len(self._calls))
        return expired

    # -- status --------------------------------------------------------

    def set_status(self, call_id: str, status: Any) -> Optional[CallRecord]:
        """
        Apply a gateway status.

        Status only moves forward (initiated < ringing < in-progress <
        terminal); in-progress may repeat. connected_time is stamped on the
        first transition into in-progress and never again.
        """
        record = self._calls.get(call_id)
        if record is None:
            return None
        new_status = CallStatus.parse(status)
        if new_status is None:
            logger.warning("Ignoring unknown call status", call_id=call_id, status=status)
            return record
        now = self._clock()
        current = record.status
        if current.is_terminal or new_status.rank < current.rank:
            logger.debug(
                "Ignoring out-of-order status",
                call_id=call_id,
                current=current.value,
                requested=new_status.value,
            )
            return record
        record.status = new_status
        record.last_update = now
        if new_status is CallStatus.IN_PROGRESS and record.connected_time is None:
            record.connected_time = now
        return record

    def recompute_duration(self, call_id: str) -> Optional[CallRecord]:
        record = self._calls.get(call_id)
        if record is None:
            return None
        if record.connected_time is not None:
            end = record.end_time if record.end_time is not None else self._clock()
            record.duration = max(0, int(end - record.connected_time))
            record.last_update = self._clock()
        return record

    def finish(self, call_id: str, status: Any = CallStatus.COMPLETED) -> Optional[CallRecord]:
        """Stamp the end time and the final duration. Repeated calls are no-ops."""
        record = self._calls.get(call_id)
        if record is None:
            return None
        if record.end_time is not None:
            return record
        final_status = CallStatus.parse(status) or CallStatus.COMPLETED
        if not final_status.is_terminal:
            final_status = CallStatus.COMPLETED
        now = self._clock()
        record.status = final_status
        record.end_time = now
        record.last_update = now
        if record.connected_time is not None:
            record.duration = max(0, int(now - record.connected_time))
        logger.info(
            "Call finished",
            call_id=call_id,
            status=final_status.value,
            duration=record.duration,
        )
        return record

    # -- dialog --------------------------------------------------------

    def append_transcript(self, call_id: str, role: str, text: str) -> Optional[CallRecord]:
        record = self._calls.get(call_id)
        if record is None:
            return None
        now = self._clock()
        record.transcript.append(TranscriptEntry(role=role, text=text, timestamp=now))
        record.last_update = now
        return record

    def record_emotion(self, call_id: str, label: str, intensity: str, score: float) -> Optional[CallRecord]:
        """Append an emotion sample and recompute the sentiment summary."""
        record = self._calls.get(call_id)
        if record is None:
            return None
        now = self._clock()
        record.emotions.append(EmotionSample(label=label, intensity=intensity, score=score, timestamp=now))
        record.sentiment = summarize_sentiment([e.score for e in record.emotions[-SENTIMENT_WINDOW:]])
        record.last_update = now
        return record

    def record_silence_event(self, call_id: str, kind: SilenceKind, count: int) -> Optional[CallRecord]:
        record = self._calls.get(call_id)
        if record is None:
            return None
        now = self._clock()
        record.silence_count = count
        record.silence_events.append(SilenceEvent(kind=SilenceKind(kind), count=count, timestamp=now))
        record.last_update = now
        return record

    def reset_silence(self, call_id: str) -> Optional[CallRecord]:
        record = self._calls.get(call_id)
        if record is None:
            return None
        now = self._clock()
        record.silence_count = 0
        record.last_speech_time = now
        record.last_update = now
        return record

    def record_tool_call(
        self,
        call_id: str,
        name: str,
        parameters: Optional[Dict[str, Any]] = None,
        success: bool = False,
        result: Any = None,
    ) -> Optional[CallRecord]:
        record = self._calls.get(call_id)
        if record is None:
            return None
        now = self._clock()
        record.tool_calls.append(ToolInvocation(
            name=name,
            parameters=dict(parameters or {}),
            success=bool(success),
            result=result,
            timestamp=now,
        ))
        record.last_update = now
        return record

    def set_agent_conversation(self, call_id: str, agent_conversation_id: str) -> Optional[CallRecord]:
        record = self._calls.get(call_id)
        if record is None:
            return None
        record.agent_conversation_id = agent_conversation_id
        record.last_update = self._clock()
        return record

    def set_recording(self, call_id: str, recording_url: str) -> Optional[CallRecord]:
        record = self._calls.get(call_id)
        if record is None:
            return None
        record.recording_url = recording_url
        record.last_update = self._clock()
        return record

    def update_lead_qualification(self, call_id: str, data: Dict[str, Any]) -> Optional[CallRecord]:
        record = self._calls.get(call_id)
        if record is None:
            return None
        record.lead_qualification.update(data or {})
        record.last_update = self._clock()
        return record

    # -- views ---------------------------------------------------------

    def status_view(self, call_id: str) -> Optional[Dict[str, Any]]:
        """Live status payload; refreshes the duration of in-progress calls."""
        record = self._calls.get(call_id)
        if record is None:
            return None
        if record.status is CallStatus.IN_PROGRESS:
            self.recompute_duration(call_id)
        current = record.current_emotion
        return {
            "callSid": record.call_id,
            "conversationId": record.conversation_id,
            "status": record.status.value,
            "duration": record.duration,
            "currentEmotion": current.label if current else None,
            "transcript": format_transcript(record),
            "sentiment": asdict(record.sentiment),
            "metadata": record.config.metadata,
            "ttsProvider": record.config.tts_provider,
            "silenceCount": record.silence_count,
            "silenceEvents": [_silence_event_dict(e) for e in record.silence_events],
        }

    def webhook_payload(self, call_id: str) -> Optional[Dict[str, Any]]:
        """Call-outcome payload delivered to the callback URL."""
        record = self._calls.get(call_id)
        if record is None:
            return None
        return {
            "callSid": record.call_id,
            "conversationId": record.conversation_id,
            "agentConversationId": record.agent_conversation_id,
            "status": record.status.value,
            "duration": record.duration,
            "transcript": format_transcript(record),
            "sentiment": asdict(record.sentiment),
            "emotions": [
                {
                    "emotion": e.label,
                    "intensity": e.intensity,
                    "score": e.score,
                    "timestamp": iso(e.timestamp),
                }
                for e in record.emotions
            ],
            "leadQualification": dict(record.lead_qualification),
            "recording": record.recording_url,
            "toolCalls": [
                {
                    "name": t.name,
                    "parameters": t.parameters,
                    "success": t.success,
                    "result": t.result,
                    "timestamp": iso(t.timestamp),
                }
                for t in record.tool_calls
            ],
            "metadata": dict(record.config.metadata),
            "ttsProvider": record.config.tts_provider,
            "silenceEvents": [_silence_event_dict(e) for e in record.silence_events],
            "timestamp": iso(self._clock()),
        }


def _silence_event_dict(event: SilenceEvent) -> Dict[str, Any]:
    return {"type": event.kind.value, "silenceCount": event.count, "timestamp": iso(event.timestamp)}
