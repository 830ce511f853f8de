"""
Turn-based call flow.

Glue between gateway callbacks and the core components: registering calls,
answering them, running speech turns through the conversation engine,
escalating silence, and reporting call outcomes once the gateway marks a call
terminal. Every gateway-facing result is a GatewayInstruction; failures
degrade to a spoken line rather than an error the caller can hear.
"""

import asyncio
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .config import ConversationConfig
from .core.call_registry import CallRegistry
from .core.conversation import CONVERSATION_MODES, ConversationEngine
from .core.instructions import GatewayInstruction
from .core.models import CallConfig, CallRecord, CallStatus
from .core.silence import SilenceEscalator
from .core.webhooks import WebhookDispatcher, validate_webhook_url
from .errors import CallConfigError, InvalidWebhookURLError
from .logging_config import get_logger
from .speech import SpeechService

logger = get_logger(__name__)

E164_PATTERN = r"^\+[1-9]\d{1,14}$"


class CallRequest(BaseModel):
    """Caller-supplied configuration for one call, validated before anything is placed."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    call_sid: str = Field(min_length=1)
    to: str = Field(pattern=E164_PATTERN)
    tts_provider: Optional[str] = None
    voice_id: Optional[str] = None
    conversation_mode: str = "interactive"
    agent_mode: bool = False
    agent_id: Optional[str] = None
    contact_id: Optional[str] = None
    max_duration: int = Field(default=600, ge=30, le=3600)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, ge=1, le=4096)
    qualification_questions: List[str] = Field(default_factory=list)
    transfer_number: Optional[str] = Field(default=None, pattern=E164_PATTERN)
    transfer_conditions: List[str] = Field(default_factory=list)
    record_call: bool = False
    callback_url: Optional[str] = None
    language: str = Field(default="en", min_length=2, max_length=8)
    system_prompt: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("tts_provider")
    @classmethod
    def _known_provider(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in ("elevenlabs", "openai"):
            raise ValueError(f"unknown TTS provider {value!r}")
        return value

    @field_validator("conversation_mode")
    @classmethod
    def _known_mode(cls, value: str) -> str:
        if value not in CONVERSATION_MODES:
            raise ValueError(f"unknown conversation mode {value!r}")
        return value

    @field_validator("callback_url")
    @classmethod
    def _http_callback(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return validate_webhook_url(value)

    def to_call_config(self, default_provider: str) -> CallConfig:
        return CallConfig(
            tts_provider=self.tts_provider or default_provider,
            voice_id=self.voice_id,
            conversation_mode=self.conversation_mode,
            agent_mode=self.agent_mode,
            agent_id=self.agent_id,
            contact_id=self.contact_id,
            max_duration=self.max_duration,
            qualification_questions=list(self.qualification_questions),
            transfer_number=self.transfer_number,
            transfer_conditions=list(self.transfer_conditions),
            record_call=self.record_call,
            callback_url=self.callback_url,
            language=self.language,
            system_prompt=self.system_prompt,
            metadata=dict(self.metadata),
        )


_RANGE_ERRORS = {
    "greater_than",
    "greater_than_equal",
    "less_than",
    "less_than_equal",
    "too_short",
    "too_long",
    "string_too_short",
    "string_too_long",
}
_CHOICE_FIELDS = {"tts_provider", "ttsProvider", "conversation_mode", "conversationMode"}


def _reason_for(error: Dict[str, Any]) -> str:
    kind = error.get("type", "")
    loc = error.get("loc") or ()
    if kind == "missing":
        return CallConfigError.MISSING
    if kind in _RANGE_ERRORS:
        return CallConfigError.OUT_OF_RANGE
    if kind in ("literal_error", "enum") or (loc and loc[0] in _CHOICE_FIELDS):
        return CallConfigError.INVALID_CHOICE
    return CallConfigError.INVALID_FORMAT


def validate_call_request(data: Dict[str, Any]) -> CallRequest:
    """
    Validate a call request payload.

    Raises:
        CallConfigError: for the first offending field, with a reason that
            separates missing fields from out-of-range, unknown-choice and
            malformed values.
    """
    if not isinstance(data, dict):
        raise CallConfigError("body", CallConfigError.INVALID_FORMAT, "request body must be a JSON object")
    try:
        return CallRequest.model_validate(data)
    except ValidationError as exc:
        error = exc.errors()[0]
        field = ".".join(str(part) for part in error.get("loc") or ("body",))
        raise CallConfigError(field, _reason_for(error), error.get("msg", "invalid value")) from exc


class CallFlow:
    def __init__(
        self,
        registry: CallRegistry,
        engine: ConversationEngine,
        escalator: SilenceEscalator,
        speech: SpeechService,
        webhooks: WebhookDispatcher,
        *,
        conversation: Optional[ConversationConfig] = None,
        media_stream_url: Optional[str] = None,
        removal_grace_sec: float = 60.0,
    ):
        self._registry = registry
        self._engine = engine
        self._escalator = escalator
        self._speech = speech
        self._webhooks = webhooks
        self._lines = conversation or ConversationConfig()
        self.media_stream_url = media_stream_url
        self.removal_grace_sec = removal_grace_sec
        self._removals: Dict[str, asyncio.TimerHandle] = {}
        phrases = "|".join(re.escape(p.lower()) for p in self._lines.goodbye_phrases if p)
        self._goodbye_re = re.compile(rf"\b({phrases})\b") if phrases else None

    # -- registration --------------------------------------------------

    def register_call(self, request: CallRequest) -> CallRecord:
        config = request.to_call_config(self._speech.default_provider)
        self._cancel_removal(request.call_sid)
        record = self._registry.create(request.call_sid, config)
        if not config.agent_mode:
            self._engine.start(
                record.conversation_id,
                system_prompt=config.system_prompt,
                mode=config.conversation_mode,
                max_duration=config.max_duration,
                temperature=request.temperature,
                max_tokens=request.max_tokens,
                language=config.language,
                qualification_questions=config.qualification_questions,
                transfer_number=config.transfer_number,
                transfer_conditions=config.transfer_conditions,
                metadata=dict(config.metadata),
            )
        logger.info(
            "Call registered",
            call_id=record.call_id,
            conversation_id=record.conversation_id,
            agent_mode=config.agent_mode,
            tts_provider=config.tts_provider,
            has_callback=bool(config.callback_url),
        )
        return record

    async def answer(self, call_id: str) -> GatewayInstruction:
        """First instruction for a connected call: stream to the agent, or greet and listen."""
        record = self._registry.get(call_id)
        if record is None:
            logger.info("Answering unregistered call with defaults", call_id=call_id)
            record = self._registry.create(call_id, CallConfig(tts_provider=self._speech.default_provider))

        if record.config.agent_mode:
            if not self.media_stream_url:
                logger.error("Agent-mode call but no media stream URL configured", call_id=call_id)
                return GatewayInstruction().say(self._lines.error_line).hangup()
            return GatewayInstruction().stream(self.media_stream_url)

        greeting = self._lines.greeting
        self._registry.append_transcript(call_id, "assistant", greeting)
        instruction = GatewayInstruction().say(greeting).gather(self._escalator.gather_timeout)
        return await self._voice(instruction, record.config, call_id)

    # -- gateway callbacks ---------------------------------------------

    async def on_status(self, call_id: str, status: str) -> Optional[CallRecord]:
        parsed = CallStatus.parse(status)
        if parsed is None:
            logger.warning("Ignoring unknown call status", call_id=call_id, status=status)
            return self._registry.get(call_id)
        if call_id not in self._registry:
            logger.debug("Status for unknown call", call_id=call_id, status=parsed.value)
            return None

        async with self._registry.lock(call_id):
            current = self._registry.get(call_id)
            already_finished = current is not None and current.end_time is not None
            record = self._registry.set_status(call_id, parsed)
            if record is None or not parsed.is_terminal or already_finished:
                return record
            record = self._registry.finish(call_id, parsed)
            summary = self._engine.end(record.conversation_id)
            self._report(record, summary)
        self._schedule_removal(call_id)
        return record

    def on_recording(self, call_id: str, recording_url: str) -> Optional[CallRecord]:
        record = self._registry.set_recording(call_id, recording_url)
        if record is None:
            logger.debug("Recording for unknown call", call_id=call_id)
        return record

    async def on_speech(self, call_id: str, speech: Optional[str], confidence: Optional[float] = None) -> GatewayInstruction:
        record = self._registry.get(call_id)
        config = record.config if record is not None else CallConfig(tts_provider=self._speech.default_provider)
        conversation_id = record.conversation_id if record is not None else f"conv_{call_id}"
        text = (speech or "").strip()

        self._escalator.on_speech(call_id)
        if not text:
            instruction = GatewayInstruction().say(self._lines.no_input_line).gather(self._escalator.gather_timeout)
            return await self._voice(instruction, config, call_id)

        logger.info("Speech received", call_id=call_id, text_preview=text[:64], confidence=confidence)
        try:
            if record is None:
                return await self._speech_turn(call_id, conversation_id, config, text)
            async with self._registry.lock(call_id):
                return await self._speech_turn(call_id, conversation_id, config, text)
        except Exception:
            logger.error("Speech turn failed", call_id=call_id, exc_info=True)
            return GatewayInstruction().say(self._lines.error_line).gather(self._escalator.gather_timeout)

    async def on_no_speech(self, call_id: str, silence_count: Optional[int] = None) -> GatewayInstruction:
        record = self._registry.get(call_id)
        config = record.config if record is not None else CallConfig(tts_provider=self._speech.default_provider)
        decision = self._escalator.on_timeout(call_id, silence_count)
        if not decision.duplicate:
            for action in decision.instruction.actions:
                if action.verb == "say":
                    self._registry.append_transcript(call_id, "assistant", action.text)
        return await self._voice(decision.instruction, config, call_id)

    # -- internals -----------------------------------------------------

    def is_goodbye(self, text: str) -> bool:
        return bool(self._goodbye_re and self._goodbye_re.search(text.lower()))

    async def _speech_turn(self, call_id: str, conversation_id: str, config: CallConfig, text: str) -> GatewayInstruction:
        self._registry.append_transcript(call_id, "user", text)

        if self.is_goodbye(text):
            logger.info("Caller said goodbye", call_id=call_id)
            self._engine.mark_ended(conversation_id)
            return await self._closing(call_id, config, self._lines.farewell_line)

        if self._engine.is_max_duration_exceeded(conversation_id):
            logger.info("Conversation reached max duration", call_id=call_id, conversation_id=conversation_id)
            return await self._closing(call_id, config, self._lines.time_limit_line)

        result = await self._engine.respond(conversation_id, text)
        self._registry.record_emotion(
            call_id, result.emotion.emotion, result.emotion.intensity, result.emotion.comparative
        )

        reply = result.response_text or self._lines.listening_line
        self._registry.append_transcript(call_id, "assistant", reply)
        instruction = GatewayInstruction().say(reply)
        if result.should_end_call:
            logger.info("Ending call after turn", call_id=call_id, reason=result.exit_reason)
            instruction.hangup()
        else:
            instruction.gather(self._escalator.gather_timeout)
        return await self._voice(instruction, config, call_id)

    async def _closing(self, call_id: str, config: CallConfig, line: str) -> GatewayInstruction:
        self._registry.append_transcript(call_id, "assistant", line)
        return await self._voice(GatewayInstruction().say(line).hangup(), config, call_id)

    async def _voice(self, instruction: GatewayInstruction, config: CallConfig, call_id: str) -> GatewayInstruction:
        """Swap each say for synthesized audio when the call's TTS provider delivers it."""
        for action in instruction.actions:
            if action.verb != "say" or not action.text:
                continue
            url = await self._speech.speak(action.text, config.tts_provider, config.voice_id, call_id)
            if url:
                action.verb = "play"
                action.url = url
                action.text = None
        return instruction

    def _report(self, record: CallRecord, summary: Optional[Dict[str, Any]]) -> None:
        url = record.config.callback_url
        if not url:
            return
        payload = self._registry.webhook_payload(record.call_id)
        if summary is not None:
            payload["conversationSummary"] = summary
        try:
            self._webhooks.enqueue(url, payload)
        except InvalidWebhookURLError as exc:
            logger.warning("Skipping webhook with invalid callback URL", call_id=record.call_id, error=str(exc))

    def _schedule_removal(self, call_id: str) -> None:
        self._cancel_removal(call_id)
        loop = asyncio.get_running_loop()
        self._removals[call_id] = loop.call_later(self.removal_grace_sec, self._remove, call_id)

    def _cancel_removal(self, call_id: str) -> None:
        handle = self._removals.pop(call_id, None)
        if handle is not None:
            handle.cancel()

    def _remove(self, call_id: str) -> None:
        self._removals.pop(call_id, None)
        self._registry.remove(call_id)

    def pending_removals(self) -> int:
        return len(self._removals)

    def close(self) -> None:
        for handle in self._removals.values():
            handle.cancel()
        self._removals.clear()
