"""Wires configured components into one process-wide service graph."""

import time
from dataclasses import dataclass
from typing import Callable, Optional

from .call_flow import CallFlow
from .config import AppConfig
from .core.call_registry import CallRegistry
from .core.conversation import ConversationEngine, ExitPolicy
from .core.emotion import EmotionClassifier
from .core.response_cache import ResponseCache
from .core.silence import SilenceEscalator
from .core.webhooks import WebhookDispatcher
from .logging_config import get_logger
from .maintenance import Maintenance, SweepIntervals
from .providers.base import AgentConnector, ResponseGenerator
from .providers.elevenlabs_agent import ElevenLabsAgentConnector
from .providers.openai_chat import OpenAIChatGenerator
from .providers.tts import ElevenLabsSynthesizer, OpenAISynthesizer
from .relay.audio_relay import AudioRelay
from .speech import AudioFileStore, SpeechService

logger = get_logger(__name__)


def media_stream_url(public_base_url: str) -> str:
    base = public_base_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/media-stream"


@dataclass
class Services:
    config: AppConfig
    registry: CallRegistry
    classifier: EmotionClassifier
    generator: ResponseGenerator
    engine: ConversationEngine
    escalator: SilenceEscalator
    cache: Optional[ResponseCache]
    speech: SpeechService
    webhooks: WebhookDispatcher
    connector: AgentConnector
    relay: AudioRelay
    flow: CallFlow
    maintenance: Maintenance
    started_at: float

    async def close(self) -> None:
        self.flow.close()
        await self.maintenance.stop()
        await self.webhooks.drain()
        await self.webhooks.close()
        await self.speech.close()
        await self.generator.close()
        await self.connector.close()
        logger.info("Services closed")


def build_services(config: AppConfig, clock: Callable[[], float] = time.time) -> Services:
    registry = CallRegistry(cleanup_max_age_sec=config.calls.cleanup_max_age_sec, clock=clock)
    conv = config.conversation
    classifier = EmotionClassifier(history_limit=conv.emotion_window, clock=clock)
    generator = OpenAIChatGenerator(config.providers.openai)
    engine = ConversationEngine(
        generator,
        classifier,
        system_prompt=conv.system_prompt,
        model=conv.model,
        max_tokens=conv.max_tokens,
        temperature=conv.temperature,
        min_temperature=conv.min_temperature,
        max_temperature=conv.max_temperature,
        presence_penalty=config.providers.openai.presence_penalty,
        frequency_penalty=config.providers.openai.frequency_penalty,
        history_limit=conv.history_limit,
        emotion_window=conv.emotion_window,
        max_age_sec=conv.max_age_sec,
        max_duration_sec=conv.max_duration_sec,
        closing_lines=conv.closing_lines,
        fallback_lines=conv.fallback_lines,
        exit_policy=ExitPolicy(
            rejection_phrases=tuple(config.exit_policy.rejection_phrases),
            sarcastic_phrases=tuple(config.exit_policy.sarcastic_phrases),
            rejection_threshold=config.exit_policy.rejection_threshold,
            stalled_turn_threshold=config.exit_policy.stalled_turn_threshold,
        ),
        clock=clock,
    )
    escalator = SilenceEscalator(
        registry,
        check_in_prompt=config.silence.check_in_prompt,
        closing_line=config.silence.closing_line,
        gather_timeout=config.silence.gather_timeout_sec,
        extended_gather_timeout=config.silence.extended_gather_timeout_sec,
    )
    cache = None
    if config.response_cache.enabled:
        cache = ResponseCache(config.response_cache.phrases, ttl_sec=config.response_cache.ttl_sec, clock=clock)
    store = AudioFileStore(config.audio.directory, config.audio.public_base_url, clock=clock)
    speech = SpeechService(
        {
            "elevenlabs": ElevenLabsSynthesizer(config.providers.elevenlabs),
            "openai": OpenAISynthesizer(config.providers.openai),
        },
        store,
        cache=cache,
        default_provider=config.default_tts_provider,
    )
    webhooks = WebhookDispatcher(
        max_attempts=config.webhooks.max_attempts,
        base_delay_sec=config.webhooks.base_delay_sec,
        timeout_sec=config.webhooks.timeout_sec,
        secret=config.webhooks.secret,
        user_agent=config.webhooks.user_agent,
    )
    connector = ElevenLabsAgentConnector(config.providers.elevenlabs)
    relay = AudioRelay(registry, connector, classifier=classifier)
    flow = CallFlow(
        registry,
        engine,
        escalator,
        speech,
        webhooks,
        conversation=conv,
        media_stream_url=media_stream_url(config.audio.public_base_url),
        removal_grace_sec=config.calls.removal_grace_sec,
    )
    maint = config.maintenance
    maintenance = Maintenance(
        registry,
        engine,
        cache=cache,
        audio_store=store,
        audio_max_age_sec=config.audio.max_age_sec,
        intervals=SweepIntervals(
            calls=maint.call_sweep_interval_sec,
            conversations=maint.conversation_sweep_interval_sec,
            cache=maint.cache_sweep_interval_sec,
            audio=maint.audio_sweep_interval_sec,
        ),
        clock=clock,
    )
    return Services(
        config=config,
        registry=registry,
        classifier=classifier,
        generator=generator,
        engine=engine,
        escalator=escalator,
        cache=cache,
        speech=speech,
        webhooks=webhooks,
        connector=connector,
        relay=relay,
        flow=flow,
        maintenance=maintenance,
        started_at=clock(),
    )
