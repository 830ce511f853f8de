"""
Configuration schema for the call orchestrator.

Pydantic v2 models for every configurable component. The phrase lists that
drive the conversation exit policy, closing/fallback lines and the response
cache allow-list are plain configuration data so they can be tuned per
deployment without code changes.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ..core.conversation import (
    DEFAULT_CLOSING_LINES,
    DEFAULT_FALLBACK_LINES,
    DEFAULT_REJECTION_PHRASES,
    DEFAULT_SARCASTIC_PHRASES,
    DEFAULT_SYSTEM_PROMPT,
)
from ..core.response_cache import DEFAULT_CACHEABLE_PHRASES
from ..core.silence import DEFAULT_CHECK_IN_PROMPT, DEFAULT_SILENCE_CLOSING_LINE


class OpenAIProviderConfig(BaseModel):
    api_key: Optional[str] = None
    organization: Optional[str] = None
    chat_base_url: str = Field(default="https://api.openai.com/v1")
    tts_base_url: str = Field(default="https://api.openai.com/v1/audio/speech")
    tts_model: str = Field(default="tts-1")
    voice: str = Field(default="alloy")
    response_timeout_sec: float = Field(default=10.0)
    presence_penalty: float = Field(default=0.6)
    frequency_penalty: float = Field(default=0.3)


class ElevenLabsVoiceSettings(BaseModel):
    stability: float = Field(default=0.5)
    similarity_boost: float = Field(default=0.75)
    style: float = Field(default=0.0)
    use_speaker_boost: bool = Field(default=True)


class ElevenLabsProviderConfig(BaseModel):
    api_key: Optional[str] = None
    agent_id: Optional[str] = None
    base_url: str = Field(default="https://api.elevenlabs.io/v1")
    voice_id: str = Field(default="EXAVITQu4vr4xnSDxMaL")
    tts_model: str = Field(default="eleven_monolingual_v1")
    output_format: str = Field(default="mp3_44100_128")
    voice_settings: ElevenLabsVoiceSettings = Field(default_factory=ElevenLabsVoiceSettings)
    connect_timeout_sec: float = Field(default=10.0)
    request_timeout_sec: float = Field(default=30.0)


class ProvidersConfig(BaseModel):
    openai: OpenAIProviderConfig = Field(default_factory=OpenAIProviderConfig)
    elevenlabs: ElevenLabsProviderConfig = Field(default_factory=ElevenLabsProviderConfig)


class ConversationConfig(BaseModel):
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT)
    model: str = Field(default="gpt-4o-mini")
    max_tokens: int = Field(default=150)
    temperature: float = Field(default=0.7)
    min_temperature: float = Field(default=0.0)
    max_temperature: float = Field(default=2.0)
    history_limit: int = Field(default=10)
    emotion_window: int = Field(default=5)
    max_age_sec: float = Field(default=30 * 60)
    max_duration_sec: int = Field(default=600)
    closing_lines: List[str] = Field(default_factory=lambda: list(DEFAULT_CLOSING_LINES))
    fallback_lines: Dict[str, List[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_FALLBACK_LINES.items()}
    )
    goodbye_phrases: List[str] = Field(default_factory=lambda: ["bye", "goodbye", "hang up"])
    farewell_line: str = Field(default="It was great talking with you! Take care!")
    greeting: str = Field(default="Hello! How are you doing today?")
    listening_line: str = Field(default="I'm listening. What would you like to talk about?")
    no_input_line: str = Field(default="Sorry, I didn't quite catch that. Could you say it again?")
    error_line: str = Field(default="Hmm, I'm having a bit of trouble there. Can you try again?")
    time_limit_line: str = Field(default="I appreciate your time. Let me let you go now. Have a great day!")


class ExitPolicyConfig(BaseModel):
    rejection_phrases: List[str] = Field(default_factory=lambda: list(DEFAULT_REJECTION_PHRASES))
    sarcastic_phrases: List[str] = Field(default_factory=lambda: list(DEFAULT_SARCASTIC_PHRASES))
    rejection_threshold: int = Field(default=2)
    stalled_turn_threshold: int = Field(default=6)


class SilenceConfig(BaseModel):
    check_in_prompt: str = Field(default=DEFAULT_CHECK_IN_PROMPT)
    closing_line: str = Field(default=DEFAULT_SILENCE_CLOSING_LINE)
    gather_timeout_sec: int = Field(default=5)
    extended_gather_timeout_sec: int = Field(default=10)


class CallRegistryConfig(BaseModel):
    cleanup_max_age_sec: float = Field(default=30 * 60)
    removal_grace_sec: float = Field(default=60.0)


class WebhookConfig(BaseModel):
    max_attempts: int = Field(default=3)
    base_delay_sec: float = Field(default=5.0)
    timeout_sec: float = Field(default=30.0)
    secret: Optional[str] = None
    user_agent: str = Field(default="Call-Orchestrator-Webhook/1.0")


class ResponseCacheConfig(BaseModel):
    enabled: bool = Field(default=True)
    ttl_sec: float = Field(default=24 * 60 * 60)
    phrases: List[str] = Field(default_factory=lambda: list(DEFAULT_CACHEABLE_PHRASES))


class AudioConfig(BaseModel):
    directory: str = Field(default="data/audio")
    public_base_url: str = Field(default="http://localhost:3000")
    max_age_sec: float = Field(default=60 * 60)


class MaintenanceConfig(BaseModel):
    call_sweep_interval_sec: float = Field(default=5 * 60)
    conversation_sweep_interval_sec: float = Field(default=5 * 60)
    cache_sweep_interval_sec: float = Field(default=60 * 60)
    audio_sweep_interval_sec: float = Field(default=10 * 60)


class ServerConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)


class LoggingConfig(BaseModel):
    level: str = Field(default="info")  # debug|info|warning|error|critical


class AppConfig(BaseModel):
    default_tts_provider: str = Field(default="elevenlabs")  # elevenlabs | openai
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    exit_policy: ExitPolicyConfig = Field(default_factory=ExitPolicyConfig)
    silence: SilenceConfig = Field(default_factory=SilenceConfig)
    calls: CallRegistryConfig = Field(default_factory=CallRegistryConfig)
    webhooks: WebhookConfig = Field(default_factory=WebhookConfig)
    response_cache: ResponseCacheConfig = Field(default_factory=ResponseCacheConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)
