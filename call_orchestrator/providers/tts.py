"""
Speech synthesis adapters (ElevenLabs and OpenAI audio.speech).

Both return encoded audio bytes (mp3 by default) that the speech service
stores and hands to the gateway as a playable URL.
"""

import asyncio
from typing import Any, Callable, Dict, Optional

import aiohttp

from ..config import ElevenLabsProviderConfig, OpenAIProviderConfig
from ..errors import ProviderError
from ..logging_config import get_logger
from .base import SpeechSynthesizer, SynthesisRequest
from .openai_chat import make_http_headers

logger = get_logger(__name__)


class _HTTPSynthesizer(SpeechSynthesizer):
    def __init__(self, session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None):
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self) -> None:
        if self._session and not self._session.closed:
            return
        factory = self._session_factory or aiohttp.ClientSession
        self._session = factory()

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _post_audio(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
        timeout_sec: float,
        call_id: Optional[str],
    ) -> bytes:
        await self._ensure_session()
        assert self._session
        try:
            async with self._session.post(
                url, json=payload, headers=headers, timeout=aiohttp.ClientTimeout(total=timeout_sec)
            ) as response:
                if response.status >= 400:
                    body = await response.text()
                    logger.error(
                        "TTS request failed",
                        provider=self.name,
                        call_id=call_id,
                        status=response.status,
                        body_preview=body[:128],
                    )
                    raise ProviderError(self.name, f"HTTP {response.status}", status=response.status)
                audio = await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ProviderError(self.name, f"connection error: {exc or exc.__class__.__name__}") from exc
        if not audio:
            raise ProviderError(self.name, "empty audio response")
        return audio


class ElevenLabsSynthesizer(_HTTPSynthesizer):
    name = "elevenlabs"
    file_extension = "mp3"

    def __init__(
        self,
        provider_config: ElevenLabsProviderConfig,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        super().__init__(session_factory)
        self._config = provider_config

    def _request_parts(self, request: SynthesisRequest):
        if not self._config.api_key:
            raise ProviderError(self.name, "API key not configured")
        voice_id = request.voice or self._config.voice_id
        url = (
            f"{self._config.base_url.rstrip('/')}/text-to-speech/{voice_id}"
            f"?output_format={self._config.output_format}"
        )
        settings = self._config.voice_settings.model_dump()
        settings.update({k: v for k, v in request.style.items() if k in settings and v is not None})
        payload = {
            "text": request.text,
            "model_id": request.model or self._config.tts_model,
            "voice_settings": settings,
        }
        headers = {
            "xi-api-key": self._config.api_key,
            "Content-Type": "application/json",
            "Accept": "audio/mpeg",
        }
        return voice_id, url, payload, headers

    async def synthesize(self, request: SynthesisRequest) -> bytes:
        voice_id, url, payload, headers = self._request_parts(request)
        logger.info(
            "ElevenLabs TTS synthesis started",
            call_id=request.call_id,
            voice=voice_id,
            text_preview=request.text[:64],
        )
        return await self._post_audio(url, payload, headers, self._config.request_timeout_sec, request.call_id)


class OpenAISynthesizer(_HTTPSynthesizer):
    name = "openai"
    file_extension = "mp3"

    def __init__(
        self,
        provider_config: OpenAIProviderConfig,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        super().__init__(session_factory)
        self._config = provider_config

    async def synthesize(self, request: SynthesisRequest) -> bytes:
        if not self._config.api_key:
            raise ProviderError(self.name, "API key not configured")
        # Field is `response_format`, not `format`
        payload = {
            "model": request.model or self._config.tts_model,
            "input": request.text,
            "voice": request.voice or self._config.voice,
            "response_format": "mp3",
        }
        speed = request.style.get("speed")
        if speed is not None:
            payload["speed"] = speed
        logger.info(
            "OpenAI TTS synthesis started",
            call_id=request.call_id,
            model=payload["model"],
            voice=payload["voice"],
            text_preview=request.text[:64],
        )
        return await self._post_audio(
            self._config.tts_base_url,
            payload,
            make_http_headers(self._config.api_key, self._config.organization),
            self._config.response_timeout_sec,
            request.call_id,
        )
