"""
Speech output for the turn-based path.

Synthesizes assistant lines through the call's TTS provider, stores the audio
in a directory the gateway fetches from, and reuses cached audio for the
canonical phrases on the response cache allow-list. A synthesis failure yields
no URL, in which case the gateway speaks the text with its own voice.
"""

import os
import re
import time
import uuid
from typing import Callable, Dict, Iterable, Optional

from .core.response_cache import ResponseCache
from .errors import ProviderError
from .logging_config import get_logger
from .providers.base import SpeechSynthesizer, SynthesisRequest

logger = get_logger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+\.(mp3|wav|ulaw)$")

CONTENT_TYPES = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "ulaw": "audio/basic",
}


class AudioFileStore:
    """Flat directory of generated audio files addressed by file name."""

    def __init__(self, directory: str, public_base_url: str, clock: Callable[[], float] = time.time):
        self.directory = directory
        self.public_base_url = public_base_url.rstrip("/")
        self._clock = clock
        os.makedirs(directory, exist_ok=True)

    @staticmethod
    def is_valid_name(name: str) -> bool:
        return bool(_NAME_RE.match(name or ""))

    def path_for(self, name: str) -> Optional[str]:
        if not self.is_valid_name(name):
            return None
        return os.path.join(self.directory, name)

    def url_for(self, name: str) -> str:
        return f"{self.public_base_url}/audio/{name}"

    def exists(self, name: str) -> bool:
        path = self.path_for(name)
        return path is not None and os.path.isfile(path)

    def save(self, audio: bytes, extension: str = "mp3", prefix: str = "speech") -> str:
        name = f"{prefix}-{uuid.uuid4().hex}.{extension}"
        path = os.path.join(self.directory, name)
        with open(path, "wb") as f:
            f.write(audio)
        logger.debug("Audio file created", file_path=path, size=len(audio))
        return name

    def sweep_expired(self, max_age: float, keep: Iterable[str] = (), now: Optional[float] = None) -> int:
        """Delete files older than max_age seconds, except names in keep."""
        now = self._clock() if now is None else now
        keep = set(keep)
        removed = 0
        try:
            entries = list(os.scandir(self.directory))
        except FileNotFoundError:
            return 0
        for entry in entries:
            if not entry.is_file() or entry.name in keep or not self.is_valid_name(entry.name):
                continue
            try:
                if now - entry.stat().st_mtime > max_age:
                    os.remove(entry.path)
                    removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Error cleaning up audio file", file_path=entry.path, error=str(e))
        if removed:
            logger.info("Swept expired audio files", count=removed)
        return removed


class SpeechService:
    def __init__(
        self,
        synthesizers: Dict[str, SpeechSynthesizer],
        store: AudioFileStore,
        cache: Optional[ResponseCache] = None,
        default_provider: str = "elevenlabs",
    ):
        self._synthesizers = dict(synthesizers)
        self._store = store
        self._cache = cache
        self.default_provider = default_provider

    @property
    def store(self) -> AudioFileStore:
        return self._store

    def _resolve(self, provider: Optional[str]) -> Optional[SpeechSynthesizer]:
        name = provider or self.default_provider
        synth = self._synthesizers.get(name)
        if synth is None and name != self.default_provider:
            logger.warning("Unknown TTS provider, using default", provider=name, default=self.default_provider)
            synth = self._synthesizers.get(self.default_provider)
        return synth

    async def speak(
        self,
        text: str,
        provider: Optional[str] = None,
        voice: Optional[str] = None,
        call_id: Optional[str] = None,
    ) -> Optional[str]:
        """Return a URL the gateway can play, or None to fall back to gateway speech."""
        if not text:
            return None
        synth = self._resolve(provider)
        if synth is None:
            logger.warning("No TTS provider configured", call_id=call_id, provider=provider)
            return None

        if self._cache is not None and self._cache.is_cacheable(text):
            cached = self._cache.get(synth.name, voice, text)
            if cached and self._store.exists(cached):
                logger.debug("Serving cached speech", call_id=call_id, provider=synth.name)
                return self._store.url_for(cached)

        try:
            audio = await synth.synthesize(SynthesisRequest(text=text, voice=voice, call_id=call_id))
        except ProviderError as exc:
            logger.warning(
                "Speech synthesis failed, falling back to gateway speech",
                call_id=call_id,
                provider=exc.provider,
                status=exc.status,
                error=str(exc),
            )
            return None

        try:
            name = self._store.save(audio, synth.file_extension)
        except OSError as exc:
            logger.error(
                "Could not store synthesized audio, falling back to gateway speech",
                call_id=call_id,
                directory=self._store.directory,
                error=str(exc),
            )
            return None
        if self._cache is not None:
            self._cache.put(synth.name, voice, text, name)
        return self._store.url_for(name)

    async def close(self) -> None:
        for synth in self._synthesizers.values():
            await synth.close()
