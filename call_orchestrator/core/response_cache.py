"""
Short-TTL cache of synthesized audio for canonical phrases.

Only phrases on the allow-list are cacheable, which keeps the cache small and
keeps generated dialog out of it. Entries are evicted lazily on read and by a
periodic sweep.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Set, Tuple

from prometheus_client import Counter

from ..logging_config import get_logger

logger = get_logger(__name__)

_CACHE_LOOKUPS = Counter(
    "call_orchestrator_response_cache_lookups_total",
    "Response cache lookups",
    labelnames=("result",),  # hit | miss | expired
)

DEFAULT_TTL_SEC = 24 * 60 * 60

DEFAULT_CACHEABLE_PHRASES = (
    "hello",
    "hey, are you there?",
    "i'm listening. what would you like to talk about?",
    "sorry, i didn't quite catch that. could you say it again?",
    "hmm, i'm having a bit of trouble there. can you try again?",
    "it was great talking with you! take care!",
    "well alright, thank you so much for your time!",
    "i completely understand. thanks for taking my call!",
    "no problem at all! have a great day!",
    "i appreciate you letting me know. take care!",
)


def normalize_phrase(phrase: str) -> str:
    return (phrase or "").strip().lower()


@dataclass
class CacheEntry:
    audio_ref: str
    inserted_at: float


class ResponseCache:
    def __init__(
        self,
        phrases: Iterable[str] = DEFAULT_CACHEABLE_PHRASES,
        ttl_sec: float = DEFAULT_TTL_SEC,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_sec = ttl_sec
        self._allowed = frozenset(normalize_phrase(p) for p in phrases)
        self._clock = clock
        self._entries: Dict[Tuple[str, str, str], CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def is_cacheable(self, phrase: str) -> bool:
        return normalize_phrase(phrase) in self._allowed

    @staticmethod
    def _key(provider: str, voice: Optional[str], phrase: str) -> Tuple[str, str, str]:
        return (provider, voice or "", normalize_phrase(phrase))

    def get(self, provider: str, voice: Optional[str], phrase: str) -> Optional[str]:
        key = self._key(provider, voice, phrase)
        entry = self._entries.get(key)
        if entry is None:
            _CACHE_LOOKUPS.labels("miss").inc()
            return None
        if self._clock() - entry.inserted_at > self.ttl_sec:
            self._entries.pop(key, None)
            _CACHE_LOOKUPS.labels("expired").inc()
            return None
        _CACHE_LOOKUPS.labels("hit").inc()
        return entry.audio_ref

    def put(self, provider: str, voice: Optional[str], phrase: str, audio_ref: str) -> bool:
        """Store audio_ref; returns False when the phrase is not on the allow-list."""
        if not self.is_cacheable(phrase):
            return False
        self._entries[self._key(provider, voice, phrase)] = CacheEntry(audio_ref, self._clock())
        logger.debug("Cached synthesized phrase", provider=provider, voice=voice, phrase=normalize_phrase(phrase))
        return True

    def sweep_expired(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        expired = [
            key for key, entry in list(self._entries.items())
            if now - entry.inserted_at > self.ttl_sec
        ]
        for key in expired:
            self._entries.pop(key, None)
        if expired:
            logger.info("Swept expired cache entries", count=len(expired), remaining=len(self._entries))
        return len(expired)

    def references(self) -> Set[str]:
        """Audio refs held by live entries."""
        return {entry.audio_ref for entry in self._entries.values()}
