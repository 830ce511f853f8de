"""
Periodic sweeps over the in-memory stores.

Each sweep is a plain function of its store and the current time, so tests
call ``run_once`` with an injected ``now`` instead of waiting on timers. The
background loops only decide when to call them.
"""

import asyncio
import functools
import inspect
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .core.call_registry import CallRegistry
from .core.conversation import ConversationEngine
from .core.response_cache import ResponseCache
from .logging_config import get_logger
from .speech import AudioFileStore

logger = get_logger(__name__)


@dataclass
class SweepIntervals:
    calls: float = 5 * 60
    conversations: float = 5 * 60
    cache: float = 60 * 60
    audio: float = 10 * 60


class Maintenance:
    def __init__(
        self,
        registry: CallRegistry,
        engine: ConversationEngine,
        cache: Optional[ResponseCache] = None,
        audio_store: Optional[AudioFileStore] = None,
        *,
        audio_max_age_sec: float = 60 * 60,
        intervals: Optional[SweepIntervals] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._registry = registry
        self._engine = engine
        self._cache = cache
        self._audio_store = audio_store
        self.audio_max_age_sec = audio_max_age_sec
        self.intervals = intervals or SweepIntervals()
        self._clock = clock
        self._sleep = sleep
        self._tasks: List[asyncio.Task] = []

    def sweep_calls(self, now: Optional[float] = None) -> int:
        return len(self._registry.sweep_expired(now=now))

    def sweep_conversations(self, now: Optional[float] = None) -> int:
        return len(self._engine.sweep_expired(now=now))

    def sweep_cache(self, now: Optional[float] = None) -> int:
        if self._cache is None:
            return 0
        return self._cache.sweep_expired(now=now)

    def sweep_audio(self, now: Optional[float] = None) -> int:
        if self._audio_store is None:
            return 0
        return self._audio_store.sweep_expired(self.audio_max_age_sec, keep=self._cached_audio(), now=now)

    async def sweep_audio_in_executor(self, now: Optional[float] = None) -> int:
        """sweep_audio with the directory walk on the default executor."""
        if self._audio_store is None:
            return 0
        sweep = functools.partial(
            self._audio_store.sweep_expired, self.audio_max_age_sec, keep=self._cached_audio(), now=now
        )
        return await asyncio.get_running_loop().run_in_executor(None, sweep)

    def _cached_audio(self) -> Set[str]:
        # Snapshot on the loop thread; the cache is not thread-safe
        return self._cache.references() if self._cache is not None else set()

    def run_once(self, now: Optional[float] = None) -> Dict[str, int]:
        """Run every sweep against the same instant."""
        now = self._clock() if now is None else now
        return {
            "calls": self.sweep_calls(now),
            "conversations": self.sweep_conversations(now),
            "cache": self.sweep_cache(now),
            "audio": self.sweep_audio(now),
        }

    async def _loop(self, name: str, interval: float, sweep: Callable[[Optional[float]], Any]) -> None:
        while True:
            await self._sleep(interval)
            try:
                result = sweep(None)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("Maintenance sweep failed", sweep=name, exc_info=True)

    def start(self) -> None:
        if self._tasks:
            return
        plan = (
            ("calls", self.intervals.calls, self.sweep_calls),
            ("conversations", self.intervals.conversations, self.sweep_conversations),
            ("cache", self.intervals.cache, self.sweep_cache),
            ("audio", self.intervals.audio, self.sweep_audio_in_executor),
        )
        for name, interval, sweep in plan:
            self._tasks.append(asyncio.create_task(self._loop(name, interval, sweep), name=f"sweep-{name}"))
        logger.info("Maintenance started", intervals=vars(self.intervals))

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
