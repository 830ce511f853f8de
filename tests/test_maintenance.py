"""Unit tests for the periodic sweeps."""

import asyncio
import os
import threading

import pytest

from call_orchestrator.core.response_cache import ResponseCache
from call_orchestrator.maintenance import Maintenance, SweepIntervals
from call_orchestrator.speech import AudioFileStore


@pytest.fixture
def cache(clock):
    return ResponseCache(clock=clock)


@pytest.fixture
def store(tmp_path, clock):
    return AudioFileStore(str(tmp_path / "audio"), "http://localhost:8080", clock=clock)


@pytest.fixture
def maintenance(registry, engine, cache, store, clock):
    return Maintenance(registry, engine, cache, store, audio_max_age_sec=3600, clock=clock)


def _age(store, name, seconds):
    path = store.path_for(name)
    mtime = os.stat(path).st_mtime - seconds
    os.utime(path, (mtime, mtime))


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_sweeps_every_store(self, maintenance, registry, engine, cache, store, clock):
        registry.create("old-call")
        await engine.respond("old-conv", "tell me more")
        cache.put("elevenlabs", None, "hello", "cached.mp3")

        clock.advance(25 * 60 * 60)
        registry.create("new-call")

        counts = maintenance.run_once()

        assert counts["calls"] == 1
        assert counts["conversations"] == 1
        assert counts["cache"] == 1
        assert registry.call_ids() == ["new-call"]
        assert "old-conv" not in engine
        assert len(cache) == 0

    def test_nothing_to_sweep(self, maintenance):
        assert maintenance.run_once() == {"calls": 0, "conversations": 0, "cache": 0, "audio": 0}

    def test_audio_sweep_keeps_cached_files(self, maintenance, cache, store):
        cached = store.save(b"hello")
        stale = store.save(b"other")
        cache.put("elevenlabs", None, "hello", cached)
        _age(store, cached, 7200)
        _age(store, stale, 7200)

        now = os.stat(store.path_for(store.save(b"fresh"))).st_mtime
        assert maintenance.sweep_audio(now) == 1
        assert store.exists(cached)
        assert not store.exists(stale)

    def test_optional_stores(self, registry, engine, clock):
        maintenance = Maintenance(registry, engine, clock=clock)
        assert maintenance.sweep_cache() == 0
        assert maintenance.sweep_audio() == 0


class TestLoops:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, registry, engine, clock):
        registry.create("old-call")
        clock.advance(60 * 60)
        sleeps = []

        async def fast_sleep(delay):
            sleeps.append(delay)
            await asyncio.sleep(0)

        maintenance = Maintenance(
            registry,
            engine,
            intervals=SweepIntervals(calls=1, conversations=2, cache=3, audio=4),
            clock=clock,
            sleep=fast_sleep,
        )
        maintenance.start()
        assert maintenance.running

        for _ in range(5):
            await asyncio.sleep(0)

        await maintenance.stop()
        assert not maintenance.running
        assert "old-call" not in registry
        assert {1, 2, 3, 4} <= set(sleeps)

    @pytest.mark.asyncio
    async def test_failing_sweep_keeps_looping(self, registry, engine, clock, monkeypatch):
        calls = []

        def boom(now=None):
            calls.append(now)
            raise RuntimeError("disk on fire")

        async def fast_sleep(delay):
            await asyncio.sleep(0)

        maintenance = Maintenance(registry, engine, clock=clock, sleep=fast_sleep)
        monkeypatch.setattr(maintenance, "sweep_calls", boom)
        maintenance.start()
        for _ in range(6):
            await asyncio.sleep(0)
        await maintenance.stop()

        assert len(calls) >= 2


class TestAudioSweepInExecutor:
    @pytest.mark.asyncio
    async def test_directory_walk_runs_off_the_event_loop(self, maintenance, cache, store, monkeypatch):
        cached = store.save(b"hello")
        stale = store.save(b"other")
        cache.put("elevenlabs", None, "hello", cached)
        _age(store, cached, 7200)
        _age(store, stale, 7200)
        now = os.stat(store.path_for(store.save(b"fresh"))).st_mtime

        threads = []
        original = store.sweep_expired

        def recording_sweep(*args, **kwargs):
            threads.append(threading.get_ident())
            return original(*args, **kwargs)

        monkeypatch.setattr(store, "sweep_expired", recording_sweep)

        assert await maintenance.sweep_audio_in_executor(now) == 1
        assert threads and threads[0] != threading.get_ident()
        assert store.exists(cached)
        assert not store.exists(stale)

    @pytest.mark.asyncio
    async def test_without_store(self, registry, engine, clock):
        maintenance = Maintenance(registry, engine, clock=clock)
        assert await maintenance.sweep_audio_in_executor() == 0
