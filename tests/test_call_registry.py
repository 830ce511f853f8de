"""
Unit tests for core.call_registry.

Tests cover:
- Status transitions and the connected_time invariant
- Duration, finish idempotence
- Emotion samples and the rolling sentiment summary
- Silence trace and reset
- Registry misses and the cleanup sweep
"""

import asyncio

import pytest

from call_orchestrator.core.call_registry import CallRegistry, summarize_sentiment
from call_orchestrator.core.models import CallConfig, CallStatus, SilenceKind


class TestCreate:
    """Tests for call creation."""

    def test_defaults(self, registry, clock):
        """A new record is initiated with a generated conversation id."""
        record = registry.create("CA1")

        assert record.status is CallStatus.INITIATED
        assert record.conversation_id == "conv_CA1"
        assert record.start_time == clock.now
        assert record.last_speech_time == clock.now
        assert record.connected_time is None
        assert "CA1" in registry

    def test_overwrite_last_writer_wins(self, registry):
        """Creating the same id twice replaces the record."""
        registry.create("CA1", CallConfig(tts_provider="openai"))
        record = registry.create("CA1", CallConfig(tts_provider="elevenlabs"))

        assert registry.get("CA1") is record
        assert record.config.tts_provider == "elevenlabs"
        assert registry.active_count() == 1


class TestStatus:
    """Tests for set_status and duration."""

    def test_connected_time_set_once(self, registry, clock):
        """connected_time is stamped on the first in-progress and never moves."""
        registry.create("CA1")
        registry.set_status("CA1", "ringing")
        assert registry.get("CA1").connected_time is None

        clock.advance(3)
        registry.set_status("CA1", "in-progress")
        first = registry.get("CA1").connected_time
        assert first == clock.now

        clock.advance(10)
        registry.set_status("CA1", "in-progress")
        assert registry.get("CA1").connected_time == first

    def test_status_never_moves_backwards(self, registry):
        registry.create("CA1")
        registry.set_status("CA1", "in-progress")
        registry.set_status("CA1", "ringing")
        assert registry.get("CA1").status is CallStatus.IN_PROGRESS

    def test_terminal_status_is_sticky(self, registry):
        registry.create("CA1")
        registry.set_status("CA1", "busy")
        registry.set_status("CA1", "completed")
        registry.set_status("CA1", "in-progress")

        record = registry.get("CA1")
        assert record.status is CallStatus.BUSY
        assert record.connected_time is None

    def test_unknown_status_ignored(self, registry):
        registry.create("CA1")
        registry.set_status("CA1", "teleported")
        assert registry.get("CA1").status is CallStatus.INITIATED

    def test_live_duration(self, registry, clock):
        """Duration is now - connected while the call is live."""
        registry.create("CA1")
        registry.set_status("CA1", "in-progress")
        clock.advance(42.7)

        assert registry.recompute_duration("CA1").duration == 42

    def test_duration_zero_without_connect(self, registry, clock):
        registry.create("CA1")
        clock.advance(30)
        assert registry.recompute_duration("CA1").duration == 0


class TestFinish:
    """Tests for finish()."""

    def test_finish_sets_end_and_duration(self, registry, clock):
        registry.create("CA1")
        registry.set_status("CA1", "in-progress")
        clock.advance(65)

        record = registry.finish("CA1", "completed")
        assert record.end_time == clock.now
        assert record.duration == 65
        assert record.status is CallStatus.COMPLETED

    def test_finish_is_idempotent(self, registry, clock):
        registry.create("CA1")
        registry.set_status("CA1", "in-progress")
        clock.advance(10)
        first = registry.finish("CA1", "completed")
        end, duration = first.end_time, first.duration

        clock.advance(100)
        again = registry.finish("CA1", "failed")
        assert again.end_time == end
        assert again.duration == duration
        assert again.status is CallStatus.COMPLETED

    def test_finish_with_non_terminal_status_completes(self, registry):
        registry.create("CA1")
        record = registry.finish("CA1", "in-progress")
        assert record.status is CallStatus.COMPLETED

    def test_recompute_after_finish_uses_end_time(self, registry, clock):
        registry.create("CA1")
        registry.set_status("CA1", "in-progress")
        clock.advance(20)
        registry.finish("CA1")
        clock.advance(500)
        assert registry.recompute_duration("CA1").duration == 20


class TestSentiment:
    """Tests for record_emotion and the sentiment summary."""

    def test_summary_uses_last_five(self, registry):
        registry.create("CA1")
        for score in (-1.0, 0.5, 0.5, 0.5, 0.5, 0.5):
            registry.record_emotion("CA1", "positive", "medium", score)

        record = registry.get("CA1")
        assert len(record.emotions) == 6
        assert record.sentiment.samples == 5
        assert record.sentiment.average == 0.5
        assert record.sentiment.overall == "positive"

    def test_summary_recomputed_on_every_sample(self, registry):
        registry.create("CA1")
        registry.record_emotion("CA1", "positive", "high", 0.6)
        assert registry.get("CA1").sentiment.overall == "positive"

        registry.record_emotion("CA1", "very_negative", "high", -0.9)
        summary = registry.get("CA1").sentiment
        assert summary.samples == 2
        assert summary.overall == "negative"

    def test_current_emotion_is_last(self, registry):
        registry.create("CA1")
        registry.record_emotion("CA1", "neutral", "low", 0.0)
        registry.record_emotion("CA1", "frustrated", "medium", -0.3)
        assert registry.get("CA1").current_emotion.label == "frustrated"

    @pytest.mark.parametrize(
        "scores,expected",
        [
            ([], "neutral"),
            ([0.1], "neutral"),
            ([0.11], "positive"),
            ([-0.1], "neutral"),
            ([-0.2, 0.0], "neutral"),
            ([-0.3, -0.1], "negative"),
        ],
    )
    def test_bucket_thresholds(self, scores, expected):
        assert summarize_sentiment(scores).overall == expected


class TestSilence:
    """Tests for the silence trace."""

    def test_reset_silence_zeroes_count_and_stamps_speech(self, registry, clock):
        registry.create("CA1")
        registry.record_silence_event("CA1", SilenceKind.GENTLE_PROMPT, 1)
        registry.record_silence_event("CA1", SilenceKind.GRACEFUL_END, 2)
        assert registry.get("CA1").silence_count == 2

        clock.advance(7)
        record = registry.reset_silence("CA1")
        assert record.silence_count == 0
        assert record.last_speech_time == clock.now
        assert [e.kind for e in record.silence_events] == [SilenceKind.GENTLE_PROMPT, SilenceKind.GRACEFUL_END]


class TestMisses:
    """Every operation on an unknown call is a no-op returning None."""

    @pytest.mark.parametrize(
        "op,args",
        [
            ("get", ()),
            ("set_status", ("completed",)),
            ("recompute_duration", ()),
            ("finish", ("completed",)),
            ("append_transcript", ("user", "hi")),
            ("record_emotion", ("neutral", "low", 0.0)),
            ("record_silence_event", (SilenceKind.GENTLE_PROMPT, 1)),
            ("reset_silence", ()),
            ("record_tool_call", ("lookup", {})),
            ("set_agent_conversation", ("agent-conv",)),
            ("set_recording", ("https://rec",)),
            ("update_lead_qualification", ({"budget": "yes"},)),
            ("status_view", ()),
            ("webhook_payload", ()),
            ("remove", ()),
        ],
    )
    def test_unknown_call(self, registry, op, args):
        assert getattr(registry, op)("missing", *args) is None


class TestSweep:
    """Tests for the cleanup sweep."""

    def test_record_untouched_for_31_minutes_is_swept(self, registry, clock):
        registry.create("old")
        clock.advance(20 * 60)
        registry.create("young")
        clock.advance(11 * 60)

        expired = registry.sweep_expired()
        assert expired == ["old"]
        assert registry.get("old") is None
        assert registry.get("young") is not None

    def test_sweep_ignores_status(self, registry, clock):
        registry.create("live")
        registry.set_status("live", "in-progress")
        clock.advance(31 * 60)
        registry.sweep_expired()
        assert "live" not in registry

    def test_custom_max_age(self, clock):
        registry = CallRegistry(cleanup_max_age_sec=60, clock=clock)
        registry.create("CA1")
        clock.advance(61)
        assert registry.sweep_expired() == ["CA1"]


class TestViews:
    """Tests for status_view and webhook_payload."""

    def test_status_view_refreshes_live_duration(self, registry, clock):
        registry.create("CA1", CallConfig(metadata={"lead": "42"}))
        registry.set_status("CA1", "in-progress")
        registry.append_transcript("CA1", "user", "hello")
        registry.append_transcript("CA1", "assistant", "hi there")
        clock.advance(12)

        view = registry.status_view("CA1")
        assert view["callSid"] == "CA1"
        assert view["status"] == "in-progress"
        assert view["duration"] == 12
        assert view["transcript"] == "user: hello\nassistant: hi there"
        assert view["metadata"] == {"lead": "42"}

    def test_webhook_payload(self, registry, clock):
        registry.create("CA1")
        registry.set_status("CA1", "in-progress")
        registry.record_tool_call("CA1", "book_meeting", {"day": "friday"}, success=False)
        registry.set_recording("CA1", "https://recordings/CA1.mp3")
        registry.set_agent_conversation("CA1", "agent-conv-1")
        registry.update_lead_qualification("CA1", {"budget": "ok"})
        registry.record_silence_event("CA1", SilenceKind.GENTLE_PROMPT, 1)
        clock.advance(30)
        registry.finish("CA1", "completed")

        payload = registry.webhook_payload("CA1")
        assert payload["status"] == "completed"
        assert payload["duration"] == 30
        assert payload["agentConversationId"] == "agent-conv-1"
        assert payload["recording"] == "https://recordings/CA1.mp3"
        assert payload["leadQualification"] == {"budget": "ok"}
        assert payload["toolCalls"][0]["name"] == "book_meeting"
        assert payload["toolCalls"][0]["success"] is False
        assert payload["silenceEvents"][0]["type"] == "gentle_prompt"
        assert payload["silenceEvents"][0]["silenceCount"] == 1
        assert payload["timestamp"].startswith("20")


@pytest.mark.asyncio
async def test_lock_is_per_call(registry):
    registry.create("A")
    registry.create("B")
    lock_a = registry.lock("A")

    assert registry.lock("A") is lock_a
    assert registry.lock("B") is not lock_a

    async with lock_a:
        # another call is never blocked by A's lock
        await asyncio.wait_for(registry.lock("B").acquire(), timeout=0.1)
        registry.lock("B").release()
