"""
Unit tests for core.conversation.

Tests cover:
- Input normalization
- Exit policy (rejections, hostility, stalled conversations, sarcasm)
- Prompt construction and generation parameters
- Fallback lines on provider failure
- Bounded history and emotion windows
- Conversation lifecycle (start, end, sweep)
"""

import pytest

from call_orchestrator.core.conversation import (
    ConversationEngine,
    ConversationStatus,
    DEFAULT_CLOSING_LINES,
    ExitPolicy,
    normalize_input,
)
from call_orchestrator.errors import ProviderError

from conftest import FakeGenerator

NEUTRAL_LINES = [
    "what company is this",
    "tell me more",
    "how much does it cost",
    "who are your customers",
    "what is the catch",
    "where are you located",
    "is there a contract",
]


class TestNormalizeInput:
    def test_strips_fillers_and_whitespace(self):
        assert normalize_input("  um so like  you know   I mean  hello  ") == "so hello"

    def test_keeps_plain_text(self):
        assert normalize_input("not interested") == "not interested"


class TestExitPolicy:
    """Exit rules, in precedence order."""

    @pytest.mark.asyncio
    async def test_second_rejection_ends_call(self, engine, generator):
        first = await engine.respond("c1", "not interested")
        assert first.should_end_call is False
        assert len(generator.requests) == 1

        second = await engine.respond("c1", "I said not interested")
        assert second.should_end_call is True
        assert second.response_text == DEFAULT_CLOSING_LINES[0]
        assert second.exit_reason == "repeated_rejection"
        assert len(generator.requests) == 1

    @pytest.mark.asyncio
    async def test_rejection_counter_never_decreases(self, engine):
        await engine.respond("c1", "no thanks")
        await engine.respond("c1", "what company is this")
        assert engine.get("c1").rejection_count == 1

    @pytest.mark.asyncio
    async def test_hostile_caller_exits_immediately(self, engine, generator):
        result = await engine.respond("c1", "I hate this")
        assert result.should_end_call is True
        assert result.exit_reason == "hostile"
        assert generator.requests == []

    @pytest.mark.asyncio
    async def test_stalled_conversation_force_exits(self, engine):
        await engine.respond("c1", "not interested")
        for line in NEUTRAL_LINES[:5]:
            result = await engine.respond("c1", line)
            assert result.should_end_call is False
        assert engine.get("c1").turn_count == 6

        result = await engine.respond("c1", NEUTRAL_LINES[5])
        assert result.should_end_call is True
        assert result.exit_reason == "stalled"

    @pytest.mark.asyncio
    async def test_six_turns_without_rejection_continue(self, engine):
        for line in NEUTRAL_LINES:
            result = await engine.respond("c1", line)
            assert result.should_end_call is False

    @pytest.mark.asyncio
    async def test_sarcasm_with_negative_emotion_exits(self, engine):
        result = await engine.respond("c1", "yeah right that sounds bad to me honestly")
        assert result.emotion.emotion == "frustrated"
        assert result.should_end_call is True
        assert result.exit_reason == "sarcasm"

    @pytest.mark.asyncio
    async def test_sarcastic_phrase_with_neutral_emotion_continues(self, engine):
        result = await engine.respond("c1", "sure thing, what is it")
        assert result.should_end_call is False

    @pytest.mark.asyncio
    async def test_policy_is_configurable(self, generator, classifier, clock):
        engine = ConversationEngine(
            generator,
            classifier,
            exit_policy=ExitPolicy(rejection_phrases=("nope",), rejection_threshold=1),
            selector=lambda options: options[-1],
            clock=clock,
        )
        result = await engine.respond("c1", "nope")
        assert result.should_end_call is True
        assert result.response_text == DEFAULT_CLOSING_LINES[-1]

    @pytest.mark.asyncio
    async def test_ended_conversation_keeps_closing(self, engine, generator):
        await engine.respond("c1", "I hate this")
        result = await engine.respond("c1", "wait, tell me more")
        assert result.should_end_call is True
        assert engine.get("c1").status is ConversationStatus.ENDED
        assert generator.requests == []


class TestGeneration:
    """Prompt and parameter construction."""

    @pytest.mark.asyncio
    async def test_request_parameters(self, engine, generator):
        result = await engine.respond("c1", "tell me more")

        request = generator.requests[0]
        assert request.model == "gpt-4o-mini"
        assert request.max_tokens == 150
        assert request.presence_penalty == 0.6
        assert request.frequency_penalty == 0.3
        assert request.messages[0].role == "system"
        assert "CURRENT CALLER EMOTIONAL STATE" in request.messages[0].content
        assert request.messages[-1].role == "user"
        assert request.messages[-1].content == "tell me more"

        assert result.response_text == "Sounds good, tell me more."
        assert result.token_usage.total_tokens == 15
        assert result.token_usage.conversation_total == 15
        assert result.token_usage.error is False

    @pytest.mark.asyncio
    async def test_mode_and_prompt_override(self, engine, generator):
        engine.start("c1", mode="faq", system_prompt="You answer questions about plumbing.")
        await engine.respond("c1", "how much does it cost")

        prompt = generator.requests[0].messages[0].content
        assert prompt.startswith("You answer questions about plumbing.")
        assert "CONVERSATION MODE: FAQ" in prompt

    def test_unknown_mode_falls_back_to_interactive(self, engine):
        assert engine.start("c1", mode="karaoke").mode == "interactive"

    @pytest.mark.asyncio
    async def test_declining_trend_adds_wrap_up_guidance(self, engine, generator):
        await engine.respond("c1", "love it")
        await engine.respond("c1", "hmm okay")
        await engine.respond("c1", "well that part sounds a bit annoying to me")

        prompt = generator.requests[-1].messages[0].content
        assert "EMOTIONAL TREND" in prompt
        assert "wrapping up" in prompt

    @pytest.mark.parametrize(
        "base,emotion,expected",
        [
            (0.7, "positive", 0.8),
            (1.95, "positive", 2.0),
            (0.7, "frustrated", 0.5),
            (0.1, "very_negative", 0.0),
            (0.7, "neutral", 0.7),
        ],
    )
    def test_adjust_temperature(self, engine, base, emotion, expected):
        assert engine.adjust_temperature(base, emotion) == pytest.approx(expected)


class TestFallback:
    """Provider failures degrade to a fallback line."""

    @pytest.mark.asyncio
    async def test_provider_error_uses_fallback(self, classifier, clock):
        generator = FakeGenerator([ProviderError("openai", "HTTP 500", status=500)])
        engine = ConversationEngine(generator, classifier, selector=lambda options: options[0], clock=clock)

        result = await engine.respond("c1", "tell me more")
        assert result.response_text == "I hear you. Would a quick meeting work for you?"
        assert result.should_end_call is False
        assert result.token_usage.error is True
        assert engine.get("c1").turn_count == 1

    @pytest.mark.asyncio
    async def test_empty_reply_uses_fallback(self, classifier, clock):
        generator = FakeGenerator(["   "])
        engine = ConversationEngine(generator, classifier, selector=lambda options: options[0], clock=clock)

        result = await engine.respond("c1", "tell me more")
        assert result.token_usage.error is True
        assert result.response_text

    @pytest.mark.asyncio
    async def test_fallback_keyed_by_emotion(self, classifier, clock):
        generator = FakeGenerator([ProviderError("openai", "timeout")])
        engine = ConversationEngine(generator, classifier, selector=lambda options: options[0], clock=clock)

        result = await engine.respond("c1", "awesome")
        assert result.emotion.emotion == "excited"
        assert result.response_text == "That's great to hear! When can we meet?"


class TestWindows:
    """Bounded history and emotion windows."""

    @pytest.mark.asyncio
    async def test_history_never_exceeds_ten(self, engine):
        for i in range(12):
            await engine.respond("c1", f"question number {i}")
            assert len(engine.get("c1").history) <= 10
        assert len(engine.get("c1").history) == 10

    @pytest.mark.asyncio
    async def test_emotion_window_never_exceeds_five(self, engine):
        for i in range(8):
            await engine.respond("c1", f"question number {i}")
        assert len(engine.get("c1").emotions) == 5


class TestLifecycle:
    """Start, end, summaries and the cleanup sweep."""

    @pytest.mark.asyncio
    async def test_end_returns_summary_and_drops_state(self, engine, classifier):
        await engine.respond("c1", "tell me more")
        summary = engine.end("c1")

        assert summary["turns"] == 1
        assert summary["outcome"] == "completed"
        assert summary["totalTokensUsed"] == 15
        assert "c1" not in engine
        assert classifier.history_size("c1") == 0
        assert engine.end("c1") is None

    @pytest.mark.asyncio
    async def test_summary_outcome_after_exit(self, engine):
        await engine.respond("c1", "I hate this")
        assert engine.summary("c1")["outcome"] == "not_interested"

    def test_max_duration(self, engine, clock):
        engine.start("c1", max_duration=60)
        clock.advance(59)
        assert engine.is_max_duration_exceeded("c1") is False
        clock.advance(1)
        assert engine.is_max_duration_exceeded("c1") is True
        assert engine.is_max_duration_exceeded("unknown") is False

    @pytest.mark.asyncio
    async def test_recent_context_and_metadata(self, engine):
        await engine.respond("c1", "what company is this")
        await engine.respond("c1", "tell me more")
        assert engine.recent_context("c1", 1) == ["tell me more"]
        assert engine.update_metadata("c1", {"lead": 7}) == {"lead": 7}

    @pytest.mark.asyncio
    async def test_sweep_purges_old_conversations(self, engine, classifier, clock):
        await engine.respond("old", "tell me more")
        clock.advance(20 * 60)
        await engine.respond("young", "tell me more")
        clock.advance(11 * 60)

        assert engine.sweep_expired() == ["old"]
        assert "old" not in engine
        assert "young" in engine
        assert classifier.history_size("old") == 0
        assert classifier.history_size("young") == 1
