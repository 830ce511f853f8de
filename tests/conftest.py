"""Shared fakes and fixtures for the orchestrator test suite."""

import re
from typing import Any, List, Optional

import pytest

from call_orchestrator.core.call_registry import CallRegistry
from call_orchestrator.core.conversation import ConversationEngine
from call_orchestrator.core.emotion import EmotionClassifier
from call_orchestrator.errors import ProviderError
from call_orchestrator.providers.base import (
    GenerationRequest,
    GenerationResponse,
    ResponseGenerator,
    SpeechSynthesizer,
    SynthesisRequest,
)

_WORD_RE = re.compile(r"[a-z0-9']+")


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeLexicon:
    """Word-score table standing in for AFINN so emotion labels are predictable."""

    WORDS = {
        "hate": -3,
        "terrible": -3,
        "awful": -3,
        "annoying": -2,
        "bad": -2,
        "great": 3,
        "love": 3,
        "awesome": 4,
        "good": 3,
    }

    def score(self, text: str) -> float:
        return float(sum(self.WORDS.get(word, 0) for word in _WORD_RE.findall(text.lower())))


class FakeGenerator(ResponseGenerator):
    """Replays queued replies; an Exception in the queue is raised instead."""

    def __init__(self, replies: Optional[List[Any]] = None, default: str = "Sounds good, tell me more."):
        self.replies = list(replies or [])
        self.default = default
        self.requests: List[GenerationRequest] = []
        self.closed = False

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        self.requests.append(request)
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        return GenerationResponse(text=reply, prompt_tokens=10, completion_tokens=5, total_tokens=15)

    async def close(self) -> None:
        self.closed = True


class FakeSynthesizer(SpeechSynthesizer):
    def __init__(self, name: str = "elevenlabs", fail: bool = False):
        self.name = name
        self.fail = fail
        self.requests: List[SynthesisRequest] = []

    async def synthesize(self, request: SynthesisRequest) -> bytes:
        self.requests.append(request)
        if self.fail:
            raise ProviderError(self.name, "HTTP 503", status=503)
        return b"ID3-fake-audio-" + request.text.encode()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def lexicon():
    return FakeLexicon()


@pytest.fixture
def classifier(lexicon, clock):
    return EmotionClassifier(lexicon=lexicon, clock=clock)


@pytest.fixture
def registry(clock):
    return CallRegistry(clock=clock)


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def engine(generator, classifier, clock):
    return ConversationEngine(generator, classifier, selector=lambda options: options[0], clock=clock)

