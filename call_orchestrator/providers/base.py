"""
Collaborator contracts for the orchestration core.

Each external backend (response generator, speech synthesizer, conversational
agent) is reached through an adapter implementing one of the abstract classes
below. The request/response records are the only shapes the core depends on;
provider wire formats stay inside the adapters.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional


@dataclass
class ChatMessage:
    role: str  # system | user | assistant
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class GenerationRequest:
    model: str
    messages: List[ChatMessage]
    max_tokens: int = 150
    temperature: float = 0.7
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    call_id: Optional[str] = None


@dataclass
class GenerationResponse:
    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class SynthesisRequest:
    text: str
    voice: Optional[str] = None
    model: Optional[str] = None
    style: Dict[str, Any] = field(default_factory=dict)
    call_id: Optional[str] = None


class ResponseGenerator(ABC):
    """LLM-style text generation."""

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        """Raise ProviderError on failure; the caller substitutes a fallback."""

    async def close(self) -> None:
        return None


class SpeechSynthesizer(ABC):
    """Text-to-speech backend."""

    name: str = "unknown"
    file_extension: str = "mp3"

    @abstractmethod
    async def synthesize(self, request: SynthesisRequest) -> bytes:
        ...

    async def close(self) -> None:
        return None


class AgentConnection(ABC):
    """One open socket to the conversational-agent backend."""

    @abstractmethod
    async def send(self, message: Dict[str, Any]) -> None:
        """Raise ConnectionError when the socket is no longer writable."""

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield decoded JSON messages until the socket closes."""

    @abstractmethod
    async def close(self) -> None:
        ...

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...


class AgentConnector(ABC):
    """Opens agent connections; raises AgentConnectError when the backend is unreachable."""

    @abstractmethod
    async def connect(self, call_id: str, agent_id: Optional[str] = None) -> AgentConnection:
        ...

    def initiation_message(
        self,
        conversation_id: str,
        dynamic_variables: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Handshake payload sent once the agent socket is open."""
        variables = dict(dynamic_variables or {})
        variables["conversation_id"] = conversation_id
        return {
            "type": "conversation_initiation_client_data",
            "dynamic_variables": variables,
        }

    def audio_message(self, payload: str) -> Dict[str, Any]:
        return {"user_audio_chunk": payload}

    async def close(self) -> None:
        return None
