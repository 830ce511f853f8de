"""Exception hierarchy for the call orchestrator."""

from typing import Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class ProviderError(OrchestratorError):
    """An upstream provider (LLM, TTS, agent) failed or returned garbage."""

    def __init__(self, provider: str, message: str, status: Optional[int] = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status = status


class AgentConnectError(ProviderError):
    """The conversational-agent backend could not be reached or refused the session."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__("agent", message, status=status)


class InvalidWebhookURLError(OrchestratorError, ValueError):
    """A callback URL is not a well-formed http(s) URL."""

    def __init__(self, url: str):
        super().__init__(f"Invalid callback URL: {url!r}")
        self.url = url


class CallConfigError(OrchestratorError, ValueError):
    """
    Caller-supplied call configuration was rejected.

    Attributes:
        field: Dotted path of the offending field
        reason: One of missing_required_field, out_of_range, invalid_choice, invalid_format
        message: Human-readable explanation
    """

    MISSING = "missing_required_field"
    OUT_OF_RANGE = "out_of_range"
    INVALID_CHOICE = "invalid_choice"
    INVALID_FORMAT = "invalid_format"

    def __init__(self, field: str, reason: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.reason = reason
        self.message = message

    def to_dict(self):
        return {"field": self.field, "reason": self.reason, "message": self.message}
