"""
OpenAI Chat Completions adapter for the response generator contract.

Any transport, HTTP or response-shape failure is raised as ProviderError so the conversation
engine can substitute its fallback line.
"""

import asyncio
import json
from typing import Any, Callable, Dict, Optional

import aiohttp

from ..config import OpenAIProviderConfig
from ..errors import ProviderError
from ..logging_config import get_logger
from .base import GenerationRequest, GenerationResponse, ResponseGenerator

logger = get_logger(__name__)

USER_AGENT = "Call-Orchestrator/1.0"


def make_http_headers(api_key: str, organization: Optional[str] = None) -> Dict[str, str]:
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
    }
    if organization:
        headers["OpenAI-Organization"] = organization
    return headers


class OpenAIChatGenerator(ResponseGenerator):
    def __init__(
        self,
        provider_config: OpenAIProviderConfig,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        self._config = provider_config
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        if not self._config.api_key:
            raise ProviderError("openai", "API key not configured")
        await self._ensure_session()
        assert self._session

        payload = self._build_payload(request)
        url = self._config.chat_base_url.rstrip("/") + "/chat/completions"
        timeout = aiohttp.ClientTimeout(total=self._config.response_timeout_sec)

        logger.debug(
            "OpenAI chat completion request",
            call_id=request.call_id,
            model=request.model,
            temperature=request.temperature,
            messages=len(request.messages),
        )
        try:
            async with self._session.post(
                url,
                json=payload,
                headers=make_http_headers(self._config.api_key, self._config.organization),
                timeout=timeout,
            ) as response:
                body = await response.text()
                if response.status >= 400:
                    logger.error(
                        "OpenAI chat completion failed",
                        call_id=request.call_id,
                        status=response.status,
                        body_preview=body[:128],
                    )
                    raise ProviderError("openai", f"HTTP {response.status}", status=response.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ProviderError("openai", f"connection error: {exc or exc.__class__.__name__}") from exc

        return self._parse_response(body, request.call_id)

    @staticmethod
    def _build_payload(request: GenerationRequest) -> Dict[str, Any]:
        return {
            "model": request.model,
            "messages": [m.to_dict() for m in request.messages],
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "presence_penalty": request.presence_penalty,
            "frequency_penalty": request.frequency_penalty,
        }

    @staticmethod
    def _parse_response(body: str, call_id: Optional[str]) -> GenerationResponse:
        """Raise ProviderError for any body that is not a usable chat completion."""
        try:
            data = json.loads(body)
        except json.JSONDecodeError as exc:
            raise ProviderError("openai", "response is not JSON") from exc
        if not isinstance(data, dict):
            raise ProviderError("openai", "response is not a JSON object")
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ProviderError("openai", "no choices in response")
        choice = choices[0] if isinstance(choices[0], dict) else {}
        message = choice.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise ProviderError("openai", "no message content in response")
        content = content.strip()
        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        total_tokens = _token_count(usage, "total_tokens")
        logger.info("OpenAI chat completion received", call_id=call_id, preview=content[:80], total_tokens=total_tokens)
        return GenerationResponse(
            text=content,
            prompt_tokens=_token_count(usage, "prompt_tokens"),
            completion_tokens=_token_count(usage, "completion_tokens"),
            total_tokens=total_tokens,
        )

    async def _ensure_session(self) -> None:
        if self._session and not self._session.closed:
            return
        factory = self._session_factory or aiohttp.ClientSession
        self._session = factory()

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None


def _token_count(usage: Dict[str, Any], key: str) -> int:
    value = usage.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)
