"""
ElevenLabs Conversational AI connector.

WebSocket Protocol:
- Signed URL: GET /v1/convai/conversation/get_signed_url?agent_id=... (xi-api-key header)
- Endpoint: the signed wss:// URL returned above
- Client -> agent: conversation_initiation_client_data, {"user_audio_chunk": b64}, pong
- Agent -> client: conversation_initiation_metadata, audio, agent_response,
  user_transcript, ping, client_tool_call, interruption, error
"""

import asyncio
import json
from typing import Any, AsyncIterator, Callable, Dict, Optional

import aiohttp
import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI
from websockets.protocol import State

from ..config import ElevenLabsProviderConfig
from ..errors import AgentConnectError
from ..logging_config import get_logger
from .base import AgentConnection, AgentConnector

logger = get_logger(__name__)

MAX_MESSAGE_SIZE = 16 * 1024 * 1024


class ElevenLabsAgentConnection(AgentConnection):
    def __init__(self, ws: Any, call_id: str):
        self._ws = ws
        self._call_id = call_id

    @property
    def is_open(self) -> bool:
        return getattr(self._ws, "state", None) is State.OPEN

    async def send(self, message: Dict[str, Any]) -> None:
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as exc:
            raise ConnectionError(f"agent socket closed: {exc}") from exc

    async def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        try:
            async for raw in self._ws:
                try:
                    data = json.loads(raw)
                except (TypeError, json.JSONDecodeError):
                    logger.warning("Dropping malformed agent message", call_id=self._call_id)
                    continue
                if not isinstance(data, dict):
                    logger.warning("Dropping non-object agent message", call_id=self._call_id)
                    continue
                yield data
        except ConnectionClosed as exc:
            logger.info("Agent socket closed", call_id=self._call_id, code=exc.rcvd.code if exc.rcvd else None)

    async def close(self) -> None:
        await self._ws.close()


class ElevenLabsAgentConnector(AgentConnector):
    def __init__(
        self,
        provider_config: ElevenLabsProviderConfig,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
        ws_connect: Optional[Callable[..., Any]] = None,
    ):
        self._config = provider_config
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws_connect = ws_connect or websockets.connect

    async def connect(self, call_id: str, agent_id: Optional[str] = None) -> AgentConnection:
        api_key = self._config.api_key
        if not api_key:
            raise AgentConnectError("ELEVENLABS_API_KEY not configured")
        agent_id = agent_id or self._config.agent_id
        if not agent_id:
            raise AgentConnectError("no agent id configured")

        signed_url = await self._get_signed_url(api_key, agent_id, call_id)
        try:
            ws = await asyncio.wait_for(
                self._ws_connect(
                    signed_url,
                    max_size=MAX_MESSAGE_SIZE,
                    ping_interval=20,
                    ping_timeout=20,
                    close_timeout=5,
                ),
                timeout=self._config.connect_timeout_sec,
            )
        except asyncio.TimeoutError as exc:
            logger.error("Agent connection timeout", call_id=call_id)
            raise AgentConnectError("connection timeout") from exc
        except (OSError, InvalidHandshake, InvalidURI) as exc:
            logger.error("Agent connection failed", call_id=call_id, error=str(exc))
            raise AgentConnectError(f"connection failed: {exc}") from exc

        logger.info("Agent socket connected", call_id=call_id, agent_id=agent_id)
        return ElevenLabsAgentConnection(ws, call_id)

    async def _get_signed_url(self, api_key: str, agent_id: str, call_id: str) -> str:
        """Authenticated agents are reached through a short-lived signed URL."""
        await self._ensure_session()
        assert self._session
        url = f"{self._config.base_url.rstrip('/')}/convai/conversation/get_signed_url"
        try:
            async with self._session.get(
                url,
                params={"agent_id": agent_id},
                headers={"xi-api-key": api_key},
                timeout=aiohttp.ClientTimeout(total=self._config.connect_timeout_sec),
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(
                        "Failed to get signed URL",
                        call_id=call_id,
                        status=response.status,
                        body_preview=error_text[:128],
                    )
                    raise AgentConnectError(f"signed URL request failed: HTTP {response.status}", status=response.status)
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise AgentConnectError(f"signed URL request failed: {exc or exc.__class__.__name__}") from exc

        signed_url = (data or {}).get("signed_url")
        if not signed_url:
            raise AgentConnectError("no signed_url in response")
        return signed_url

    async def _ensure_session(self) -> None:
        if self._session and not self._session.closed:
            return
        factory = self._session_factory or aiohttp.ClientSession
        self._session = factory()

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
