"""
Bidirectional audio relay between the gateway media stream and the agent backend.

One ``RelaySession`` exists per gateway connection. The gateway loop runs in
the connection's own task; the agent loop runs in a second task created once
the agent socket is open. Frames are forwarded in arrival order per direction
with no buffering: a frame whose destination is not open is dropped, counted
and logged.

Closing the gateway side closes the agent socket. An agent-side close leaves
the gateway connection alone; the gateway owns call teardown.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional

from aiohttp import WSMsgType, web
from prometheus_client import Counter, Gauge

from ..core.call_registry import CallRegistry
from ..core.emotion import EmotionClassifier
from ..errors import AgentConnectError
from ..logging_config import get_logger, reset_correlation_id, set_correlation_id
from ..providers.base import AgentConnection, AgentConnector
from .events import (
    AGENT_NOISE_TYPES,
    AgentAudio,
    AgentError,
    AgentEvent,
    AgentPing,
    AgentResponse,
    ConversationEnded,
    ConversationMetadata,
    Interruption,
    MediaFrame,
    StreamStart,
    StreamStop,
    ToolCall,
    UnknownEvent,
    UserTranscript,
    gateway_clear_frame,
    gateway_media_frame,
    parse_agent_event,
    parse_gateway_event,
)

logger = get_logger(__name__)

_RELAY_ACTIVE = Gauge("call_orchestrator_relay_active", "Active gateway<->agent relays")
_RELAY_FRAMES = Counter(
    "call_orchestrator_relay_frames_total",
    "Audio frames forwarded by the relay",
    labelnames=("direction",),  # to_agent | to_gateway
)
_RELAY_DROPPED = Counter(
    "call_orchestrator_relay_frames_dropped_total",
    "Audio frames dropped by the relay",
    labelnames=("direction", "reason"),
)
_RELAY_CONNECT_FAILURES = Counter(
    "call_orchestrator_relay_connect_failures_total",
    "Relays rejected because the agent backend could not be reached",
)

CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011
AGENT_SHUTDOWN_TIMEOUT_SEC = 5.0


class GatewaySocket(ABC):
    """The gateway's media-stream connection."""

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[str]:
        """Yield raw text frames until the connection closes."""

    @abstractmethod
    async def send_json(self, data: Dict[str, Any]) -> None:
        """Raise ConnectionError when the socket is no longer writable."""

    @abstractmethod
    async def close(self, code: int, reason: str) -> None:
        ...

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...


class AiohttpGatewaySocket(GatewaySocket):
    def __init__(self, ws: web.WebSocketResponse):
        self._ws = ws

    @property
    def is_open(self) -> bool:
        return not self._ws.closed

    async def __aiter__(self) -> AsyncIterator[str]:
        async for msg in self._ws:
            if msg.type == WSMsgType.TEXT:
                yield msg.data
            elif msg.type == WSMsgType.BINARY:
                yield msg.data.decode("utf-8", errors="replace")
            elif msg.type == WSMsgType.ERROR:
                logger.warning("Gateway socket error", error=str(self._ws.exception()))
                break

    async def send_json(self, data: Dict[str, Any]) -> None:
        if self._ws.closed:
            raise ConnectionError("gateway socket closed")
        await self._ws.send_json(data)

    async def close(self, code: int, reason: str) -> None:
        await self._ws.close(code=code, message=reason.encode("utf-8"))


@dataclass
class RelaySession:
    gateway: GatewaySocket
    stream_id: Optional[str] = None
    call_id: Optional[str] = None
    conversation_id: Optional[str] = None
    agent: Optional[AgentConnection] = None
    agent_task: Optional[asyncio.Task] = None
    close_reason: Optional[str] = None
    frames_to_agent: int = 0
    frames_to_gateway: int = 0
    dropped: Dict[str, int] = field(default_factory=dict)

    @property
    def started(self) -> bool:
        return self.stream_id is not None

    def drop(self, direction: str, reason: str) -> None:
        key = f"{direction}:{reason}"
        self.dropped[key] = self.dropped.get(key, 0) + 1
        _RELAY_DROPPED.labels(direction, reason).inc()


class AudioRelay:
    def __init__(
        self,
        registry: CallRegistry,
        connector: AgentConnector,
        classifier: Optional[EmotionClassifier] = None,
    ):
        self._registry = registry
        self._connector = connector
        self._classifier = classifier

    async def handle(self, gateway: GatewaySocket) -> RelaySession:
        """Serve one gateway media-stream connection until it closes."""
        session = RelaySession(gateway=gateway)
        _RELAY_ACTIVE.inc()
        token = None
        try:
            async for raw in gateway:
                try:
                    event = parse_gateway_event(raw)
                except ValueError as exc:
                    logger.warning("Dropping malformed gateway frame", call_id=session.call_id, error=str(exc))
                    continue

                if isinstance(event, StreamStart):
                    if session.started:
                        logger.warning("Duplicate stream start ignored", call_id=session.call_id)
                        continue
                    token = set_correlation_id(event.call_id)
                    if not await self._on_start(session, event):
                        break
                elif isinstance(event, MediaFrame):
                    await self._forward_to_agent(session, event.payload)
                elif isinstance(event, StreamStop):
                    logger.info("Media stream stopped", call_id=session.call_id, stream_id=session.stream_id)
                    break
                else:
                    logger.debug("Dropping unknown gateway event", call_id=session.call_id, kind=event.kind)
        finally:
            await self._teardown(session)
            _RELAY_ACTIVE.dec()
            if token is not None:
                reset_correlation_id(token)
        return session

    async def _on_start(self, session: RelaySession, event: StreamStart) -> bool:
        if not event.stream_id or not event.call_id:
            await self._reject(session, CLOSE_POLICY_VIOLATION, "missing stream or call identifier")
            return False

        session.stream_id = event.stream_id
        session.call_id = event.call_id
        record = self._registry.get(event.call_id)
        params = event.custom_parameters
        session.conversation_id = (
            record.conversation_id if record is not None
            else params.get("conversationId") or f"conv_{event.call_id}"
        )
        agent_id = (record.config.agent_id if record is not None else None) or params.get("agentId")

        logger.info(
            "Media stream started",
            call_id=session.call_id,
            stream_id=session.stream_id,
            conversation_id=session.conversation_id,
            tracked=record is not None,
        )

        try:
            session.agent = await self._connector.connect(event.call_id, agent_id)
        except AgentConnectError as exc:
            _RELAY_CONNECT_FAILURES.inc()
            await self._reject(session, CLOSE_INTERNAL_ERROR, f"agent connect failed: {exc}")
            return False

        dynamic_variables = {"call_sid": event.call_id}
        if record is not None:
            dynamic_variables.update(
                {k: v for k, v in record.config.metadata.items() if isinstance(v, (str, int, float, bool))}
            )
        try:
            await session.agent.send(self._connector.initiation_message(session.conversation_id, dynamic_variables))
        except ConnectionError as exc:
            _RELAY_CONNECT_FAILURES.inc()
            await self._reject(session, CLOSE_INTERNAL_ERROR, f"agent handshake failed: {exc}")
            return False

        session.agent_task = asyncio.create_task(self._agent_loop(session))
        return True

    async def _reject(self, session: RelaySession, code: int, reason: str) -> None:
        session.close_reason = reason
        logger.error("Rejecting media stream", call_id=session.call_id, code=code, reason=reason)
        if session.gateway.is_open:
            await session.gateway.close(code, reason)

    async def _forward_to_agent(self, session: RelaySession, payload: str) -> None:
        agent = session.agent
        if agent is None:
            session.drop("to_agent", "not_started")
            logger.debug("Dropping media before stream start")
            return
        if not agent.is_open:
            session.drop("to_agent", "closed")
            logger.debug("Dropping media for closed agent socket", call_id=session.call_id)
            return
        try:
            await agent.send(self._connector.audio_message(payload))
        except ConnectionError as exc:
            session.drop("to_agent", "send_failed")
            logger.debug("Dropping media, agent send failed", call_id=session.call_id, error=str(exc))
            return
        session.frames_to_agent += 1
        _RELAY_FRAMES.labels("to_agent").inc()

    async def _send_to_gateway(self, session: RelaySession, frame: Dict[str, Any]) -> bool:
        if not session.gateway.is_open:
            session.drop("to_gateway", "closed")
            logger.debug("Dropping agent frame for closed gateway", call_id=session.call_id)
            return False
        try:
            await session.gateway.send_json(frame)
        except ConnectionError as exc:
            session.drop("to_gateway", "send_failed")
            logger.debug("Dropping agent frame, gateway send failed", call_id=session.call_id, error=str(exc))
            return False
        return True

    async def _agent_loop(self, session: RelaySession) -> None:
        assert session.agent is not None
        async for data in session.agent:
            try:
                event = parse_agent_event(data)
            except ValueError as exc:
                session.drop("to_gateway", "malformed")
                logger.warning("Dropping malformed agent message", call_id=session.call_id, error=str(exc))
                continue
            await self._on_agent_event(session, event)
        logger.info("Agent loop finished", call_id=session.call_id, frames_to_gateway=session.frames_to_gateway)

    async def _on_agent_event(self, session: RelaySession, event: AgentEvent) -> None:
        call_id = session.call_id
        if isinstance(event, AgentAudio):
            if await self._send_to_gateway(session, gateway_media_frame(session.stream_id, event.payload)):
                session.frames_to_gateway += 1
                _RELAY_FRAMES.labels("to_gateway").inc()
        elif isinstance(event, AgentResponse):
            logger.info("Agent response", call_id=call_id, text=event.text[:120])
            if event.text:
                self._registry.append_transcript(call_id, "assistant", event.text)
        elif isinstance(event, UserTranscript):
            logger.info("User transcript", call_id=call_id, text=event.text[:120])
            if event.text:
                self._on_user_transcript(call_id, session.conversation_id, event.text)
        elif isinstance(event, AgentPing):
            if event.event_id is not None:
                try:
                    await session.agent.send({"type": "pong", "event_id": event.event_id})
                except ConnectionError as exc:
                    logger.warning("Failed to send pong", call_id=call_id, error=str(exc))
        elif isinstance(event, ConversationMetadata):
            logger.info("Agent conversation initialized", call_id=call_id, agent_conversation_id=event.conversation_id)
            if event.conversation_id:
                self._registry.set_agent_conversation(call_id, event.conversation_id)
        elif isinstance(event, ToolCall):
            logger.info("Agent tool call", call_id=call_id, tool=event.name, tool_call_id=event.tool_call_id)
            self._registry.record_tool_call(call_id, event.name, event.parameters, success=False, result=None)
        elif isinstance(event, Interruption):
            logger.debug("Agent interruption, clearing gateway playback", call_id=call_id)
            await self._send_to_gateway(session, gateway_clear_frame(session.stream_id))
        elif isinstance(event, ConversationEnded):
            logger.info("Agent conversation ended", call_id=call_id, reason=event.reason)
        elif isinstance(event, AgentError):
            logger.error("Agent error", call_id=call_id, code=event.code, message=event.message)
        elif isinstance(event, UnknownEvent) and event.kind not in AGENT_NOISE_TYPES:
            logger.debug("Dropping unknown agent message", call_id=call_id, kind=event.kind)

    def _on_user_transcript(self, call_id: str, conversation_id: Optional[str], text: str) -> None:
        self._registry.append_transcript(call_id, "user", text)
        self._registry.reset_silence(call_id)
        if self._classifier is not None:
            result = self._classifier.detect(text, conversation_id or call_id)
            self._registry.record_emotion(call_id, result.emotion, result.intensity, result.comparative)

    async def _teardown(self, session: RelaySession) -> None:
        agent = session.agent
        if agent is not None and agent.is_open:
            try:
                await agent.close()
            except ConnectionError as exc:
                logger.debug("Agent close failed", call_id=session.call_id, error=str(exc))
        task = session.agent_task
        if task is not None:
            done, _ = await asyncio.wait({task}, timeout=AGENT_SHUTDOWN_TIMEOUT_SEC)
            if not done:
                task.cancel()
                logger.warning("Agent loop did not stop in time, cancelled", call_id=session.call_id)
            elif not task.cancelled() and task.exception() is not None:
                logger.error("Agent loop failed", call_id=session.call_id, error=str(task.exception()))
        if self._classifier is not None and session.conversation_id:
            self._classifier.clear(session.conversation_id)
        logger.info(
            "Relay closed",
            call_id=session.call_id,
            frames_to_agent=session.frames_to_agent,
            frames_to_gateway=session.frames_to_gateway,
            dropped=dict(session.dropped),
            close_reason=session.close_reason,
        )
