"""
Typed events for both sides of the audio relay.

Gateway media-stream frames and agent socket messages are parsed into a
closed set of dataclasses; anything else becomes ``UnknownEvent`` so the relay
can log and drop it without special-casing raw dicts.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union


# Gateway side ------------------------------------------------------------------

@dataclass
class StreamStart:
    stream_id: Optional[str]
    call_id: Optional[str]
    custom_parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MediaFrame:
    payload: str


@dataclass
class StreamStop:
    pass


@dataclass
class UnknownEvent:
    kind: Optional[str]
    raw: Any = None


GatewayEvent = Union[StreamStart, MediaFrame, StreamStop, UnknownEvent]


def parse_gateway_event(raw: Union[str, bytes, Dict[str, Any]]) -> GatewayEvent:
    """
    Decode one gateway frame.

    Raises ValueError for frames that are not JSON objects; a JSON object with
    an unrecognized or missing discriminator, or with nested fields of the
    wrong shape, becomes UnknownEvent.
    """
    data = _decode(raw)
    kind = data.get("event")
    if kind == "start":
        start = _obj(data, "start")
        params = _obj(start, "customParameters")
        return StreamStart(
            stream_id=_str(data, "streamSid") or _str(start, "streamSid"),
            call_id=_str(start, "callSid") or _str(params, "callSid"),
            custom_parameters=dict(params),
        )
    if kind == "media":
        payload = _str(_obj(data, "media"), "payload")
        if not payload:
            return UnknownEvent(kind="media", raw=data)
        return MediaFrame(payload=payload)
    if kind == "stop":
        return StreamStop()
    return UnknownEvent(kind=kind if isinstance(kind, str) else None, raw=data)


def gateway_media_frame(stream_id: str, payload: str) -> Dict[str, Any]:
    return {"event": "media", "streamSid": stream_id, "media": {"payload": payload}}


def gateway_clear_frame(stream_id: str) -> Dict[str, Any]:
    """Flush audio the gateway has buffered but not yet played."""
    return {"event": "clear", "streamSid": stream_id}


# Agent side --------------------------------------------------------------------

@dataclass
class AgentAudio:
    payload: str


@dataclass
class AgentResponse:
    text: str


@dataclass
class UserTranscript:
    text: str


@dataclass
class AgentPing:
    event_id: Any


@dataclass
class ConversationMetadata:
    conversation_id: Optional[str]


@dataclass
class ToolCall:
    name: str
    tool_call_id: Optional[str]
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Interruption:
    pass


@dataclass
class ConversationEnded:
    reason: Optional[str] = None


@dataclass
class AgentError:
    code: str
    message: str


AgentEvent = Union[
    AgentAudio,
    AgentResponse,
    UserTranscript,
    AgentPing,
    ConversationMetadata,
    ToolCall,
    Interruption,
    ConversationEnded,
    AgentError,
    UnknownEvent,
]

# Internal telemetry the agent emits continuously; dropped without logging
AGENT_NOISE_TYPES = frozenset({
    "internal_vad_score",
    "internal_turn_probability",
    "internal_tentative_agent_response",
    "vad_score",
})


def parse_agent_event(raw: Union[str, bytes, Dict[str, Any]]) -> AgentEvent:
    """
    Decode one agent message.

    Raises ValueError for messages that are not JSON objects. Known types whose
    nested event has the wrong shape degrade to empty fields, or to
    UnknownEvent when the message would carry nothing usable.
    """
    data = _decode(raw)
    kind = data.get("type")
    if kind == "audio":
        payload = _str(_obj(data, "audio_event"), "audio_base_64") or _str(data, "audio")
        if not payload:
            return UnknownEvent(kind=kind, raw=data)
        return AgentAudio(payload=payload)
    if kind == "agent_response":
        return AgentResponse(text=_str(_obj(data, "agent_response_event"), "agent_response") or "")
    if kind == "user_transcript":
        return UserTranscript(text=_str(_obj(data, "user_transcription_event"), "user_transcript") or "")
    if kind == "ping":
        event_id = _obj(data, "ping_event").get("event_id")
        return AgentPing(event_id=event_id if isinstance(event_id, (int, str)) else None)
    if kind == "conversation_initiation_metadata":
        event = _obj(data, "conversation_initiation_metadata_event")
        return ConversationMetadata(conversation_id=_str(event, "conversation_id"))
    if kind == "client_tool_call":
        call = _obj(data, "client_tool_call")
        name = _str(call, "tool_name")
        if not name:
            return UnknownEvent(kind=kind, raw=data)
        return ToolCall(
            name=name,
            tool_call_id=_str(call, "tool_call_id"),
            parameters=dict(_obj(call, "parameters")),
        )
    if kind == "interruption":
        return Interruption()
    if kind == "conversation_ended":
        return ConversationEnded(reason=_str(data, "reason"))
    if kind == "error":
        error = data.get("error")
        if not isinstance(error, dict):
            error = {"message": str(error)} if error else {}
        return AgentError(code=str(error.get("code", "unknown")), message=str(error.get("message", "Unknown error")))
    return UnknownEvent(kind=kind if isinstance(kind, str) else None, raw=data)


def _obj(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def _str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    return value if isinstance(value, str) and value else None


def _decode(raw: Union[str, bytes, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as exc:
        raise ValueError(f"frame is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("frame is not a JSON object")
    return data
