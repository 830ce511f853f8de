"""
HTTP and WebSocket surface (aiohttp.web).

Gateway callbacks accept either form-encoded or JSON bodies and answer with
GatewayInstruction JSON. The media-stream websocket is handed to the audio
relay for the lifetime of the connection.
"""

import time
from typing import Any, Dict, Optional

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .call_flow import validate_call_request
from .errors import CallConfigError
from .logging_config import get_logger, reset_correlation_id, set_correlation_id
from .relay.audio_relay import AiohttpGatewaySocket
from .services import Services
from .speech import CONTENT_TYPES

logger = get_logger(__name__)

SERVICES_KEY = web.AppKey("services", Services)


@web.middleware
async def correlation_middleware(request: web.Request, handler):
    call_id = request.match_info.get("call_id")
    token = set_correlation_id(call_id) if call_id else None
    try:
        return await handler(request)
    finally:
        if token is not None:
            reset_correlation_id(token)


async def _read_body(request: web.Request) -> Dict[str, Any]:
    if request.content_type == "application/json":
        try:
            data = await request.json()
        except ValueError:
            raise web.HTTPBadRequest(text="invalid JSON body")
        return data if isinstance(data, dict) else {}
    if request.can_read_body:
        form = await request.post()
        return dict(form)
    return {}


def _first(data: Dict[str, Any], *keys: str) -> Optional[Any]:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class OrchestratorServer:
    def __init__(self, services: Services):
        self.services = services
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[correlation_middleware])
        app[SERVICES_KEY] = self.services
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/metrics", self._metrics_handler)
        app.router.add_post("/calls", self._register_handler)
        app.router.add_get("/calls/{call_id}", self._call_status_handler)
        app.router.add_post("/calls/{call_id}/answer", self._answer_handler)
        app.router.add_post("/calls/{call_id}/status", self._status_callback_handler)
        app.router.add_post("/calls/{call_id}/speech", self._speech_handler)
        app.router.add_post("/calls/{call_id}/no-speech", self._no_speech_handler)
        app.router.add_post("/calls/{call_id}/recording", self._recording_handler)
        app.router.add_get("/audio/{name}", self._audio_handler)
        app.router.add_get("/media-stream", self._media_stream_handler)
        return app

    async def start(self, host: str, port: int) -> None:
        runner = web.AppRunner(self.build_app())
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        await site.start()
        self._runner = runner
        logger.info("HTTP server started", host=host, port=port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    # -- probes --------------------------------------------------------

    async def _health_handler(self, request: web.Request) -> web.Response:
        s = self.services
        return web.json_response(
            {
                "status": "healthy",
                "active_calls": s.registry.active_count(),
                "active_conversations": s.engine.active_count(),
                "cached_phrases": len(s.cache) if s.cache is not None else 0,
                "pending_webhooks": s.webhooks.pending,
                "maintenance_running": s.maintenance.running,
                "uptime_seconds": int(time.time() - s.started_at),
            }
        )

    async def _metrics_handler(self, request: web.Request) -> web.Response:
        data = generate_latest()
        # aiohttp forbids 'charset=' inside content_type arg; pass full header via headers.
        return web.Response(body=data, headers={"Content-Type": CONTENT_TYPE_LATEST})

    # -- calls ---------------------------------------------------------

    async def _register_handler(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        try:
            call_request = validate_call_request(body)
        except CallConfigError as exc:
            logger.info("Rejected call request", field=exc.field, reason=exc.reason)
            return web.json_response({"error": exc.to_dict()}, status=400)
        record = self.services.flow.register_call(call_request)
        return web.json_response(
            {
                "callSid": record.call_id,
                "conversationId": record.conversation_id,
                "status": record.status.value,
                "agentMode": record.config.agent_mode,
            },
            status=201,
        )

    async def _call_status_handler(self, request: web.Request) -> web.Response:
        view = self.services.registry.status_view(request.match_info["call_id"])
        if view is None:
            return web.json_response({"error": "call not found"}, status=404)
        return web.json_response(view)

    async def _answer_handler(self, request: web.Request) -> web.Response:
        instruction = await self.services.flow.answer(request.match_info["call_id"])
        return web.json_response(instruction.to_dict())

    async def _status_callback_handler(self, request: web.Request) -> web.Response:
        call_id = request.match_info["call_id"]
        body = await _read_body(request)
        status = _first(body, "CallStatus", "status")
        if status is None:
            return web.json_response({"error": "status is required"}, status=400)
        record = await self.services.flow.on_status(call_id, str(status))
        return web.json_response(
            {"callSid": call_id, "status": record.status.value if record is not None else None}
        )

    async def _speech_handler(self, request: web.Request) -> web.Response:
        call_id = request.match_info["call_id"]
        body = await _read_body(request)
        speech = _first(body, "SpeechResult", "speech")
        confidence = _optional_float(_first(body, "Confidence", "confidence"))
        instruction = await self.services.flow.on_speech(call_id, speech, confidence)
        return web.json_response(instruction.to_dict())

    async def _no_speech_handler(self, request: web.Request) -> web.Response:
        call_id = request.match_info["call_id"]
        body = await _read_body(request)
        count = _optional_int(_first(request.query, "silenceCount") or _first(body, "silenceCount", "SilenceCount"))
        instruction = await self.services.flow.on_no_speech(call_id, count)
        return web.json_response(instruction.to_dict())

    async def _recording_handler(self, request: web.Request) -> web.Response:
        call_id = request.match_info["call_id"]
        body = await _read_body(request)
        url = _first(body, "RecordingUrl", "recordingUrl")
        if url is None:
            return web.json_response({"error": "recordingUrl is required"}, status=400)
        record = self.services.flow.on_recording(call_id, str(url))
        return web.json_response({"callSid": call_id, "tracked": record is not None})

    # -- media ---------------------------------------------------------

    async def _audio_handler(self, request: web.Request) -> web.StreamResponse:
        name = request.match_info["name"]
        store = self.services.speech.store
        path = store.path_for(name)
        if path is None or not store.exists(name):
            raise web.HTTPNotFound()
        extension = name.rsplit(".", 1)[-1]
        return web.FileResponse(path, headers={"Content-Type": CONTENT_TYPES.get(extension, "application/octet-stream")})

    async def _media_stream_handler(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        session = await self.services.relay.handle(AiohttpGatewaySocket(ws))
        if not ws.closed:
            await ws.close()
        logger.debug("Media stream connection finished", call_id=session.call_id)
        return ws
