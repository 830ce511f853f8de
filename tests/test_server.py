"""
HTTP surface tests.

The app is served in-process with aiohttp's test server; every backend behind
it is a fake, so no request leaves the process.
"""

import pytest
from aiohttp import WSMsgType, test_utils

from call_orchestrator.call_flow import CallFlow
from call_orchestrator.config import AppConfig
from call_orchestrator.core.response_cache import ResponseCache
from call_orchestrator.core.silence import SilenceEscalator
from call_orchestrator.core.webhooks import WebhookDispatcher
from call_orchestrator.maintenance import Maintenance
from call_orchestrator.providers.base import AgentConnector
from call_orchestrator.relay.audio_relay import CLOSE_POLICY_VIOLATION, AudioRelay
from call_orchestrator.server import OrchestratorServer
from call_orchestrator.services import Services, media_stream_url
from call_orchestrator.speech import AudioFileStore, SpeechService

from conftest import FakeSynthesizer


class UnusedConnector(AgentConnector):
    async def connect(self, call_id, agent_id=None):
        raise AssertionError("agent should not be contacted")


@pytest.fixture
def services(tmp_path, registry, classifier, generator, engine, clock):
    cache = ResponseCache(clock=clock)
    store = AudioFileStore(str(tmp_path / "audio"), "https://calls.example.com", clock=clock)
    speech = SpeechService({"elevenlabs": FakeSynthesizer(fail=True)}, store, cache=cache)
    webhooks = WebhookDispatcher()
    escalator = SilenceEscalator(registry)
    connector = UnusedConnector()
    flow = CallFlow(registry, engine, escalator, speech, webhooks, media_stream_url=media_stream_url(store.public_base_url))
    return Services(
        config=AppConfig(),
        registry=registry,
        classifier=classifier,
        generator=generator,
        engine=engine,
        escalator=escalator,
        cache=cache,
        speech=speech,
        webhooks=webhooks,
        connector=connector,
        relay=AudioRelay(registry, connector, classifier),
        flow=flow,
        maintenance=Maintenance(registry, engine, cache, store, clock=clock),
        started_at=clock(),
    )


def client_for(services):
    app = OrchestratorServer(services).build_app()
    return test_utils.TestClient(test_utils.TestServer(app))


NEW_CALL = {"callSid": "CA1", "to": "+15551234567"}


class TestProbes:
    @pytest.mark.asyncio
    async def test_health(self, services):
        async with client_for(services) as client:
            resp = await client.get("/health")
            assert resp.status == 200
            body = await resp.json()

        assert body["status"] == "healthy"
        assert body["active_calls"] == 0
        assert body["pending_webhooks"] == 0
        assert body["maintenance_running"] is False

    @pytest.mark.asyncio
    async def test_metrics(self, services):
        async with client_for(services) as client:
            resp = await client.get("/metrics")
            assert resp.status == 200
            text = await resp.text()
        assert "call_orchestrator_" in text


class TestCallEndpoints:
    @pytest.mark.asyncio
    async def test_register_and_status(self, services):
        async with client_for(services) as client:
            resp = await client.post("/calls", json=NEW_CALL)
            assert resp.status == 201
            created = await resp.json()

            resp = await client.get("/calls/CA1")
            assert resp.status == 200
            view = await resp.json()

        assert created["conversationId"] == "conv_CA1"
        assert view["callSid"] == "CA1"
        assert view["status"] == "initiated"

    @pytest.mark.asyncio
    async def test_register_rejects_bad_config(self, services):
        async with client_for(services) as client:
            resp = await client.post("/calls", json={**NEW_CALL, "maxDuration": 5})
            assert resp.status == 400
            body = await resp.json()

        assert body["error"]["field"] == "maxDuration"
        assert body["error"]["reason"] == "out_of_range"
        assert "CA1" not in services.registry

    @pytest.mark.asyncio
    async def test_unknown_call_is_404(self, services):
        async with client_for(services) as client:
            resp = await client.get("/calls/ghost")
            assert resp.status == 404

    @pytest.mark.asyncio
    async def test_turn_based_round_trip(self, services):
        async with client_for(services) as client:
            await client.post("/calls", json=NEW_CALL)

            resp = await client.post("/calls/CA1/answer")
            answer = await resp.json()

            resp = await client.post("/calls/CA1/speech", data={"SpeechResult": "tell me more", "Confidence": "0.9"})
            turn = await resp.json()

            resp = await client.post("/calls/CA1/no-speech?silenceCount=0")
            check_in = await resp.json()

        assert [a["verb"] for a in answer["actions"]] == ["say", "gather"]
        assert turn["actions"][0] == {"verb": "say", "text": "Sounds good, tell me more."}
        assert check_in["actions"][0]["text"] == "Hey, are you there?"

    @pytest.mark.asyncio
    async def test_status_and_recording_callbacks(self, services):
        async with client_for(services) as client:
            await client.post("/calls", json=NEW_CALL)

            resp = await client.post("/calls/CA1/status", data={"CallStatus": "in-progress"})
            assert (await resp.json())["status"] == "in-progress"

            resp = await client.post("/calls/CA1/status", json={})
            assert resp.status == 400

            resp = await client.post("/calls/CA1/recording", json={"recordingUrl": "https://rec.example.com/1.mp3"})
            assert (await resp.json())["tracked"] is True

        assert services.registry.get("CA1").recording_url == "https://rec.example.com/1.mp3"
        services.flow.close()


class TestMedia:
    @pytest.mark.asyncio
    async def test_audio_served_with_content_type(self, services):
        name = services.speech.store.save(b"ID3-bytes")
        async with client_for(services) as client:
            resp = await client.get(f"/audio/{name}")
            assert resp.status == 200
            assert resp.headers["Content-Type"] == "audio/mpeg"
            assert await resp.read() == b"ID3-bytes"

            resp = await client.get("/audio/missing.mp3")
            assert resp.status == 404

            resp = await client.get("/audio/evil.exe")
            assert resp.status == 404

    @pytest.mark.asyncio
    async def test_media_stream_rejects_start_without_call(self, services):
        async with client_for(services) as client:
            ws = await client.ws_connect("/media-stream")
            await ws.send_json({"event": "start", "streamSid": "MZ1", "start": {}})
            msg = await ws.receive()
            assert msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSED)
            assert ws.close_code == CLOSE_POLICY_VIOLATION
            await ws.close()
