"""Socket.IO Signaling Server Integration 테스트"""

import asyncio

import aiohttp
import pytest
import socketio

from sfu_signaling.common.logger import setup_logging
from sfu_signaling.config.models import Config
from sfu_signaling.media.local_engine import LocalMediaEngine
from sfu_signaling.signaling.dispatcher import SignalingDispatcher
from sfu_signaling.websocket.server import SignalingServer


@pytest.fixture(scope="module", autouse=True)
def setup_test_logging():
    """테스트용 로깅 설정"""
    setup_logging(level="DEBUG", format_type="text")


async def wait_until(predicate, timeout=3.0):
    """조건이 참이 될 때까지 대기"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


class VoiceClient:
    """테스트용 클라이언트 (수신 push 기록)"""

    def __init__(self):
        self.sio = socketio.AsyncClient()
        self.participants_updates = []
        self.new_producers = []
        self.sio.on("voiceParticipantsUpdate", self._on_participants)
        self.sio.on("newProducer", self._on_new_producer)

    async def _on_participants(self, data):
        self.participants_updates.append(data)

    async def _on_new_producer(self, data):
        self.new_producers.append(data)

    async def connect(self, url):
        await self.sio.connect(url, transports=["websocket"])

    async def call(self, event, data=None):
        if data is None:
            return await self.sio.call(event, timeout=5)
        return await self.sio.call(event, data, timeout=5)

    async def join(self, user_id, nickname, channel_id="lobby"):
        await self.call("register", {"userId": user_id, "nickname": nickname})
        await self.call("joinVoiceChannel", {"channelId": channel_id})

    async def transport(self, dtls_parameters, direction):
        created = await self.call("createWebRtcTransport", {"direction": direction})
        assert await self.call("connectTransport", {
            "transportId": created["id"],
            "dtlsParameters": dtls_parameters,
        }) == "success"
        return created


@pytest.fixture
async def server():
    config = Config(server={"host": "127.0.0.1", "port": 0})
    engine = LocalMediaEngine(config.media)
    await engine.start()
    server = SignalingServer(config, SignalingDispatcher(engine, config))
    await server.start()
    yield server
    await server.stop()
    await engine.close()


@pytest.fixture
def url(server):
    return f"http://127.0.0.1:{server.port}"


@pytest.fixture
async def clients():
    created = []

    def factory():
        client = VoiceClient()
        created.append(client)
        return client

    yield factory

    for client in created:
        if client.sio.connected:
            await client.sio.disconnect()


class TestSignalingServer:
    """와이어 계약 테스트"""

    @pytest.mark.asyncio
    async def test_health_route(self, url):
        async with aiohttp.ClientSession() as session:
            async with session.get(f"{url}/health") as response:
                body = await response.json()

        assert response.status == 200
        assert body["status"] == "ok"
        assert body["engine_ready"] is True

    @pytest.mark.asyncio
    async def test_metrics_route(self, url):
        async with aiohttp.ClientSession() as session:
            async with session.get(f"{url}/metrics") as response:
                text = await response.text()

        assert response.status == 200
        assert "signaling_connections_active" in text

    @pytest.mark.asyncio
    async def test_get_rtp_capabilities_without_payload(self, url, clients):
        client = clients()
        await client.connect(url)

        capabilities = await client.call("getRtpCapabilities")

        assert capabilities["codecs"][0]["mimeType"] == "audio/opus"

    @pytest.mark.asyncio
    async def test_unregistered_request_gets_empty_ack(self, url, clients):
        client = clients()
        await client.connect(url)

        assert await client.call("createWebRtcTransport", {}) is None

    @pytest.mark.asyncio
    async def test_two_participants(self, url, server, clients, dtls_parameters,
                                    opus_rtp_parameters, client_rtp_capabilities):
        alice = clients()
        bob = clients()
        await alice.connect(url)
        await bob.connect(url)

        await alice.join("u1", "alice")
        await bob.join("u2", "bob")

        await wait_until(lambda: any(len(u["participants"]) == 2 for u in alice.participants_updates))
        latest = [u for u in alice.participants_updates if len(u["participants"]) == 2][-1]
        assert latest["channelId"] == "lobby"
        assert sorted(p["nickname"] for p in latest["participants"]) == ["alice", "bob"]

        send = await alice.transport(dtls_parameters, "send")
        assert "iceServers" in send
        produced = await alice.call("produce", {
            "transportId": send["id"],
            "kind": "audio",
            "rtpParameters": opus_rtp_parameters,
        })

        await wait_until(lambda: bob.new_producers)
        assert bob.new_producers[0]["producerId"] == produced["id"]
        assert bob.new_producers[0]["userId"] == "u1"
        assert bob.new_producers[0]["socketId"] == alice.sio.get_sid()
        assert alice.new_producers == []

        assert await bob.call("getProducers") == [produced["id"]]

        recv = await bob.transport(dtls_parameters, "recv")
        consumed = await bob.call("consume", {
            "transportId": recv["id"],
            "producerId": produced["id"],
            "rtpCapabilities": client_rtp_capabilities,
        })
        assert consumed["producerId"] == produced["id"]
        assert consumed["kind"] == "audio"

        # 다른 연결의 Transport 는 사용할 수 없음
        assert await bob.call("connectTransport", {
            "transportId": send["id"],
            "dtlsParameters": dtls_parameters,
        }) == {"error": "Transport not found"}

        await alice.sio.disconnect()

        await wait_until(lambda: bob.participants_updates[-1]["participants"] == [
            {"userId": "u2", "nickname": "bob"},
        ])
        assert await bob.call("getProducers") == []
        assert server.dispatcher.registry.get_stats()["consumers"] == 0

    @pytest.mark.asyncio
    async def test_consume_unknown_producer(self, url, clients, dtls_parameters, client_rtp_capabilities):
        client = clients()
        await client.connect(url)
        await client.join("u1", "alice")
        recv = await client.transport(dtls_parameters, "recv")

        result = await client.call("consume", {
            "transportId": recv["id"],
            "producerId": "missing",
            "rtpCapabilities": client_rtp_capabilities,
        })

        assert result == {"error": "Producer not found"}
