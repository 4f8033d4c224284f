"""Local Media Engine

프로세스 내에서 동작하는 미디어 엔진 구현 (개발/테스트용).
실제 RTP 는 처리하지 않고 워커/라우터/Transport/Producer/Consumer 의
생명주기와 파라미터 협상 결과만 흉내낸다.
"""

import itertools
import random
import secrets
import uuid
from typing import Any, Dict, List, Optional

from sfu_signaling.common.exceptions import MediaEngineError, MediaEngineNotReadyError
from sfu_signaling.common.logger import get_logger
from sfu_signaling.config.models import MediaConfig
from sfu_signaling.media.engine import (
    ConsumerHandle,
    MediaEngine,
    MediaKind,
    ProducerHandle,
    TransportHandle,
)

logger = get_logger(__name__)

# 동적 payload type 시작값
DYNAMIC_PAYLOAD_TYPE_BASE = 100

# 시뮬레이션 ICE 포트 범위
ICE_PORT_START = 40000


def _mime_types(rtp_description: Dict[str, Any]) -> List[str]:
    """codecs 항목의 mimeType 목록 (소문자)"""
    codecs = rtp_description.get("codecs") or []
    return [str(c.get("mimeType", "")).lower() for c in codecs if isinstance(c, dict)]


class LocalConsumer(ConsumerHandle):
    """Local Consumer"""

    def __init__(self, transport: "LocalTransport", producer: "LocalProducer",
                 rtp_parameters: Dict[str, Any], paused: bool):
        super().__init__(str(uuid.uuid4()), producer.id, producer.kind, rtp_parameters)
        self.paused = paused
        self._transport = transport
        self._producer = producer

    def _close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._transport._consumers.pop(self.id, None)
        self._producer._consumers.pop(self.id, None)

    async def close(self) -> None:
        self._close()


class LocalProducer(ProducerHandle):
    """Local Producer"""

    def __init__(self, engine: "LocalMediaEngine", transport: "LocalTransport", kind: str,
                 rtp_parameters: Dict[str, Any], app_data: Optional[Dict[str, Any]]):
        super().__init__(str(uuid.uuid4()), kind, rtp_parameters, app_data)
        self._engine = engine
        self._transport = transport
        self._consumers: Dict[str, LocalConsumer] = {}

    def _close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Producer 가 닫히면 이를 수신하던 Consumer 도 함께 닫힌다
        for consumer in list(self._consumers.values()):
            consumer._close()
        self._transport._producers.pop(self.id, None)
        self._engine._producers.pop(self.id, None)

    async def close(self) -> None:
        self._close()


class LocalTransport(TransportHandle):
    """Local WebRTC Transport"""

    def __init__(self, engine: "LocalMediaEngine", ip: str, port: int,
                 app_data: Optional[Dict[str, Any]]):
        super().__init__(
            str(uuid.uuid4()),
            ice_parameters={
                "usernameFragment": secrets.token_hex(8),
                "password": secrets.token_hex(16),
                "iceLite": True,
            },
            ice_candidates=[
                {
                    "foundation": "udpcandidate",
                    "priority": 1076302079,
                    "ip": ip,
                    "protocol": "udp",
                    "port": port,
                    "type": "host",
                },
                {
                    "foundation": "tcpcandidate",
                    "priority": 1076276479,
                    "ip": ip,
                    "protocol": "tcp",
                    "port": port,
                    "type": "host",
                    "tcpType": "passive",
                },
            ],
            dtls_parameters={
                "role": "auto",
                "fingerprints": [
                    {
                        "algorithm": "sha-256",
                        "value": ":".join(secrets.token_hex(1).upper() for _ in range(32)),
                    }
                ],
            },
            app_data=app_data,
        )
        self._engine = engine
        self.connected = False
        self._producers: Dict[str, LocalProducer] = {}
        self._consumers: Dict[str, LocalConsumer] = {}
        self._mids = itertools.count()

    def _ensure_open(self) -> None:
        if self.closed:
            raise MediaEngineError(f"Transport closed: {self.id}")

    async def connect(self, dtls_parameters: Dict[str, Any]) -> None:
        self._ensure_open()
        if self.connected:
            raise MediaEngineError("connect() already called")
        if not isinstance(dtls_parameters, dict) or not dtls_parameters.get("fingerprints"):
            raise MediaEngineError("missing dtlsParameters.fingerprints")

        self.connected = True
        self._notify("on_ice_state_change", self.id, "connected")
        self._notify("on_dtls_state_change", self.id, "connecting")
        self._notify("on_dtls_state_change", self.id, "connected")

    async def produce(
        self,
        kind: str,
        rtp_parameters: Dict[str, Any],
        app_data: Optional[Dict[str, Any]] = None,
    ) -> ProducerHandle:
        self._ensure_open()
        if kind not in (MediaKind.AUDIO.value, MediaKind.VIDEO.value):
            raise MediaEngineError(f"invalid kind: {kind}")
        if not isinstance(rtp_parameters, dict):
            raise MediaEngineError("missing rtpParameters")

        supported = set(self._engine.supported_mime_types(kind))
        if not supported.intersection(_mime_types(rtp_parameters)):
            raise MediaEngineError("unsupported codec in rtpParameters")

        producer = LocalProducer(self._engine, self, kind, rtp_parameters, app_data)
        self._producers[producer.id] = producer
        self._engine._producers[producer.id] = producer
        return producer

    async def consume(
        self,
        producer_id: str,
        rtp_capabilities: Dict[str, Any],
        paused: bool = False,
    ) -> ConsumerHandle:
        self._ensure_open()
        producer = self._engine._producers.get(producer_id)
        if producer is None or producer.closed:
            raise MediaEngineError(f'Producer with id "{producer_id}" not found')
        if not isinstance(rtp_capabilities, dict):
            raise MediaEngineError("missing rtpCapabilities")

        remote = set(_mime_types(rtp_capabilities))
        codecs = [
            codec for codec in producer.rtp_parameters.get("codecs", [])
            if str(codec.get("mimeType", "")).lower() in remote
        ]
        if not codecs:
            raise MediaEngineError("cannot consume")

        rtp_parameters = {
            "codecs": codecs,
            "encodings": [{"ssrc": random.randint(100000000, 999999999)}],
            "mid": str(next(self._mids)),
        }
        consumer = LocalConsumer(self, producer, rtp_parameters, paused)
        self._consumers[consumer.id] = consumer
        producer._consumers[consumer.id] = consumer
        return consumer

    def _close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Transport 가 닫히면 그 위의 Producer/Consumer 도 닫힌다
        for consumer in list(self._consumers.values()):
            consumer._close()
        for producer in list(self._producers.values()):
            producer._close()
        self._engine._transports.pop(self.id, None)
        self._notify("on_dtls_state_change", self.id, "closed")

    async def close(self) -> None:
        self._close()


class LocalMediaEngine(MediaEngine):
    """프로세스 내 미디어 엔진"""

    def __init__(self, config: Optional[MediaConfig] = None):
        super().__init__()
        self.config = config or MediaConfig()
        self._ready = False
        self._rtp_capabilities: Dict[str, Any] = {}
        self._transports: Dict[str, LocalTransport] = {}
        self._producers: Dict[str, LocalProducer] = {}
        self._ports = itertools.count(ICE_PORT_START)

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def rtp_capabilities(self) -> Dict[str, Any]:
        if not self._ready:
            raise MediaEngineNotReadyError("Router not initialized")
        return self._rtp_capabilities

    def supported_mime_types(self, kind: str) -> List[str]:
        return [
            codec["mimeType"].lower()
            for codec in self._rtp_capabilities.get("codecs", [])
            if codec["kind"] == kind
        ]

    async def start(self) -> None:
        codecs = []
        for index, codec in enumerate(self.config.codecs):
            entry: Dict[str, Any] = {
                "kind": codec.kind,
                "mimeType": codec.mime_type,
                "preferredPayloadType": DYNAMIC_PAYLOAD_TYPE_BASE + index,
                "clockRate": codec.clock_rate,
                "parameters": dict(codec.parameters),
                "rtcpFeedback": [],
            }
            if codec.channels is not None:
                entry["channels"] = codec.channels
            codecs.append(entry)

        self._rtp_capabilities = {"codecs": codecs, "headerExtensions": []}
        self._ready = True

        logger.info("local_media_engine_started",
                    codecs=[c["mimeType"] for c in codecs])

    async def close(self) -> None:
        for transport in list(self._transports.values()):
            transport._close()
        self._ready = False
        logger.info("local_media_engine_closed")

    async def create_transport(
        self,
        direction: Optional[str] = None,
        app_data: Optional[Dict[str, Any]] = None,
    ) -> TransportHandle:
        if not self._ready:
            raise MediaEngineNotReadyError("Router not initialized")

        ip = self.config.announced_ip or self.config.listen_ip
        data = dict(app_data or {})
        if direction:
            data.setdefault("direction", direction)

        transport = LocalTransport(self, ip, next(self._ports), data)
        self._transports[transport.id] = transport
        return transport

    def get_stats(self) -> Dict[str, Any]:
        """엔진 내부 리소스 수"""
        return {
            "transports": len(self._transports),
            "producers": len(self._producers),
        }
