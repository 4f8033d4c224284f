"""HTTP Media Engine

외부 SFU 미디어 서비스(워커/라우터를 보유한 사이드카 프로세스)를
REST API 로 호출하는 미디어 엔진 구현.

API:
    GET    /health
    GET    /router/rtp-capabilities
    POST   /transports                        {direction, listenIp, announcedIp, appData}
    POST   /transports/{id}/connect           {dtlsParameters}
    POST   /transports/{id}/producers         {kind, rtpParameters, appData}
    POST   /transports/{id}/consumers         {producerId, rtpCapabilities, paused}
    DELETE /transports/{id} | /producers/{id} | /consumers/{id}
"""

import asyncio
from typing import Any, Dict, Optional

import aiohttp

from sfu_signaling.common.exceptions import MediaEngineError, MediaEngineNotReadyError
from sfu_signaling.common.logger import get_logger
from sfu_signaling.config.models import MediaConfig
from sfu_signaling.media.engine import (
    ConsumerHandle,
    MediaEngine,
    ProducerHandle,
    TransportHandle,
)

logger = get_logger(__name__)


class HttpConsumer(ConsumerHandle):
    """원격 Consumer 핸들"""

    def __init__(self, engine: "HttpMediaEngine", payload: Dict[str, Any]):
        super().__init__(
            payload["id"],
            payload["producerId"],
            payload.get("kind", ""),
            payload.get("rtpParameters", {}),
        )
        self._engine = engine

    async def close(self) -> None:
        if self.closed:
            return
        await self._engine.request("DELETE", f"/consumers/{self.id}", allow_missing=True)
        self.closed = True


class HttpProducer(ProducerHandle):
    """원격 Producer 핸들"""

    def __init__(self, engine: "HttpMediaEngine", payload: Dict[str, Any],
                 rtp_parameters: Dict[str, Any], app_data: Optional[Dict[str, Any]]):
        super().__init__(payload["id"], payload.get("kind", ""), rtp_parameters, app_data)
        self._engine = engine

    async def close(self) -> None:
        if self.closed:
            return
        await self._engine.request("DELETE", f"/producers/{self.id}", allow_missing=True)
        self.closed = True


class HttpTransport(TransportHandle):
    """원격 WebRTC Transport 핸들"""

    def __init__(self, engine: "HttpMediaEngine", payload: Dict[str, Any],
                 app_data: Optional[Dict[str, Any]]):
        super().__init__(
            payload["id"],
            ice_parameters=payload.get("iceParameters", {}),
            ice_candidates=payload.get("iceCandidates", []),
            dtls_parameters=payload.get("dtlsParameters", {}),
            app_data=app_data,
        )
        self._engine = engine

    async def connect(self, dtls_parameters: Dict[str, Any]) -> None:
        await self._engine.request(
            "POST", f"/transports/{self.id}/connect",
            json={"dtlsParameters": dtls_parameters},
        )
        # 원격 엔진은 상태 이벤트를 푸시하지 않으므로 connect 성공 시점에 통지
        self._notify("on_dtls_state_change", self.id, "connected")

    async def produce(
        self,
        kind: str,
        rtp_parameters: Dict[str, Any],
        app_data: Optional[Dict[str, Any]] = None,
    ) -> ProducerHandle:
        payload = await self._engine.request(
            "POST", f"/transports/{self.id}/producers",
            json={"kind": kind, "rtpParameters": rtp_parameters, "appData": app_data or {}},
        )
        return HttpProducer(self._engine, payload, rtp_parameters, app_data)

    async def consume(
        self,
        producer_id: str,
        rtp_capabilities: Dict[str, Any],
        paused: bool = False,
    ) -> ConsumerHandle:
        payload = await self._engine.request(
            "POST", f"/transports/{self.id}/consumers",
            json={
                "producerId": producer_id,
                "rtpCapabilities": rtp_capabilities,
                "paused": paused,
            },
        )
        return HttpConsumer(self._engine, payload)

    async def close(self) -> None:
        if self.closed:
            return
        await self._engine.request("DELETE", f"/transports/{self.id}", allow_missing=True)
        self.closed = True
        self._notify("on_dtls_state_change", self.id, "closed")


class HttpMediaEngine(MediaEngine):
    """외부 SFU 서비스 클라이언트

    health_check_interval 마다 /health 를 호출하고 연속
    health_failure_threshold 회 실패하면 엔진 사망을 통지한다.
    """

    def __init__(self, config: MediaConfig, session: Optional[aiohttp.ClientSession] = None):
        super().__init__()
        self.config = config
        self.base_url = config.engine_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._rtp_capabilities: Optional[Dict[str, Any]] = None
        self._health_task: Optional[asyncio.Task] = None
        self._consecutive_failures = 0
        self._dead = False

    @property
    def ready(self) -> bool:
        return self._rtp_capabilities is not None and not self._dead

    @property
    def rtp_capabilities(self) -> Dict[str, Any]:
        if not self.ready:
            raise MediaEngineNotReadyError("Router not initialized")
        return self._rtp_capabilities

    async def start(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.request_timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)

        self._rtp_capabilities = await self.request("GET", "/router/rtp-capabilities")
        self._health_task = asyncio.create_task(self._health_loop())

        logger.info("http_media_engine_started", engine_url=self.base_url)

    async def close(self) -> None:
        if self._health_task:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None
        self._rtp_capabilities = None

        logger.info("http_media_engine_closed", engine_url=self.base_url)

    async def create_transport(
        self,
        direction: Optional[str] = None,
        app_data: Optional[Dict[str, Any]] = None,
    ) -> TransportHandle:
        if not self.ready:
            raise MediaEngineNotReadyError("Router not initialized")

        payload = await self.request("POST", "/transports", json={
            "direction": direction,
            "listenIp": self.config.listen_ip,
            "announcedIp": self.config.announced_ip,
            "appData": app_data or {},
        })
        return HttpTransport(self, payload, app_data)

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        allow_missing: bool = False,
    ) -> Any:
        """엔진 REST 호출

        Args:
            method: HTTP 메서드
            path: 경로 (/transports ...)
            json: 요청 본문
            allow_missing: 404 를 성공으로 간주 (이미 해제된 리소스 삭제)

        Returns:
            응답 JSON (본문 없으면 None)

        Raises:
            MediaEngineError: 연결 실패 또는 2xx 이외 응답
        """
        if self._session is None:
            raise MediaEngineNotReadyError("Media engine session not started")

        url = f"{self.base_url}{path}"
        try:
            async with self._session.request(method, url, json=json) as response:
                if allow_missing and response.status == 404:
                    return None

                if response.status < 200 or response.status >= 300:
                    message = await self._error_message(response)
                    raise MediaEngineError(message)

                if response.status == 204 or response.content_length == 0:
                    return None
                return await response.json()

        except asyncio.TimeoutError:
            raise MediaEngineError(f"media engine timeout: {method} {path}")
        except aiohttp.ClientError as e:
            raise MediaEngineError(f"media engine unreachable: {e}") from e

    @staticmethod
    async def _error_message(response: aiohttp.ClientResponse) -> str:
        try:
            body = await response.json()
        except (aiohttp.ContentTypeError, ValueError):
            body = None
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
        return f"media engine error: HTTP {response.status}"

    async def check_health(self) -> bool:
        """/health 1회 확인, 임계치 도달 시 사망 통지"""
        try:
            await self.request("GET", "/health")
            self._consecutive_failures = 0
            return True
        except MediaEngineError as e:
            self._consecutive_failures += 1
            logger.warning("media_engine_health_check_failed",
                           engine_url=self.base_url,
                           failures=self._consecutive_failures,
                           error=str(e))

        if self._consecutive_failures >= self.config.health_failure_threshold and not self._dead:
            self._dead = True
            await self._emit_died(
                f"health check failed {self._consecutive_failures} times"
            )
        return False

    async def _health_loop(self) -> None:
        while not self._dead:
            await asyncio.sleep(self.config.health_check_interval)
            await self.check_health()
