"""Signaling Dispatcher

클라이언트 요청을 레지스트리/프레즌스/미디어 엔진 작업으로 변환.
전송 계층(Socket.IO)과 무관하며 각 작업은 응답 페이로드(없으면 None)를 반환한다.
"""

import asyncio
import time
from typing import Any, Awaitable, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from sfu_signaling.common.exceptions import (
    ConnectionClosedError,
    MediaEngineError,
    MediaEngineNotReadyError,
    MediaEngineTimeoutError,
    ProducerNotFoundError,
    RegistryError,
    TransportNotFoundError,
)
from sfu_signaling.common.logger import get_logger
from sfu_signaling.config.models import Config
from sfu_signaling.media.engine import LoggingMediaObserver, MediaEngine, MediaHandle
from sfu_signaling.monitoring.metrics import PrometheusMetrics, get_metrics
from sfu_signaling.session.cleanup import CleanupCoordinator
from sfu_signaling.session.identity import IdentityRegistry
from sfu_signaling.session.presence import PresenceTracker
from sfu_signaling.session.registry import (
    ConsumerRecord,
    ProducerRecord,
    ResourceRegistry,
    TransportRecord,
)
from sfu_signaling.signaling.models import (
    ChannelRequest,
    ConnectTransportRequest,
    ConsumeRequest,
    CreateTransportRequest,
    ProduceRequest,
    RegisterRequest,
    format_request_error,
)

logger = get_logger(__name__)

RequestT = TypeVar("RequestT", bound=BaseModel)

EVENT_PARTICIPANTS_UPDATE = "voiceParticipantsUpdate"
EVENT_NEW_PRODUCER = "newProducer"


class Broadcaster:
    """서버 → 클라이언트 push 인터페이스

    기본 구현은 아무 것도 보내지 않는다.
    """

    async def emit_all(self, event: str, data: Dict[str, Any]) -> None:
        """모든 연결에 전송"""
        pass

    async def emit_others(self, event: str, data: Dict[str, Any], skip_connection_id: str) -> None:
        """발신 연결을 제외한 모든 연결에 전송"""
        pass


class SignalingDispatcher:
    """시그널링 메시지 처리기

    응답 규칙:
        - 성공: 작업별 페이로드
        - 실패: {"error": message}
        - 신원 미등록 연결의 미디어/채널 요청: None (무시)
    """

    def __init__(
        self,
        engine: MediaEngine,
        config: Optional[Config] = None,
        registry: Optional[ResourceRegistry] = None,
        identities: Optional[IdentityRegistry] = None,
        broadcaster: Optional[Broadcaster] = None,
        metrics: Optional[PrometheusMetrics] = None,
    ):
        """초기화

        Args:
            engine: 미디어 엔진 (start 완료 상태)
            config: 전체 설정
            registry: 리소스 레지스트리
            identities: 신원 바인딩
            broadcaster: push 전송자 (서버 바인딩 시 교체)
            metrics: 메트릭 (기본: 싱글톤)
        """
        self.engine = engine
        self.config = config or Config()
        self.registry = registry or ResourceRegistry()
        self.identities = identities or IdentityRegistry()
        self.broadcaster = broadcaster or Broadcaster()
        self.metrics = metrics or get_metrics()
        self.presence = PresenceTracker(self.identities, listener=self._broadcast_participants)
        self.cleanup = CleanupCoordinator(
            self.registry, self.identities, self.presence, metrics=self.metrics
        )

    # ===== 연결 수명 =====

    async def connect(self, connection_id: str) -> None:
        """연결 수립"""
        self.registry.register_connection(connection_id)
        self.metrics.set_active_connections(self.registry.get_stats()["connections"])
        logger.info("client_connected", connection_id=connection_id)

    async def disconnect(self, connection_id: str) -> None:
        """연결 종료 (전체 정리)"""
        await self.cleanup.disconnect(connection_id)
        self.metrics.set_active_connections(self.registry.get_stats()["connections"])
        logger.info("client_disconnected", connection_id=connection_id)

    # ===== 신원/프레즌스 =====

    async def register(self, connection_id: str, data: Any) -> Optional[Dict[str, Any]]:
        """register {userId, nickname}"""
        request, error = self._parse(RegisterRequest, data)
        if error:
            return self._respond("register", error)

        self.identities.bind(connection_id, request.user_id, request.nickname)
        return self._respond("register", None, status="ok")

    async def join_voice_channel(self, connection_id: str, data: Any) -> Optional[Dict[str, Any]]:
        """joinVoiceChannel {channelId}"""
        user_id = self.identities.user_for(connection_id)
        if user_id is None:
            return self._ignore("joinVoiceChannel", connection_id)

        request, error = self._parse(ChannelRequest, data)
        if error:
            return self._respond("joinVoiceChannel", error)

        await self.presence.join(request.channel_id, user_id)
        return self._respond("joinVoiceChannel", None, status="ok")

    async def leave_voice_channel(self, connection_id: str, data: Any) -> Optional[Dict[str, Any]]:
        """leaveVoiceChannel {channelId}

        채널 하나를 떠나도 연결의 모든 미디어 리소스가 해제된다.
        """
        if self.identities.user_for(connection_id) is None:
            return self._ignore("leaveVoiceChannel", connection_id)

        request, error = self._parse(ChannelRequest, data)
        if error:
            return self._respond("leaveVoiceChannel", error)

        await self.cleanup.leave_channel(connection_id, request.channel_id)
        return self._respond("leaveVoiceChannel", None, status="ok")

    async def _broadcast_participants(self, channel_id: str, participants: List[Dict[str, str]]) -> None:
        await self.broadcaster.emit_all(EVENT_PARTICIPANTS_UPDATE, {
            "channelId": channel_id,
            "participants": participants,
        })
        self.metrics.record_presence_broadcast()

    # ===== 미디어 =====

    async def get_rtp_capabilities(self, connection_id: str) -> Dict[str, Any]:
        """getRtpCapabilities (신원 불필요)"""
        try:
            capabilities = self.engine.rtp_capabilities
        except MediaEngineNotReadyError as e:
            return self._respond("getRtpCapabilities", {"error": str(e)})
        return self._respond("getRtpCapabilities", capabilities, status="ok")

    async def create_webrtc_transport(self, connection_id: str, data: Any = None) -> Optional[Dict[str, Any]]:
        """createWebRtcTransport {direction?}

        Returns:
            {id, iceParameters, iceCandidates, dtlsParameters, iceServers}
        """
        event = "createWebRtcTransport"
        if not self._authorized(connection_id):
            return self._ignore(event, connection_id)

        request, error = self._parse(CreateTransportRequest, data or {})
        if error:
            return self._respond(event, error)

        try:
            handle = await self._engine_call(
                "create_transport",
                self.engine.create_transport(
                    direction=request.direction,
                    app_data={"connectionId": connection_id},
                ),
            )
        except MediaEngineError as e:
            logger.error("transport_create_failed", connection_id=connection_id, error=str(e))
            return self._respond(event, {"error": str(e)})

        handle.add_observer(LoggingMediaObserver(connection_id))
        record = TransportRecord(handle=handle, connection_id=connection_id, direction=request.direction)
        error = await self._track(connection_id, handle, self.registry.add_transport, connection_id, record)
        if error:
            return self._respond(event, {"error": error})

        logger.info("transport_created",
                    connection_id=connection_id,
                    transport_id=handle.id,
                    direction=request.direction)
        self._update_resource_stats()

        return self._respond(event, {
            "id": handle.id,
            "iceParameters": handle.ice_parameters,
            "iceCandidates": handle.ice_candidates,
            "dtlsParameters": handle.dtls_parameters,
            "iceServers": self.config.turn.ice_servers(),
        }, status="ok")

    async def connect_transport(self, connection_id: str, data: Any) -> Optional[Any]:
        """connectTransport {transportId, dtlsParameters} -> "success" """
        event = "connectTransport"
        if not self._authorized(connection_id):
            return self._ignore(event, connection_id)

        request, error = self._parse(ConnectTransportRequest, data)
        if error:
            return self._respond(event, error)

        transport = self.registry.find_transport(connection_id, request.transport_id)
        if transport is None:
            return self._not_found(event, connection_id, TransportNotFoundError(request.transport_id))

        try:
            await self._engine_call("connect", transport.handle.connect(request.dtls_parameters))
        except MediaEngineError as e:
            logger.error("transport_connect_failed",
                         connection_id=connection_id,
                         transport_id=request.transport_id,
                         error=str(e))
            return self._respond(event, {"error": str(e)})

        logger.info("transport_connected",
                    connection_id=connection_id,
                    transport_id=request.transport_id)
        return self._respond(event, "success", status="ok")

    async def produce(self, connection_id: str, data: Any) -> Optional[Dict[str, Any]]:
        """produce {transportId, kind, rtpParameters, appData?} -> {id}

        성공 시 다른 모든 연결에 newProducer 를 push 한다.
        """
        event = "produce"
        if not self._authorized(connection_id):
            return self._ignore(event, connection_id)

        request, error = self._parse(ProduceRequest, data)
        if error:
            return self._respond(event, error)

        transport = self.registry.find_transport(connection_id, request.transport_id)
        if transport is None:
            return self._not_found(event, connection_id, TransportNotFoundError(request.transport_id))

        user_id = self.identities.user_for(connection_id)
        app_data = dict(request.app_data)
        app_data["connectionId"] = connection_id

        try:
            handle = await self._engine_call(
                "produce",
                transport.handle.produce(request.kind, request.rtp_parameters, app_data),
            )
        except MediaEngineError as e:
            logger.error("producer_create_failed",
                         connection_id=connection_id,
                         transport_id=request.transport_id,
                         error=str(e))
            return self._respond(event, {"error": str(e)})

        handle.add_observer(LoggingMediaObserver(connection_id))
        record = ProducerRecord(
            handle=handle,
            connection_id=connection_id,
            user_id=user_id,
            kind=request.kind,
        )
        error = await self._track(connection_id, handle, self.registry.add_producer,
                                  connection_id, request.transport_id, record)
        if error:
            return self._respond(event, {"error": error})

        logger.info("producer_created",
                    connection_id=connection_id,
                    user_id=user_id,
                    transport_id=request.transport_id,
                    producer_id=handle.id,
                    kind=request.kind)
        self._update_resource_stats()

        await self.broadcaster.emit_others(EVENT_NEW_PRODUCER, {
            "producerId": handle.id,
            "connectionId": connection_id,
            "socketId": connection_id,
            "userId": user_id,
        }, skip_connection_id=connection_id)

        return self._respond(event, {"id": handle.id}, status="ok")

    async def get_producers(self, connection_id: str) -> List[str]:
        """getProducers -> 디렉토리의 모든 Producer ID (자신 포함)"""
        return self._respond("getProducers", self.registry.producer_ids(), status="ok")

    async def consume(self, connection_id: str, data: Any) -> Optional[Dict[str, Any]]:
        """consume {transportId, producerId, rtpCapabilities}

        Returns:
            {id, producerId, kind, rtpParameters}
        """
        event = "consume"
        if not self._authorized(connection_id):
            return self._ignore(event, connection_id)

        request, error = self._parse(ConsumeRequest, data)
        if error:
            return self._respond(event, error)

        transport = self.registry.find_transport(connection_id, request.transport_id)
        if transport is None:
            return self._not_found(event, connection_id, TransportNotFoundError(request.transport_id))

        if self.registry.find_producer(request.producer_id) is None:
            return self._not_found(event, connection_id, ProducerNotFoundError(request.producer_id))

        try:
            handle = await self._engine_call(
                "consume",
                transport.handle.consume(request.producer_id, request.rtp_capabilities, paused=False),
            )
        except MediaEngineError as e:
            logger.error("consumer_create_failed",
                         connection_id=connection_id,
                         transport_id=request.transport_id,
                         producer_id=request.producer_id,
                         error=str(e))
            return self._respond(event, {"error": str(e)})

        record = ConsumerRecord(
            handle=handle,
            connection_id=connection_id,
            transport_id=request.transport_id,
            producer_id=request.producer_id,
        )
        error = await self._track(connection_id, handle, self.registry.add_consumer,
                                  connection_id, request.transport_id, record)
        if error:
            return self._respond(event, {"error": error})

        # Producer 가 engine 호출 도중 해제되었으면 남은 Consumer 도 해제
        if self.registry.find_producer(request.producer_id) is None:
            for orphan in self.registry.release_consumers_of([request.producer_id]):
                await self._discard(orphan.handle)
            return self._not_found(event, connection_id, ProducerNotFoundError(request.producer_id))

        logger.info("consumer_created",
                    connection_id=connection_id,
                    transport_id=request.transport_id,
                    producer_id=request.producer_id,
                    consumer_id=handle.id)
        self._update_resource_stats()

        return self._respond(event, {
            "id": handle.id,
            "producerId": request.producer_id,
            "kind": handle.kind,
            "rtpParameters": handle.rtp_parameters,
        }, status="ok")

    # ===== 내부 헬퍼 =====

    def _authorized(self, connection_id: str) -> bool:
        if not self.config.signaling.require_registration:
            return True
        return self.identities.user_for(connection_id) is not None

    def _parse(self, model: Type[RequestT], data: Any):
        """요청 페이로드 검증

        Returns:
            (model, None) 또는 (None, {"error": message})
        """
        if not isinstance(data, dict):
            return None, {"error": "Invalid request: payload must be an object"}
        try:
            return model.model_validate(data), None
        except ValidationError as e:
            return None, {"error": format_request_error(e)}

    async def _engine_call(self, operation: str, call: Awaitable[Any]) -> Any:
        """엔진 호출 (타임아웃 + 지연 측정)

        Raises:
            MediaEngineTimeoutError: media.request_timeout 초과
            MediaEngineError: 엔진 실패
        """
        started = time.monotonic()
        try:
            return await asyncio.wait_for(call, timeout=self.config.media.request_timeout)
        except asyncio.TimeoutError:
            raise MediaEngineTimeoutError(f"media engine timeout: {operation}")
        finally:
            self.metrics.record_engine_latency(operation, time.monotonic() - started)

    async def _track(self, connection_id: str, handle: MediaHandle, add, *args) -> Optional[str]:
        """새 핸들 등록, 등록할 수 없으면 즉시 해제

        Returns:
            None (등록 성공) 또는 응답용 에러 메시지
        """
        try:
            add(*args)
            return None
        except (ConnectionClosedError, TransportNotFoundError) as e:
            logger.warning("resource_discarded",
                           connection_id=connection_id,
                           resource_id=handle.id,
                           reason=str(e))
            await self._discard(handle)
            if isinstance(e, ConnectionClosedError):
                return "Connection closed"
            return str(e)

    async def _discard(self, handle: MediaHandle) -> None:
        try:
            await handle.close()
        except Exception as e:
            logger.error("resource_discard_failed", resource_id=handle.id, error=str(e))

    def _update_resource_stats(self) -> None:
        self.metrics.set_resource_stats(self.registry.get_stats())

    def _not_found(self, event: str, connection_id: str, error: RegistryError) -> Dict[str, str]:
        logger.warning("request_resource_not_found",
                       connection_id=connection_id,
                       request=event,
                       error=str(error))
        return self._respond(event, {"error": str(error)})

    def _ignore(self, event: str, connection_id: str) -> None:
        logger.debug("request_ignored_unregistered", connection_id=connection_id, request=event)
        self.metrics.record_request(event, "ignored")
        return None

    def _respond(self, event: str, payload: Any, status: Optional[str] = None) -> Any:
        if status is None:
            status = "error" if isinstance(payload, dict) and "error" in payload else "ok"
        self.metrics.record_request(event, status)
        return payload
