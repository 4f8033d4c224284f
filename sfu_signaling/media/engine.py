"""Media Engine 인터페이스

외부 SFU 미디어 엔진(ICE/DTLS/RTP 처리)과의 계약 정의.
시그널링 서버는 이 추상 클래스만 사용하며 미디어 평면 작업은 엔진에 위임한다.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sfu_signaling.common.logger import get_logger, log_with_context

logger = get_logger(__name__)

EngineDiedCallback = Callable[[str], Awaitable[None]]


class TransportDirection(str, Enum):
    """Transport 방향 (참고용, 엔진 동작에는 영향 없음)"""
    SEND = "send"
    RECV = "recv"


class MediaKind(str, Enum):
    """미디어 종류"""
    AUDIO = "audio"
    VIDEO = "video"


class MediaObserver:
    """핸들 상태 변화 관찰자

    엔진이 핸들별 이벤트(ICE/DTLS 상태 변화, RTP trace)를 전달하는 인터페이스.
    기본 구현은 아무 것도 하지 않는다.
    """

    def on_ice_state_change(self, transport_id: str, state: str) -> None:
        pass

    def on_dtls_state_change(self, transport_id: str, state: str) -> None:
        pass

    def on_producer_trace(self, producer_id: str, trace: Dict[str, Any]) -> None:
        pass


class LoggingMediaObserver(MediaObserver):
    """상태 변화를 로그로만 남기는 관찰자 (정보성)"""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        self.log = log_with_context(connection_id=connection_id)

    def on_ice_state_change(self, transport_id: str, state: str) -> None:
        self.log.info("transport_ice_state_changed", transport_id=transport_id, state=state)

    def on_dtls_state_change(self, transport_id: str, state: str) -> None:
        self.log.info("transport_dtls_state_changed", transport_id=transport_id, state=state)

    def on_producer_trace(self, producer_id: str, trace: Dict[str, Any]) -> None:
        if trace.get("type") == "rtp":
            self.log.debug("producer_rtp_trace", producer_id=producer_id)


class MediaHandle(ABC):
    """엔진 리소스 핸들 공통 베이스

    close()는 가능하면 멱등이지만 호출자는 이를 가정하면 안 된다.
    """

    def __init__(self, handle_id: str, app_data: Optional[Dict[str, Any]] = None):
        self.id = handle_id
        self.app_data: Dict[str, Any] = dict(app_data or {})
        self.closed = False
        self._observers: List[MediaObserver] = []

    def add_observer(self, observer: MediaObserver) -> None:
        """상태 변화 관찰자 등록"""
        self._observers.append(observer)

    def _notify(self, method: str, *args: Any) -> None:
        for observer in list(self._observers):
            try:
                getattr(observer, method)(*args)
            except Exception as e:
                logger.warning("media_observer_error",
                               handle_id=self.id,
                               callback=method,
                               error=str(e))

    @abstractmethod
    async def close(self) -> None:
        """리소스 해제"""
        pass


class ConsumerHandle(MediaHandle):
    """수신 미디어 트랙 (원격 Producer 에 바인딩)"""

    def __init__(
        self,
        handle_id: str,
        producer_id: str,
        kind: str,
        rtp_parameters: Dict[str, Any],
        app_data: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(handle_id, app_data)
        self.producer_id = producer_id
        self.kind = kind
        self.rtp_parameters = rtp_parameters


class ProducerHandle(MediaHandle):
    """송신 미디어 트랙"""

    def __init__(
        self,
        handle_id: str,
        kind: str,
        rtp_parameters: Dict[str, Any],
        app_data: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(handle_id, app_data)
        self.kind = kind
        self.rtp_parameters = rtp_parameters


class TransportHandle(MediaHandle):
    """협상된 WebRTC 미디어 경로"""

    def __init__(
        self,
        handle_id: str,
        ice_parameters: Dict[str, Any],
        ice_candidates: List[Dict[str, Any]],
        dtls_parameters: Dict[str, Any],
        app_data: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(handle_id, app_data)
        self.ice_parameters = ice_parameters
        self.ice_candidates = ice_candidates
        self.dtls_parameters = dtls_parameters

    @abstractmethod
    async def connect(self, dtls_parameters: Dict[str, Any]) -> None:
        """클라이언트 DTLS 파라미터로 Transport 연결"""
        pass

    @abstractmethod
    async def produce(
        self,
        kind: str,
        rtp_parameters: Dict[str, Any],
        app_data: Optional[Dict[str, Any]] = None,
    ) -> ProducerHandle:
        """송신 트랙 생성"""
        pass

    @abstractmethod
    async def consume(
        self,
        producer_id: str,
        rtp_capabilities: Dict[str, Any],
        paused: bool = False,
    ) -> ConsumerHandle:
        """원격 Producer 를 수신하는 Consumer 생성"""
        pass


class MediaEngine(ABC):
    """SFU 미디어 엔진 (워커 + 라우터)"""

    def __init__(self):
        self._died_callbacks: List[EngineDiedCallback] = []

    def on_died(self, callback: EngineDiedCallback) -> None:
        """엔진 사망(프로세스 치명적) 콜백 등록"""
        self._died_callbacks.append(callback)

    async def _emit_died(self, reason: str) -> None:
        logger.critical("media_engine_died", reason=reason)
        # 콜백 하나가 실패해도 나머지는 호출된다
        for callback in list(self._died_callbacks):
            try:
                await callback(reason)
            except Exception as e:
                logger.error("media_engine_died_callback_failed",
                             reason=reason,
                             error=str(e),
                             exc_info=True)

    @property
    @abstractmethod
    def ready(self) -> bool:
        """라우터 초기화 완료 여부"""
        pass

    @property
    @abstractmethod
    def rtp_capabilities(self) -> Dict[str, Any]:
        """라우터 RTP capability 디스크립터

        Raises:
            MediaEngineNotReadyError: 아직 초기화되지 않음
        """
        pass

    @abstractmethod
    async def start(self) -> None:
        """워커/라우터 기동"""
        pass

    @abstractmethod
    async def close(self) -> None:
        """엔진 종료"""
        pass

    @abstractmethod
    async def create_transport(
        self,
        direction: Optional[str] = None,
        app_data: Optional[Dict[str, Any]] = None,
    ) -> TransportHandle:
        """WebRTC Transport 생성"""
        pass
