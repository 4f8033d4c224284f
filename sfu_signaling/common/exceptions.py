"""커스텀 예외 클래스

SFU 시그널링 서버의 모든 커스텀 예외 정의
"""


class SignalingServerError(Exception):
    """Base exception for all signaling server errors"""
    pass


# Configuration Exceptions
class ConfigurationError(SignalingServerError):
    """설정 관련 에러"""
    pass


# Registry Exceptions
class RegistryError(SignalingServerError):
    """리소스 레지스트리 관련 에러"""
    pass


class ConnectionClosedError(RegistryError):
    """이미 종료된(disconnect) 연결에 리소스 등록 시도"""
    pass


class TransportNotFoundError(RegistryError):
    """연결 범위 내에서 Transport를 찾을 수 없음"""

    def __init__(self, transport_id: str = ""):
        super().__init__("Transport not found")
        self.transport_id = transport_id


class ProducerNotFoundError(RegistryError):
    """Producer 디렉토리에서 Producer를 찾을 수 없음"""

    def __init__(self, producer_id: str = ""):
        super().__init__("Producer not found")
        self.producer_id = producer_id


# Media Engine Exceptions
class MediaEngineError(SignalingServerError):
    """미디어 엔진이 요청을 거부하거나 실패"""
    pass


class MediaEngineNotReadyError(MediaEngineError):
    """미디어 엔진(라우터)이 아직 초기화되지 않음"""
    pass


class MediaEngineTimeoutError(MediaEngineError):
    """미디어 엔진 응답 타임아웃"""
    pass
