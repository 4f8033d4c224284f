"""설정 모델 정의

Pydantic을 사용한 타입 안전 설정 검증 모델
"""

from typing import Any, Dict, List, Optional
from enum import Enum
from pydantic import BaseModel, Field, field_validator, model_validator


class MediaEngineType(str, Enum):
    """미디어 엔진 구현 타입"""
    LOCAL = "local"  # 프로세스 내 시뮬레이션 엔진 (개발/테스트용)
    HTTP = "http"    # 외부 SFU 서비스 (REST)


class LogLevel(str, Enum):
    """로그 레벨"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """로그 포맷"""
    JSON = "json"
    TEXT = "text"


class TLSConfig(BaseModel):
    """HTTPS 설정 (운영 환경)"""
    enabled: bool = Field(default=False, description="HTTPS 사용 여부")
    cert_file: Optional[str] = Field(default=None, description="인증서 체인 파일 (fullchain.pem)")
    key_file: Optional[str] = Field(default=None, description="개인키 파일 (privkey.pem)")

    @model_validator(mode='after')
    def validate_tls_files(self) -> "TLSConfig":
        """TLS 활성화 시 인증서/키 파일 필수"""
        if self.enabled and (not self.cert_file or not self.key_file):
            raise ValueError("tls.cert_file and tls.key_file are required when tls.enabled is true")
        return self


class ServerConfig(BaseModel):
    """시그널링 서버 설정"""
    host: str = Field(default="0.0.0.0", description="리스닝 IP")
    port: int = Field(default=4000, ge=0, le=65535, description="리스닝 포트 (0: 임의 포트)")
    socketio_path: str = Field(default="/socket.io", description="Socket.IO 경로")
    cors_origins: List[str] = Field(
        default=["http://localhost:5173"],
        description="허용 CORS origin ('*' 는 전체 허용)"
    )
    tls: TLSConfig = Field(default_factory=TLSConfig)

    @field_validator('cors_origins', mode='before')
    @classmethod
    def split_origins(cls, v: Any) -> Any:
        """콤마 구분 문자열 허용 (환경 변수 오버라이드용)"""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v


class MediaCodecConfig(BaseModel):
    """라우터 미디어 코덱 설정"""
    kind: str = Field(default="audio", description="미디어 종류 (audio, video)")
    mime_type: str = Field(default="audio/opus", description="MIME 타입")
    clock_rate: int = Field(default=48000, ge=8000, le=192000, description="클럭 레이트 (Hz)")
    channels: Optional[int] = Field(default=2, ge=1, le=8, description="채널 수")
    parameters: Dict[str, Any] = Field(
        default_factory=lambda: {"useinbandfec": 1, "usedtx": 1, "maxptime": 60},
        description="코덱 파라미터"
    )


class MediaConfig(BaseModel):
    """미디어 엔진 설정"""
    engine: MediaEngineType = Field(default=MediaEngineType.LOCAL, description="미디어 엔진 타입")
    engine_url: str = Field(default="http://127.0.0.1:3000", description="외부 SFU 서비스 URL (engine=http)")
    listen_ip: str = Field(default="0.0.0.0", description="WebRTC Transport listen IP")
    announced_ip: Optional[str] = Field(default=None, description="ICE candidate 로 광고할 외부 IP")
    request_timeout: float = Field(default=10.0, gt=0, le=120, description="엔진 요청 타임아웃 (초)")
    health_check_interval: int = Field(default=5, ge=1, le=300, description="엔진 헬스체크 주기 (초)")
    health_failure_threshold: int = Field(default=3, ge=1, le=100, description="엔진 사망 판정 연속 실패 횟수")
    codecs: List[MediaCodecConfig] = Field(
        default_factory=lambda: [MediaCodecConfig()],
        description="라우터 미디어 코덱 목록"
    )


class TurnConfig(BaseModel):
    """TURN 서버 설정 (클라이언트에 iceServers 로 전달)"""
    # 환경 변수 오버라이드로 숫자형 비밀번호가 들어와도 문자열로 유지
    model_config = {"coerce_numbers_to_str": True}

    enabled: bool = Field(default=False, description="TURN 정보 전달 여부")
    host: Optional[str] = Field(default=None, description="TURN 호스트")
    port: int = Field(default=3478, ge=1, le=65535, description="TURN 포트")
    username: Optional[str] = Field(default=None, description="TURN 사용자")
    credential: Optional[str] = Field(default=None, description="TURN 비밀번호")

    def ice_servers(self) -> List[Dict[str, Any]]:
        """클라이언트용 iceServers 목록"""
        if not self.enabled or not self.host:
            return []
        return [{
            "urls": f"turn:{self.host}:{self.port}",
            "username": self.username,
            "credential": self.credential,
        }]


class SignalingConfig(BaseModel):
    """시그널링 정책 설정"""
    require_registration: bool = Field(
        default=True,
        description="register 전 미디어 요청 무시 여부"
    )


class LoggingConfig(BaseModel):
    """로깅 설정"""
    level: LogLevel = Field(default=LogLevel.INFO, description="로그 레벨")
    format: LogFormat = Field(default=LogFormat.JSON, description="로그 포맷")
    output: str = Field(default="stdout", description="로그 출력 (stdout, file)")


class MonitoringConfig(BaseModel):
    """모니터링 설정"""
    metrics_enabled: bool = Field(default=True, description="Prometheus 메트릭 노출 여부")
    metrics_path: str = Field(default="/metrics", description="메트릭 경로")


class Config(BaseModel):
    """전체 설정 모델"""
    model_config = {"use_enum_values": True, "validate_assignment": True}

    server: ServerConfig = Field(default_factory=ServerConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    turn: TurnConfig = Field(default_factory=TurnConfig)
    signaling: SignalingConfig = Field(default_factory=SignalingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
