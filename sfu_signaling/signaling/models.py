"""Signaling 요청 모델

클라이언트 메시지 페이로드 검증 (camelCase 와이어 필드)
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sfu_signaling.media.engine import MediaKind, TransportDirection


class SignalingRequest(BaseModel):
    """요청 베이스 (와이어 필드는 camelCase, 알 수 없는 필드는 무시)"""
    model_config = ConfigDict(
        populate_by_name=True,
        coerce_numbers_to_str=True,
        use_enum_values=True,
        extra="ignore",
    )


class RegisterRequest(SignalingRequest):
    user_id: str = Field(..., alias="userId", min_length=1)
    nickname: Optional[str] = None


class ChannelRequest(SignalingRequest):
    channel_id: str = Field(..., alias="channelId", min_length=1)


class CreateTransportRequest(SignalingRequest):
    direction: Optional[TransportDirection] = None


class ConnectTransportRequest(SignalingRequest):
    transport_id: str = Field(..., alias="transportId")
    dtls_parameters: Dict[str, Any] = Field(..., alias="dtlsParameters")


class ProduceRequest(SignalingRequest):
    transport_id: str = Field(..., alias="transportId")
    kind: MediaKind
    rtp_parameters: Dict[str, Any] = Field(..., alias="rtpParameters")
    app_data: Dict[str, Any] = Field(default_factory=dict, alias="appData")


class ConsumeRequest(SignalingRequest):
    transport_id: str = Field(..., alias="transportId")
    producer_id: str = Field(..., alias="producerId")
    rtp_capabilities: Dict[str, Any] = Field(..., alias="rtpCapabilities")


def format_request_error(error: ValidationError) -> str:
    """검증 오류를 한 줄 메시지로 변환

    Args:
        error: pydantic ValidationError

    Returns:
        "Invalid request: field: msg; ..." 형식
    """
    parts = []
    for item in error.errors():
        location = ".".join(str(loc) for loc in item.get("loc", ()))
        parts.append(f"{location}: {item.get('msg')}" if location else item.get("msg", ""))
    return "Invalid request: " + "; ".join(parts)
