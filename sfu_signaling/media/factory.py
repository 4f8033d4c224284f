"""Media Engine 팩토리

설정에 따라 미디어 엔진 구현 생성
"""

from sfu_signaling.common.exceptions import ConfigurationError
from sfu_signaling.common.logger import get_logger
from sfu_signaling.config.models import MediaConfig, MediaEngineType
from sfu_signaling.media.engine import MediaEngine
from sfu_signaling.media.http_engine import HttpMediaEngine
from sfu_signaling.media.local_engine import LocalMediaEngine

logger = get_logger(__name__)


def create_media_engine(config: MediaConfig) -> MediaEngine:
    """미디어 엔진 생성

    Args:
        config: 미디어 설정

    Returns:
        MediaEngine 구현 (아직 start() 되지 않음)

    Raises:
        ConfigurationError: 알 수 없는 엔진 타입
    """
    engine_type = MediaEngineType(config.engine)

    if engine_type == MediaEngineType.LOCAL:
        engine: MediaEngine = LocalMediaEngine(config)
    elif engine_type == MediaEngineType.HTTP:
        engine = HttpMediaEngine(config)
    else:  # pragma: no cover
        raise ConfigurationError(f"Unsupported media engine: {config.engine}")

    logger.info("media_engine_created", engine=engine_type.value)
    return engine
