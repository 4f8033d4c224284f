"""pytest 설정 파일

공통 fixtures 및 테스트 설정
"""

import pytest
import tempfile
import yaml
from pathlib import Path
from typing import Any, Dict, List, Tuple

from sfu_signaling.config.models import Config, MediaConfig
from sfu_signaling.media.local_engine import LocalMediaEngine
from sfu_signaling.signaling.dispatcher import Broadcaster, SignalingDispatcher


@pytest.fixture
def temp_config_file():
    """임시 설정 파일 fixture"""
    config_data = {
        "server": {
            "host": "127.0.0.1",
            "port": 4443,
            "cors_origins": ["https://voice.example.com"],
        },
        "media": {
            "engine": "local",
            "listen_ip": "0.0.0.0",
            "announced_ip": "203.0.113.10",
            "request_timeout": 5,
        },
        "turn": {
            "enabled": True,
            "host": "turn.example.com",
            "port": 3478,
            "username": "voice",
            "credential": "secret",
        },
        "logging": {
            "level": "INFO",
            "format": "json",
        },
    }

    # 임시 파일 생성
    with tempfile.NamedTemporaryFile(
        mode='w',
        suffix='.yaml',
        delete=False,
        encoding='utf-8'
    ) as f:
        yaml.dump(config_data, f)
        temp_path = f.name

    yield temp_path

    # 정리
    Path(temp_path).unlink(missing_ok=True)


@pytest.fixture
def invalid_config_file():
    """잘못된 설정 파일 fixture"""
    config_data = {
        "server": {
            "port": 99999,  # 잘못된 포트 (65535 초과)
        },
        "media": {
            "engine": "gstreamer",  # 지원하지 않는 엔진
        }
    }

    with tempfile.NamedTemporaryFile(
        mode='w',
        suffix='.yaml',
        delete=False,
        encoding='utf-8'
    ) as f:
        yaml.dump(config_data, f)
        temp_path = f.name

    yield temp_path

    Path(temp_path).unlink(missing_ok=True)


# ===== 미디어 협상 샘플 =====

@pytest.fixture
def dtls_parameters() -> Dict[str, Any]:
    """클라이언트 DTLS 파라미터"""
    return {
        "role": "client",
        "fingerprints": [
            {"algorithm": "sha-256", "value": "AB:CD:EF:01:23:45:67:89"},
        ],
    }


@pytest.fixture
def opus_rtp_parameters() -> Dict[str, Any]:
    """Opus 송신 RTP 파라미터"""
    return {
        "mid": "0",
        "codecs": [{
            "mimeType": "audio/opus",
            "payloadType": 100,
            "clockRate": 48000,
            "channels": 2,
            "parameters": {"useinbandfec": 1},
        }],
        "encodings": [{"ssrc": 11111111}],
    }


@pytest.fixture
def client_rtp_capabilities() -> Dict[str, Any]:
    """클라이언트 수신 capability"""
    return {
        "codecs": [{
            "kind": "audio",
            "mimeType": "audio/opus",
            "clockRate": 48000,
            "channels": 2,
        }],
        "headerExtensions": [],
    }


# ===== 서버 구성 요소 =====

class RecordingBroadcaster(Broadcaster):
    """push 기록용 Broadcaster"""

    def __init__(self):
        self.sent: List[Tuple[str, Dict[str, Any], Any]] = []

    async def emit_all(self, event, data):
        self.sent.append((event, data, None))

    async def emit_others(self, event, data, skip_connection_id):
        self.sent.append((event, data, skip_connection_id))

    def events(self, name: str) -> List[Dict[str, Any]]:
        return [data for event, data, _ in self.sent if event == name]


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
async def local_engine():
    """기동된 LocalMediaEngine"""
    engine = LocalMediaEngine(MediaConfig(announced_ip="203.0.113.10"))
    await engine.start()
    yield engine
    await engine.close()


@pytest.fixture
def dispatcher(local_engine, broadcaster):
    """Local 엔진 기반 SignalingDispatcher"""
    config = Config(turn={"enabled": True, "host": "turn.example.com",
                          "username": "voice", "credential": "secret"})
    return SignalingDispatcher(local_engine, config, broadcaster=broadcaster)
