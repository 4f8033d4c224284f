"""설정 로더 단위 테스트"""

import pytest
import tempfile
from pathlib import Path
from pydantic import ValidationError

from sfu_signaling.common.exceptions import ConfigurationError
from sfu_signaling.config.config_loader import ConfigLoader, load_config
from sfu_signaling.config.models import Config, LogLevel, MediaEngineType, TurnConfig


class TestConfigLoader:
    """ConfigLoader 테스트"""

    def test_load_valid_config(self, temp_config_file):
        """정상 설정 파일 로드 테스트"""
        loader = ConfigLoader(temp_config_file)
        config = loader.load()

        assert isinstance(config, Config)
        assert config.server.port == 4443
        assert config.server.cors_origins == ["https://voice.example.com"]
        assert MediaEngineType(config.media.engine) == MediaEngineType.LOCAL
        assert config.media.announced_ip == "203.0.113.10"
        assert config.turn.enabled is True

    def test_load_nonexistent_file(self):
        """존재하지 않는 파일 로드 시 에러 테스트"""
        loader = ConfigLoader("/nonexistent/config.yaml")

        with pytest.raises(FileNotFoundError) as exc_info:
            loader.load()

        assert "Config file not found" in str(exc_info.value)

    def test_load_missing_file_allowed(self):
        """allow_missing 이면 기본값 사용"""
        config = ConfigLoader("/nonexistent/config.yaml", allow_missing=True).load()

        assert config.server.port == 4000
        assert config.signaling.require_registration is True

    def test_load_invalid_config(self, invalid_config_file):
        """잘못된 설정 검증 테스트"""
        loader = ConfigLoader(invalid_config_file)

        with pytest.raises(ValidationError):
            loader.load()

    def test_non_mapping_root(self):
        """최상위가 매핑이 아니면 ConfigurationError"""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False,
                                         encoding='utf-8') as f:
            f.write("- just\n- a list\n")
            path = f.name

        try:
            with pytest.raises(ConfigurationError):
                ConfigLoader(path).load()
        finally:
            Path(path).unlink(missing_ok=True)

    def test_env_override_simple(self, temp_config_file, monkeypatch):
        """환경 변수로 설정 오버라이드 테스트 (단순 값)"""
        monkeypatch.setenv("SFU_SIGNALING_SERVER_PORT", "4001")

        config = ConfigLoader(temp_config_file).load()

        assert config.server.port == 4001

    def test_env_override_boolean(self, temp_config_file, monkeypatch):
        """환경 변수 Boolean 변환 테스트"""
        monkeypatch.setenv("SFU_SIGNALING_TURN_ENABLED", "false")

        config = ConfigLoader(temp_config_file).load()

        assert config.turn.enabled is False
        assert config.turn.ice_servers() == []

    def test_env_override_float(self, temp_config_file, monkeypatch):
        """환경 변수 Float 변환 테스트"""
        monkeypatch.setenv("SFU_SIGNALING_MEDIA_REQUEST_TIMEOUT", "2.5")

        config = ConfigLoader(temp_config_file).load()

        assert config.media.request_timeout == 2.5

    def test_env_override_numeric_credential(self, temp_config_file, monkeypatch):
        """숫자형 TURN 비밀번호는 문자열로 유지"""
        monkeypatch.setenv("SFU_SIGNALING_TURN_CREDENTIAL", "123456")

        config = ConfigLoader(temp_config_file).load()

        assert config.turn.credential == "123456"

    def test_env_override_cors_origins(self, temp_config_file, monkeypatch):
        """콤마 구분 CORS origin"""
        monkeypatch.setenv("SFU_SIGNALING_SERVER_CORS_ORIGINS", "https://a.example, https://b.example")

        config = ConfigLoader(temp_config_file).load()

        assert config.server.cors_origins == ["https://a.example", "https://b.example"]

    def test_env_override_unknown_section_ignored(self, temp_config_file, monkeypatch):
        """알 수 없는 섹션은 무시"""
        monkeypatch.setenv("SFU_SIGNALING_UNKNOWN_KEY", "1")

        config = ConfigLoader(temp_config_file).load()

        assert not hasattr(config, "unknown")

    def test_config_path_from_env(self, temp_config_file, monkeypatch):
        """SFU_SIGNALING_CONFIG_PATH 로 경로 지정"""
        monkeypatch.setenv("SFU_SIGNALING_CONFIG_PATH", temp_config_file)

        loader = ConfigLoader()

        assert loader.config_path == temp_config_file
        assert loader.load().server.port == 4443

    def test_reload(self, temp_config_file):
        """설정 재로드 테스트"""
        loader = ConfigLoader(temp_config_file)
        config1 = loader.load()
        config2 = loader.reload()

        assert config1.server.port == config2.server.port

    def test_config_property_before_load(self, temp_config_file):
        """로드 전 config 프로퍼티 접근 시 에러 테스트"""
        loader = ConfigLoader(temp_config_file)

        with pytest.raises(RuntimeError) as exc_info:
            _ = loader.config

        assert "Config not loaded yet" in str(exc_info.value)

    def test_load_config_convenience_function(self, temp_config_file):
        """load_config 편의 함수 테스트"""
        config = load_config(temp_config_file)

        assert isinstance(config, Config)
        assert config.server.port == 4443

    def test_format_validation_error(self, invalid_config_file):
        """검증 오류 메시지 포맷"""
        with pytest.raises(ValidationError) as exc_info:
            ConfigLoader(invalid_config_file).load()

        message = ConfigLoader.format_validation_error(exc_info.value)

        assert message.startswith("Invalid configuration:")
        assert "port" in message


class TestConfigValidation:
    """설정 검증 테스트"""

    def test_defaults(self):
        """기본값"""
        config = Config()

        assert config.server.socketio_path == "/socket.io"
        assert config.media.codecs[0].mime_type == "audio/opus"
        assert config.media.codecs[0].parameters == {"useinbandfec": 1, "usedtx": 1, "maxptime": 60}
        assert config.monitoring.metrics_path == "/metrics"

    def test_tls_requires_files(self):
        """TLS 활성화 시 인증서 필수"""
        with pytest.raises(ValidationError) as exc_info:
            Config(server={"tls": {"enabled": True}})

        assert "cert_file" in str(exc_info.value)

    def test_tls_with_files(self):
        config = Config(server={"tls": {"enabled": True,
                                        "cert_file": "/etc/ssl/cert.pem",
                                        "key_file": "/etc/ssl/key.pem"}})

        assert config.server.tls.enabled is True

    def test_log_level_validation(self):
        """로그 레벨 검증"""
        config = Config(logging={"level": "DEBUG"})
        assert LogLevel(config.logging.level) == LogLevel.DEBUG

        with pytest.raises(ValidationError):
            Config(logging={"level": "VERBOSE"})

    def test_turn_ice_servers(self):
        """TURN 정보 → iceServers"""
        turn = TurnConfig(enabled=True, host="turn.example.com", port=5349,
                          username="voice", credential="secret")

        assert turn.ice_servers() == [{
            "urls": "turn:turn.example.com:5349",
            "username": "voice",
            "credential": "secret",
        }]

    def test_turn_without_host(self):
        assert TurnConfig(enabled=True).ice_servers() == []
