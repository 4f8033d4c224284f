"""설정 로더 모듈

YAML 파일 로드 및 환경 변수 오버라이드 지원
"""

import os
from pathlib import Path
from typing import Optional, Any, Dict
import yaml
from pydantic import ValidationError

from .models import Config
from sfu_signaling.common.exceptions import ConfigurationError

ENV_PREFIX = "SFU_SIGNALING_"


class ConfigLoader:
    """설정 로더 클래스"""

    def __init__(self, config_path: Optional[str] = None, allow_missing: bool = False):
        """초기화

        Args:
            config_path: 설정 파일 경로. None인 경우 기본 경로 사용
            allow_missing: 설정 파일이 없으면 기본값 + 환경 변수만으로 구성
        """
        self.config_path = config_path or self._get_default_config_path()
        self.allow_missing = allow_missing
        self._config: Optional[Config] = None

    @staticmethod
    def _get_default_config_path() -> str:
        """기본 설정 파일 경로 반환"""
        env_path = os.getenv(f"{ENV_PREFIX}CONFIG_PATH")
        if env_path:
            return env_path

        # 프로젝트 루트/config/config.yaml
        project_root = Path(__file__).parent.parent.parent
        return str(project_root / "config" / "config.yaml")

    def load(self) -> Config:
        """설정 파일 로드 및 검증

        Returns:
            Config: 검증된 설정 객체

        Raises:
            FileNotFoundError: 설정 파일이 없는 경우 (allow_missing=False)
            ValidationError: 설정 검증 실패 시
            yaml.YAMLError: YAML 파싱 실패 시
        """
        raw_config: Optional[Dict[str, Any]] = None

        if Path(self.config_path).exists():
            with open(self.config_path, 'r', encoding='utf-8') as f:
                raw_config = yaml.safe_load(f)
        elif not self.allow_missing:
            raise FileNotFoundError(
                f"Config file not found: {self.config_path}\n"
                f"Copy config/config.example.yaml to config/config.yaml."
            )

        if raw_config is None:
            raw_config = {}
        if not isinstance(raw_config, dict):
            raise ConfigurationError(f"Config root must be a mapping: {self.config_path}")

        raw_config = self._apply_env_overrides(raw_config)

        self._config = Config(**raw_config)
        return self._config

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """환경 변수로 설정 오버라이드

        환경 변수 형식: SFU_SIGNALING_<SECTION>_<KEY>
        예: SFU_SIGNALING_SERVER_PORT=4001

        Args:
            config: 원본 설정 딕셔너리

        Returns:
            Dict: 환경 변수가 적용된 설정
        """
        for env_key, env_value in os.environ.items():
            if not env_key.startswith(ENV_PREFIX):
                continue

            # SFU_SIGNALING_MEDIA_ANNOUNCED_IP -> ['media', 'announced', 'ip']
            parts = env_key[len(ENV_PREFIX):].lower().split('_')

            if len(parts) < 2:
                continue

            section = parts[0]
            key_path = '_'.join(parts[1:])

            if section not in Config.model_fields:
                continue

            if not isinstance(config.get(section), dict):
                config[section] = {}

            config[section][key_path] = self._convert_env_value(env_value)

        return config

    @staticmethod
    def _convert_env_value(value: str) -> Any:
        """환경 변수 값을 적절한 타입으로 변환"""
        # Boolean
        if value.lower() in ('true', 'yes'):
            return True
        if value.lower() in ('false', 'no'):
            return False

        # Integer
        try:
            return int(value)
        except ValueError:
            pass

        # Float
        try:
            return float(value)
        except ValueError:
            pass

        # String (기본값)
        return value

    @staticmethod
    def format_validation_error(error: ValidationError) -> str:
        """ValidationError를 사용자 친화적인 메시지로 변환"""
        errors = []
        for err in error.errors():
            loc = " → ".join(str(l) for l in err['loc'])
            errors.append(f"  • {loc}: {err['msg']}")

        return "Invalid configuration:\n" + "\n".join(errors)

    def reload(self) -> Config:
        """설정 파일 재로드"""
        return self.load()

    @property
    def config(self) -> Config:
        """현재 로드된 설정 반환

        Raises:
            RuntimeError: 설정이 아직 로드되지 않은 경우
        """
        if self._config is None:
            raise RuntimeError("Config not loaded yet. Call load() first.")
        return self._config


def load_config(config_path: Optional[str] = None, allow_missing: bool = False) -> Config:
    """설정 파일 로드 편의 함수

    Args:
        config_path: 설정 파일 경로
        allow_missing: 파일이 없으면 기본값 사용

    Returns:
        Config: 검증된 설정 객체
    """
    loader = ConfigLoader(config_path, allow_missing=allow_missing)
    return loader.load()
