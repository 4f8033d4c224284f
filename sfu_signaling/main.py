"""SFU Voice Channel Signaling Server - Main Entry Point

애플리케이션 시작점
"""

import sys
import argparse
import asyncio
import signal

from pydantic import ValidationError
import yaml

from sfu_signaling.common.exceptions import ConfigurationError, SignalingServerError
from sfu_signaling.common.logger import get_logger, setup_logging
from sfu_signaling.config.config_loader import ConfigLoader, load_config
from sfu_signaling.config.models import Config
from sfu_signaling.media.factory import create_media_engine
from sfu_signaling.signaling.dispatcher import SignalingDispatcher
from sfu_signaling.websocket.server import SignalingServer

logger = get_logger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    """명령줄 인자 파싱"""
    parser = argparse.ArgumentParser(
        description="SFU Voice Channel Signaling Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # 기본 설정 파일로 시작
  sfu-signaling

  # 커스텀 설정 파일 지정
  sfu-signaling --config /path/to/config.yaml

  # 설정 파일 없이 기본값 + 환경 변수로 시작
  sfu-signaling --allow-missing-config --port 4000
"""
    )

    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='설정 파일 경로 (기본: config/config.yaml)'
    )

    parser.add_argument(
        '--allow-missing-config',
        action='store_true',
        help='설정 파일이 없으면 기본값 사용'
    )

    parser.add_argument(
        '--port',
        type=int,
        default=None,
        help='시그널링 서버 포트 (설정 파일 오버라이드)'
    )

    parser.add_argument(
        '--log-level',
        type=str,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        default=None,
        help='로그 레벨 (설정 파일 오버라이드)'
    )

    parser.add_argument(
        '--version',
        action='version',
        version='%(prog)s 0.1.0'
    )

    return parser.parse_args(argv)


def load_configuration(config_path: str = None, allow_missing: bool = False) -> Config:
    """설정 로드

    Raises:
        ConfigurationError: 설정 로드 실패 시
    """
    try:
        return load_config(config_path, allow_missing=allow_missing)
    except FileNotFoundError as e:
        print(f"Config file not found: {e}", file=sys.stderr)
        raise ConfigurationError(str(e)) from e
    except ValidationError as e:
        message = ConfigLoader.format_validation_error(e)
        print(message, file=sys.stderr)
        raise ConfigurationError(message) from e
    except yaml.YAMLError as e:
        print(f"Config parse failed: {e}", file=sys.stderr)
        raise ConfigurationError(str(e)) from e


def apply_cli_overrides(config: Config, args: argparse.Namespace) -> Config:
    """CLI 인자로 설정 오버라이드"""
    if args.port is not None:
        config.server.port = args.port

    if args.log_level:
        config.logging.level = args.log_level

    return config


def initialize_logging(config: Config) -> None:
    """로깅 초기화"""
    setup_logging(
        level=config.logging.level,
        format_type=config.logging.format,
        output=config.logging.output
    )


async def run_server(config: Config) -> int:
    """서버 실행

    미디어 엔진 사망 시 서버를 중지하고 1 을 반환한다.

    Args:
        config: 설정

    Returns:
        int: 종료 코드
    """
    stop_event = asyncio.Event()
    exit_code = 0

    async def on_engine_died(reason: str) -> None:
        nonlocal exit_code
        exit_code = 1
        logger.critical("shutting_down_engine_died", reason=reason)
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows
            pass

    engine = create_media_engine(config.media)
    engine.on_died(on_engine_died)
    server = None

    try:
        await engine.start()

        dispatcher = SignalingDispatcher(engine, config)
        server = SignalingServer(config, dispatcher)
        await server.start()

        await stop_event.wait()
        return exit_code

    except SignalingServerError as e:
        logger.error("signaling_server_error", error=str(e), exc_info=True)
        return 1

    finally:
        if server is not None:
            await server.stop()
        await engine.close()
        logger.info("server_stopped", exit_code=exit_code)


def main(argv=None) -> int:
    """메인 함수

    Returns:
        int: 종료 코드
    """
    args = parse_args(argv)

    try:
        config = load_configuration(args.config, allow_missing=args.allow_missing_config)
    except ConfigurationError:
        return 1

    config = apply_cli_overrides(config, args)
    initialize_logging(config)

    try:
        return asyncio.run(run_server(config))
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")
        return 0


if __name__ == "__main__":
    sys.exit(main())
