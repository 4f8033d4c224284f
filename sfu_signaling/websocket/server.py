"""Socket.IO Signaling Server

SignalingDispatcher 를 Socket.IO 이벤트와 aiohttp HTTP 라우트에 바인딩
"""

import ssl
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp.web
import socketio

from sfu_signaling.common.logger import get_logger
from sfu_signaling.config.models import Config
from sfu_signaling.monitoring.metrics import get_metrics
from sfu_signaling.signaling.dispatcher import Broadcaster, SignalingDispatcher

logger = get_logger(__name__)


class SocketIOBroadcaster(Broadcaster):
    """Socket.IO 서버를 통한 push"""

    def __init__(self, sio: socketio.AsyncServer):
        self.sio = sio

    async def emit_all(self, event: str, data: Dict[str, Any]) -> None:
        await self.sio.emit(event, data)

    async def emit_others(self, event: str, data: Dict[str, Any], skip_connection_id: str) -> None:
        await self.sio.emit(event, data, skip_sid=skip_connection_id)


class SignalingServer:
    """시그널링 서버 (Socket.IO + aiohttp)

    이벤트 이름은 클라이언트 와이어 계약 그대로 사용하며 핸들러 반환값이
    acknowledgement 페이로드가 된다.
    """

    def __init__(self, config: Config, dispatcher: SignalingDispatcher):
        """초기화

        Args:
            config: 전체 설정
            dispatcher: 요청 처리기
        """
        self.config = config
        self.dispatcher = dispatcher
        self.metrics = get_metrics()

        origins = config.server.cors_origins
        self.sio = socketio.AsyncServer(
            async_mode='aiohttp',
            cors_allowed_origins='*' if '*' in origins else list(origins),
            logger=False,
            engineio_logger=False,
        )
        self.app = aiohttp.web.Application()
        self.sio.attach(self.app, socketio_path=config.server.socketio_path.strip("/"))

        dispatcher.broadcaster = SocketIOBroadcaster(self.sio)

        self._runner: Optional[aiohttp.web.AppRunner] = None
        self._register_handlers()
        self._register_routes()

    # ===== Socket.IO 이벤트 =====

    def _register_handlers(self) -> None:
        d = self.dispatcher

        self.sio.on('connect', self._on_connect)
        self.sio.on('disconnect', self._on_disconnect)

        self.sio.on('register', self._wrap('register', d.register))
        self.sio.on('joinVoiceChannel', self._wrap('joinVoiceChannel', d.join_voice_channel))
        self.sio.on('leaveVoiceChannel', self._wrap('leaveVoiceChannel', d.leave_voice_channel))
        self.sio.on('getRtpCapabilities',
                    self._wrap('getRtpCapabilities', lambda sid, _: d.get_rtp_capabilities(sid)))
        self.sio.on('createWebRtcTransport',
                    self._wrap('createWebRtcTransport', d.create_webrtc_transport))
        self.sio.on('connectTransport', self._wrap('connectTransport', d.connect_transport))
        self.sio.on('produce', self._wrap('produce', d.produce))
        self.sio.on('getProducers',
                    self._wrap('getProducers', lambda sid, _: d.get_producers(sid)))
        self.sio.on('consume', self._wrap('consume', d.consume))

    async def _on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None):
        await self.dispatcher.connect(sid)

    async def _on_disconnect(self, sid: str, *args):
        await self.dispatcher.disconnect(sid)

    def _wrap(self, event: str, handler: Callable[[str, Any], Awaitable[Any]]):
        """이벤트 핸들러 래핑

        페이로드가 없으면 None 을 전달하고, 예상하지 못한 예외는 로그 후
        에러 페이로드로 응답한다.
        """
        async def on_event(sid: str, *args):
            data = args[0] if args else None
            try:
                return await handler(sid, data)
            except Exception as e:
                logger.error("signaling_handler_error",
                             connection_id=sid,
                             request=event,
                             error=str(e),
                             exc_info=True)
                self.metrics.record_request(event, "error")
                return {"error": "Internal server error"}

        return on_event

    # ===== HTTP 라우트 =====

    def _register_routes(self) -> None:
        self.app.router.add_get('/health', self._handle_health)
        if self.config.monitoring.metrics_enabled:
            self.app.router.add_get(self.config.monitoring.metrics_path, self._handle_metrics)

    async def _handle_health(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        """GET /health"""
        engine_ready = self.dispatcher.engine.ready
        body = {
            "status": "ok" if engine_ready else "degraded",
            "engine_ready": engine_ready,
            "resources": self.dispatcher.registry.get_stats(),
            "presence": self.dispatcher.presence.get_stats(),
        }
        return aiohttp.web.json_response(body, status=200 if engine_ready else 503)

    async def _handle_metrics(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        """GET /metrics (Prometheus)"""
        return aiohttp.web.Response(
            body=self.metrics.generate_metrics(),
            headers={"Content-Type": self.metrics.get_content_type()},
        )

    # ===== 수명 =====

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        tls = self.config.server.tls
        if not tls.enabled:
            return None
        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        context.load_cert_chain(tls.cert_file, tls.key_file)
        return context

    async def start(self) -> None:
        """HTTP/Socket.IO 리스너 시작"""
        self._runner = aiohttp.web.AppRunner(self.app)
        await self._runner.setup()

        ssl_context = self._ssl_context()
        site = aiohttp.web.TCPSite(
            self._runner,
            self.config.server.host,
            self.config.server.port,
            ssl_context=ssl_context,
        )
        await site.start()

        logger.info("signaling_server_started",
                    host=self.config.server.host,
                    port=self.port,
                    tls=ssl_context is not None,
                    socketio_path=self.config.server.socketio_path)

    async def stop(self) -> None:
        """리스너 종료"""
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        logger.info("signaling_server_stopped")

    @property
    def port(self) -> Optional[int]:
        """실제 바인딩된 포트 (port=0 설정 시 유용)"""
        if self._runner is None or not self._runner.addresses:
            return None
        return self._runner.addresses[0][1]
