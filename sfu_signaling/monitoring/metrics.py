"""Prometheus Metrics

시그널링 서버 모니터링을 위한 Prometheus 메트릭 정의 및 수집
"""

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
)
from typing import Dict, Optional
import threading

from sfu_signaling.common.logger import get_logger

logger = get_logger(__name__)


class PrometheusMetrics:
    """Prometheus 메트릭 관리자

    모든 시스템 메트릭을 중앙에서 관리
    """

    _instance: Optional['PrometheusMetrics'] = None
    _lock = threading.Lock()

    def __new__(cls):
        """Singleton 패턴"""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        """메트릭 초기화"""
        # 이미 초기화된 경우 스킵
        if hasattr(self, '_initialized'):
            return

        self._initialized = True
        self.registry = CollectorRegistry()

        # ===== 시그널링 메트릭 =====
        self.signaling_connections_active = Gauge(
            'signaling_connections_active',
            'Current number of connected signaling clients',
            registry=self.registry
        )

        self.signaling_requests_total = Counter(
            'signaling_requests_total',
            'Total signaling requests',
            ['event', 'status'],
            registry=self.registry
        )

        self.presence_broadcasts_total = Counter(
            'presence_broadcasts_total',
            'Total voiceParticipantsUpdate broadcasts',
            registry=self.registry
        )

        # ===== 미디어 엔진 메트릭 =====
        self.media_engine_latency_seconds = Histogram(
            'media_engine_latency_seconds',
            'Media engine call latency in seconds',
            ['operation'],
            buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self.registry
        )

        self.media_transports_active = Gauge(
            'media_transports_active',
            'Current number of tracked WebRTC transports',
            registry=self.registry
        )

        self.media_producers_active = Gauge(
            'media_producers_active',
            'Current number of producers in the directory',
            registry=self.registry
        )

        self.media_consumers_active = Gauge(
            'media_consumers_active',
            'Current number of tracked consumers',
            registry=self.registry
        )

        # ===== 정리 메트릭 =====
        self.cleanup_runs_total = Counter(
            'cleanup_runs_total',
            'Total cleanup runs',
            ['trigger'],
            registry=self.registry
        )

        self.cleanup_close_failures_total = Counter(
            'cleanup_close_failures_total',
            'Total resource close failures during cleanup',
            ['kind'],
            registry=self.registry
        )

        logger.info("prometheus_metrics_initialized")

    # ===== 시그널링 메트릭 업데이트 메서드 =====

    def set_active_connections(self, count: int):
        """활성 연결 수 설정"""
        self.signaling_connections_active.set(count)

    def record_request(self, event: str, status: str):
        """시그널링 요청 기록

        Args:
            event: 와이어 이벤트 이름 (produce, consume, ...)
            status: 처리 결과 (ok, error, ignored)
        """
        self.signaling_requests_total.labels(event=event, status=status).inc()

    def record_presence_broadcast(self):
        self.presence_broadcasts_total.inc()

    # ===== 미디어 메트릭 업데이트 메서드 =====

    def record_engine_latency(self, operation: str, latency_seconds: float):
        """엔진 호출 지연 시간 기록

        Args:
            operation: 엔진 작업 (create_transport, connect, produce, consume)
            latency_seconds: 지연 시간 (초)
        """
        self.media_engine_latency_seconds.labels(operation=operation).observe(latency_seconds)

    def set_resource_stats(self, stats: Dict[str, int]):
        """레지스트리 통계 반영

        Args:
            stats: ResourceRegistry.get_stats() 결과
        """
        self.media_transports_active.set(stats.get("transports", 0))
        self.media_producers_active.set(stats.get("producers", 0))
        self.media_consumers_active.set(stats.get("consumers", 0))

    # ===== 정리 메트릭 업데이트 메서드 =====

    def record_cleanup_run(self, trigger: str):
        """정리 실행 기록

        Args:
            trigger: leave 또는 disconnect
        """
        self.cleanup_runs_total.labels(trigger=trigger).inc()

    def record_close_failure(self, kind: str):
        """리소스 해제 실패 기록

        Args:
            kind: transport, producer, consumer
        """
        self.cleanup_close_failures_total.labels(kind=kind).inc()

    # ===== 메트릭 출력 =====

    def generate_metrics(self) -> bytes:
        """Prometheus 형식으로 메트릭 생성

        Returns:
            메트릭 데이터 (bytes)
        """
        return generate_latest(self.registry)

    def get_content_type(self) -> str:
        """Content-Type 헤더 반환"""
        return CONTENT_TYPE_LATEST


# Singleton 인스턴스 가져오기
def get_metrics() -> PrometheusMetrics:
    """메트릭 인스턴스 조회

    Returns:
        PrometheusMetrics 인스턴스
    """
    return PrometheusMetrics()
