"""Cleanup Coordinator

연결 종료/채널 퇴장 시 리소스를 의존성 순서대로 정확히 한 번 해제
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Set

from sfu_signaling.common.logger import get_logger
from sfu_signaling.monitoring.metrics import PrometheusMetrics, get_metrics
from sfu_signaling.session.identity import IdentityRegistry
from sfu_signaling.session.presence import PresenceTracker
from sfu_signaling.session.registry import (
    ConsumerRecord,
    ProducerRecord,
    ResourceRegistry,
    TransportRecord,
)

logger = get_logger(__name__)

TRIGGER_LEAVE = "leave"
TRIGGER_DISCONNECT = "disconnect"


@dataclass
class CloseFailure:
    """해제 실패 기록"""
    kind: str
    resource_id: str
    error: str


@dataclass
class CleanupReport:
    """정리 1회 실행 결과"""
    connection_id: str
    trigger: str
    user_id: Optional[str] = None
    channels: Set[str] = field(default_factory=set)
    closed_consumers: List[str] = field(default_factory=list)
    closed_producers: List[str] = field(default_factory=list)
    closed_transports: List[str] = field(default_factory=list)
    failures: List[CloseFailure] = field(default_factory=list)

    @property
    def closed_count(self) -> int:
        return len(self.closed_consumers) + len(self.closed_producers) + len(self.closed_transports)


class CleanupCoordinator:
    """리소스 정리 조정자

    해제 순서:
        1. 프레즌스 갱신 (브로드캐스트)
        2. 해제 대상 Producer 에 바인딩된 Consumer (모든 연결)
        3. Producer
        4. 각 Transport 의 Consumer, 이후 Transport
        5. 레지스트리 항목 제거, (disconnect 시) 신원 해제

    리소스는 레지스트리에서 먼저 원자적으로 분리한 뒤 닫으므로 같은 연결에 대한
    두 번째 실행은 아무 것도 닫지 않는다. 해제 실패는 기록만 하고 전파하지 않는다.
    """

    def __init__(
        self,
        registry: ResourceRegistry,
        identities: IdentityRegistry,
        presence: PresenceTracker,
        metrics: Optional[PrometheusMetrics] = None,
    ):
        """초기화

        Args:
            registry: 리소스 레지스트리
            identities: 연결 ↔ 사용자 바인딩
            presence: 채널 프레즌스
            metrics: 메트릭 (기본: 싱글톤)
        """
        self.registry = registry
        self.identities = identities
        self.presence = presence
        self.metrics = metrics or get_metrics()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _serialized(self, connection_id: str) -> AsyncIterator[None]:
        """연결별 정리 직렬화

        락은 보유자와 대기자가 모두 빠진 뒤에만 제거된다.
        """
        lock = self._locks.get(connection_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[connection_id] = lock
        self._lock_users[connection_id] = self._lock_users.get(connection_id, 0) + 1

        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[connection_id] - 1
            if remaining:
                self._lock_users[connection_id] = remaining
            else:
                del self._lock_users[connection_id]
                del self._locks[connection_id]

    async def leave_channel(self, connection_id: str, channel_id: str) -> CleanupReport:
        """채널 퇴장 (부분 정리)

        연결의 모든 미디어 리소스를 해제하지만 연결과 신원은 유지한다.
        신원이 없는 연결이면 아무 것도 하지 않는다.

        Args:
            connection_id: 연결 ID
            channel_id: 퇴장할 채널

        Returns:
            CleanupReport
        """
        report = CleanupReport(connection_id=connection_id, trigger=TRIGGER_LEAVE)

        async with self._serialized(connection_id):
            user_id = self.identities.user_for(connection_id)
            if user_id is None:
                logger.debug("cleanup_skipped_no_identity",
                             connection_id=connection_id,
                             channel_id=channel_id)
                return report

            report.user_id = user_id
            if await self.presence.leave(channel_id, user_id):
                report.channels.add(channel_id)

            await self._release_resources(connection_id, report)
            self.registry.remove_connection(connection_id)

        self._finish(report)
        return report

    async def disconnect(self, connection_id: str) -> CleanupReport:
        """연결 종료 (전체 정리)

        신원이 없어도 리소스 정리는 수행한다.

        Args:
            connection_id: 연결 ID

        Returns:
            CleanupReport
        """
        report = CleanupReport(connection_id=connection_id, trigger=TRIGGER_DISCONNECT)

        async with self._serialized(connection_id):
            user_id = self.identities.user_for(connection_id)
            report.user_id = user_id

            if user_id is not None:
                report.channels = await self.presence.leave_all(user_id)

            await self._release_resources(connection_id, report)
            self.registry.unregister_connection(connection_id)
            self.identities.unbind(connection_id)

        self._finish(report)
        return report

    async def _release_resources(self, connection_id: str, report: CleanupReport) -> None:
        released = self.registry.release_connection(connection_id)
        producer_ids = {p.id for p in released.producers}

        # 자신의 Transport 에 붙은 Consumer 중 해제 대상 Producer 를 수신하는 것
        dependents = self.registry.release_consumers_of(producer_ids)
        for transport in released.transports:
            keep = []
            for consumer in transport.consumers:
                if consumer.producer_id in producer_ids:
                    dependents.append(consumer)
                else:
                    keep.append(consumer)
            transport.consumers = keep

        await self._close_consumers(dependents, report)
        await asyncio.gather(*(self._close_producer(p, report) for p in released.producers))
        await asyncio.gather(*(self._close_transport(t, report) for t in released.transports))

    async def _close_consumers(self, consumers: List[ConsumerRecord], report: CleanupReport) -> None:
        results = await asyncio.gather(
            *(self._close_quietly("consumer", c.handle, report) for c in consumers)
        )
        report.closed_consumers.extend(c.id for c, ok in zip(consumers, results) if ok)

    async def _close_producer(self, producer: ProducerRecord, report: CleanupReport) -> None:
        if await self._close_quietly("producer", producer.handle, report):
            report.closed_producers.append(producer.id)

    async def _close_transport(self, transport: TransportRecord, report: CleanupReport) -> None:
        await self._close_consumers(transport.consumers, report)
        transport.consumers = []
        if await self._close_quietly("transport", transport.handle, report):
            report.closed_transports.append(transport.id)

    async def _close_quietly(self, kind: str, handle, report: CleanupReport) -> bool:
        """핸들 해제 시도 (실패는 기록만)

        Returns:
            해제 성공 여부
        """
        try:
            await handle.close()
            return True
        except Exception as e:
            report.failures.append(CloseFailure(kind=kind, resource_id=handle.id, error=str(e)))
            self.metrics.record_close_failure(kind)
            logger.error("cleanup_close_failed",
                         connection_id=report.connection_id,
                         kind=kind,
                         resource_id=handle.id,
                         error=str(e))
            return False

    def _finish(self, report: CleanupReport) -> None:
        self.metrics.record_cleanup_run(report.trigger)
        self.metrics.set_resource_stats(self.registry.get_stats())

        logger.info("cleanup_completed",
                    connection_id=report.connection_id,
                    user_id=report.user_id,
                    trigger=report.trigger,
                    channels=sorted(report.channels),
                    consumers=len(report.closed_consumers),
                    producers=len(report.closed_producers),
                    transports=len(report.closed_transports),
                    failures=len(report.failures))
