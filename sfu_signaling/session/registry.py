"""Resource Registry

연결별 Transport/Producer 목록과 전역 Producer 디렉토리 관리.
리소스 "추적 중지"만 담당하며 핸들 해제(close)는 CleanupCoordinator 의 책임이다.
"""

from dataclasses import dataclass, field
from datetime import datetime
from threading import RLock
from typing import Dict, Iterable, List, Optional, Set

from sfu_signaling.common.exceptions import ConnectionClosedError, TransportNotFoundError
from sfu_signaling.common.logger import get_logger
from sfu_signaling.media.engine import ConsumerHandle, ProducerHandle, TransportHandle

logger = get_logger(__name__)


@dataclass
class ConsumerRecord:
    """Consumer 추적 정보 (Transport 소유)"""
    handle: ConsumerHandle
    connection_id: str
    transport_id: str
    producer_id: str

    @property
    def id(self) -> str:
        return self.handle.id


@dataclass
class TransportRecord:
    """Transport 추적 정보"""
    handle: TransportHandle
    connection_id: str
    direction: Optional[str] = None
    consumers: List[ConsumerRecord] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def id(self) -> str:
        return self.handle.id


@dataclass
class ProducerRecord:
    """Producer 추적 정보 (연결 목록 + 전역 디렉토리)"""
    handle: ProducerHandle
    connection_id: str
    user_id: Optional[str] = None
    kind: str = "audio"
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def id(self) -> str:
        return self.handle.id


@dataclass
class ConnectionResources:
    """연결 하나가 소유한 리소스 목록"""
    transports: List[TransportRecord] = field(default_factory=list)
    producers: List[ProducerRecord] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.transports and not self.producers


class ResourceRegistry:
    """리소스 레지스트리

    모든 맵은 단일 락으로 보호되며 외부에는 연산만 노출한다.
    디렉토리 조회는 부분적으로 제거된 항목을 보지 않는다.
    """

    def __init__(self):
        self._connections: Dict[str, ConnectionResources] = {}
        self._live: Set[str] = set()
        self._producers: Dict[str, ProducerRecord] = {}
        self._lock = RLock()

    # ===== 연결 =====

    def register_connection(self, connection_id: str) -> None:
        """연결 등록 (멱등)

        Args:
            connection_id: 연결 ID
        """
        with self._lock:
            self._live.add(connection_id)
            self._connections.setdefault(connection_id, ConnectionResources())

    def is_live(self, connection_id: str) -> bool:
        """연결이 아직 열려 있는지"""
        with self._lock:
            return connection_id in self._live

    def remove_connection(self, connection_id: str) -> bool:
        """연결의 리소스 목록 삭제 (핸들은 닫지 않음)

        연결 자체는 살아 있으며 이후 새 리소스를 다시 등록할 수 있다.

        Returns:
            삭제할 목록이 있었는지 여부
        """
        with self._lock:
            return self._connections.pop(connection_id, None) is not None

    def unregister_connection(self, connection_id: str) -> None:
        """연결 완전 제거 (disconnect)

        이후 이 연결로의 리소스 등록은 ConnectionClosedError 로 거부된다.
        """
        with self._lock:
            self._connections.pop(connection_id, None)
            self._live.discard(connection_id)

    def _resources_for(self, connection_id: str) -> ConnectionResources:
        if connection_id not in self._live:
            raise ConnectionClosedError(f"Connection closed: {connection_id}")
        return self._connections.setdefault(connection_id, ConnectionResources())

    # ===== 등록 =====

    def add_transport(self, connection_id: str, record: TransportRecord) -> None:
        """Transport 등록

        Raises:
            ConnectionClosedError: 연결이 이미 종료됨
        """
        with self._lock:
            self._resources_for(connection_id).transports.append(record)

        logger.debug("registry_transport_added",
                     connection_id=connection_id,
                     transport_id=record.id)

    def add_producer(self, connection_id: str, transport_id: str, record: ProducerRecord) -> None:
        """Producer 등록 (연결 목록 + 전역 디렉토리)

        송신 Transport 가 그 사이 해제되었다면 등록하지 않는다.

        Raises:
            ConnectionClosedError: 연결이 이미 종료됨
            TransportNotFoundError: 호출 연결이 소유한 Transport 가 아님
        """
        with self._lock:
            resources = self._resources_for(connection_id)
            if self._find_in(resources, transport_id) is None:
                raise TransportNotFoundError(transport_id)
            resources.producers.append(record)
            self._producers[record.id] = record

        logger.debug("registry_producer_added",
                     connection_id=connection_id,
                     producer_id=record.id)

    def add_consumer(self, connection_id: str, transport_id: str, record: ConsumerRecord) -> None:
        """Consumer 를 소유 Transport 에 연결

        Raises:
            ConnectionClosedError: 연결이 이미 종료됨
            TransportNotFoundError: 호출 연결이 소유한 Transport 가 아님
        """
        with self._lock:
            resources = self._resources_for(connection_id)
            transport = self._find_in(resources, transport_id)
            if transport is None:
                raise TransportNotFoundError(transport_id)
            transport.consumers.append(record)

    # ===== 조회 =====

    @staticmethod
    def _find_in(resources: ConnectionResources, transport_id: str) -> Optional[TransportRecord]:
        for transport in resources.transports:
            if transport.id == transport_id:
                return transport
        return None

    def find_transport(self, connection_id: str, transport_id: str) -> Optional[TransportRecord]:
        """연결 범위 내 Transport 조회

        다른 연결이 만든 Transport 는 찾지 않는다.
        """
        with self._lock:
            resources = self._connections.get(connection_id)
            if resources is None:
                return None
            return self._find_in(resources, transport_id)

    def find_producer(self, producer_id: str) -> Optional[ProducerRecord]:
        """전역 Producer 조회"""
        with self._lock:
            return self._producers.get(producer_id)

    def producer_ids(self) -> List[str]:
        """디렉토리의 모든 Producer ID"""
        with self._lock:
            return list(self._producers.keys())

    def get_resources(self, connection_id: str) -> ConnectionResources:
        """연결 리소스 스냅샷 (복사본)"""
        with self._lock:
            resources = self._connections.get(connection_id)
            if resources is None:
                return ConnectionResources()
            return ConnectionResources(
                transports=list(resources.transports),
                producers=list(resources.producers),
            )

    # ===== 해제 준비 =====

    def release_connection(self, connection_id: str) -> ConnectionResources:
        """연결 리소스를 원자적으로 분리

        연결 목록의 Producer 와, 목록이 유실된 경우를 대비해 디렉토리에서
        소유 연결이 일치하는 Producer 를 함께 찾는다. 분리된 Producer 는 같은
        임계 구역 안에서 디렉토리에서 제거된다. 두 번째 호출은 빈 결과를 반환한다.

        Returns:
            분리된 리소스 (닫는 것은 호출자 책임)
        """
        with self._lock:
            resources = self._connections.get(connection_id)
            released = ConnectionResources()

            if resources is not None:
                released.transports = resources.transports
                released.producers = resources.producers
                resources.transports = []
                resources.producers = []

            seen = {p.id for p in released.producers}
            for producer_id, record in list(self._producers.items()):
                if record.connection_id == connection_id and producer_id not in seen:
                    released.producers.append(record)
                    seen.add(producer_id)
                    logger.warning("registry_orphan_producer_found",
                                   connection_id=connection_id,
                                   producer_id=producer_id)

            for producer_id in seen:
                self._producers.pop(producer_id, None)

            return released

    def release_consumers_of(self, producer_ids: Iterable[str]) -> List[ConsumerRecord]:
        """지정 Producer 에 바인딩된 Consumer 를 모든 연결에서 분리

        Consumer 는 자신이 의존하는 Producer 보다 오래 살 수 없다.
        """
        targets = set(producer_ids)
        if not targets:
            return []

        released: List[ConsumerRecord] = []
        with self._lock:
            for resources in self._connections.values():
                for transport in resources.transports:
                    keep = []
                    for consumer in transport.consumers:
                        if consumer.producer_id in targets:
                            released.append(consumer)
                        else:
                            keep.append(consumer)
                    transport.consumers = keep
        return released

    # ===== 통계 =====

    def get_stats(self) -> Dict[str, int]:
        """통계 정보"""
        with self._lock:
            transports = [t for r in self._connections.values() for t in r.transports]
            return {
                "connections": len(self._live),
                "transports": len(transports),
                "producers": len(self._producers),
                "consumers": sum(len(t.consumers) for t in transports),
            }
