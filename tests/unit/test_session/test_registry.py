"""Resource Registry 단위 테스트"""

import pytest

from sfu_signaling.common.exceptions import ConnectionClosedError, TransportNotFoundError
from sfu_signaling.common.logger import setup_logging
from sfu_signaling.session.registry import (
    ConsumerRecord,
    ProducerRecord,
    ResourceRegistry,
    TransportRecord,
)


@pytest.fixture(scope="module", autouse=True)
def setup_test_logging():
    """테스트용 로깅 설정"""
    setup_logging(level="DEBUG", format_type="text")


class StubHandle:
    """id 만 가진 핸들"""

    def __init__(self, handle_id):
        self.id = handle_id
        self.closed = False

    async def close(self):
        self.closed = True


def transport(connection_id, transport_id):
    return TransportRecord(handle=StubHandle(transport_id), connection_id=connection_id, direction="send")


def producer(connection_id, producer_id, user_id="u1"):
    return ProducerRecord(handle=StubHandle(producer_id), connection_id=connection_id, user_id=user_id)


def consumer(connection_id, transport_id, consumer_id, producer_id):
    return ConsumerRecord(
        handle=StubHandle(consumer_id),
        connection_id=connection_id,
        transport_id=transport_id,
        producer_id=producer_id,
    )


@pytest.fixture
def registry():
    registry = ResourceRegistry()
    registry.register_connection("c1")
    registry.register_connection("c2")
    return registry


class TestRegistration:
    """등록 테스트"""

    def test_register_connection_idempotent(self, registry):
        registry.add_transport("c1", transport("c1", "t1"))
        registry.register_connection("c1")

        assert registry.is_live("c1")
        assert len(registry.get_resources("c1").transports) == 1

    def test_add_transport_and_producer(self, registry):
        registry.add_transport("c1", transport("c1", "t1"))
        registry.add_producer("c1", "t1", producer("c1", "p1"))

        resources = registry.get_resources("c1")
        assert [t.id for t in resources.transports] == ["t1"]
        assert [p.id for p in resources.producers] == ["p1"]
        assert registry.find_producer("p1").connection_id == "c1"
        assert registry.producer_ids() == ["p1"]

    def test_add_after_disconnect_rejected(self, registry):
        """종료된 연결에는 등록할 수 없음"""
        registry.unregister_connection("c1")

        with pytest.raises(ConnectionClosedError):
            registry.add_transport("c1", transport("c1", "t1"))
        with pytest.raises(ConnectionClosedError):
            registry.add_producer("c1", "t1", producer("c1", "p1"))

        assert registry.find_producer("p1") is None

    def test_add_consumer_requires_owned_transport(self, registry):
        registry.add_transport("c1", transport("c1", "t1"))

        with pytest.raises(TransportNotFoundError):
            registry.add_consumer("c2", "t1", consumer("c2", "t1", "k1", "p1"))

        registry.add_consumer("c1", "t1", consumer("c1", "t1", "k1", "p1"))
        assert registry.get_stats()["consumers"] == 1

    def test_add_producer_requires_owned_transport(self, registry):
        """송신 Transport 가 해제된 뒤에는 디렉토리에 올리지 않음"""
        registry.add_transport("c1", transport("c1", "t1"))

        with pytest.raises(TransportNotFoundError):
            registry.add_producer("c2", "t1", producer("c2", "p1"))

        registry.release_connection("c1")
        registry.remove_connection("c1")

        with pytest.raises(TransportNotFoundError):
            registry.add_producer("c1", "t1", producer("c1", "p2"))

        assert registry.producer_ids() == []
        assert registry.get_resources("c1").is_empty()

    def test_get_resources_returns_copy(self, registry):
        registry.add_transport("c1", transport("c1", "t1"))

        snapshot = registry.get_resources("c1")
        snapshot.transports.clear()

        assert len(registry.get_resources("c1").transports) == 1


class TestLookup:
    """조회 테스트"""

    def test_find_transport_scoped_to_owner(self, registry):
        """다른 연결의 Transport 는 찾지 않음"""
        registry.add_transport("c1", transport("c1", "t1"))

        assert registry.find_transport("c1", "t1") is not None
        assert registry.find_transport("c2", "t1") is None
        assert registry.find_transport("unknown", "t1") is None

    def test_find_unknown_producer(self, registry):
        assert registry.find_producer("nope") is None


class TestRelease:
    """해제 준비 테스트"""

    def test_release_connection_detaches_everything(self, registry):
        registry.add_transport("c1", transport("c1", "t1"))
        registry.add_producer("c1", "t1", producer("c1", "p1"))

        released = registry.release_connection("c1")

        assert [t.id for t in released.transports] == ["t1"]
        assert [p.id for p in released.producers] == ["p1"]
        assert registry.find_producer("p1") is None
        assert registry.get_resources("c1").is_empty()

    def test_release_connection_twice_is_empty(self, registry):
        """두 번째 호출은 빈 결과"""
        registry.add_transport("c1", transport("c1", "t1"))
        registry.add_producer("c1", "t1", producer("c1", "p1"))
        registry.release_connection("c1")

        assert registry.release_connection("c1").is_empty()

    def test_release_finds_orphan_producer_in_directory(self, registry):
        """연결 목록이 유실되어도 디렉토리 스캔으로 찾음"""
        registry.add_transport("c1", transport("c1", "t1"))
        registry.add_producer("c1", "t1", producer("c1", "p1"))
        registry.remove_connection("c1")

        released = registry.release_connection("c1")

        assert [p.id for p in released.producers] == ["p1"]
        assert registry.producer_ids() == []

    def test_release_does_not_touch_other_connections(self, registry):
        registry.add_transport("c1", transport("c1", "t1"))
        registry.add_transport("c2", transport("c2", "t2"))
        registry.add_producer("c1", "t1", producer("c1", "p1"))
        registry.add_producer("c2", "t2", producer("c2", "p2", user_id="u2"))

        registry.release_connection("c1")

        assert registry.producer_ids() == ["p2"]

    def test_release_consumers_of(self, registry):
        """Producer 에 바인딩된 Consumer 를 모든 연결에서 분리"""
        registry.add_transport("c1", transport("c1", "t1"))
        registry.add_transport("c2", transport("c2", "t2"))
        registry.add_consumer("c1", "t1", consumer("c1", "t1", "k1", "p9"))
        registry.add_consumer("c2", "t2", consumer("c2", "t2", "k2", "p9"))
        registry.add_consumer("c2", "t2", consumer("c2", "t2", "k3", "p7"))

        released = registry.release_consumers_of(["p9"])

        assert sorted(c.id for c in released) == ["k1", "k2"]
        assert [c.id for c in registry.find_transport("c2", "t2").consumers] == ["k3"]
        assert registry.release_consumers_of(["p9"]) == []

    def test_release_consumers_of_empty(self, registry):
        assert registry.release_consumers_of([]) == []


class TestConnectionRemoval:
    """연결 제거 테스트"""

    def test_remove_connection_keeps_live(self, registry):
        """부분 정리 후에도 새 리소스 등록 가능"""
        registry.add_transport("c1", transport("c1", "t1"))

        assert registry.remove_connection("c1") is True
        assert registry.is_live("c1")

        registry.add_transport("c1", transport("c1", "t2"))
        assert [t.id for t in registry.get_resources("c1").transports] == ["t2"]

    def test_unregister_connection(self, registry):
        registry.unregister_connection("c1")

        assert not registry.is_live("c1")
        assert registry.get_stats()["connections"] == 1

    def test_stats(self, registry):
        registry.add_transport("c1", transport("c1", "t1"))
        registry.add_producer("c1", "t1", producer("c1", "p1"))
        registry.add_consumer("c1", "t1", consumer("c1", "t1", "k1", "p2"))

        assert registry.get_stats() == {
            "connections": 2,
            "transports": 1,
            "producers": 1,
            "consumers": 1,
        }
