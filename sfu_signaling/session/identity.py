"""Identity Registry

연결 ↔ 사용자 바인딩 및 닉네임 조회
"""

from threading import RLock
from typing import Dict, Optional

from sfu_signaling.common.logger import get_logger

logger = get_logger(__name__)

UNKNOWN_NICKNAME = "unknown"


class IdentityRegistry:
    """connectionId -> userId, userId -> nickname 바인딩

    userId 는 이미 신뢰된 입력으로 간주한다 (인증은 범위 밖).
    """

    def __init__(self):
        self._users: Dict[str, str] = {}
        self._nicknames: Dict[str, str] = {}
        self._lock = RLock()

    def bind(self, connection_id: str, user_id: str, nickname: Optional[str] = None) -> None:
        """register 메시지 처리 (재등록 시 덮어씀)"""
        with self._lock:
            self._users[connection_id] = user_id
            if nickname is not None:
                self._nicknames[user_id] = nickname

        logger.info("identity_bound",
                    connection_id=connection_id,
                    user_id=user_id,
                    nickname=nickname)

    def user_for(self, connection_id: str) -> Optional[str]:
        with self._lock:
            return self._users.get(connection_id)

    def nickname_for(self, user_id: str) -> str:
        """닉네임 조회 (미등록 시 'unknown')"""
        with self._lock:
            return self._nicknames.get(user_id) or UNKNOWN_NICKNAME

    def unbind(self, connection_id: str) -> Optional[str]:
        """연결 바인딩 해제

        같은 사용자로 바인딩된 다른 연결이 남아 있으면 닉네임은 유지한다.

        Returns:
            해제된 userId (없었으면 None)
        """
        with self._lock:
            user_id = self._users.pop(connection_id, None)
            if user_id is not None and user_id not in self._users.values():
                self._nicknames.pop(user_id, None)
            return user_id

    def connection_count(self) -> int:
        with self._lock:
            return len(self._users)
