"""Presence Tracker

음성 채널별 참가자 집합 관리 및 변경 통지
"""

from threading import RLock
from typing import Awaitable, Callable, Dict, List, Optional, Set

from sfu_signaling.common.logger import get_logger
from sfu_signaling.session.identity import IdentityRegistry

logger = get_logger(__name__)

Participant = Dict[str, str]
PresenceListener = Callable[[str, List[Participant]], Awaitable[None]]


class PresenceTracker:
    """채널 참가자 추적기

    채널은 최초 join 시 생성되며 비어도 삭제되지 않는다.
    멤버십이 바뀔 때마다 리스너에 해당 채널의 전체 스냅샷을 push 한다.
    리스너 호출은 락 밖에서 이루어진다.
    """

    def __init__(self, identities: IdentityRegistry, listener: Optional[PresenceListener] = None):
        """초기화

        Args:
            identities: 닉네임 조회용 바인딩
            listener: 채널 스냅샷 변경 통지 (channel_id, participants)
        """
        self.identities = identities
        self.listener = listener
        self._channels: Dict[str, Set[str]] = {}
        self._lock = RLock()

    async def join(self, channel_id: str, user_id: str) -> bool:
        """채널 참가 (이미 참가 중이면 변경 없음)

        Returns:
            멤버십 변경 여부
        """
        with self._lock:
            members = self._channels.setdefault(channel_id, set())
            changed = user_id not in members
            members.add(user_id)

        if changed:
            logger.info("voice_channel_joined", channel_id=channel_id, user_id=user_id)
        await self._notify(channel_id)
        return changed

    async def leave(self, channel_id: str, user_id: str) -> bool:
        """채널 퇴장

        채널이 존재하면 변경 여부와 무관하게 스냅샷을 다시 통지한다.

        Returns:
            멤버십 변경 여부
        """
        with self._lock:
            members = self._channels.get(channel_id)
            if members is None:
                return False
            changed = user_id in members
            members.discard(user_id)

        if changed:
            logger.info("voice_channel_left", channel_id=channel_id, user_id=user_id)
        await self._notify(channel_id)
        return changed

    async def leave_all(self, user_id: str) -> Set[str]:
        """사용자를 모든 채널에서 제거

        Returns:
            실제로 변경된 채널 ID 집합
        """
        with self._lock:
            changed = set()
            for channel_id, members in self._channels.items():
                if user_id in members:
                    members.discard(user_id)
                    changed.add(channel_id)

        for channel_id in sorted(changed):
            logger.info("voice_channel_left", channel_id=channel_id, user_id=user_id)
            await self._notify(channel_id)
        return changed

    def snapshot(self, channel_id: str) -> List[Participant]:
        """채널 참가자 목록 [{userId, nickname}]"""
        with self._lock:
            members = list(self._channels.get(channel_id, ()))

        return [
            {"userId": uid, "nickname": self.identities.nickname_for(uid)}
            for uid in members
        ]

    def members(self, channel_id: str) -> Set[str]:
        """채널 참가자 userId 집합 (복사본)"""
        with self._lock:
            return set(self._channels.get(channel_id, ()))

    def channels_of(self, user_id: str) -> Set[str]:
        """사용자가 참가 중인 채널"""
        with self._lock:
            return {cid for cid, members in self._channels.items() if user_id in members}

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "channels": len(self._channels),
                "participants": sum(len(m) for m in self._channels.values()),
            }

    async def _notify(self, channel_id: str) -> None:
        if self.listener is None:
            return
        await self.listener(channel_id, self.snapshot(channel_id))
