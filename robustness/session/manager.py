"""세션 관리자

세션 생성/저장/복원/만료/정리를 담당한다.
- 저장은 낙관적 잠금: 저장소 버전과 세션 버전이 다르면 VersionConflict
- 버전 비교와 쓰기는 세션별 asyncio.Lock 안에서 원자적으로 수행
- 충돌 시 내부 재시도 없음 (호출자가 다시 로드 후 재시도)
- ACTIVE 세션은 나이와 무관하게 정리 대상이 아니다
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from robustness.core.state import require_session_transition, validate_session_transition
from robustness.errors import (
    EventBusStopped,
    InvalidStateTransition,
    SessionExpired,
    SessionNotFound,
    StorageIOError,
    VersionConflict,
)
from robustness.models.config import SessionConfig
from robustness.models.events import Topic
from robustness.models.messages import Message
from robustness.models.session import Session, SessionState
from robustness.storage.base import StorageAdapter

if TYPE_CHECKING:
    from robustness.events.bus import EventBus

logger = logging.getLogger("robustness.session")

KEY_PREFIX = "session:"


def session_key(session_id: str) -> str:
    return f"{KEY_PREFIX}{session_id}"


class SessionManager:
    """버전 관리 세션 저장소"""

    def __init__(
        self,
        storage: StorageAdapter,
        config: Optional[SessionConfig] = None,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage
        self._config = config or SessionConfig()
        self._event_bus = event_bus
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._stop_event = asyncio.Event()
        self._cleanup_task: Optional[asyncio.Task] = None  # type: ignore[type-arg]
        self._conflicts = 0
        self._cleaned = 0

    @property
    def storage(self) -> StorageAdapter:
        return self._storage

    @property
    def is_cleanup_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    # ── 내부 입출력 ──

    async def _read(self, session_id: str) -> Optional[Session]:
        data = await self._storage.load(session_key(session_id))
        if data is None:
            return None
        try:
            return Session.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise StorageIOError(
                f"세션 레코드 손상: {session_id}: {e}", key=session_key(session_id),
            ) from e

    async def _require(self, session_id: str) -> Session:
        session = await self._read(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def _write_checked(self, session: Session) -> Session:
        """버전 비교 후 쓰기. 세션 잠금을 잡은 상태에서만 호출"""
        stored = await self._storage.load(session_key(session.id))
        if stored is not None:
            actual = int(stored.get("version", 0))
            if actual != session.version:
                self._conflicts += 1
                logger.warning(
                    "버전 충돌: %s (기대 %d, 저장소 %d)", session.id, session.version, actual,
                )
                raise VersionConflict(session.id, session.version, actual)
            stored_state = SessionState(stored.get("state", SessionState.ACTIVE.value))
            # ACTIVE가 아닌 세션은 허용된 상태 전이 외에는 변경 불가
            if stored_state != SessionState.ACTIVE and not validate_session_transition(
                stored_state, session.state,
            ):
                raise SessionExpired(session.id, stored_state.value)

        record = session.to_dict()
        now = self._clock()
        record["version"] = session.version + 1
        record["updated_at"] = now
        await self._storage.save(session_key(session.id), record)

        # 쓰기 성공 후에만 메모리 객체 갱신
        session.version += 1
        session.updated_at = now
        return session

    async def _publish(self, topic: str, session_id: str, payload: dict[str, Any]) -> None:
        if self._event_bus is None:
            return
        try:
            await self._event_bus.publish(topic, payload, session_id=session_id)
        except (EventBusStopped, StorageIOError) as e:
            logger.warning("세션 이벤트 발행 실패 [%s]: %s", topic, e)

    # ── 공개 연산 ──

    async def create_session(
        self,
        agent_ids: Optional[list[str]] = None,
        expiration_s: Optional[float] = None,
        metadata: Optional[dict[str, Any]] = None,
        shared_context: Optional[dict[str, Any]] = None,
    ) -> Session:
        """새 세션 생성 (version 0으로 저장)"""
        ttl = self._config.default_expiration_s if expiration_s is None else expiration_s
        if ttl <= 0:
            raise ValueError("expiration_s는 0보다 커야 합니다")
        session = Session(
            agent_ids=list(agent_ids or []),
            metadata=dict(metadata or {}),
            shared_context=dict(shared_context or {}),
            expiration_s=ttl,
            created_at=self._clock(),
        )
        async with self._lock_for(session.id):
            await self._storage.save(session_key(session.id), session.to_dict())
        logger.info("세션 생성: %s (TTL %.0fs)", session.id, ttl)
        await self._publish(Topic.SESSION_CREATED, session.id, {
            "session_id": session.id,
            "agent_ids": list(session.agent_ids),
        })
        return session

    async def save_session(self, session: Session) -> Session:
        """버전 확인 저장. 성공 시 session.version이 1 증가한다"""
        async with self._lock_for(session.id):
            return await self._write_checked(session)

    async def add_message(
        self, session_id: str, message: Union[Message, dict[str, Any]],
    ) -> Session:
        """대화 이력에 메시지 추가 후 저장"""
        if isinstance(message, dict):
            message = Message.from_dict(message)
        async with self._lock_for(session_id):
            session = await self._require(session_id)
            if not session.is_active:
                raise SessionExpired(session_id, session.state.value)
            session.conversation_history.append(message)
            return await self._write_checked(session)

    async def restore_session(self, session_id: str) -> Optional[Session]:
        """저장된 세션 읽기. 만료 여부와 무관하게 데이터를 돌려준다"""
        session = await self._read(session_id)
        if session is None:
            logger.debug("복원할 세션 없음: %s", session_id)
        return session

    async def update_session_state(self, session_id: str, new_state: SessionState) -> Session:
        new_state = SessionState(new_state)
        async with self._lock_for(session_id):
            session = await self._require(session_id)
            previous = session.state
            require_session_transition(previous, new_state)
            session.state = new_state
            if new_state == SessionState.EXPIRED:
                session.expired_at = self._clock()
            await self._write_checked(session)
        logger.info("세션 상태 변경: %s %s → %s", session_id, previous.value, new_state.value)
        await self._publish(Topic.SESSION_STATE_CHANGED, session_id, {
            "session_id": session_id,
            "previous_state": previous.value,
            "new_state": new_state.value,
        })
        return session

    async def update_agent_state(self, session_id: str, agent_id: str, state: Any) -> Session:
        """에이전트별 상태 블롭 교체"""
        async with self._lock_for(session_id):
            session = await self._require(session_id)
            if not session.is_active:
                raise SessionExpired(session_id, session.state.value)
            session.agent_states[agent_id] = state
            if agent_id not in session.agent_ids:
                session.agent_ids.append(agent_id)
            return await self._write_checked(session)

    async def delete_session(self, session_id: str) -> bool:
        async with self._lock_for(session_id):
            deleted = await self._storage.delete(session_key(session_id))
        self._locks.pop(session_id, None)
        if deleted:
            logger.info("세션 삭제: %s", session_id)
            await self._publish(Topic.SESSION_DELETED, session_id, {"session_id": session_id})
        return deleted

    async def _all_sessions(self) -> list[Session]:
        sessions = []
        for key in await self._storage.list_keys(KEY_PREFIX):
            session = await self._read(key[len(KEY_PREFIX):])
            if session is not None:
                sessions.append(session)
        return sessions

    async def list_sessions(
        self,
        state: Optional[SessionState] = None,
        created_after: Optional[float] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[str]:
        """세션 id 목록 (최근 갱신 순)"""
        sessions = await self._all_sessions()
        if state is not None:
            sessions = [s for s in sessions if s.state == SessionState(state)]
        if created_after is not None:
            sessions = [s for s in sessions if s.created_at > created_after]
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        ids = [s.id for s in sessions][offset:]
        return ids if limit is None else ids[:limit]

    async def expire_overdue_sessions(self) -> int:
        """TTL이 지난 ACTIVE 세션을 EXPIRED로 전이"""
        now = self._clock()
        count = 0
        for session in await self._all_sessions():
            if not session.is_active or not session.is_overdue(now):
                continue
            try:
                await self.update_session_state(session.id, SessionState.EXPIRED)
                count += 1
            except (SessionNotFound, InvalidStateTransition):
                # 조회 이후 삭제되었거나 이미 전이됨
                continue
        if count:
            logger.info("만료 처리: %d개 세션", count)
        return count

    async def cleanup_expired_sessions(self, grace_s: Optional[float] = None) -> int:
        """만료 시각이 grace_s 이상 지난 EXPIRED 세션 삭제. 삭제 수 반환"""
        grace = self._config.cleanup_grace_s if grace_s is None else grace_s
        now = self._clock()
        deleted = 0
        for key in await self._storage.list_keys(KEY_PREFIX):
            session_id = key[len(KEY_PREFIX):]
            async with self._lock_for(session_id):
                session = await self._read(session_id)
                if session is None or session.state != SessionState.EXPIRED:
                    continue
                if now - session.expiration_moment < grace:
                    continue
                if not await self._storage.delete(key):
                    continue
                deleted += 1
            self._locks.pop(session_id, None)
            await self._publish(Topic.SESSION_DELETED, session_id, {
                "session_id": session_id, "reason": "expired",
            })
        self._cleaned += deleted
        if deleted:
            logger.info("만료 세션 정리: %d개 삭제", deleted)
        return deleted

    async def get_stats(self) -> dict[str, Any]:
        sessions = await self._all_sessions()
        by_state = Counter(s.state.value for s in sessions)
        storage_stats = await self._storage.get_stats()
        return {
            "total": len(sessions),
            "by_state": {state.value: by_state.get(state.value, 0) for state in SessionState},
            "version_conflicts": self._conflicts,
            "cleaned_up": self._cleaned,
            "storage": storage_stats.to_dict(),
        }

    # ── 백그라운드 정리 ──

    def start_background_cleanup(self) -> None:
        if self.is_cleanup_running:
            return
        self._stop_event.clear()
        self._cleanup_task = asyncio.create_task(
            self._cleanup_loop(), name="session-cleanup",
        )
        logger.info("세션 정리 루프 시작 (주기 %.0fs)", self._config.cleanup_interval_s)

    async def stop_background_cleanup(self) -> None:
        if self._cleanup_task is None:
            return
        self._stop_event.set()
        try:
            await self._cleanup_task
        finally:
            self._cleanup_task = None
        logger.info("세션 정리 루프 중지")

    async def _cleanup_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._stop_event.wait()),
                    timeout=self._config.cleanup_interval_s,
                )
                break  # stop_event 설정됨
            except asyncio.TimeoutError:
                await self.run_cleanup_cycle()

    async def run_cleanup_cycle(self) -> tuple[int, int]:
        """만료 전이 + 정리 한 주기. 실패는 기록만 하고 다음 주기로"""
        try:
            expired = await self.expire_overdue_sessions()
            deleted = await self.cleanup_expired_sessions()
        except Exception as e:
            logger.error("세션 정리 주기 실패: %s", e)
            return 0, 0
        return expired, deleted
