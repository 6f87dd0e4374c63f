"""안정성 런타임

구성 요소를 하나로 묶는다:
  StorageAdapter → SessionManager
  EventBus (라이프사이클 알림)
  AgentHealthMonitor (상시 감시)
  GroupConversationManager (턴 조정)

종료 순서: 헬스 모니터 → 세션 정리 루프 → 이벤트 버스 → 저장소
제한 시간 안에 끝나지 않으면 남은 작업을 취소한다.

라이프사이클: IDLE → RUNNING → STOPPING → STOPPED
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum, auto
from typing import Any, Optional

from robustness.agents.base import BaseAgent, agent_id_of
from robustness.events.bus import EventBus
from robustness.group.manager import GroupConversationManager
from robustness.group.selection import Decider
from robustness.health.monitor import AgentFactory, AgentHealthMonitor
from robustness.models.config import RobustnessConfig
from robustness.models.events import Topic
from robustness.models.health import AgentHealthStatus, RecoveryStrategy
from robustness.session.manager import SessionManager
from robustness.storage.base import StorageAdapter
from robustness.storage.factory import new_storage

logger = logging.getLogger("robustness.runtime")


class RuntimeState(Enum):
    IDLE = auto()
    RUNNING = auto()
    STOPPING = auto()
    STOPPED = auto()


class RobustnessRuntime:
    """구성 요소 배선 및 종료 관리

    async with RobustnessRuntime(config) as runtime:
        session = await runtime.sessions.create_session()
    """

    def __init__(
        self,
        config: Optional[RobustnessConfig] = None,
        decider: Optional[Decider] = None,
        storage: Optional[StorageAdapter] = None,
    ) -> None:
        self._config = config or RobustnessConfig()
        self._state = RuntimeState.IDLE

        self.storage = storage or new_storage(
            self._config.storage.kind,
            location=self._config.storage.location,
            file_permissions=self._config.storage.file_permissions,
            compression_threshold=self._config.storage.compression_threshold,
        )
        self.events = EventBus(self._config.events)
        self.sessions = SessionManager(self.storage, self._config.session, self.events)
        self.health = AgentHealthMonitor(self._config.health, self.events)
        self.groups = GroupConversationManager(
            self._config.group,
            decider=decider,
            health_monitor=self.health,
            event_bus=self.events,
        )

    @property
    def state(self) -> RuntimeState:
        return self._state

    @property
    def config(self) -> RobustnessConfig:
        return self._config

    async def start(self, background: bool = True) -> None:
        """저장소/버스 초기화 후 백그라운드 루프 시작"""
        if self._state == RuntimeState.RUNNING:
            return
        if not self.storage.is_open:
            await self.storage.initialize()
        await self.events.initialize()
        if background:
            self.health.start_monitoring()
            self.sessions.start_background_cleanup()
            self.events.start_retention_sweep()
        self._state = RuntimeState.RUNNING
        logger.info("런타임 시작 (저장소 %s)", self.storage.backend_type)

    async def register_agent(
        self,
        agent: Any,
        recovery_strategy: Optional[RecoveryStrategy] = None,
        agent_factory: Optional[AgentFactory] = None,
    ) -> AgentHealthStatus:
        """헬스 모니터 등록 + agent:started 발행"""
        status = self.health.register_agent(agent, recovery_strategy, agent_factory)
        if isinstance(agent, BaseAgent):
            await agent.start()
        await self.events.publish(Topic.AGENT_STARTED, {
            "agent_id": status.agent_id,
            "recovery_strategy": status.recovery_strategy.value,
        })
        return status

    async def unregister_agent(self, agent_id: str) -> None:
        """헬스 모니터 해제 + agent:stopped 발행"""
        agent = self.health.get_agent(agent_id)
        self.health.unregister_agent(agent_id)
        if isinstance(agent, BaseAgent):
            await agent.stop()
        await self.events.publish(Topic.AGENT_STOPPED, {"agent_id": agent_id_of(agent)})

    async def get_stats(self) -> dict[str, Any]:
        return {
            "state": self._state.name,
            "sessions": await self.sessions.get_stats(),
            "health": self.health.get_stats(),
            "events": self.events.get_stats(),
            "groups": self.groups.get_stats(),
        }

    async def _stop_components(self) -> None:
        await self.health.stop_monitoring()
        await self.sessions.stop_background_cleanup()
        await self.events.stop()
        await self.storage.close()

    async def shutdown(self) -> None:
        """Graceful shutdown: 순서대로 종료, 시간 초과 시 강제 종료"""
        if self._state in (RuntimeState.STOPPING, RuntimeState.STOPPED):
            return
        self._state = RuntimeState.STOPPING
        timeout = self._config.shutdown_timeout_s
        try:
            await asyncio.wait_for(self._stop_components(), timeout=timeout)
            logger.debug("모든 구성 요소 정상 종료")
        except asyncio.TimeoutError:
            logger.warning("강제 종료 (%.0fs 타임아웃)", timeout)
            if self.storage.is_open:
                await self.storage.close()
        self._state = RuntimeState.STOPPED
        logger.info("런타임 종료")

    async def __aenter__(self) -> RobustnessRuntime:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()
