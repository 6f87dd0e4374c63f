"""에이전트 기본 인터페이스

헬스 모니터와 그룹 대화 관리자는 Agent 프로토콜(name, respond)에만 의존한다.
BaseAgent는 공통 라이프사이클을 제공하는 선택적 기본 구현이다.
라이프사이클: INIT → READY → ACTIVE → DRAINING → RECOVERING → OFF
"""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Awaitable, Optional, Protocol, Union, runtime_checkable

if TYPE_CHECKING:
    from robustness.events.bus import EventBus


@runtime_checkable
class Agent(Protocol):
    """최소 에이전트 계약"""

    name: str

    def respond(self, message: str, context: dict[str, Any]) -> Union[str, Awaitable[str]]:
        ...


def agent_id_of(agent: Any) -> str:
    """에이전트 식별자: id 속성이 있으면 id, 없으면 name"""
    return getattr(agent, "id", None) or agent.name


async def call_respond(agent: Any, message: str, context: dict[str, Any]) -> str:
    """동기/비동기 respond 모두 지원"""
    result = agent.respond(message, context)
    if inspect.isawaitable(result):
        result = await result
    return str(result)


class AgentLifecycle(Enum):
    """에이전트 라이프사이클 상태"""
    INIT = auto()
    READY = auto()
    ACTIVE = auto()
    DRAINING = auto()
    RECOVERING = auto()
    OFF = auto()


class BaseAgent(ABC):
    """에이전트 기본 추상 클래스

    하위 클래스는 respond()를 구현하고, 필요하면 setup()/teardown()으로
    에이전트 로컬 상태를 준비/해제한다. reset()은 RESTART 복구에서 호출된다.
    """

    def __init__(
        self,
        name: str,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self.name = name
        self._event_bus = event_bus
        self._lifecycle = AgentLifecycle.INIT
        self._logger = logging.getLogger(f"robustness.agent.{name}")

    @property
    def lifecycle(self) -> AgentLifecycle:
        return self._lifecycle

    @property
    def is_active(self) -> bool:
        return self._lifecycle == AgentLifecycle.ACTIVE

    def _set_lifecycle(self, state: AgentLifecycle) -> None:
        self._logger.debug("라이프사이클: %s → %s", self._lifecycle.name, state.name)
        self._lifecycle = state

    async def emit(self, topic: str, payload: object = None) -> None:
        """이벤트 버스에 메시지 발행"""
        if self._event_bus is None:
            return
        await self._event_bus.publish(topic, payload)

    @abstractmethod
    async def respond(self, message: str, context: dict[str, Any]) -> str:
        """메시지에 대한 응답 생성"""

    async def setup(self) -> None:
        """초기화 (선택적 오버라이드)"""

    async def teardown(self) -> None:
        """정리 (선택적 오버라이드)"""

    async def start(self) -> None:
        self._set_lifecycle(AgentLifecycle.INIT)
        await self.setup()
        self._set_lifecycle(AgentLifecycle.READY)
        self._set_lifecycle(AgentLifecycle.ACTIVE)

    async def stop(self) -> None:
        self._set_lifecycle(AgentLifecycle.DRAINING)
        try:
            await self.teardown()
        finally:
            self._set_lifecycle(AgentLifecycle.OFF)

    async def reset(self) -> None:
        """에이전트 로컬 상태 재초기화 (RESTART 복구)"""
        self._set_lifecycle(AgentLifecycle.RECOVERING)
        try:
            await self.teardown()
            await self.setup()
        except Exception as e:
            self._logger.error("재시작 오류: %s", e)
            raise
        self._set_lifecycle(AgentLifecycle.ACTIVE)
