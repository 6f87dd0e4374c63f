"""pytest 공통 픽스처

테스트용 에이전트, 가짜 시계, 짧은 간격 설정을 제공한다.
"""

from __future__ import annotations

from typing import Any

import pytest

from robustness.agents.base import BaseAgent
from robustness.models.config import EventBusConfig, HealthConfig, SessionConfig


class FakeClock:
    """수동으로 진행시키는 시계 (epoch 초)"""

    def __init__(self, start: float = 1_800_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class EchoAgent:
    """동기 respond만 가진 최소 에이전트"""

    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.reset_count = 0

    def respond(self, message: str, context: dict[str, Any]) -> str:
        self.calls.append((message, context))
        return f"{self.name}: {message}"

    def reset(self) -> None:
        self.reset_count += 1


class CountingAgent(BaseAgent):
    """BaseAgent 기반 비동기 에이전트 (setup 횟수 기록)"""

    def __init__(self, name: str, fail_setup: bool = False, event_bus: Any = None) -> None:
        super().__init__(name, event_bus)
        self.setups = 0
        self.teardowns = 0
        self.fail_setup = fail_setup

    async def setup(self) -> None:
        if self.fail_setup:
            raise RuntimeError("초기화 실패")
        self.setups += 1

    async def teardown(self) -> None:
        self.teardowns += 1

    async def respond(self, message: str, context: dict[str, Any]) -> str:
        return f"[{self.name}] {message}"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def health_config() -> HealthConfig:
    """예시 값 (2s / 5s / 2회)"""
    return HealthConfig(
        heartbeat_interval=2.0,
        activity_timeout=5.0,
        max_missed_beats=2,
        alert_methods=["log"],
        alert_cooldown_s=0.0,
    )


@pytest.fixture
def fast_bus_config() -> EventBusConfig:
    """메모리 로그 + 짧은 재시도 간격"""
    return EventBusConfig(
        log_directory=None,
        queue_size=100,
        max_delivery_attempts=3,
        retry_backoff_s=0.001,
        drain_timeout_s=1.0,
    )


@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig(default_expiration_s=60.0, cleanup_interval_s=0.05)


@pytest.fixture
def agents_abc() -> list[EchoAgent]:
    return [EchoAgent("A"), EchoAgent("B"), EchoAgent("C")]
