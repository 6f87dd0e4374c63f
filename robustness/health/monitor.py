"""에이전트 헬스 모니터

감지 규칙 (점검 주기마다, elapsed = now - last_heartbeat):
- elapsed > activity_timeout            → DISCONNECTED
- elapsed > heartbeat_interval          → 누락 카운터 +1
  누락이 max_missed_beats에 도달하면     → DEGRADED
- DEGRADED인데 하트비트가 최신이면       → HEALTHY
DISCONNECTED는 하트비트로 되살아나지 않는다 (recover_agent만 가능).

복구 전략:
- RESTART: 에이전트 reset() 호출 후 카운터 초기화
- REPLACE: 등록 시 받은 agent_factory로 새 인스턴스 교체
- ALERT:   알림만 발송, DISCONNECTED 유지
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, replace
from time import monotonic
from typing import TYPE_CHECKING, Any, Callable, Optional

from robustness.agents.base import agent_id_of
from robustness.core.metrics import MonitorMetrics
from robustness.core.state import validate_health_transition
from robustness.errors import (
    AgentNotRegistered,
    EventBusStopped,
    InvalidStateTransition,
    RecoveryFailed,
    StorageIOError,
    SubscriptionNotFound,
)
from robustness.models.config import HealthConfig
from robustness.models.events import EventPriority, Topic
from robustness.models.health import (
    AgentHealthStatus,
    HealthChange,
    HealthState,
    RecoveryResult,
    RecoveryStrategy,
)
from robustness.notify.alerts import AlertNotifier

if TYPE_CHECKING:
    from robustness.events.bus import EventBus

logger = logging.getLogger("robustness.health")

AgentFactory = Callable[[], Any]

_FAILING_STATES = frozenset({HealthState.DISCONNECTED, HealthState.RECOVERING})


@dataclass
class _MonitoredAgent:
    agent: Any
    status: AgentHealthStatus
    factory: Optional[AgentFactory] = None


class AgentHealthMonitor:
    """하트비트 기반 장애 감지 및 복구"""

    def __init__(
        self,
        config: Optional[HealthConfig] = None,
        event_bus: Optional[EventBus] = None,
        notifier: Optional[AlertNotifier] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or HealthConfig()
        self._event_bus = event_bus
        self._notifier = notifier or AlertNotifier(
            methods=self._config.alert_methods,
            webhook_url=self._config.alert_webhook_url,
            cooldown_s=self._config.alert_cooldown_s,
        )
        self._clock = clock
        self._agents: dict[str, _MonitoredAgent] = {}
        self._lock = threading.Lock()
        self._metrics = MonitorMetrics()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None  # type: ignore[type-arg]

        # 시스템 성능 저하 모드
        self._failure_times: deque[float] = deque()
        self._degraded_mode = False
        self._calm_since: Optional[float] = None

    @property
    def config(self) -> HealthConfig:
        return self._config

    @property
    def metrics(self) -> MonitorMetrics:
        return self._metrics

    @property
    def is_monitoring(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_degraded_mode(self) -> bool:
        return self._degraded_mode

    # ── 등록 ──

    def register_agent(
        self,
        agent: Any,
        recovery_strategy: Optional[RecoveryStrategy] = None,
        agent_factory: Optional[AgentFactory] = None,
    ) -> AgentHealthStatus:
        agent_id = agent_id_of(agent)
        strategy = RecoveryStrategy(
            recovery_strategy or self._config.default_recovery_strategy
        )
        status = AgentHealthStatus(
            agent_id=agent_id,
            recovery_strategy=strategy,
            last_heartbeat=self._clock(),
        )
        with self._lock:
            if agent_id in self._agents:
                raise ValueError(f"이미 등록된 에이전트: {agent_id}")
            self._agents[agent_id] = _MonitoredAgent(agent, status, agent_factory)
        logger.info("에이전트 등록: %s (복구 전략 %s)", agent_id, strategy.value)
        return replace(status)

    def unregister_agent(self, agent_id: str) -> AgentHealthStatus:
        with self._lock:
            entry = self._agents.pop(agent_id, None)
        if entry is None:
            raise AgentNotRegistered(agent_id)
        logger.info("에이전트 등록 해제: %s", agent_id)
        return entry.status

    def get_agent(self, agent_id: str) -> Any:
        return self._entry(agent_id).agent

    def _entry(self, agent_id: str) -> _MonitoredAgent:
        entry = self._agents.get(agent_id)
        if entry is None:
            raise AgentNotRegistered(agent_id)
        return entry

    def set_recovery_strategy(self, agent_id: str, strategy: RecoveryStrategy) -> None:
        with self._lock:
            self._entry(agent_id).status.recovery_strategy = RecoveryStrategy(strategy)

    # ── 하트비트 ──

    def _touch(self, agent_id: str, activity_type: Optional[str]) -> None:
        with self._lock:
            status = self._entry(agent_id).status
            if status.state == HealthState.DISCONNECTED:
                # 마지막 정상 시각 유지 (복구 후 재전송 기준)
                logger.debug("DISCONNECTED 에이전트 하트비트 무시: %s", agent_id)
                return
            now = self._clock()
            status.last_heartbeat = now
            status.missed_heartbeats = 0
            if activity_type is not None:
                status.last_activity = activity_type
                status.last_activity_at = now
        self._metrics.record_heartbeat()

    def send_heartbeat(self, agent_id: str) -> None:
        self._touch(agent_id, None)

    def record_activity(self, agent_id: str, activity_type: str = "activity") -> None:
        """하트비트와 동일하게 갱신하고 활동 종류를 기록"""
        self._touch(agent_id, activity_type)

    # ── 상태 전이 ──

    def _transition(
        self, status: AgentHealthStatus, target: HealthState, reason: str,
    ) -> HealthChange:
        """잠금 안에서 호출"""
        if not validate_health_transition(status.state, target):
            raise InvalidStateTransition(status.state.value, target.value)
        change = HealthChange(
            agent_id=status.agent_id,
            previous=status.state,
            current=target,
            reason=reason,
            timestamp=self._clock(),
        )
        status.state = target
        if target == HealthState.DISCONNECTED:
            self._failure_times.append(change.timestamp)
        return change

    async def _publish(self, topic: str, payload: Any,
                       priority: EventPriority = EventPriority.NORMAL) -> None:
        if self._event_bus is None:
            return
        try:
            await self._event_bus.publish(topic, payload, priority=priority)
        except (EventBusStopped, StorageIOError) as e:
            logger.warning("헬스 이벤트 발행 실패 [%s]: %s", topic, e)

    async def _announce(self, changes: list[HealthChange]) -> None:
        for change in changes:
            log = logger.warning if change.current == HealthState.DISCONNECTED else logger.info
            log(
                "헬스 상태: %s %s → %s (%s)",
                change.agent_id, change.previous.value, change.current.value, change.reason,
            )
            priority = (
                EventPriority.CRITICAL
                if change.current == HealthState.DISCONNECTED
                else EventPriority.NORMAL
            )
            await self._publish(Topic.AGENT_HEALTH_CHANGED, change.to_dict(), priority)

    # ── 점검 ──

    def _check_one(self, status: AgentHealthStatus, now: float) -> Optional[HealthChange]:
        if status.state not in (HealthState.HEALTHY, HealthState.DEGRADED):
            return None
        elapsed = now - status.last_heartbeat
        if elapsed > self._config.activity_timeout:
            return self._transition(
                status, HealthState.DISCONNECTED, f"활동 없음 {elapsed:.1f}s",
            )
        if elapsed > self._config.heartbeat_interval:
            status.missed_heartbeats += 1
            self._metrics.record_missed()
            if (status.state == HealthState.HEALTHY
                    and status.missed_heartbeats >= self._config.max_missed_beats):
                return self._transition(
                    status, HealthState.DEGRADED,
                    f"하트비트 {status.missed_heartbeats}회 누락",
                )
            return None
        if status.state == HealthState.DEGRADED:
            return self._transition(status, HealthState.HEALTHY, "하트비트 재개")
        return None

    async def check_agents(self) -> list[HealthChange]:
        """점검 한 주기. 발생한 상태 전이 목록 반환"""
        start = monotonic()
        now = self._clock()
        changes: list[HealthChange] = []
        with self._lock:
            for agent_id, entry in list(self._agents.items()):
                try:
                    change = self._check_one(entry.status, now)
                except Exception as e:
                    logger.error("에이전트 점검 오류 [%s]: %s", agent_id, e)
                    continue
                if change is not None:
                    changes.append(change)
            self._update_degraded_mode(now)
        self._metrics.record_tick((monotonic() - start) * 1000)
        await self._announce(changes)
        return changes

    def _failing_count(self) -> int:
        return sum(1 for e in self._agents.values() if e.status.state in _FAILING_STATES)

    def _update_degraded_mode(self, now: float) -> None:
        """잠금 안에서 호출"""
        window_start = now - self._config.degradation_window_s
        while self._failure_times and self._failure_times[0] < window_start:
            self._failure_times.popleft()

        if not self._degraded_mode:
            if len(self._failure_times) > self._config.degradation_failure_count:
                self._degraded_mode = True
                self._calm_since = None
                logger.warning(
                    "성능 저하 모드 진입: %.0fs 내 장애 %d건",
                    self._config.degradation_window_s, len(self._failure_times),
                )
            return

        if self._failing_count() < self._config.degradation_recovery_threshold:
            if self._calm_since is None:
                self._calm_since = now
            elif now - self._calm_since >= self._config.degradation_recovery_duration_s:
                self._degraded_mode = False
                self._calm_since = None
                logger.info("성능 저하 모드 해제")
        else:
            self._calm_since = None

    # ── 루프 ──

    def start_monitoring(self) -> None:
        if self.is_monitoring:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="health-monitor")
        logger.info(
            "헬스 모니터 시작 (주기 %.1fs, 타임아웃 %.1fs, 누락 허용 %d회)",
            self._config.heartbeat_interval,
            self._config.activity_timeout,
            self._config.max_missed_beats,
        )

    async def stop_monitoring(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
        logger.info("헬스 모니터 중지\n%s", self._metrics.summary())

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._stop_event.wait()),
                    timeout=self._config.heartbeat_interval,
                )
                break  # stop_event 설정됨
            except asyncio.TimeoutError:
                try:
                    await self.check_agents()
                except Exception as e:
                    logger.error("헬스 점검 주기 오류: %s", e)

    # ── 복구 ──

    async def _run_strategy(self, agent_id: str, entry: _MonitoredAgent,
                            strategy: RecoveryStrategy) -> None:
        if strategy == RecoveryStrategy.RESTART:
            reset = getattr(entry.agent, "reset", None)
            if callable(reset):
                result = reset()
                if inspect.isawaitable(result):
                    await result
        elif strategy == RecoveryStrategy.REPLACE:
            if entry.factory is None:
                raise RecoveryFailed(agent_id, strategy.value, "agent_factory 없음")
            agent = entry.factory()
            if inspect.isawaitable(agent):
                agent = await agent
            entry.agent = agent
        else:
            reason = entry.status.last_error or f"에이전트 상태 {entry.status.state.value}"
            await self._notifier.send(agent_id, reason)
            await self._publish(
                Topic.AGENT_ALERT,
                {"agent_id": agent_id, "reason": reason},
                EventPriority.CRITICAL,
            )
            raise RecoveryFailed(agent_id, strategy.value, "자동 복구 없음 (알림만 발송)")

    async def recover_agent(self, agent_id: str) -> RecoveryResult:
        """설정된 복구 전략 실행. 실패해도 예외 대신 결과로 보고"""
        with self._lock:
            entry = self._entry(agent_id)
            status = entry.status
            strategy = status.recovery_strategy
            if status.state == HealthState.RECOVERING:
                return RecoveryResult(agent_id, False, strategy, error="이미 복구 중")
            down_since = status.last_heartbeat
            status.recovery_attempts += 1
            changes = [self._transition(status, HealthState.RECOVERING, f"{strategy.value} 복구 시작")]
        await self._announce(changes)

        start = monotonic()
        error: Optional[str] = None
        try:
            await self._run_strategy(agent_id, entry, strategy)
        except Exception as e:
            error = str(e)

        with self._lock:
            if error is None:
                status.missed_heartbeats = 0
                status.last_heartbeat = self._clock()
                status.last_error = None
                change = self._transition(status, HealthState.HEALTHY, f"{strategy.value} 복구 성공")
            else:
                status.last_error = error
                change = self._transition(status, HealthState.DISCONNECTED, f"{strategy.value} 복구 실패")
        await self._announce([change])

        success = error is None
        duration_ms = (monotonic() - start) * 1000
        self._metrics.record_recovery(success)
        result = RecoveryResult(agent_id, success, strategy, duration_ms, error)

        if success:
            logger.info("복구 성공: %s (%s, %.1fms)", agent_id, strategy.value, duration_ms)
            await self._publish(Topic.AGENT_RECOVERED, {
                "agent_id": agent_id,
                "strategy": strategy.value,
                "duration_ms": duration_ms,
            })
            await self._replay_missed(agent_id, down_since)
        else:
            logger.error("복구 실패: %s (%s): %s", agent_id, strategy.value, error)
        return result

    async def _replay_missed(self, agent_id: str, since: float) -> None:
        """장애 구간 동안 놓친 이벤트를 에이전트 구독으로 재전송"""
        if self._event_bus is None or not self._event_bus.subscriptions_of(agent_id):
            return
        try:
            count = await self._event_bus.replay(agent_id, since=since)
        except SubscriptionNotFound:
            return
        except StorageIOError as e:
            logger.warning("복구 후 재전송 실패 [%s]: %s", agent_id, e)
            return
        logger.info("복구 후 재전송: %s ← %d개", agent_id, count)

    # ── 조회 ──

    def get_agent_health(self, agent_id: str) -> AgentHealthStatus:
        with self._lock:
            return replace(self._entry(agent_id).status)

    def get_all_agent_health(self) -> dict[str, AgentHealthStatus]:
        with self._lock:
            return {aid: replace(e.status) for aid, e in self._agents.items()}

    def get_stats(self) -> dict[str, Any]:
        self._metrics.update_memory()
        with self._lock:
            by_state = Counter(e.status.state.value for e in self._agents.values())
            total = len(self._agents)
        return {
            "total_agents": total,
            "by_state": {s.value: by_state.get(s.value, 0) for s in HealthState},
            "degraded_mode": self._degraded_mode,
            "monitoring": self.is_monitoring,
            "ticks": self._metrics.ticks,
            "total_heartbeats": self._metrics.total_heartbeats,
            "missed_heartbeats": self._metrics.missed_heartbeats,
            "recovery_attempts": self._metrics.recovery_attempts,
            "successful_recoveries": self._metrics.successful_recoveries,
            "avg_tick_ms": self._metrics.avg_tick_ms,
            "memory_mb": self._metrics.peak_memory_mb,
        }
