"""에이전트 헬스 상태 모델"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DISCONNECTED = "disconnected"
    RECOVERING = "recovering"


class RecoveryStrategy(str, Enum):
    RESTART = "restart"
    REPLACE = "replace"
    ALERT = "alert"


@dataclass
class AgentHealthStatus:
    """에이전트 헬스 스냅샷 (모니터만 변경한다)"""

    agent_id: str
    recovery_strategy: RecoveryStrategy
    state: HealthState = HealthState.HEALTHY
    last_heartbeat: float = field(default_factory=time.time)
    missed_heartbeats: int = 0
    recovery_attempts: int = 0
    last_error: Optional[str] = None
    last_activity: Optional[str] = None
    last_activity_at: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "state": self.state.value,
            "last_heartbeat": self.last_heartbeat,
            "missed_heartbeats": self.missed_heartbeats,
            "recovery_strategy": self.recovery_strategy.value,
            "recovery_attempts": self.recovery_attempts,
            "last_error": self.last_error,
            "last_activity": self.last_activity,
        }


@dataclass(frozen=True, slots=True)
class RecoveryResult:
    """recover_agent 결과"""

    agent_id: str
    success: bool
    strategy: RecoveryStrategy
    duration_ms: float = 0.0
    error: Optional[str] = None


@dataclass(frozen=True, slots=True)
class HealthChange:
    """상태 전이 기록 (agent:health_changed 페이로드)"""

    agent_id: str
    previous: HealthState
    current: HealthState
    reason: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "previous_state": self.previous.value,
            "new_state": self.current.value,
            "reason": self.reason,
            "timestamp": self.timestamp,
        }
