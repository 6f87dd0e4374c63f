"""상태 머신 전이 규칙

세션 상태와 에이전트 헬스 상태의 허용 전이를 정의하고 검증한다.
"""

from __future__ import annotations

from robustness.errors import InvalidStateTransition
from robustness.models.health import HealthState
from robustness.models.session import SessionState


# 허용된 세션 상태 전이 맵: ACTIVE로 돌아가는 경로는 없다
_SESSION_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.ACTIVE: frozenset({SessionState.EXPIRED, SessionState.CLOSED}),
    SessionState.EXPIRED: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),  # 터미널 상태
}

# 헬스 상태 전이 맵
_HEALTH_TRANSITIONS: dict[HealthState, frozenset[HealthState]] = {
    HealthState.HEALTHY: frozenset({
        HealthState.DEGRADED, HealthState.DISCONNECTED, HealthState.RECOVERING,
    }),
    HealthState.DEGRADED: frozenset({
        HealthState.HEALTHY, HealthState.DISCONNECTED, HealthState.RECOVERING,
    }),
    HealthState.DISCONNECTED: frozenset({HealthState.RECOVERING}),
    HealthState.RECOVERING: frozenset({
        HealthState.HEALTHY, HealthState.DISCONNECTED,
    }),
}


def validate_session_transition(current: SessionState, target: SessionState) -> bool:
    return target in _SESSION_TRANSITIONS.get(current, frozenset())


def validate_health_transition(current: HealthState, target: HealthState) -> bool:
    return target in _HEALTH_TRANSITIONS.get(current, frozenset())


def require_session_transition(current: SessionState, target: SessionState) -> None:
    """허용되지 않은 전이면 InvalidStateTransition"""
    if not validate_session_transition(current, target):
        raise InvalidStateTransition(current.value, target.value)
