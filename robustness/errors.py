"""안정성 레이어 예외 계층

모든 공개 연산은 성공 결과를 반환하거나 아래 타입 예외를 발생시킨다.
"""

from __future__ import annotations

from typing import Optional


class RobustnessError(Exception):
    """안정성 레이어 예외 기본 클래스"""


class VersionConflict(RobustnessError):
    """낙관적 잠금 실패: 호출자가 다시 로드 후 재시도해야 한다"""

    def __init__(self, session_id: str, expected: int, actual: int) -> None:
        self.session_id = session_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"버전 충돌: session={session_id} 기대={expected} 저장소={actual}"
        )


class SessionNotFound(RobustnessError, KeyError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"세션 없음: {session_id}")

    def __str__(self) -> str:
        return self.args[0]


class SessionExpired(RobustnessError):
    """ACTIVE가 아닌 세션에 대한 변경 시도"""

    def __init__(self, session_id: str, state: str) -> None:
        self.session_id = session_id
        self.state = state
        super().__init__(f"활성 세션이 아님: {session_id} ({state})")


class InvalidStateTransition(RobustnessError):
    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"잘못된 상태 전이: {current} → {target}")


class AgentNotRegistered(RobustnessError, KeyError):
    def __init__(self, agent_id: str) -> None:
        self.agent_id = agent_id
        super().__init__(f"등록되지 않은 에이전트: {agent_id}")

    def __str__(self) -> str:
        return self.args[0]


class RecoveryFailed(RobustnessError):
    """복구 전략은 실행되었으나 에이전트가 여전히 비정상"""

    def __init__(self, agent_id: str, strategy: str, reason: str) -> None:
        self.agent_id = agent_id
        self.strategy = strategy
        self.reason = reason
        super().__init__(f"복구 실패: {agent_id} ({strategy}): {reason}")


class SubscriptionNotFound(RobustnessError, KeyError):
    def __init__(self, subscriber_id: str, topic_pattern: Optional[str] = None) -> None:
        self.subscriber_id = subscriber_id
        self.topic_pattern = topic_pattern
        target = f"{subscriber_id}@{topic_pattern}" if topic_pattern else subscriber_id
        super().__init__(f"구독 없음: {target}")

    def __str__(self) -> str:
        return self.args[0]


class StorageIOError(RobustnessError):
    """저장소 읽기/쓰기 실패 (원인 예외는 __cause__ 로 연결)"""

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        self.key = key
        super().__init__(message)


class ConversationNotFound(RobustnessError, KeyError):
    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"대화 없음: {conversation_id}")

    def __str__(self) -> str:
        return self.args[0]


class EventBusStopped(RobustnessError):
    """stop() 이후 publish 시도"""


__all__ = [
    "RobustnessError",
    "VersionConflict",
    "SessionNotFound",
    "SessionExpired",
    "InvalidStateTransition",
    "AgentNotRegistered",
    "RecoveryFailed",
    "SubscriptionNotFound",
    "StorageIOError",
    "ConversationNotFound",
    "EventBusStopped",
]
