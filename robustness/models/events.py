"""이벤트 버스 이벤트 모델

영속화된 이벤트는 불변이며, 같은 토픽 안에서 sequence 순서를 따른다.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Topic:
    """라이프사이클 알림 토픽 상수"""

    AGENT_STARTED = "agent:started"
    AGENT_STOPPED = "agent:stopped"
    AGENT_HEALTH_CHANGED = "agent:health_changed"
    AGENT_RECOVERED = "agent:recovered"
    AGENT_ALERT = "agent:alert"
    TASK_COMPLETED = "task:completed"
    TASK_FAILED = "task:failed"
    SESSION_CREATED = "session:created"
    SESSION_STATE_CHANGED = "session:state_changed"
    SESSION_DELETED = "session:deleted"
    CONVERSATION_TURN = "conversation:turn"
    CONVERSATION_ENDED = "conversation:ended"


class EventPriority(str, Enum):
    NORMAL = "normal"
    CRITICAL = "critical"


class ReplayPolicy(str, Enum):
    """구독자별 재전송 정책"""
    NONE = "none"
    CRITICAL_ONLY = "critical_only"
    FULL = "full"


@dataclass(frozen=True, slots=True)
class Event:
    """이벤트 버스 메시지"""

    topic: str
    payload: Any
    priority: EventPriority = EventPriority.NORMAL
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    sequence: int = 0
    session_id: Optional[str] = None
    conversation_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "topic": self.topic,
            "payload": self.payload,
            "priority": self.priority.value,
            "timestamp": self.timestamp,
            "sequence": self.sequence,
        }
        if self.session_id is not None:
            d["session_id"] = self.session_id
        if self.conversation_id is not None:
            d["conversation_id"] = self.conversation_id
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Event:
        return cls(
            topic=d["topic"],
            payload=d.get("payload"),
            priority=EventPriority(d.get("priority", EventPriority.NORMAL.value)),
            timestamp=float(d["timestamp"]),
            id=d["id"],
            sequence=int(d.get("sequence", 0)),
            session_id=d.get("session_id"),
            conversation_id=d.get("conversation_id"),
        )


def topic_matches(topic: str, pattern: str) -> bool:
    """정확히 일치하거나, '*'로 끝나는 패턴의 접두사와 일치하면 True

    agent:* → agent:started, agent:stopped
    """
    if topic == pattern:
        return True
    if pattern.endswith("*"):
        return topic.startswith(pattern[:-1])
    return False
