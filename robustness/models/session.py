"""세션 데이터 모델

Session은 저장소에 JSON 문서 하나로 저장된다.
version은 저장 성공 시마다 정확히 1씩 증가한다.
"""

from __future__ import annotations

import copy
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from robustness.models.messages import Message


class SessionState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CLOSED = "closed"


@dataclass
class Session:
    """대화 세션"""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: SessionState = SessionState.ACTIVE
    version: int = 0
    agent_ids: list[str] = field(default_factory=list)
    agent_states: dict[str, Any] = field(default_factory=dict)
    conversation_history: list[Message] = field(default_factory=list)
    shared_context: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    expiration_s: float = 3600.0
    created_at: float = field(default_factory=time.time)
    updated_at: float = 0.0
    expires_at: float = 0.0
    expired_at: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.updated_at:
            self.updated_at = self.created_at
        if not self.expires_at:
            self.expires_at = self.created_at + self.expiration_s

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE

    @property
    def expiration_moment(self) -> float:
        """정리 기준 시각: 명시적 만료 시각이 있으면 그것, 없으면 TTL 만료 시각"""
        return self.expired_at if self.expired_at is not None else self.expires_at

    def is_overdue(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "version": self.version,
            "agent_ids": list(self.agent_ids),
            "agent_states": copy.deepcopy(self.agent_states),
            "conversation_history": [m.to_dict() for m in self.conversation_history],
            "shared_context": copy.deepcopy(self.shared_context),
            "metadata": copy.deepcopy(self.metadata),
            "expiration_s": self.expiration_s,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "expires_at": self.expires_at,
            "expired_at": self.expired_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Session:
        return cls(
            id=d["id"],
            state=SessionState(d.get("state", SessionState.ACTIVE.value)),
            version=int(d.get("version", 0)),
            agent_ids=list(d.get("agent_ids", [])),
            agent_states=d.get("agent_states", {}),
            conversation_history=[
                Message.from_dict(m) for m in d.get("conversation_history", [])
            ],
            shared_context=d.get("shared_context", {}),
            metadata=d.get("metadata", {}),
            expiration_s=float(d.get("expiration_s", 3600.0)),
            created_at=float(d["created_at"]),
            updated_at=float(d.get("updated_at", 0.0)),
            expires_at=float(d.get("expires_at", 0.0)),
            expired_at=d.get("expired_at"),
        )
