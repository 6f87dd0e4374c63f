"""대화 메시지 모델 (세션 이력과 그룹 대화가 공유)"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class Message:
    """대화 메시지"""

    role: str                       # user | agent | system
    content: str
    agent_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.agent_id is not None:
            d["agent_id"] = self.agent_id
        if self.metadata:
            d["metadata"] = self.metadata
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Message:
        return cls(
            role=d["role"],
            content=d.get("content", ""),
            agent_id=d.get("agent_id"),
            timestamp=d.get("timestamp", time.time()),
            id=d.get("id") or str(uuid.uuid4()),
            metadata=d.get("metadata", {}),
        )

    @classmethod
    def user(cls, content: str, **metadata: Any) -> Message:
        return cls(role="user", content=content, metadata=metadata)
