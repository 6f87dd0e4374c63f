"""그룹 대화 모델"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from robustness.models.messages import Message


class SpeakerSelection(str, Enum):
    ROUND_ROBIN = "round_robin"
    LLM_BASED = "llm_based"
    PRIORITY = "priority"


class TaskStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class WorkflowTask:
    id: str
    description: str
    assignee: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    result: Any = None


@dataclass
class GroupConversation:
    """다중 에이전트 대화

    last_speaker_id는 항상 agent_ids의 원소이거나 첫 턴 이전에는 None이다.
    """

    agent_ids: list[str]
    speaker_selection: SpeakerSelection = SpeakerSelection.ROUND_ROBIN
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    last_speaker_id: Optional[str] = None
    shared_context: dict[str, Any] = field(default_factory=dict)
    agent_priorities: dict[str, float] = field(default_factory=dict)
    history: list[Message] = field(default_factory=list)
    tasks: dict[str, WorkflowTask] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    message_count: int = 0
    ended: bool = False

    # 라운드로빈 커서 (전략이 바뀌어도 유지)
    rr_cursor: int = 0

    def touch(self) -> None:
        self.updated_at = time.time()

    @property
    def has_failed_tasks(self) -> bool:
        return any(t.status == TaskStatus.FAILED for t in self.tasks.values())
