from robustness.group.manager import GroupConversationManager
from robustness.group.selection import (
    LLMSelector,
    PrioritySelector,
    RoundRobinSelector,
    SelectionState,
    SpeakerSelector,
)

__all__ = [
    "GroupConversationManager",
    "SpeakerSelector",
    "SelectionState",
    "RoundRobinSelector",
    "PrioritySelector",
    "LLMSelector",
]
