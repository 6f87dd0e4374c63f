"""에이전트 계약 패키지

  Agent       - 최소 계약 (name, respond)
  BaseAgent   - 라이프사이클을 갖는 기본 구현
"""

from robustness.agents.base import (
    Agent,
    AgentLifecycle,
    BaseAgent,
    agent_id_of,
    call_respond,
)

__all__ = [
    "Agent",
    "AgentLifecycle",
    "BaseAgent",
    "agent_id_of",
    "call_respond",
]
