"""발화자 선택 전략

모든 전략은 pick_speaker(state) -> agent_id 를 구현한다.
전략 객체는 대화별 잠금 안에서만 호출되므로 커서 갱신이 안전하다.
"""

from __future__ import annotations

import inspect
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from robustness.models.group import GroupConversation

logger = logging.getLogger("robustness.group.selection")

# decide(conversation_state, agent_descriptions) -> agent_id
Decider = Callable[[dict[str, Any], dict[str, str]], Union[Optional[str], Awaitable[Optional[str]]]]


@dataclass(frozen=True, slots=True)
class SelectionState:
    """선택 시점의 대화 상태"""

    conversation: GroupConversation
    agents: dict[str, Any]
    message: str


class SpeakerSelector(ABC):
    @abstractmethod
    async def pick_speaker(self, state: SelectionState) -> str:
        """다음 발화자 id"""


class RoundRobinSelector(SpeakerSelector):
    """고정 순서 순환. 위치는 대화 객체의 rr_cursor에 유지된다"""

    async def pick_speaker(self, state: SelectionState) -> str:
        conv = state.conversation
        speaker = conv.agent_ids[conv.rr_cursor % len(conv.agent_ids)]
        conv.rr_cursor = (conv.rr_cursor + 1) % len(conv.agent_ids)
        return speaker


class PrioritySelector(SpeakerSelector):
    """가중치 기반 선택

    최고 가중치와 tie_tolerance(비율) 이내인 에이전트가 후보가 된다.
    후보가 하나면 그 에이전트, 여럿이면 가중치 비례 무작위.
    가중치가 없는 에이전트는 1.0으로 본다.
    """

    def __init__(self, tie_tolerance: float = 0.1,
                 rng: Optional[random.Random] = None) -> None:
        self._tolerance = tie_tolerance
        self._rng = rng or random.Random()

    def candidates(self, conv: GroupConversation) -> dict[str, float]:
        weights = {aid: float(conv.agent_priorities.get(aid, 1.0)) for aid in conv.agent_ids}
        top = max(weights.values())
        if top <= 0:
            return {aid: 1.0 for aid in conv.agent_ids}
        floor = top * (1.0 - self._tolerance)
        return {aid: w for aid, w in weights.items() if w >= floor}

    async def pick_speaker(self, state: SelectionState) -> str:
        pool = self.candidates(state.conversation)
        if len(pool) == 1:
            return next(iter(pool))
        ids = list(pool)
        return self._rng.choices(ids, weights=[pool[a] for a in ids], k=1)[0]


class LLMSelector(SpeakerSelector):
    """외부 decider에 위임. 없거나 실패하면 라운드로빈으로 대체"""

    def __init__(self, decider: Optional[Decider] = None,
                 fallback: Optional[SpeakerSelector] = None,
                 history_window: int = 5) -> None:
        self._decider = decider
        self._fallback = fallback or RoundRobinSelector()
        self._window = history_window
        self.fallback_count = 0

    @property
    def decider(self) -> Optional[Decider]:
        return self._decider

    @decider.setter
    def decider(self, decider: Optional[Decider]) -> None:
        self._decider = decider

    def _describe(self, state: SelectionState) -> tuple[dict[str, Any], dict[str, str]]:
        conv = state.conversation
        conversation_state = {
            "conversation_id": conv.id,
            "message": state.message,
            "last_speaker_id": conv.last_speaker_id,
            "recent_history": [m.to_dict() for m in conv.history[-self._window:]],
            "shared_context": dict(conv.shared_context),
        }
        descriptions = {
            aid: str(getattr(agent, "description", "") or getattr(agent, "name", aid))
            for aid, agent in state.agents.items()
        }
        return conversation_state, descriptions

    async def pick_speaker(self, state: SelectionState) -> str:
        if self._decider is not None:
            try:
                choice = self._decider(*self._describe(state))
                if inspect.isawaitable(choice):
                    choice = await choice
            except Exception as e:
                logger.warning("LLM 발화자 선택 실패 → 라운드로빈: %s", e)
                choice = None
            if choice in state.conversation.agent_ids:
                return choice
            if choice is not None:
                logger.warning("LLM이 참여자가 아닌 발화자 선택: %s → 라운드로빈", choice)
        self.fallback_count += 1
        return await self._fallback.pick_speaker(state)
