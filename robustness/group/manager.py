"""그룹 대화 관리자

여러 에이전트가 하나의 대화를 공유할 때 턴을 조정한다.
- 대화별 asyncio.Lock으로 턴을 직렬화 (같은 대화의 동시 턴 금지)
- 응답 성공 후에만 사용자 메시지와 응답을 이력에 추가
- 응답한 에이전트는 헬스 모니터에 활동으로 기록
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import Counter
from typing import TYPE_CHECKING, Any, Optional

from robustness.agents.base import agent_id_of, call_respond
from robustness.errors import (
    AgentNotRegistered,
    ConversationNotFound,
    EventBusStopped,
    StorageIOError,
)
from robustness.group.selection import (
    Decider,
    LLMSelector,
    PrioritySelector,
    RoundRobinSelector,
    SelectionState,
    SpeakerSelector,
)
from robustness.models.config import GroupConfig
from robustness.models.events import Topic
from robustness.models.group import (
    GroupConversation,
    SpeakerSelection,
    TaskStatus,
    WorkflowTask,
)
from robustness.models.messages import Message

if TYPE_CHECKING:
    from robustness.events.bus import EventBus
    from robustness.health.monitor import AgentHealthMonitor

logger = logging.getLogger("robustness.group")


class GroupConversationManager:
    """다중 에이전트 턴 조정"""

    def __init__(
        self,
        config: Optional[GroupConfig] = None,
        decider: Optional[Decider] = None,
        health_monitor: Optional[AgentHealthMonitor] = None,
        event_bus: Optional[EventBus] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._config = config or GroupConfig()
        self._health = health_monitor
        self._event_bus = event_bus
        round_robin = RoundRobinSelector()
        self._llm_selector = LLMSelector(
            decider, fallback=round_robin, history_window=self._config.history_window,
        )
        self._selectors: dict[SpeakerSelection, SpeakerSelector] = {
            SpeakerSelection.ROUND_ROBIN: round_robin,
            SpeakerSelection.PRIORITY: PrioritySelector(self._config.priority_tie_tolerance, rng),
            SpeakerSelection.LLM_BASED: self._llm_selector,
        }
        self._conversations: dict[str, GroupConversation] = {}
        self._agents: dict[str, dict[str, Any]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._ended = 0
        self._turns = 0

    def set_decider(self, decider: Optional[Decider]) -> None:
        self._llm_selector.decider = decider

    def _get(self, conversation_id: str) -> GroupConversation:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            raise ConversationNotFound(conversation_id)
        return conv

    def get_conversation(self, conversation_id: str) -> GroupConversation:
        return self._get(conversation_id)

    def _check_size(self, count: int) -> None:
        if not self._config.min_agents <= count <= self._config.max_agents:
            raise ValueError(
                f"그룹 인원은 {self._config.min_agents}~{self._config.max_agents}명이어야 합니다 "
                f"(요청 {count}명)"
            )

    def create_group(
        self,
        agents: list[Any],
        speaker_selection: SpeakerSelection = SpeakerSelection.ROUND_ROBIN,
        initial_context: Optional[dict[str, Any]] = None,
        agent_priorities: Optional[dict[str, float]] = None,
    ) -> GroupConversation:
        self._check_size(len(agents))
        by_id: dict[str, Any] = {}
        for agent in agents:
            aid = agent_id_of(agent)
            if aid in by_id:
                raise ValueError(f"중복된 에이전트: {aid}")
            by_id[aid] = agent

        conv = GroupConversation(
            agent_ids=list(by_id),
            speaker_selection=SpeakerSelection(speaker_selection),
            shared_context=dict(initial_context or {}),
            agent_priorities={k: float(v) for k, v in (agent_priorities or {}).items()},
        )
        self._conversations[conv.id] = conv
        self._agents[conv.id] = by_id
        self._locks[conv.id] = asyncio.Lock()
        logger.info(
            "그룹 대화 생성: %s (%d명, %s)", conv.id, len(by_id), conv.speaker_selection.value,
        )
        return conv

    # ── 턴 ──

    def _build_context(self, conv: GroupConversation, speaker: str) -> dict[str, Any]:
        return {
            "conversation_id": conv.id,
            "speaker_id": speaker,
            "participants": list(conv.agent_ids),
            "shared_context": dict(conv.shared_context),
            "recent_history": [m.to_dict() for m in conv.history[-self._config.history_window:]],
        }

    async def _select(self, conv: GroupConversation, message: str) -> str:
        selector = self._selectors[conv.speaker_selection]
        state = SelectionState(conv, self._agents[conv.id], message)
        start = time.monotonic()
        speaker = await selector.pick_speaker(state)
        elapsed_ms = (time.monotonic() - start) * 1000
        if elapsed_ms > self._config.selection_warn_ms:
            logger.warning("발화자 선택 지연: %.0fms (%s)", elapsed_ms, conv.speaker_selection.value)
        return speaker

    async def handle_message(self, conversation_id: str, message: str) -> Message:
        """발화자 선택 → 응답 생성 → 이력 추가. 에이전트 응답 메시지 반환"""
        conv = self._get(conversation_id)
        async with self._locks[conversation_id]:
            if conv.ended:
                raise ConversationNotFound(conversation_id)
            cursor = conv.rr_cursor
            speaker = await self._select(conv, message)
            agent = self._agents[conversation_id][speaker]
            try:
                content = await call_respond(agent, message, self._build_context(conv, speaker))
            except Exception:
                # 실패한 턴은 순번을 소비하지 않는다
                conv.rr_cursor = cursor
                raise

            user_msg = Message.user(message)
            reply = Message(role="agent", content=content, agent_id=speaker)
            conv.history.extend((user_msg, reply))
            conv.last_speaker_id = speaker
            conv.message_count += 2
            conv.touch()
            self._turns += 1

        self._record_activity(speaker)
        await self._publish(Topic.CONVERSATION_TURN, conversation_id, {
            "conversation_id": conversation_id,
            "speaker_id": speaker,
            "strategy": conv.speaker_selection.value,
        })
        logger.debug("턴 완료: %s → %s", conversation_id, speaker)
        return reply

    def _record_activity(self, agent_id: str) -> None:
        if self._health is None:
            return
        try:
            self._health.record_activity(agent_id, "response")
        except AgentNotRegistered:
            pass

    async def _publish(self, topic: str, conversation_id: str, payload: dict[str, Any]) -> None:
        if self._event_bus is None:
            return
        try:
            await self._event_bus.publish(topic, payload, conversation_id=conversation_id)
        except (EventBusStopped, StorageIOError) as e:
            logger.warning("그룹 이벤트 발행 실패 [%s]: %s", topic, e)

    # ── 설정 변경 ──

    def set_selection_strategy(self, conversation_id: str, strategy: SpeakerSelection) -> None:
        """다음 턴부터 적용. 이력과 last_speaker_id는 유지"""
        conv = self._get(conversation_id)
        conv.speaker_selection = SpeakerSelection(strategy)
        conv.touch()
        logger.info("발화자 선택 전략 변경: %s → %s", conversation_id, conv.speaker_selection.value)

    def set_agent_priority(self, conversation_id: str, agent_id: str, weight: float) -> None:
        conv = self._get(conversation_id)
        if agent_id not in conv.agent_ids:
            raise AgentNotRegistered(agent_id)
        if weight < 0:
            raise ValueError("가중치는 0 이상이어야 합니다")
        conv.agent_priorities[agent_id] = float(weight)
        conv.touch()

    def update_shared_context(self, conversation_id: str, partial: dict[str, Any]) -> dict[str, Any]:
        conv = self._get(conversation_id)
        conv.shared_context.update(partial)
        conv.touch()
        return dict(conv.shared_context)

    def add_agent(self, conversation_id: str, agent: Any,
                  priority: Optional[float] = None) -> None:
        conv = self._get(conversation_id)
        aid = agent_id_of(agent)
        if aid in conv.agent_ids:
            raise ValueError(f"이미 참여 중인 에이전트: {aid}")
        self._check_size(len(conv.agent_ids) + 1)
        conv.agent_ids.append(aid)
        self._agents[conversation_id][aid] = agent
        if priority is not None:
            conv.agent_priorities[aid] = float(priority)
        conv.touch()
        logger.info("그룹 참여: %s ← %s", conversation_id, aid)

    def remove_agent(self, conversation_id: str, agent_id: str) -> None:
        conv = self._get(conversation_id)
        if agent_id not in conv.agent_ids:
            raise AgentNotRegistered(agent_id)
        self._check_size(len(conv.agent_ids) - 1)
        index = conv.agent_ids.index(agent_id)
        conv.agent_ids.remove(agent_id)
        # 순환 위치 보정
        if index < conv.rr_cursor:
            conv.rr_cursor -= 1
        conv.rr_cursor %= len(conv.agent_ids)
        del self._agents[conversation_id][agent_id]
        conv.agent_priorities.pop(agent_id, None)
        if conv.last_speaker_id == agent_id:
            conv.last_speaker_id = None
        conv.touch()
        logger.info("그룹 이탈: %s → %s", conversation_id, agent_id)

    # ── 워크플로 작업 ──

    def add_task(self, conversation_id: str, description: str,
                 assignee: Optional[str] = None, task_id: Optional[str] = None) -> WorkflowTask:
        conv = self._get(conversation_id)
        if assignee is not None and assignee not in conv.agent_ids:
            raise AgentNotRegistered(assignee)
        task = WorkflowTask(
            id=task_id or f"task-{len(conv.tasks) + 1}",
            description=description,
            assignee=assignee,
        )
        if task.id in conv.tasks:
            raise ValueError(f"중복된 작업 id: {task.id}")
        conv.tasks[task.id] = task
        conv.touch()
        return task

    def _task(self, conv: GroupConversation, task_id: str) -> WorkflowTask:
        task = conv.tasks.get(task_id)
        if task is None:
            raise KeyError(f"작업 없음: {task_id}")
        return task

    async def complete_task(self, conversation_id: str, task_id: str,
                            result: Any = None) -> WorkflowTask:
        conv = self._get(conversation_id)
        task = self._task(conv, task_id)
        task.status = TaskStatus.COMPLETED
        task.result = result
        conv.touch()
        await self._publish(Topic.TASK_COMPLETED, conversation_id, {
            "conversation_id": conversation_id,
            "task_id": task.id,
            "assignee": task.assignee,
            "result": result,
        })
        return task

    async def fail_task(self, conversation_id: str, task_id: str, error: str) -> WorkflowTask:
        conv = self._get(conversation_id)
        task = self._task(conv, task_id)
        task.status = TaskStatus.FAILED
        task.result = error
        conv.touch()
        await self._publish(Topic.TASK_FAILED, conversation_id, {
            "conversation_id": conversation_id,
            "task_id": task.id,
            "assignee": task.assignee,
            "error": error,
        })
        return task

    # ── 종료/통계 ──

    async def end_conversation(self, conversation_id: str) -> bool:
        """대화 종료 후 자원 해제. 없는 대화면 False"""
        conv = self._conversations.get(conversation_id)
        if conv is None:
            return False
        async with self._locks[conversation_id]:
            conv.ended = True
            del self._conversations[conversation_id]
            del self._agents[conversation_id]
        self._locks.pop(conversation_id, None)
        self._ended += 1
        logger.info("그룹 대화 종료: %s (메시지 %d개)", conversation_id, conv.message_count)
        await self._publish(Topic.CONVERSATION_ENDED, conversation_id, {
            "conversation_id": conversation_id,
            "message_count": conv.message_count,
        })
        return True

    def get_stats(self) -> dict[str, Any]:
        convs = list(self._conversations.values())
        return {
            "active_conversations": len(convs),
            "ended_conversations": self._ended,
            "total_turns": self._turns,
            "total_messages": sum(c.message_count for c in convs),
            "by_strategy": dict(Counter(c.speaker_selection.value for c in convs)),
            "llm_fallbacks": self._llm_selector.fallback_count,
        }
