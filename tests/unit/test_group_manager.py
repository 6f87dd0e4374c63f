"""GroupConversationManager 단위 테스트"""

from __future__ import annotations

import asyncio
import random
from collections import Counter
from typing import Any

import pytest

from conftest import EchoAgent
from robustness.errors import AgentNotRegistered, ConversationNotFound
from robustness.events.bus import EventBus
from robustness.group.manager import GroupConversationManager
from robustness.health.monitor import AgentHealthMonitor
from robustness.models.config import EventBusConfig
from robustness.models.events import Event
from robustness.models.group import SpeakerSelection, TaskStatus


class SlowAgent:
    def __init__(self, name: str) -> None:
        self.name = name

    async def respond(self, message: str, context: dict[str, Any]) -> str:
        await asyncio.sleep(0.01)
        return f"{self.name} done"


class BrokenAgent:
    """처음 failures번 호출은 실패하고 이후에는 응답한다"""

    def __init__(self, name: str, failures: int = 1_000_000) -> None:
        self.name = name
        self.failures = failures

    def respond(self, message: str, context: dict[str, Any]) -> str:
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("LLM 호출 실패")
        return f"[{self.name}] {message}"


async def _speakers(manager: GroupConversationManager, conv_id: str, turns: int) -> list[str]:
    return [(await manager.handle_message(conv_id, f"msg {i}")).agent_id for i in range(turns)]


class TestRoundRobin:
    @pytest.mark.asyncio
    async def test_cycles_in_fixed_order(self, agents_abc) -> None:
        manager = GroupConversationManager()
        conv = manager.create_group(agents_abc)

        assert await _speakers(manager, conv.id, 4) == ["A", "B", "C", "A"]

    @pytest.mark.asyncio
    async def test_history_and_last_speaker(self, agents_abc) -> None:
        manager = GroupConversationManager()
        conv = manager.create_group(agents_abc)

        reply = await manager.handle_message(conv.id, "안녕하세요")

        assert reply.content == "A: 안녕하세요"
        assert [m.role for m in conv.history] == ["user", "agent"]
        assert conv.last_speaker_id == "A"
        assert conv.message_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_turns_are_serialized(self) -> None:
        manager = GroupConversationManager()
        conv = manager.create_group([SlowAgent("A"), SlowAgent("B"), SlowAgent("C")])

        replies = await asyncio.gather(
            *(manager.handle_message(conv.id, f"m{i}") for i in range(3))
        )

        assert sorted(r.agent_id for r in replies) == ["A", "B", "C"]
        assert len(conv.history) == 6


class TestPriority:
    @pytest.mark.asyncio
    async def test_highest_weight_always_first(self, agents_abc) -> None:
        manager = GroupConversationManager(rng=random.Random(7))
        conv = manager.create_group(
            agents_abc[:2],
            speaker_selection=SpeakerSelection.PRIORITY,
            agent_priorities={"A": 2.0, "B": 1.0},
        )

        reply = await manager.handle_message(conv.id, "첫 메시지")
        assert reply.agent_id == "A"

    @pytest.mark.asyncio
    async def test_higher_weight_wins_more_often(self, agents_abc) -> None:
        manager = GroupConversationManager(rng=random.Random(7))
        conv = manager.create_group(
            agents_abc[:2],
            speaker_selection=SpeakerSelection.PRIORITY,
            agent_priorities={"A": 2.0, "B": 1.0},
        )

        counts = Counter(await _speakers(manager, conv.id, 1000))
        assert counts["A"] > counts["B"]

    @pytest.mark.asyncio
    async def test_equal_weights_are_weighted_random(self, agents_abc) -> None:
        manager = GroupConversationManager(rng=random.Random(11))
        conv = manager.create_group(
            agents_abc[:2],
            speaker_selection=SpeakerSelection.PRIORITY,
            agent_priorities={"A": 1.0, "B": 0.95},
        )

        counts = Counter(await _speakers(manager, conv.id, 1000))

        assert counts["A"] > 350
        assert counts["B"] > 350

    @pytest.mark.asyncio
    async def test_set_agent_priority(self, agents_abc) -> None:
        manager = GroupConversationManager()
        conv = manager.create_group(agents_abc, speaker_selection=SpeakerSelection.PRIORITY)
        manager.set_agent_priority(conv.id, "C", 5.0)

        assert (await manager.handle_message(conv.id, "x")).agent_id == "C"
        with pytest.raises(AgentNotRegistered):
            manager.set_agent_priority(conv.id, "Z", 1.0)


class TestLLMBased:
    @pytest.mark.asyncio
    async def test_decider_choice_is_used(self, agents_abc) -> None:
        seen: dict[str, Any] = {}

        def decide(state: dict[str, Any], descriptions: dict[str, str]) -> str:
            seen.update(state=state, descriptions=descriptions)
            return "C"

        manager = GroupConversationManager(decider=decide)
        conv = manager.create_group(agents_abc, speaker_selection=SpeakerSelection.LLM_BASED)

        reply = await manager.handle_message(conv.id, "누가 답할래?")

        assert reply.agent_id == "C"
        assert seen["state"]["message"] == "누가 답할래?"
        assert set(seen["descriptions"]) == {"A", "B", "C"}

    @pytest.mark.asyncio
    async def test_async_decider(self, agents_abc) -> None:
        async def decide(state: dict[str, Any], descriptions: dict[str, str]) -> str:
            return "B"

        manager = GroupConversationManager(decider=decide)
        conv = manager.create_group(agents_abc, speaker_selection=SpeakerSelection.LLM_BASED)

        assert (await manager.handle_message(conv.id, "x")).agent_id == "B"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("outcome", ["raise", "none", "stranger"])
    async def test_falls_back_to_round_robin(self, agents_abc, outcome: str) -> None:
        def decide(state: dict[str, Any], descriptions: dict[str, str]) -> Any:
            if outcome == "raise":
                raise TimeoutError("LLM 응답 없음")
            return None if outcome == "none" else "Z"

        manager = GroupConversationManager(decider=decide)
        conv = manager.create_group(agents_abc, speaker_selection=SpeakerSelection.LLM_BASED)

        assert await _speakers(manager, conv.id, 3) == ["A", "B", "C"]
        assert manager.get_stats()["llm_fallbacks"] == 3

    @pytest.mark.asyncio
    async def test_no_decider(self, agents_abc) -> None:
        manager = GroupConversationManager()
        conv = manager.create_group(agents_abc, speaker_selection=SpeakerSelection.LLM_BASED)

        assert await _speakers(manager, conv.id, 2) == ["A", "B"]


class TestConversationState:
    @pytest.mark.asyncio
    async def test_strategy_switch_keeps_history(self, agents_abc) -> None:
        manager = GroupConversationManager()
        conv = manager.create_group(agents_abc)
        await manager.handle_message(conv.id, "1")

        manager.set_selection_strategy(conv.id, SpeakerSelection.PRIORITY)

        assert len(conv.history) == 2
        assert conv.last_speaker_id == "A"
        assert conv.speaker_selection == SpeakerSelection.PRIORITY

    @pytest.mark.asyncio
    async def test_shared_context_visible_to_next_speaker(self, agents_abc) -> None:
        manager = GroupConversationManager()
        conv = manager.create_group(agents_abc, initial_context={"lang": "ko"})

        manager.update_shared_context(conv.id, {"topic": "여행"})
        await manager.handle_message(conv.id, "어디 갈까?")

        _, context = agents_abc[0].calls[0]
        assert context["shared_context"] == {"lang": "ko", "topic": "여행"}
        assert context["participants"] == ["A", "B", "C"]

    @pytest.mark.asyncio
    async def test_failed_response_leaves_history_untouched(self) -> None:
        manager = GroupConversationManager()
        conv = manager.create_group([BrokenAgent("A"), EchoAgent("B")])

        with pytest.raises(RuntimeError):
            await manager.handle_message(conv.id, "x")

        assert conv.history == []
        assert conv.last_speaker_id is None

    @pytest.mark.asyncio
    async def test_failed_response_keeps_round_robin_turn(self) -> None:
        manager = GroupConversationManager()
        conv = manager.create_group([BrokenAgent("A", failures=1), EchoAgent("B"), EchoAgent("C")])

        with pytest.raises(RuntimeError):
            await manager.handle_message(conv.id, "x")

        assert conv.rr_cursor == 0
        assert await _speakers(manager, conv.id, 3) == ["A", "B", "C"]

    @pytest.mark.asyncio
    async def test_end_conversation(self, agents_abc) -> None:
        manager = GroupConversationManager()
        conv = manager.create_group(agents_abc)

        assert await manager.end_conversation(conv.id) is True
        assert await manager.end_conversation(conv.id) is False
        with pytest.raises(ConversationNotFound):
            await manager.handle_message(conv.id, "x")
        assert manager.get_stats()["ended_conversations"] == 1


class TestMembership:
    def test_group_size_limits(self) -> None:
        manager = GroupConversationManager()
        with pytest.raises(ValueError):
            manager.create_group([EchoAgent("A")])
        with pytest.raises(ValueError):
            manager.create_group([EchoAgent(f"a{i}") for i in range(11)])

    def test_duplicate_agents_rejected(self) -> None:
        manager = GroupConversationManager()
        with pytest.raises(ValueError):
            manager.create_group([EchoAgent("A"), EchoAgent("A")])

    @pytest.mark.asyncio
    async def test_add_and_remove(self, agents_abc) -> None:
        manager = GroupConversationManager()
        conv = manager.create_group(agents_abc[:2])
        manager.add_agent(conv.id, agents_abc[2])
        assert conv.agent_ids == ["A", "B", "C"]

        await manager.handle_message(conv.id, "1")  # A
        manager.remove_agent(conv.id, "A")

        assert await _speakers(manager, conv.id, 3) == ["B", "C", "B"]
        with pytest.raises(ValueError):
            manager.remove_agent(conv.id, "B")


class TestIntegrationPoints:
    @pytest.mark.asyncio
    async def test_tasks_publish_completion(self, agents_abc) -> None:
        bus = EventBus(EventBusConfig(log_directory=None))
        completed: list[Event] = []
        bus.subscribe("task:completed", "planner", completed.append)
        manager = GroupConversationManager(event_bus=bus)
        conv = manager.create_group(agents_abc)

        task = manager.add_task(conv.id, "일정 정리", assignee="B")
        await manager.complete_task(conv.id, task.id, result="완료")
        failing = manager.add_task(conv.id, "예약")
        await manager.fail_task(conv.id, failing.id, "좌석 없음")
        await bus.drain(timeout=1)

        assert task.status == TaskStatus.COMPLETED
        assert conv.has_failed_tasks
        assert completed[0].payload["task_id"] == task.id
        assert completed[0].conversation_id == conv.id
        await bus.stop()

    @pytest.mark.asyncio
    async def test_response_records_health_activity(self, agents_abc) -> None:
        monitor = AgentHealthMonitor()
        for agent in agents_abc:
            monitor.register_agent(agent)
        manager = GroupConversationManager(health_monitor=monitor)
        conv = manager.create_group(agents_abc)

        await manager.handle_message(conv.id, "x")

        assert monitor.get_agent_health("A").last_activity == "response"
        assert monitor.get_agent_health("B").last_activity is None
