"""robustness-admin CLI 테스트"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import patch

import pytest

from robustness.events.bus import EventBus
from robustness.main import build_parser, main
from robustness.models.config import EventBusConfig
from robustness.models.session import SessionState
from robustness.session.manager import SessionManager
from robustness.storage import create_storage


async def _seed_sessions(store: Path) -> tuple[str, str]:
    storage = await create_storage("file", location=str(store))
    manager = SessionManager(storage)
    expired = await manager.create_session()
    await manager.update_session_state(expired.id, SessionState.EXPIRED)
    active = await manager.create_session()
    await storage.close()
    return expired.id, active.id


async def _seed_events(events_dir: Path) -> None:
    bus = EventBus(EventBusConfig(log_directory=str(events_dir)))
    await bus.publish("agent:started", {"agent_id": "a"})
    await bus.publish("task:completed", {"task_id": "t1"})
    await bus.stop()


def _run(tmp_path: Path, *args: str) -> int:
    argv = ["--storage-dir", str(tmp_path / "store"), "--event-dir", str(tmp_path / "events"), *args]
    with patch("robustness.main.setup_logging"):
        return main(argv)


class TestParser:
    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_events_topics_repeatable(self) -> None:
        args = build_parser().parse_args(["events", "--topic", "a", "--topic", "b"])
        assert args.topic == ["a", "b"]


class TestCommands:
    def test_stats(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        asyncio.run(_seed_sessions(tmp_path / "store"))

        assert _run(tmp_path, "stats") == 0

        data = json.loads(capsys.readouterr().out)
        assert data["sessions"]["total"] == 2
        assert data["sessions"]["by_state"]["expired"] == 1

    def test_cleanup(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        asyncio.run(_seed_sessions(tmp_path / "store"))

        assert _run(tmp_path, "cleanup") == 0

        assert "삭제 1개" in capsys.readouterr().out
        assert len(list((tmp_path / "store").glob("*.json"))) == 1

    def test_events(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        asyncio.run(_seed_events(tmp_path / "events"))

        assert _run(tmp_path, "events", "--topic", "task:completed") == 0

        lines = capsys.readouterr().out.strip().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])["payload"] == {"task_id": "t1"}

    def test_clear_events(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        asyncio.run(_seed_events(tmp_path / "events"))

        assert _run(tmp_path, "clear-events") == 0

        assert "2개 이벤트 삭제" in capsys.readouterr().out
        assert list((tmp_path / "events").glob("*.jsonl")) == []

    def test_clear_events_for_one_session(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str],
    ) -> None:
        async def seed() -> None:
            bus = EventBus(EventBusConfig(log_directory=str(tmp_path / "events")))
            await bus.publish("session:created", {}, session_id="s1")
            await bus.publish("session:created", {}, session_id="s2")
            await bus.stop()

        asyncio.run(seed())

        assert _run(tmp_path, "clear-events", "--session", "s1") == 0

        assert "1개 이벤트 삭제" in capsys.readouterr().out
        lines = (tmp_path / "events" / "session%3Acreated.jsonl").read_text().splitlines()
        assert [json.loads(line)["session_id"] for line in lines] == ["s2"]

    def test_migrate(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        asyncio.run(_seed_sessions(tmp_path / "store"))

        assert _run(tmp_path, "migrate", str(tmp_path / "store"), str(tmp_path / "backup")) == 0

        assert "2개 키 복사 완료" in capsys.readouterr().out
        assert len(list((tmp_path / "backup").glob("*.json"))) == 2
