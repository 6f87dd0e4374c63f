"""이벤트 로그 (append-only)

- EventLog: 메모리 로그, 프로세스 종료 시 소멸
- FileEventLog: 토픽별 JSONL 파일 (<dir>/<quoted topic>.jsonl)
  열 때 기존 파일을 읽어 순번과 토픽별 마지막 시각을 복원한다.
  기록 중 중단되어 잘린 마지막 줄은 건너뛴다.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import quote, unquote

from robustness.errors import StorageIOError
from robustness.models.events import Event

logger = logging.getLogger("robustness.events.log")

_SUFFIX = ".jsonl"


class EventLog:
    """메모리 이벤트 로그"""

    def __init__(self) -> None:
        self._events: dict[str, list[Event]] = {}

    @property
    def kind(self) -> str:
        return "memory"

    async def open(self) -> None:
        """기존 로그 적재 (메모리 로그는 할 일 없음)"""

    async def append(self, event: Event) -> None:
        self._events.setdefault(event.topic, []).append(event)

    def topics(self) -> list[str]:
        return sorted(t for t, events in self._events.items() if events)

    def count(self) -> int:
        return sum(len(events) for events in self._events.values())

    def last_sequence(self) -> int:
        return max(
            (events[-1].sequence for events in self._events.values() if events),
            default=0,
        )

    def last_timestamp(self, topic: str) -> float:
        events = self._events.get(topic)
        return events[-1].timestamp if events else 0.0

    def read(
        self,
        since: Optional[float] = None,
        until: Optional[float] = None,
        topics: Optional[Iterable[str]] = None,
    ) -> list[Event]:
        """조건에 맞는 이벤트를 (timestamp, sequence) 순으로"""
        wanted = set(topics) if topics is not None else None
        result = []
        for topic, events in self._events.items():
            if wanted is not None and topic not in wanted:
                continue
            for event in events:
                if since is not None and event.timestamp < since:
                    continue
                if until is not None and event.timestamp > until:
                    continue
                result.append(event)
        result.sort(key=lambda e: (e.timestamp, e.sequence))
        return result

    def _truncate(
        self, older_than: Optional[float], session_id: Optional[str] = None,
    ) -> tuple[int, list[str]]:
        def doomed(event: Event) -> bool:
            if older_than is not None and event.timestamp >= older_than:
                return False
            return session_id is None or event.session_id == session_id

        removed = 0
        changed = []
        for topic, events in list(self._events.items()):
            kept = [e for e in events if not doomed(e)]
            if len(kept) != len(events):
                removed += len(events) - len(kept)
                changed.append(topic)
            self._events[topic] = kept
        return removed, changed

    async def clear(
        self, older_than: Optional[float] = None, session_id: Optional[str] = None,
    ) -> int:
        """older_than 이전 이벤트 삭제 (None이면 전체). 삭제 수 반환

        session_id를 주면 해당 세션의 이벤트로 범위를 좁힌다.
        """
        removed, _ = self._truncate(older_than, session_id)
        return removed

    async def close(self) -> None:
        """파일 핸들 없음"""


class FileEventLog(EventLog):
    """토픽별 JSONL 파일 로그"""

    def __init__(self, directory: str | os.PathLike) -> None:
        super().__init__()
        self._dir = Path(directory)

    @property
    def kind(self) -> str:
        return "file"

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, topic: str) -> Path:
        return self._dir / (quote(topic, safe="") + _SUFFIX)

    def _load_all(self) -> dict[str, list[Event]]:
        self._dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self._dir, 0o700)
        loaded: dict[str, list[Event]] = {}
        for path in sorted(self._dir.glob(f"*{_SUFFIX}")):
            topic = unquote(path.name[: -len(_SUFFIX)])
            text = path.read_text(encoding="utf-8")
            if text and not text.endswith("\n"):
                # 잘린 마지막 줄을 닫아 이후 기록이 이어 붙지 않게 한다
                with path.open("a", encoding="utf-8") as f:
                    f.write("\n")
            events = []
            for lineno, line in enumerate(text.splitlines(), 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(Event.from_dict(json.loads(line)))
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning("손상된 이벤트 줄 건너뜀: %s:%d (%s)", path.name, lineno, e)
            events.sort(key=lambda e: e.sequence)
            loaded[topic] = events
        return loaded

    async def open(self) -> None:
        try:
            self._events = await asyncio.to_thread(self._load_all)
        except OSError as e:
            raise StorageIOError(f"이벤트 로그 열기 실패: {self._dir}: {e}") from e
        logger.info("이벤트 로그 적재: %s (%d개)", self._dir, self.count())

    def _write_line(self, path: Path, line: str) -> None:
        fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
        with os.fdopen(fd, "a", encoding="utf-8") as f:
            f.write(line)
            f.flush()
            os.fsync(f.fileno())

    async def append(self, event: Event) -> None:
        line = json.dumps(event.to_dict(), ensure_ascii=False) + "\n"
        try:
            await asyncio.to_thread(self._write_line, self._path(event.topic), line)
        except (OSError, TypeError, ValueError) as e:
            raise StorageIOError(f"이벤트 기록 실패: {event.topic}: {e}", key=event.topic) from e
        await super().append(event)

    def _rewrite(self, topic: str) -> None:
        path = self._path(topic)
        events = self._events.get(topic, [])
        if not events:
            path.unlink(missing_ok=True)
            return
        fd, tmp = tempfile.mkstemp(dir=self._dir, prefix=".tmp-")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            for event in events:
                f.write(json.dumps(event.to_dict(), ensure_ascii=False) + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)

    async def clear(
        self, older_than: Optional[float] = None, session_id: Optional[str] = None,
    ) -> int:
        removed, changed = self._truncate(older_than, session_id)
        try:
            for topic in changed:
                await asyncio.to_thread(self._rewrite, topic)
        except OSError as e:
            raise StorageIOError(f"이벤트 로그 정리 실패: {e}") from e
        return removed


def create_event_log(directory: Optional[str]) -> EventLog:
    return EventLog() if directory is None else FileEventLog(directory)
