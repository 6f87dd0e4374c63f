"""이벤트 버스 (토픽 pub/sub + 영속화 + 재전송)

publish 흐름:
  1. 순번/시각 부여 (토픽별 시각은 감소하지 않음)
  2. append-only 로그에 기록 (실패 시 StorageIOError, 전달 없음)
  3. 패턴이 일치하는 구독마다 전용 큐에 적재

전달 보장: at-least-once
- 구독마다 큐 + 워커 1개, 토픽 내 FIFO 유지
- 핸들러 실패는 max_delivery_attempts 만큼 재시도 (선형 백오프)
- 그래도 실패하거나 큐가 가득 차면 dead-letter 처리
  이벤트는 로그에 남아 replay로 다시 받을 수 있다

보존 기간: retention_s보다 오래된 이벤트는 주기적 정리 루프가 로그에서 지운다.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from robustness.errors import EventBusStopped, SubscriptionNotFound
from robustness.events.log import EventLog, create_event_log
from robustness.models.config import EventBusConfig
from robustness.models.events import (
    Event,
    EventPriority,
    ReplayPolicy,
    topic_matches,
)

logger = logging.getLogger("robustness.events")

Handler = Callable[[Event], Union[None, Awaitable[None]]]


@dataclass
class Subscription:
    """구독 (패턴 + 구독자 + 핸들러)"""

    topic_pattern: str
    subscriber_id: str
    handler: Handler
    priority: Optional[EventPriority] = None
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)  # type: ignore[type-arg]
    worker: Optional[asyncio.Task] = None  # type: ignore[type-arg]
    delivered: int = 0
    failures: int = 0
    dead_letters: int = 0

    def matches(self, event: Event) -> bool:
        if self.priority is not None and event.priority != self.priority:
            return False
        return topic_matches(event.topic, self.topic_pattern)


class EventBus:
    """토픽 기반 이벤트 버스"""

    def __init__(
        self,
        config: Optional[EventBusConfig] = None,
        log: Optional[EventLog] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or EventBusConfig()
        self._log = log if log is not None else create_event_log(self._config.log_directory)
        self._clock = clock
        self._subscriptions: dict[tuple[str, str], Subscription] = {}
        self._replay_policies: dict[str, ReplayPolicy] = {}
        self._lock = asyncio.Lock()
        self._sequence = 0
        self._initialized = False
        self._stopped = False
        self._published = 0
        self._dead_letters = 0
        self._pruned = 0
        self._stop_event = asyncio.Event()
        self._retention_task: Optional[asyncio.Task] = None  # type: ignore[type-arg]

    @property
    def log(self) -> EventLog:
        return self._log

    @property
    def is_running(self) -> bool:
        return self._initialized and not self._stopped

    async def initialize(self) -> None:
        """로그를 열고 마지막 순번을 복원"""
        if self._initialized:
            return
        await self._log.open()
        self._sequence = self._log.last_sequence()
        self._initialized = True
        logger.info(
            "이벤트 버스 시작 (%s 로그, %d개 이벤트)", self._log.kind, self._log.count(),
        )

    # ── 발행 ──

    async def publish(
        self,
        topic: str,
        payload: Any = None,
        priority: EventPriority = EventPriority.NORMAL,
        session_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> Event:
        if self._stopped:
            raise EventBusStopped("중지된 이벤트 버스에는 발행할 수 없습니다")
        if not self._initialized:
            await self.initialize()

        async with self._lock:
            event = Event(
                topic=topic,
                payload=payload,
                priority=EventPriority(priority),
                timestamp=max(self._clock(), self._log.last_timestamp(topic)),
                sequence=self._sequence + 1,
                session_id=session_id,
                conversation_id=conversation_id,
            )
            await self._log.append(event)
            self._sequence = event.sequence
            self._published += 1

            for sub in list(self._subscriptions.values()):
                if not sub.matches(event):
                    continue
                try:
                    sub.queue.put_nowait(event)
                except asyncio.QueueFull:
                    self._dead_letter(sub, event, "큐 가득 참")

        logger.debug("발행: %s #%d", topic, event.sequence)
        return event

    # ── 구독 ──

    def subscribe(
        self,
        topic_pattern: str,
        subscriber_id: str,
        handler: Handler,
        priority: Optional[EventPriority] = None,
    ) -> Callable[[], None]:
        """구독 등록 후 해지 함수를 반환 (실행 중인 이벤트 루프 필요)

        같은 (패턴, 구독자)로 다시 구독하면 기존 구독을 교체한다.
        """
        if self._stopped:
            raise EventBusStopped("중지된 이벤트 버스에는 구독할 수 없습니다")
        key = (topic_pattern, subscriber_id)
        if key in self._subscriptions:
            self._remove(key)

        sub = Subscription(
            topic_pattern=topic_pattern,
            subscriber_id=subscriber_id,
            handler=handler,
            priority=EventPriority(priority) if priority is not None else None,
            queue=asyncio.Queue(maxsize=self._config.queue_size),
        )
        sub.worker = asyncio.create_task(
            self._worker(sub), name=f"event-worker:{subscriber_id}:{topic_pattern}",
        )
        self._subscriptions[key] = sub
        logger.debug("구독: %s → %s", subscriber_id, topic_pattern)

        def unsubscribe() -> None:
            if self._subscriptions.get(key) is sub:
                self._remove(key)

        return unsubscribe

    def unsubscribe(self, topic_pattern: str, subscriber_id: str) -> None:
        key = (topic_pattern, subscriber_id)
        if key not in self._subscriptions:
            raise SubscriptionNotFound(subscriber_id, topic_pattern)
        self._remove(key)

    def _remove(self, key: tuple[str, str]) -> None:
        sub = self._subscriptions.pop(key)
        if sub.worker is not None:
            sub.worker.cancel()
        logger.debug("구독 해지: %s → %s", sub.subscriber_id, sub.topic_pattern)

    def subscriptions_of(self, subscriber_id: str) -> list[Subscription]:
        return [s for s in self._subscriptions.values() if s.subscriber_id == subscriber_id]

    def set_replay_policy(self, subscriber_id: str, policy: ReplayPolicy) -> None:
        self._replay_policies[subscriber_id] = ReplayPolicy(policy)

    def get_replay_policy(self, subscriber_id: str) -> ReplayPolicy:
        return self._replay_policies.get(subscriber_id, ReplayPolicy.FULL)

    # ── 전달 ──

    async def _worker(self, sub: Subscription) -> None:
        while True:
            event = await sub.queue.get()
            try:
                await self._deliver(sub, event)
            finally:
                sub.queue.task_done()

    async def _deliver(self, sub: Subscription, event: Event) -> bool:
        """재시도 포함 전달. 최종 실패 시 dead-letter 후 False"""
        attempts = self._config.max_delivery_attempts
        for attempt in range(1, attempts + 1):
            try:
                result = sub.handler(event)
                if inspect.isawaitable(result):
                    await result
                sub.delivered += 1
                return True
            except Exception as e:
                sub.failures += 1
                logger.warning(
                    "핸들러 오류 (%s, %s #%d, %d/%d): %s",
                    sub.subscriber_id, event.topic, event.sequence, attempt, attempts, e,
                )
                if attempt < attempts:
                    await asyncio.sleep(self._config.retry_backoff_s * attempt)
        self._dead_letter(sub, event, "재시도 소진")
        return False

    def _dead_letter(self, sub: Subscription, event: Event, reason: str) -> None:
        sub.dead_letters += 1
        self._dead_letters += 1
        logger.error(
            "dead-letter: %s ← %s #%d (%s), replay로 재수신 가능",
            sub.subscriber_id, event.topic, event.sequence, reason,
        )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """큐에 쌓인 전달이 모두 끝날 때까지 대기"""
        joins = [s.queue.join() for s in self._subscriptions.values()]
        if not joins:
            return
        await asyncio.wait_for(asyncio.gather(*joins), timeout=timeout)

    # ── 재전송 ──

    def history(
        self,
        since: Optional[float] = None,
        until: Optional[float] = None,
        topics: Optional[Iterable[str]] = None,
    ) -> list[Event]:
        """영속화된 이벤트 조회 (timestamp, sequence 순)"""
        return self._log.read(since, until, topics)

    async def replay(
        self,
        subscriber_id: str,
        since: Optional[float] = None,
        until: Optional[float] = None,
        topics: Optional[Iterable[str]] = None,
        priority: Optional[EventPriority] = None,
        limit: Optional[int] = None,
    ) -> int:
        """since 이후 이벤트를 구독자의 핸들러로 다시 전달. 전달한 이벤트 수 반환"""
        subs = self.subscriptions_of(subscriber_id)
        if not subs:
            raise SubscriptionNotFound(subscriber_id)

        policy = self.get_replay_policy(subscriber_id)
        if policy == ReplayPolicy.NONE:
            return 0

        events = self._log.read(since, until, topics)
        if policy == ReplayPolicy.CRITICAL_ONLY:
            events = [e for e in events if e.priority == EventPriority.CRITICAL]
        if priority is not None:
            events = [e for e in events if e.priority == EventPriority(priority)]

        count = 0
        for event in events:
            if limit is not None and count >= limit:
                break
            targets = [s for s in subs if s.matches(event)]
            if not targets:
                continue
            for sub in targets:
                await self._deliver(sub, event)
            count += 1
        logger.info("재전송: %s ← %d개 이벤트", subscriber_id, count)
        return count

    async def clear_event_history(
        self, older_than: Optional[float] = None, session_id: Optional[str] = None,
    ) -> int:
        """관리용 로그 정리 (older_than 이전, 기본 전체. session_id로 세션 한정)"""
        async with self._lock:
            removed = await self._log.clear(older_than, session_id)
        logger.warning(
            "이벤트 이력 정리: %d개 삭제%s", removed, f" (세션 {session_id})" if session_id else "",
        )
        return removed

    # ── 보존 기간 정리 ──

    @property
    def is_retention_running(self) -> bool:
        return self._retention_task is not None and not self._retention_task.done()

    async def prune_expired_events(self) -> int:
        """보존 기간(retention_s)이 지난 이벤트 삭제. 삭제 수 반환"""
        retention = self._config.retention_s
        if retention is None:
            return 0
        cutoff = self._clock() - retention
        async with self._lock:
            removed = await self._log.clear(older_than=cutoff)
        self._pruned += removed
        if removed:
            logger.info("보존 기간 지난 이벤트 %d개 삭제", removed)
        return removed

    def start_retention_sweep(self) -> None:
        if self.is_retention_running or self._config.retention_s is None:
            return
        self._stop_event.clear()
        self._retention_task = asyncio.create_task(
            self._retention_loop(), name="event-retention",
        )
        logger.info(
            "이벤트 보존 정리 시작 (보존 %.0fs, 주기 %.0fs)",
            self._config.retention_s, self._config.retention_interval_s,
        )

    async def stop_retention_sweep(self) -> None:
        if self._retention_task is None:
            return
        self._stop_event.set()
        try:
            await self._retention_task
        finally:
            self._retention_task = None

    async def _retention_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._stop_event.wait()),
                    timeout=self._config.retention_interval_s,
                )
                break
            except asyncio.TimeoutError:
                try:
                    await self.prune_expired_events()
                except Exception as e:
                    logger.error("이벤트 보존 정리 실패: %s", e)

    def get_stats(self) -> dict[str, Any]:
        return {
            "topics": len(self._log.topics()),
            "subscriptions": len(self._subscriptions),
            "persisted_events": self._log.count(),
            "published": self._published,
            "delivered": sum(s.delivered for s in self._subscriptions.values()),
            "queued": sum(s.queue.qsize() for s in self._subscriptions.values()),
            "dead_letters": self._dead_letters,
            "pruned": self._pruned,
            "last_sequence": self._sequence,
            "running": self.is_running,
        }

    async def stop(self) -> None:
        """발행 차단 → 큐 비우기 (제한 시간) → 워커 취소 → 로그 닫기"""
        if self._stopped:
            return
        self._stopped = True
        await self.stop_retention_sweep()
        try:
            await self.drain(timeout=self._config.drain_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("이벤트 전달 대기 시간 초과 → 남은 전달 취소")

        workers = [s.worker for s in self._subscriptions.values() if s.worker is not None]
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._subscriptions.clear()
        await self._log.close()
        logger.info("이벤트 버스 중지 (발행 %d, dead-letter %d)", self._published, self._dead_letters)
