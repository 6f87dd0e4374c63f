"""에이전트 장애 알림: Log / Webhook

ALERT 복구 전략이 사용한다. 채널별 실패는 격리되며,
같은 에이전트에 대한 알림은 cooldown 동안 한 번만 발송된다.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

logger = logging.getLogger("robustness.notify")


@dataclass(frozen=True, slots=True)
class AlertPayload:
    """알림 페이로드"""

    agent_id: str
    title: str
    message: str
    severity: str = "critical"
    timestamp: float = field(default_factory=time.time)


class AlertNotifier:
    """다채널 장애 알림"""

    __slots__ = (
        "_methods", "_webhook_url", "_cooldown_s", "_clock", "_last_sent",
        "sent_count", "failed_count",
    )

    def __init__(
        self,
        methods: Optional[list[str]] = None,
        webhook_url: str = "",
        cooldown_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._methods = methods or ["log"]
        self._webhook_url = webhook_url
        self._cooldown_s = cooldown_s
        self._clock = clock
        self._last_sent: dict[str, float] = {}
        self.sent_count = 0
        self.failed_count = 0

    @property
    def methods(self) -> list[str]:
        return list(self._methods)

    def _in_cooldown(self, agent_id: str) -> bool:
        last = self._last_sent.get(agent_id)
        return last is not None and self._clock() - last < self._cooldown_s

    async def send(self, agent_id: str, reason: str) -> bool:
        """장애 알림 발송. cooldown 중이거나 모든 채널이 실패하면 False"""
        if self._in_cooldown(agent_id):
            logger.debug("알림 cooldown 중: %s", agent_id)
            return False
        payload = AlertPayload(
            agent_id=agent_id,
            title=f"에이전트 장애: {agent_id}",
            message=reason,
        )

        tasks: list[asyncio.Task[bool]] = []
        for method in self._methods:
            if method == "log":
                tasks.append(asyncio.ensure_future(self._log_notify(payload)))
            elif method == "webhook":
                tasks.append(
                    asyncio.ensure_future(
                        self._webhook_notify(payload, self._webhook_url)
                    )
                )

        results = await asyncio.gather(*tasks, return_exceptions=True)
        if not any(r is True for r in results):
            # 전달 실패는 cooldown을 소비하지 않는다
            self.failed_count += 1
            logger.error("알림 전달 실패 (모든 채널): %s", agent_id)
            return False
        self._last_sent[agent_id] = self._clock()
        self.sent_count += 1
        return True

    @staticmethod
    async def _log_notify(payload: AlertPayload) -> bool:
        logger.critical("[ALERT] %s: %s", payload.title, payload.message)
        return True

    @staticmethod
    async def _webhook_notify(
        payload: AlertPayload,
        webhook_url: str,
    ) -> bool:
        """Webhook 알림 (Slack/Discord). 2xx 응답일 때만 True"""
        if not webhook_url:
            return False

        import aiohttp

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    webhook_url,
                    json={
                        "text": f"*{payload.title}*\n{payload.message}",
                        "agent_id": payload.agent_id,
                        "severity": payload.severity,
                        "timestamp": payload.timestamp,
                    },
                    timeout=aiohttp.ClientTimeout(total=10),
                ) as resp:
                    resp.raise_for_status()
            return True
        except Exception as e:
            logger.warning("Webhook 알림 실패: %s", e)
            return False
