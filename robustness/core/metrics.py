"""헬스 모니터 런타임 메트릭 수집"""

from __future__ import annotations

from time import monotonic

import psutil


class MonitorMetrics:
    """헬스 모니터 메트릭"""

    __slots__ = (
        "total_heartbeats", "missed_heartbeats", "ticks",
        "recovery_attempts", "successful_recoveries",
        "_tick_times", "peak_memory_mb", "_start_time",
    )

    def __init__(self) -> None:
        self.total_heartbeats: int = 0
        self.missed_heartbeats: int = 0
        self.ticks: int = 0
        self.recovery_attempts: int = 0
        self.successful_recoveries: int = 0
        self._tick_times: list[float] = []
        self.peak_memory_mb: float = 0.0
        self._start_time: float = monotonic()

    @property
    def avg_tick_ms(self) -> float:
        if not self._tick_times:
            return 0.0
        return sum(self._tick_times) / len(self._tick_times)

    @property
    def uptime_s(self) -> float:
        return monotonic() - self._start_time

    @property
    def recovery_success_rate(self) -> float:
        return self.successful_recoveries / max(self.recovery_attempts, 1)

    def record_heartbeat(self) -> None:
        self.total_heartbeats += 1

    def record_missed(self) -> None:
        self.missed_heartbeats += 1

    def record_tick(self, elapsed_ms: float) -> None:
        self.ticks += 1
        self._tick_times.append(elapsed_ms)
        # 최근 100개만 유지
        if len(self._tick_times) > 100:
            self._tick_times = self._tick_times[-50:]

    def record_recovery(self, success: bool) -> None:
        self.recovery_attempts += 1
        if success:
            self.successful_recoveries += 1

    def update_memory(self) -> None:
        mem_mb = psutil.Process().memory_info().rss / (1024 * 1024)
        self.peak_memory_mb = max(self.peak_memory_mb, mem_mb)

    def summary(self) -> str:
        return (
            f"=== 헬스 모니터 요약 ===\n"
            f"  가동 시간: {self.uptime_s / 60:.1f}분\n"
            f"  점검 주기: {self.ticks}회 (평균 {self.avg_tick_ms:.2f}ms)\n"
            f"  하트비트: {self.total_heartbeats}회 / 누락 {self.missed_heartbeats}회\n"
            f"  복구 시도: {self.recovery_attempts}회 "
            f"(성공률: {self.recovery_success_rate * 100:.1f}%)\n"
            f"  최대 메모리: {self.peak_memory_mb:.1f}MB"
        )
