"""안정성 레이어 설정 모델

기본값은 운영 환경 기준이며, 테스트는 짧은 간격으로 덮어쓴다.
환경 변수 ROBUSTNESS_* 로 주요 값을 조정할 수 있다.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class StorageConfig:
    """저장소 어댑터 설정"""

    kind: str = "file"                  # file | memory
    location: str = "data/store"
    file_permissions: int = 0o600
    compression_threshold: int = 100 * 1024   # 초과 레코드는 gzip 저장 (파일 저장소)


@dataclass
class SessionConfig:
    """세션 수명 설정"""

    default_expiration_s: float = 3600.0    # 1시간
    cleanup_interval_s: float = 300.0       # 5분
    cleanup_grace_s: float = 0.0


@dataclass
class HealthConfig:
    """헬스 모니터 설정 (2s / 5s / 2회)"""

    heartbeat_interval: float = 2.0
    activity_timeout: float = 5.0
    max_missed_beats: int = 2
    default_recovery_strategy: str = "restart"

    # 시스템 전체 성능 저하 모드
    degradation_failure_count: int = 3
    degradation_window_s: float = 30.0
    degradation_recovery_threshold: int = 2
    degradation_recovery_duration_s: float = 120.0

    # ALERT 전략 알림
    alert_methods: list[str] = field(default_factory=lambda: ["log"])
    alert_webhook_url: str = ""
    alert_cooldown_s: float = 60.0

    def __post_init__(self) -> None:
        if self.heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval은 0보다 커야 합니다")
        if self.activity_timeout < self.heartbeat_interval:
            raise ValueError("activity_timeout은 heartbeat_interval 이상이어야 합니다")
        if self.max_missed_beats < 1:
            raise ValueError("max_missed_beats는 1 이상이어야 합니다")


@dataclass
class EventBusConfig:
    """이벤트 버스 설정"""

    log_directory: Optional[str] = "data/events"   # None이면 메모리 로그
    queue_size: int = 1000
    max_delivery_attempts: int = 3
    retry_backoff_s: float = 0.05
    drain_timeout_s: float = 5.0
    retention_s: Optional[float] = 24 * 3600.0     # None이면 기간 정리 안 함
    retention_interval_s: float = 3600.0


@dataclass
class GroupConfig:
    """그룹 대화 설정"""

    min_agents: int = 2
    max_agents: int = 10
    priority_tie_tolerance: float = 0.1
    selection_warn_ms: float = 100.0
    history_window: int = 5


@dataclass
class RobustnessConfig:
    """런타임 전체 설정"""

    storage: StorageConfig = field(default_factory=StorageConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    events: EventBusConfig = field(default_factory=EventBusConfig)
    group: GroupConfig = field(default_factory=GroupConfig)
    shutdown_timeout_s: float = 10.0

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> RobustnessConfig:
        """ROBUSTNESS_* 환경 변수로 기본값을 덮어쓴 설정 생성"""
        env = os.environ if environ is None else environ
        config = cls()

        config.storage.kind = env.get("ROBUSTNESS_STORAGE", config.storage.kind)
        config.storage.location = env.get("ROBUSTNESS_STORAGE_DIR", config.storage.location)

        if "ROBUSTNESS_SESSION_TTL" in env:
            config.session.default_expiration_s = float(env["ROBUSTNESS_SESSION_TTL"])
        if "ROBUSTNESS_CLEANUP_INTERVAL" in env:
            config.session.cleanup_interval_s = float(env["ROBUSTNESS_CLEANUP_INTERVAL"])

        if "ROBUSTNESS_HEARTBEAT_INTERVAL" in env:
            config.health.heartbeat_interval = float(env["ROBUSTNESS_HEARTBEAT_INTERVAL"])
        if "ROBUSTNESS_ACTIVITY_TIMEOUT" in env:
            config.health.activity_timeout = float(env["ROBUSTNESS_ACTIVITY_TIMEOUT"])
        if "ROBUSTNESS_MAX_MISSED_BEATS" in env:
            config.health.max_missed_beats = int(env["ROBUSTNESS_MAX_MISSED_BEATS"])
        config.health.alert_webhook_url = env.get(
            "ROBUSTNESS_ALERT_WEBHOOK_URL", config.health.alert_webhook_url,
        )
        if config.health.alert_webhook_url and "webhook" not in config.health.alert_methods:
            config.health.alert_methods.append("webhook")

        log_dir = env.get("ROBUSTNESS_EVENT_LOG_DIR")
        if log_dir is not None:
            config.events.log_directory = log_dir or None
        if "ROBUSTNESS_EVENT_RETENTION" in env:
            retention = env["ROBUSTNESS_EVENT_RETENTION"]
            config.events.retention_s = float(retention) if retention else None

        # 환경 변수로 바뀐 값도 동일하게 검증
        config.health.__post_init__()
        return config
