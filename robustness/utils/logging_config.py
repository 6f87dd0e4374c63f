"""로깅 설정

콘솔 + 파일 로깅을 구성한다.
구성 요소별 로거는 robustness.* 계층을 따른다
(robustness.session, robustness.events, robustness.health, robustness.group, robustness.storage).
ROBUSTNESS_LOG_LEVELS="robustness.events=DEBUG,..." 로 로거별 레벨을 조정한다.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Optional


_COLORS = {
    "DEBUG": "\033[36m",     # Cyan
    "INFO": "\033[32m",      # Green
    "WARNING": "\033[33m",   # Yellow
    "ERROR": "\033[31m",     # Red
    "CRITICAL": "\033[35m",  # Magenta
    "RESET": "\033[0m",
}


class ColorFormatter(logging.Formatter):
    """컬러 로그 포매터 (원본 레코드는 변경하지 않음)"""

    def format(self, record: logging.LogRecord) -> str:
        color = _COLORS.get(record.levelname, "")
        reset = _COLORS["RESET"]
        original = record.levelname
        record.levelname = f"{color}{original:<8}{reset}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


_COMPONENT_DEFAULTS = {
    # 파일 입출력 세부 로그는 DEBUG 모드가 아니면 WARNING부터
    "robustness.storage.file": "WARNING",
    "robustness.events.log": "WARNING",
}


def parse_component_levels(spec: str) -> dict[str, str]:
    """로거별 레벨 지정 파싱: "robustness.events=DEBUG,robustness.health=INFO" """
    levels: dict[str, str] = {}
    for item in spec.split(","):
        item = item.strip()
        if not item:
            continue
        name, sep, level = item.partition("=")
        if not sep or not name.strip() or not level.strip():
            raise ValueError(f"잘못된 로거 레벨 지정: {item!r}")
        level = level.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"알 수 없는 로그 레벨: {level}")
        levels[name.strip()] = level
    return levels


def setup_logging(
    level: str = "INFO",
    log_file: str | Path | None = None,
    color: bool = True,
    component_levels: Optional[dict[str, str]] = None,
) -> None:
    """로깅 초기화

    Args:
        level: 로그 레벨 (DEBUG, INFO, WARNING, ERROR)
        log_file: 로그 파일 경로 (None이면 콘솔만)
        color: 콘솔 컬러 출력 여부
        component_levels: robustness.* 로거별 레벨 (ROBUSTNESS_LOG_LEVELS보다 우선)
    """
    root_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(root_level)

    # 기존 핸들러 제거
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    fmt = "%(asctime)s %(levelname)s %(name)s │ %(message)s"
    console.setFormatter(
        ColorFormatter(fmt=fmt, datefmt="%H:%M:%S")
        if color else logging.Formatter(fmt=fmt, datefmt="%H:%M:%S")
    )
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(path, encoding="utf-8")
        fh.setFormatter(logging.Formatter(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        root.addHandler(fh)

    # aiohttp 내부 로그 레벨 조정
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    for name in _COMPONENT_DEFAULTS:
        logging.getLogger(name).setLevel(logging.NOTSET)
    overrides = {} if root_level <= logging.DEBUG else dict(_COMPONENT_DEFAULTS)
    overrides.update(parse_component_levels(os.environ.get("ROBUSTNESS_LOG_LEVELS", "")))
    overrides.update(component_levels or {})
    for name, component_level in overrides.items():
        logging.getLogger(name).setLevel(component_level.upper())
