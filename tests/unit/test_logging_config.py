"""로깅 설정 테스트"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator

import pytest

from robustness.utils.logging_config import (
    ColorFormatter,
    parse_component_levels,
    setup_logging,
)

_TOUCHED = (
    "robustness.storage.file",
    "robustness.events.log",
    "robustness.events",
    "robustness.health",
)


@pytest.fixture(autouse=True)
def restore_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    for name in _TOUCHED:
        logging.getLogger(name).setLevel(logging.NOTSET)


class TestParseComponentLevels:
    def test_pairs(self) -> None:
        assert parse_component_levels("robustness.events=debug, robustness.health=INFO") == {
            "robustness.events": "DEBUG",
            "robustness.health": "INFO",
        }

    def test_empty(self) -> None:
        assert parse_component_levels("") == {}

    @pytest.mark.parametrize("spec", ["robustness.events", "=DEBUG", "robustness.events=LOUD"])
    def test_invalid(self, spec: str) -> None:
        with pytest.raises(ValueError):
            parse_component_levels(spec)


class TestSetupLogging:
    def test_io_loggers_quiet_by_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("ROBUSTNESS_LOG_LEVELS", raising=False)
        setup_logging("INFO", color=False)

        assert logging.getLogger().level == logging.INFO
        assert logging.getLogger("robustness.storage.file").level == logging.WARNING
        assert logging.getLogger("robustness.events.log").level == logging.WARNING

    def test_debug_keeps_io_loggers(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("ROBUSTNESS_LOG_LEVELS", raising=False)
        setup_logging("INFO")
        setup_logging("DEBUG")

        assert logging.getLogger("robustness.storage.file").level == logging.NOTSET
        assert logging.getLogger("robustness.storage.file").isEnabledFor(logging.DEBUG)

    def test_env_then_explicit_levels(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(
            "ROBUSTNESS_LOG_LEVELS", "robustness.events=DEBUG,robustness.health=ERROR",
        )
        setup_logging("WARNING", component_levels={"robustness.health": "INFO"})

        assert logging.getLogger("robustness.events").level == logging.DEBUG
        assert logging.getLogger("robustness.health").level == logging.INFO

    def test_file_handler(self, tmp_path: Path) -> None:
        log_file = tmp_path / "logs" / "robustness.log"
        setup_logging("INFO", log_file=log_file)

        logging.getLogger("robustness.session").info("세션 생성: s1")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert "세션 생성: s1" in log_file.read_text(encoding="utf-8")


class TestColorFormatter:
    def test_record_is_not_mutated(self) -> None:
        record = logging.LogRecord("robustness", logging.ERROR, __file__, 1, "boom", None, None)
        text = ColorFormatter(fmt="%(levelname)s %(message)s").format(record)

        assert "\033[31m" in text
        assert record.levelname == "ERROR"
