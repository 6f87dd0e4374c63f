"""안정성 레이어 관리 CLI (robustness-admin)

사용 예시:
    robustness-admin stats
    robustness-admin cleanup --grace 600
    robustness-admin migrate data/store backup/store --prefix session:
    robustness-admin events --since 1767225600 --topic agent:health_changed
    robustness-admin clear-events --older-than 1767225600
    robustness-admin clear-events --session 3f2a9c --older-than 1767225600

저장소/이벤트 경로 기본값은 ROBUSTNESS_* 환경 변수를 따른다.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from robustness.errors import RobustnessError
from robustness.events.bus import EventBus
from robustness.models.config import EventBusConfig, RobustnessConfig
from robustness.runtime import RobustnessRuntime
from robustness.storage.factory import create_storage, migrate
from robustness.utils.logging_config import parse_component_levels, setup_logging


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="robustness-admin",
        description="세션 저장소 / 이벤트 로그 관리",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "예시:\n"
            "  robustness-admin stats\n"
            "  robustness-admin cleanup --grace 600"
        ),
    )
    p.add_argument("--storage-dir", default=None, help="세션 저장소 디렉터리")
    p.add_argument("--event-dir", default=None, help="이벤트 로그 디렉터리")
    p.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    p.add_argument("--log-file", default=None, help="로그 파일 경로")
    p.add_argument(
        "--log-levels", default="",
        help="로거별 레벨 (예: robustness.events=DEBUG,robustness.health=INFO)",
    )

    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("stats", help="세션/이벤트 통계 출력")

    cleanup = sub.add_parser("cleanup", help="만료 세션 정리")
    cleanup.add_argument("--grace", type=float, default=0.0, help="만료 후 유예 시간 (초)")
    cleanup.add_argument(
        "--no-expire", action="store_true",
        help="TTL 지난 ACTIVE 세션을 EXPIRED로 전이하지 않음",
    )

    mig = sub.add_parser("migrate", help="파일 저장소 간 키 복사")
    mig.add_argument("source", help="원본 디렉터리")
    mig.add_argument("target", help="대상 디렉터리")
    mig.add_argument("--prefix", default="", help="복사할 키 접두사")

    events = sub.add_parser("events", help="영속화된 이벤트 출력 (JSON lines)")
    events.add_argument("--since", type=float, default=None, help="시작 시각 (epoch 초)")
    events.add_argument("--until", type=float, default=None, help="종료 시각 (epoch 초)")
    events.add_argument("--topic", action="append", default=None, help="토픽 (반복 가능)")
    events.add_argument("--limit", type=int, default=None)

    clear = sub.add_parser("clear-events", help="이벤트 로그 정리")
    clear.add_argument("--older-than", type=float, default=None, help="이 시각 이전만 삭제")
    clear.add_argument("--session", default=None, help="이 세션의 이벤트만 삭제")
    return p


def build_config(args: argparse.Namespace) -> RobustnessConfig:
    config = RobustnessConfig.from_env()
    config.storage.kind = "file"
    if args.storage_dir:
        config.storage.location = args.storage_dir
    if args.event_dir:
        config.events.log_directory = args.event_dir
    return config


def _print_json(data: Any) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


@asynccontextmanager
async def _offline_runtime(config: RobustnessConfig) -> AsyncIterator[RobustnessRuntime]:
    """백그라운드 루프 없이 런타임을 열고 닫는다"""
    runtime = RobustnessRuntime(config)
    await runtime.start(background=False)
    try:
        yield runtime
    finally:
        await runtime.shutdown()


async def cmd_stats(config: RobustnessConfig) -> int:
    async with _offline_runtime(config) as runtime:
        _print_json({
            "sessions": await runtime.sessions.get_stats(),
            "events": runtime.events.get_stats(),
        })
    return 0


async def cmd_cleanup(config: RobustnessConfig, grace: float, expire: bool) -> int:
    async with _offline_runtime(config) as runtime:
        expired = await runtime.sessions.expire_overdue_sessions() if expire else 0
        deleted = await runtime.sessions.cleanup_expired_sessions(grace)
    print(f"만료 처리 {expired}개, 삭제 {deleted}개")
    return 0


async def cmd_migrate(source_dir: str, target_dir: str, prefix: str) -> int:
    source = await create_storage("file", location=source_dir)
    target = await create_storage("file", location=target_dir)
    try:
        count = await migrate(source, target, prefix)
    finally:
        await source.close()
        await target.close()
    print(f"{count}개 키 복사 완료: {source_dir} → {target_dir}")
    return 0


async def cmd_events(config: EventBusConfig, since: Optional[float], until: Optional[float],
                     topics: Optional[list[str]], limit: Optional[int]) -> int:
    bus = EventBus(config)
    await bus.initialize()
    try:
        events = bus.history(since, until, topics)
        for event in events[:limit] if limit is not None else events:
            print(json.dumps(event.to_dict(), ensure_ascii=False))
    finally:
        await bus.stop()
    return 0


async def cmd_clear_events(
    config: EventBusConfig, older_than: Optional[float], session_id: Optional[str] = None,
) -> int:
    bus = EventBus(config)
    await bus.initialize()
    try:
        removed = await bus.clear_event_history(older_than, session_id)
    finally:
        await bus.stop()
    print(f"{removed}개 이벤트 삭제")
    return 0


async def run(args: argparse.Namespace) -> int:
    config = build_config(args)
    if args.command == "stats":
        return await cmd_stats(config)
    if args.command == "cleanup":
        return await cmd_cleanup(config, args.grace, not args.no_expire)
    if args.command == "migrate":
        return await cmd_migrate(args.source, args.target, args.prefix)
    if args.command == "events":
        return await cmd_events(config.events, args.since, args.until, args.topic, args.limit)
    if args.command == "clear-events":
        return await cmd_clear_events(config.events, args.older_than, args.session)
    raise ValueError(f"알 수 없는 명령: {args.command}")


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        component_levels = parse_component_levels(args.log_levels)
    except ValueError as e:
        parser.error(str(e))
    setup_logging(
        level=args.log_level, log_file=args.log_file, component_levels=component_levels,
    )

    try:
        return asyncio.run(run(args))
    except RobustnessError as e:
        print(f"  [오류] {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
