"""저장소 생성 및 백엔드 간 이전"""

from __future__ import annotations

import logging
from typing import Any

from robustness.models.config import StorageConfig
from robustness.storage.base import StorageAdapter
from robustness.storage.file import FileStorageAdapter
from robustness.storage.memory import InMemoryStorageAdapter

logger = logging.getLogger("robustness.storage")


def new_storage(kind: str = "memory", **options: Any) -> StorageAdapter:
    """초기화 전 어댑터 생성

    kind: "memory" | "file"
    options: location, file_permissions, compression_threshold
    """
    if kind == "memory":
        adapter: StorageAdapter = InMemoryStorageAdapter()
    elif kind == "file":
        adapter = FileStorageAdapter(
            options.get("location", "data/store"),
            options.get("file_permissions", 0o600),
            options.get("compression_threshold", 100 * 1024),
        )
    else:
        raise ValueError(f"알 수 없는 저장소 종류: {kind}")
    return adapter


async def create_storage(kind: str = "memory", **options: Any) -> StorageAdapter:
    """어댑터 생성 후 초기화까지 마친다"""
    adapter = new_storage(kind, **options)
    await adapter.initialize(options)
    return adapter


async def create_storage_from_config(config: StorageConfig) -> StorageAdapter:
    return await create_storage(
        config.kind,
        location=config.location,
        file_permissions=config.file_permissions,
        compression_threshold=config.compression_threshold,
    )


async def migrate(source: StorageAdapter, target: StorageAdapter,
                  prefix: str = "") -> int:
    """source의 키를 target으로 복사. 복사한 키 수 반환"""
    count = 0
    for key in await source.list_keys(prefix):
        value = await source.load(key)
        if value is None:
            continue
        await target.save(key, value)
        count += 1
    logger.info(
        "저장소 이전 완료: %s → %s (%d개 키)",
        source.backend_type, target.backend_type, count,
    )
    return count
