"""메모리 저장소 어댑터

프로세스 종료 시 데이터가 사라진다. 테스트와 임시 배포용.
파일 어댑터와 같은 의미를 갖도록 값은 JSON 문자열로 보관한다.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional

from robustness.storage.base import (
    StorageAdapter,
    StorageStats,
    decode_value,
    encode_value,
)

logger = logging.getLogger("robustness.storage.memory")


class InMemoryStorageAdapter(StorageAdapter):
    """스레드 안전 dict 기반 저장소"""

    def __init__(self) -> None:
        super().__init__()
        self._data: dict[str, str] = {}
        self._lock = threading.RLock()
        self._writes = 0
        self._reads = 0

    @property
    def backend_type(self) -> str:
        return "memory"

    async def initialize(self, config: Optional[dict[str, Any]] = None) -> None:
        self._initialized = True
        self._closed = False
        logger.debug("메모리 저장소 초기화")

    async def save(self, key: str, value: Any) -> None:
        self._ensure_open()
        raw = encode_value(key, value)
        with self._lock:
            self._data[key] = raw
            self._writes += 1

    async def load(self, key: str) -> Optional[Any]:
        self._ensure_open()
        with self._lock:
            raw = self._data.get(key)
            self._reads += 1
        if raw is None:
            return None
        return decode_value(key, raw)

    async def delete(self, key: str) -> bool:
        self._ensure_open()
        with self._lock:
            return self._data.pop(key, None) is not None

    async def list_keys(self, prefix: str = "") -> list[str]:
        self._ensure_open()
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    async def get_stats(self) -> StorageStats:
        self._ensure_open()
        with self._lock:
            size = sum(len(v.encode("utf-8")) for v in self._data.values())
            return StorageStats(
                backend_type=self.backend_type,
                total_keys=len(self._data),
                size_bytes=size,
                metrics={"writes": self._writes, "reads": self._reads},
            )

    async def close(self) -> None:
        with self._lock:
            self._closed = True
        logger.debug("메모리 저장소 종료 (%d개 키 폐기)", len(self._data))
