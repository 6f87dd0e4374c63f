"""저장소 어댑터 기본 인터페이스

모든 어댑터는 StorageAdapter를 상속하여 동일한 키/값 의미를 따른다.
규칙:
- 값은 JSON 호환 객체이며 저장 시점의 사본이 보관된다
- 없는 키는 None (예외 아님)
- 입출력 실패는 StorageIOError
- close() 이후 호출은 StorageIOError
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from robustness.errors import StorageIOError


@dataclass(frozen=True, slots=True)
class StorageStats:
    """저장소 통계"""

    backend_type: str
    total_keys: int
    size_bytes: int
    metrics: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "backend_type": self.backend_type,
            "total_keys": self.total_keys,
            "size_bytes": self.size_bytes,
            "metrics": dict(self.metrics),
        }


def encode_value(key: str, value: Any) -> str:
    """값 → JSON 문자열. 직렬화 불가 값은 StorageIOError"""
    try:
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError) as e:
        raise StorageIOError(f"직렬화 실패: {key}: {e}", key=key) from e


def decode_value(key: str, raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError as e:
        raise StorageIOError(f"손상된 데이터: {key}: {e}", key=key) from e


class StorageAdapter(ABC):
    """키/값 영속화 계약"""

    def __init__(self) -> None:
        self._initialized = False
        self._closed = False

    @property
    @abstractmethod
    def backend_type(self) -> str:
        """백엔드 이름 (memory, file)"""

    @property
    def is_open(self) -> bool:
        return self._initialized and not self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise StorageIOError(f"{self.backend_type} 저장소가 닫혔습니다")
        if not self._initialized:
            raise StorageIOError(f"{self.backend_type} 저장소가 초기화되지 않았습니다")

    @abstractmethod
    async def initialize(self, config: Optional[dict[str, Any]] = None) -> None:
        """백엔드 준비"""

    @abstractmethod
    async def save(self, key: str, value: Any) -> None:
        """키에 값 저장 (덮어쓰기)"""

    @abstractmethod
    async def load(self, key: str) -> Optional[Any]:
        """값 조회. 없으면 None"""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """삭제. 키가 없었으면 False"""

    @abstractmethod
    async def list_keys(self, prefix: str = "") -> list[str]:
        """접두사로 시작하는 키 목록 (정렬)"""

    @abstractmethod
    async def get_stats(self) -> StorageStats:
        """저장소 통계"""

    @abstractmethod
    async def close(self) -> None:
        """진행 중 쓰기 완료 후 리소스 해제"""

    async def exists(self, key: str) -> bool:
        return await self.load(key) is not None

    async def health_check(self) -> tuple[bool, str]:
        """준비 상태 점검"""
        if not self.is_open:
            return False, f"{self.backend_type} 저장소 사용 불가"
        return True, "ok"
