"""파일 저장소 어댑터

레이아웃: <root>/<url 인코딩된 key>.json (임계값 초과 시 .json.gz)
- 디렉터리 0o700, 파일 0o600 (다른 사용자 접근 차단)
- 쓰기는 임시 파일 → fsync → os.replace 로 원자적
- 임계값(기본 100KB)보다 큰 레코드는 gzip 압축, 같은 키의 다른 형식 파일은 제거
- 블로킹 파일 I/O는 스레드로 위임
"""

from __future__ import annotations

import asyncio
import gzip
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote, unquote

from robustness.errors import StorageIOError
from robustness.storage.base import (
    StorageAdapter,
    StorageStats,
    decode_value,
    encode_value,
)

logger = logging.getLogger("robustness.storage.file")

_SUFFIX = ".json"
_GZ_SUFFIX = ".json.gz"
_TMP_SUFFIX = ".tmp"


def key_to_filename(key: str, compressed: bool = False) -> str:
    return quote(key, safe="") + (_GZ_SUFFIX if compressed else _SUFFIX)


def filename_to_key(name: str) -> str:
    suffix = _GZ_SUFFIX if name.endswith(_GZ_SUFFIX) else _SUFFIX
    return unquote(name[: -len(suffix)])


def _unlink_quiet(path: Path) -> bool:
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False


class FileStorageAdapter(StorageAdapter):
    """키당 JSON 파일 하나"""

    def __init__(self, root: str | os.PathLike = "data/store",
                 file_permissions: int = 0o600,
                 compression_threshold: int = 100 * 1024) -> None:
        super().__init__()
        self._root = Path(root)
        self._file_mode = file_permissions
        self._compression_threshold = compression_threshold
        self._write_lock = asyncio.Lock()
        self._pending_writes = 0
        self._writes = 0
        self._compressed_writes = 0
        self._errors = 0

    @property
    def backend_type(self) -> str:
        return "file"

    @property
    def root(self) -> Path:
        return self._root

    async def initialize(self, config: Optional[dict[str, Any]] = None) -> None:
        config = config or {}
        if "location" in config:
            self._root = Path(config["location"])
        if "file_permissions" in config:
            self._file_mode = int(config["file_permissions"])
        if "compression_threshold" in config:
            self._compression_threshold = int(config["compression_threshold"])
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            os.chmod(self._root, 0o700)
        except OSError as e:
            raise StorageIOError(f"저장소 디렉터리 생성 실패: {self._root}: {e}") from e
        self._initialized = True
        self._closed = False
        logger.info("파일 저장소 초기화: %s", self._root)

    def _path(self, key: str, compressed: bool = False) -> Path:
        return self._root / key_to_filename(key, compressed)

    def _write_atomic(self, path: Path, data: bytes) -> None:
        fd, tmp = tempfile.mkstemp(dir=self._root, prefix=".", suffix=_TMP_SUFFIX)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp, self._file_mode)
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def _store(self, key: str, raw: str) -> bool:
        """형식을 골라 쓰고 다른 형식의 이전 파일을 지운다. 압축 여부 반환"""
        data = raw.encode("utf-8")
        compressed = len(data) > self._compression_threshold
        if compressed:
            data = gzip.compress(data)
        self._write_atomic(self._path(key, compressed), data)
        _unlink_quiet(self._path(key, not compressed))
        return compressed

    def _fetch(self, key: str) -> Optional[str]:
        gz_path = self._path(key, compressed=True)
        try:
            return gzip.decompress(gz_path.read_bytes()).decode("utf-8")
        except FileNotFoundError:
            pass
        try:
            return self._path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    async def save(self, key: str, value: Any) -> None:
        self._ensure_open()
        raw = encode_value(key, value)
        async with self._write_lock:
            self._pending_writes += 1
            try:
                compressed = await asyncio.to_thread(self._store, key, raw)
                self._writes += 1
                if compressed:
                    self._compressed_writes += 1
                    logger.debug("압축 저장: %s (%d bytes)", key, len(raw))
            except OSError as e:
                self._errors += 1
                logger.error("저장 실패 [%s]: %s", key, e)
                raise StorageIOError(f"저장 실패: {key}: {e}", key=key) from e
            finally:
                self._pending_writes -= 1

    async def load(self, key: str) -> Optional[Any]:
        self._ensure_open()
        try:
            raw = await asyncio.to_thread(self._fetch, key)
        except (OSError, EOFError, UnicodeDecodeError) as e:
            self._errors += 1
            raise StorageIOError(f"읽기 실패: {key}: {e}", key=key) from e
        if raw is None:
            return None
        return decode_value(key, raw)

    def _remove(self, key: str) -> bool:
        removed = _unlink_quiet(self._path(key, compressed=True))
        return _unlink_quiet(self._path(key)) or removed

    async def delete(self, key: str) -> bool:
        self._ensure_open()
        async with self._write_lock:
            try:
                return await asyncio.to_thread(self._remove, key)
            except OSError as e:
                self._errors += 1
                raise StorageIOError(f"삭제 실패: {key}: {e}", key=key) from e

    def _scan(self) -> list[Path]:
        # 임시 파일은 .tmp 로 끝나므로 레코드 접미사와 겹치지 않는다
        return [
            p for p in self._root.iterdir()
            if p.is_file() and p.name.endswith((_SUFFIX, _GZ_SUFFIX))
        ]

    async def list_keys(self, prefix: str = "") -> list[str]:
        self._ensure_open()
        try:
            paths = await asyncio.to_thread(self._scan)
        except OSError as e:
            raise StorageIOError(f"키 목록 조회 실패: {e}") from e
        keys = {filename_to_key(p.name) for p in paths}
        return sorted(k for k in keys if k.startswith(prefix))

    async def exists(self, key: str) -> bool:
        self._ensure_open()
        return await asyncio.to_thread(
            lambda: self._path(key, compressed=True).exists() or self._path(key).exists(),
        )

    async def get_stats(self) -> StorageStats:
        self._ensure_open()
        try:
            paths = await asyncio.to_thread(self._scan)
            size = sum(p.stat().st_size for p in paths)
        except OSError as e:
            raise StorageIOError(f"통계 조회 실패: {e}") from e
        return StorageStats(
            backend_type=self.backend_type,
            total_keys=len({filename_to_key(p.name) for p in paths}),
            size_bytes=size,
            metrics={
                "root": str(self._root),
                "writes": self._writes,
                "compressed_writes": self._compressed_writes,
                "compressed_keys": sum(1 for p in paths if p.name.endswith(_GZ_SUFFIX)),
                "errors": self._errors,
            },
        )

    async def health_check(self) -> tuple[bool, str]:
        ok, message = await super().health_check()
        if not ok:
            return ok, message
        if not os.access(self._root, os.W_OK):
            return False, f"쓰기 권한 없음: {self._root}"
        return True, "ok"

    async def close(self) -> None:
        if self._closed:
            return
        # 진행 중인 쓰기가 끝날 때까지 대기
        async with self._write_lock:
            self._closed = True
        logger.info("파일 저장소 종료: %s", self._root)
