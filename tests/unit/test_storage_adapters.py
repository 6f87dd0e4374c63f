"""저장소 어댑터 단위 테스트

메모리/파일 어댑터가 같은 의미를 갖는지 확인한다.
"""

from __future__ import annotations

import gzip
import json
import os
import stat
from pathlib import Path

import pytest

from robustness.errors import StorageIOError
from robustness.storage import (
    FileStorageAdapter,
    InMemoryStorageAdapter,
    StorageAdapter,
    create_storage,
    migrate,
)


async def _open(kind: str, tmp_path: Path) -> StorageAdapter:
    if kind == "memory":
        return await create_storage("memory")
    return await create_storage("file", location=str(tmp_path / "store"))


BACKENDS = ["memory", "file"]


class TestAdapterContract:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", BACKENDS)
    async def test_save_then_load(self, kind: str, tmp_path: Path) -> None:
        storage = await _open(kind, tmp_path)
        await storage.save("session:1", {"version": 3, "items": [1, 2]})

        assert await storage.load("session:1") == {"version": 3, "items": [1, 2]}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", BACKENDS)
    async def test_missing_key_is_none(self, kind: str, tmp_path: Path) -> None:
        storage = await _open(kind, tmp_path)
        assert await storage.load("nope") is None
        assert not await storage.exists("nope")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", BACKENDS)
    async def test_saved_value_is_a_snapshot(self, kind: str, tmp_path: Path) -> None:
        """저장 이후 원본을 바꿔도 저장된 값은 그대로"""
        storage = await _open(kind, tmp_path)
        value = {"history": ["a"]}
        await storage.save("k", value)
        value["history"].append("b")

        assert await storage.load("k") == {"history": ["a"]}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", BACKENDS)
    async def test_delete_reports_presence(self, kind: str, tmp_path: Path) -> None:
        storage = await _open(kind, tmp_path)
        await storage.save("k", 1)

        assert await storage.delete("k") is True
        assert await storage.delete("k") is False
        assert await storage.load("k") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", BACKENDS)
    async def test_list_keys_by_prefix(self, kind: str, tmp_path: Path) -> None:
        storage = await _open(kind, tmp_path)
        for key in ("session:b", "session:a", "event:x"):
            await storage.save(key, {})

        assert await storage.list_keys("session:") == ["session:a", "session:b"]
        assert await storage.list_keys() == ["event:x", "session:a", "session:b"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", BACKENDS)
    async def test_stats(self, kind: str, tmp_path: Path) -> None:
        storage = await _open(kind, tmp_path)
        await storage.save("a", {"x": 1})
        await storage.save("b", {"y": 2})

        stats = await storage.get_stats()
        assert stats.backend_type == kind
        assert stats.total_keys == 2
        assert stats.size_bytes > 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", BACKENDS)
    async def test_use_after_close_fails(self, kind: str, tmp_path: Path) -> None:
        storage = await _open(kind, tmp_path)
        await storage.close()

        with pytest.raises(StorageIOError):
            await storage.save("k", 1)
        with pytest.raises(StorageIOError):
            await storage.load("k")
        assert await storage.health_check() == (False, f"{kind} 저장소 사용 불가")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", BACKENDS)
    async def test_unserializable_value(self, kind: str, tmp_path: Path) -> None:
        storage = await _open(kind, tmp_path)
        with pytest.raises(StorageIOError):
            await storage.save("k", {"bad": object()})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", BACKENDS)
    async def test_dot_prefixed_keys_are_listed(self, kind: str, tmp_path: Path) -> None:
        """임시 파일처럼 보이는 키도 일반 키와 똑같이 다룬다"""
        storage = await _open(kind, tmp_path)
        await storage.save(".tmp-a", {"v": 1})
        await storage.save(".hidden", {"v": 2})

        assert await storage.list_keys() == [".hidden", ".tmp-a"]
        assert (await storage.get_stats()).total_keys == 2
        assert await storage.delete(".tmp-a") is True
        assert await storage.list_keys() == [".hidden"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", BACKENDS)
    async def test_large_value_round_trips(self, kind: str, tmp_path: Path) -> None:
        storage = await _open(kind, tmp_path)
        value = {"history": ["x" * 1000 for _ in range(200)]}
        await storage.save("session:big", value)

        assert await storage.load("session:big") == value
        assert await storage.list_keys() == ["session:big"]

    @pytest.mark.asyncio
    async def test_uninitialized_adapter_fails(self) -> None:
        with pytest.raises(StorageIOError):
            await InMemoryStorageAdapter().load("k")


class TestFileAdapter:
    @pytest.mark.asyncio
    async def test_key_with_separators_is_quoted(self, tmp_path: Path) -> None:
        storage = FileStorageAdapter(tmp_path / "store")
        await storage.initialize()
        await storage.save("session:a/b", {"ok": True})

        names = os.listdir(tmp_path / "store")
        assert names == ["session%3Aa%2Fb.json"]
        assert await storage.list_keys() == ["session:a/b"]

    @pytest.mark.asyncio
    async def test_permissions(self, tmp_path: Path) -> None:
        storage = FileStorageAdapter(tmp_path / "store")
        await storage.initialize()
        await storage.save("k", 1)

        root_mode = stat.S_IMODE(os.stat(tmp_path / "store").st_mode)
        file_mode = stat.S_IMODE(os.stat(tmp_path / "store" / "k.json").st_mode)
        assert root_mode == 0o700
        assert file_mode == 0o600

    @pytest.mark.asyncio
    async def test_overwrite_leaves_no_temp_files(self, tmp_path: Path) -> None:
        storage = FileStorageAdapter(tmp_path / "store")
        await storage.initialize()
        for i in range(5):
            await storage.save("k", {"i": i})

        assert os.listdir(tmp_path / "store") == ["k.json"]
        assert await storage.load("k") == {"i": 4}

    @pytest.mark.asyncio
    async def test_data_survives_new_instance(self, tmp_path: Path) -> None:
        first = FileStorageAdapter(tmp_path / "store")
        await first.initialize()
        await first.save("session:1", {"version": 1})
        await first.close()

        second = FileStorageAdapter(tmp_path / "store")
        await second.initialize()
        assert await second.load("session:1") == {"version": 1}

    @pytest.mark.asyncio
    async def test_corrupt_file_raises(self, tmp_path: Path) -> None:
        storage = FileStorageAdapter(tmp_path / "store")
        await storage.initialize()
        (tmp_path / "store" / "k.json").write_text("{not json", encoding="utf-8")

        with pytest.raises(StorageIOError) as exc:
            await storage.load("k")
        assert exc.value.key == "k"

    @pytest.mark.asyncio
    async def test_initialize_with_location_option(self, tmp_path: Path) -> None:
        storage = FileStorageAdapter()
        await storage.initialize({"location": str(tmp_path / "other")})

        assert storage.root == tmp_path / "other"
        assert await storage.health_check() == (True, "ok")

    @pytest.mark.asyncio
    async def test_large_record_is_gzipped(self, tmp_path: Path) -> None:
        storage = FileStorageAdapter(tmp_path / "store", compression_threshold=1024)
        await storage.initialize()
        value = {"history": ["x" * 100 for _ in range(50)]}
        await storage.save("session:1", value)

        path = tmp_path / "store" / "session%3A1.json.gz"
        assert os.listdir(tmp_path / "store") == [path.name]
        assert json.loads(gzip.decompress(path.read_bytes())) == value
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        assert await storage.load("session:1") == value

        stats = await storage.get_stats()
        assert stats.total_keys == 1
        assert stats.metrics["compressed_keys"] == 1

    @pytest.mark.asyncio
    async def test_shrinking_record_replaces_gzip_file(self, tmp_path: Path) -> None:
        storage = FileStorageAdapter(tmp_path / "store", compression_threshold=1024)
        await storage.initialize()
        await storage.save("k", {"blob": "y" * 5000})
        await storage.save("k", {"blob": "small"})

        assert os.listdir(tmp_path / "store") == ["k.json"]
        assert await storage.load("k") == {"blob": "small"}

        await storage.save("k", {"blob": "z" * 5000})
        assert os.listdir(tmp_path / "store") == ["k.json.gz"]
        assert await storage.delete("k") is True
        assert os.listdir(tmp_path / "store") == []
        assert not await storage.exists("k")

    @pytest.mark.asyncio
    async def test_threshold_from_factory_options(self, tmp_path: Path) -> None:
        storage = await create_storage(
            "file", location=str(tmp_path / "store"), compression_threshold=10,
        )
        await storage.save("k", {"text": "more than ten bytes"})

        assert os.listdir(tmp_path / "store") == ["k.json.gz"]


class TestFactory:
    @pytest.mark.asyncio
    async def test_unknown_kind(self) -> None:
        with pytest.raises(ValueError):
            await create_storage("redis")

    @pytest.mark.asyncio
    async def test_migrate_memory_to_file(self, tmp_path: Path) -> None:
        source = await create_storage("memory")
        await source.save("session:1", {"v": 1})
        await source.save("session:2", {"v": 2})
        await source.save("other", {"v": 3})
        target = await create_storage("file", location=str(tmp_path / "dst"))

        copied = await migrate(source, target, prefix="session:")

        assert copied == 2
        assert await target.list_keys() == ["session:1", "session:2"]
        assert await target.load("session:2") == {"v": 2}
