from robustness.storage.base import StorageAdapter, StorageStats
from robustness.storage.factory import (
    create_storage,
    create_storage_from_config,
    migrate,
    new_storage,
)
from robustness.storage.file import FileStorageAdapter
from robustness.storage.memory import InMemoryStorageAdapter

__all__ = [
    "StorageAdapter",
    "StorageStats",
    "InMemoryStorageAdapter",
    "FileStorageAdapter",
    "create_storage",
    "create_storage_from_config",
    "migrate",
    "new_storage",
]
