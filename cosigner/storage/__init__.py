from .gateway import StorageGateway
from .locks import InMemoryResourceLockManager, Release, ResourceLockManager
from .pending import (
    InMemoryPendingOperationStore,
    PendingOperation,
    PendingOperationStore,
    make_request_id,
)
from .redis_ops import RedisPendingOperationStore, RedisResourceLockManager
from .settings import StorageSettings

__all__ = [
    "InMemoryPendingOperationStore",
    "InMemoryResourceLockManager",
    "PendingOperation",
    "PendingOperationStore",
    "RedisPendingOperationStore",
    "RedisResourceLockManager",
    "Release",
    "ResourceLockManager",
    "StorageGateway",
    "StorageSettings",
    "make_request_id",
]
