from __future__ import annotations

import asyncio
import contextlib
from typing import AsyncIterator, Awaitable, Callable, Protocol

Release = Callable[[], Awaitable[None]]


class ResourceLockManager(Protocol):
    async def acquire(self, resource_key: str) -> Release:
        ...

    def hold(self, resource_key: str) -> contextlib.AbstractAsyncContextManager[None]:
        ...


class LockHoldMixin:
    async def acquire(self, resource_key: str) -> Release:
        raise NotImplementedError

    @contextlib.asynccontextmanager
    async def hold(self, resource_key: str) -> AsyncIterator[None]:
        release = await self.acquire(resource_key)
        try:
            yield
        finally:
            await release()


class InMemoryResourceLockManager(LockHoldMixin):
    """Per-key asyncio locks for a single process.

    Entries are reference counted so idle keys do not accumulate.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    def is_locked(self, resource_key: str) -> bool:
        lock = self._locks.get(resource_key)
        return lock is not None and lock.locked()

    def tracked_keys(self) -> int:
        return len(self._locks)

    def _drop_ref(self, resource_key: str) -> None:
        remaining = self._refs.get(resource_key, 0) - 1
        if remaining > 0:
            self._refs[resource_key] = remaining
            return
        self._refs.pop(resource_key, None)
        self._locks.pop(resource_key, None)

    async def acquire(self, resource_key: str) -> Release:
        lock = self._locks.get(resource_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[resource_key] = lock
        self._refs[resource_key] = self._refs.get(resource_key, 0) + 1

        try:
            await lock.acquire()
        except BaseException:
            self._drop_ref(resource_key)
            raise

        released = False

        async def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            lock.release()
            self._drop_ref(resource_key)

        return release
