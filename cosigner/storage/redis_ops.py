from __future__ import annotations

import asyncio
import json
import logging
import secrets
import time

from redis.asyncio.client import Redis

from cosigner.common import log_event
from cosigner.errors import OperationNotFoundError

from .helpers import dumps_compact
from .locks import LockHoldMixin, Release
from .pending import PendingOperation

RELEASE_LOCK_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('del', KEYS[1])
end
return 0
"""

REFRESH_LOCK_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""


class RedisPendingOperationStore:
    def __init__(
        self,
        redis_client: Redis,
        *,
        prefix: str,
        ttl_seconds: int,
        logger: logging.Logger,
    ) -> None:
        self._redis = redis_client
        self._prefix = prefix
        self._ttl_seconds = max(60, ttl_seconds)
        self._logger = logger

    def _key(self, request_id: str) -> str:
        return f"{self._prefix}:{request_id}"

    async def put(self, operation: PendingOperation) -> None:
        stored = await self._redis.set(
            self._key(operation.request_id),
            dumps_compact(operation.to_dict()),
            ex=self._ttl_seconds,
            nx=True,
        )
        if not stored:
            raise KeyError(f"Pending operation {operation.request_id} already exists.")

    async def get(self, request_id: str) -> PendingOperation:
        raw = await self._redis.get(self._key(request_id))
        if raw is None:
            raise OperationNotFoundError(
                "Request not found or expired. Call build again.",
                request_id=request_id,
            )
        return PendingOperation.from_dict(json.loads(raw))

    async def delete(self, request_id: str) -> None:
        await self._redis.delete(self._key(request_id))

    async def sweep(self, max_age_seconds: float, *, now: float | None = None) -> int:
        current = time.time() if now is None else now
        removed = 0
        async for key in self._redis.scan_iter(match=f"{self._prefix}:*", count=500):
            raw = await self._redis.get(key)
            if raw is None:
                continue
            try:
                created_at = float(json.loads(raw).get("created_at", 0))
            except (TypeError, ValueError, AttributeError) as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="pending_record_unreadable",
                    message="Dropping unreadable pending operation record",
                    key=key,
                    error=str(error),
                )
                created_at = 0.0
            if current - created_at > max_age_seconds:
                removed += int(await self._redis.delete(key))
        return removed


class RedisResourceLockManager(LockHoldMixin):
    """Token-guarded Redis lock shared by every instance pointing at the same Redis."""

    def __init__(
        self,
        redis_client: Redis,
        *,
        prefix: str,
        ttl_seconds: int,
        poll_interval_seconds: float,
        logger: logging.Logger,
    ) -> None:
        self._redis = redis_client
        self._prefix = prefix
        self._ttl_ms = max(1, ttl_seconds) * 1000
        self._poll_interval_seconds = poll_interval_seconds
        self._logger = logger

    def _key(self, resource_key: str) -> str:
        return f"{self._prefix}:{resource_key}"

    async def _keep_alive(self, lock_key: str, token: str) -> None:
        interval = max(0.5, self._ttl_ms / 3000)
        while True:
            await asyncio.sleep(interval)
            try:
                refreshed = await self._redis.eval(REFRESH_LOCK_SCRIPT, 1, lock_key, token, str(self._ttl_ms))
            except Exception as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="resource_lock_refresh_failed",
                    message="Failed to refresh resource lock; retrying next interval",
                    lock_key=lock_key,
                    error=str(error),
                    error_type=type(error).__name__,
                )
                continue
            if not refreshed:
                log_event(
                    self._logger,
                    level="error",
                    event="resource_lock_lost",
                    message="Resource lock expired while held",
                    lock_key=lock_key,
                )
                return

    async def acquire(self, resource_key: str) -> Release:
        lock_key = self._key(resource_key)
        token = secrets.token_hex(16)
        while not await self._redis.set(lock_key, token, px=self._ttl_ms, nx=True):
            await asyncio.sleep(self._poll_interval_seconds)

        keep_alive = asyncio.create_task(self._keep_alive(lock_key, token))
        released = False

        async def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            keep_alive.cancel()
            await asyncio.gather(keep_alive, return_exceptions=True)
            await self._redis.eval(RELEASE_LOCK_SCRIPT, 1, lock_key, token)

        return release
