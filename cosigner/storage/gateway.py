from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

from google.cloud import firestore
from redis import asyncio as redis
from redis.asyncio.client import Redis

from cosigner.common import log_event

from .firestore_ops import FirestoreAuditOps
from .locks import InMemoryResourceLockManager, ResourceLockManager
from .pending import InMemoryPendingOperationStore, PendingOperationStore
from .redis_ops import RedisPendingOperationStore, RedisResourceLockManager
from .settings import StorageSettings


class StorageGateway(FirestoreAuditOps):
    """Owns the pending-operation store, the lock manager and the audit sink."""

    def __init__(self, settings: StorageSettings, logger: logging.Logger) -> None:
        self.settings = settings
        self._logger = logger
        self._redis: Redis | None = None
        self._firestore: firestore.Client | None = None
        self._events_collection_ref: Any | None = None
        self.pending_store: PendingOperationStore = InMemoryPendingOperationStore()
        self.lock_manager: ResourceLockManager = InMemoryResourceLockManager()

    async def connect(self) -> None:
        if self.settings.backend == "redis":
            self._redis = redis.from_url(self.settings.redis_url, decode_responses=True)
            await self._redis.ping()
            self.pending_store = RedisPendingOperationStore(
                self._redis,
                prefix=self.settings.pending_prefix,
                ttl_seconds=self.settings.pending_ttl_seconds,
                logger=self._logger,
            )
            self.lock_manager = RedisResourceLockManager(
                self._redis,
                prefix=self.settings.lock_prefix,
                ttl_seconds=self.settings.lock_ttl_seconds,
                poll_interval_seconds=self.settings.lock_poll_interval_seconds,
                logger=self._logger,
            )
            log_event(
                self._logger,
                level="info",
                event="redis_connected",
                message="Connected to Redis",
            )

        if self.settings.audit_events_enabled:
            firebase_credentials = os.getenv("FIREBASE_CREDENTIALS")
            if firebase_credentials and not os.getenv("GOOGLE_APPLICATION_CREDENTIALS"):
                os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = firebase_credentials

            self._firestore = firestore.Client(project=self.settings.firestore_project_id)
            self._events_collection_ref = self._firestore.collection(self.settings.audit_collection)
            log_event(
                self._logger,
                level="info",
                event="firestore_connected",
                message="Connected to Firestore",
                collection=self.settings.audit_collection,
            )

        log_event(
            self._logger,
            level="info",
            event="storage_ready",
            message="Storage backends initialized",
            backend=self.settings.backend,
            audit_events_enabled=self.settings.audit_events_enabled,
        )

    async def healthcheck(self) -> None:
        if self._redis is not None:
            await self._redis.ping()
        if self._firestore is not None and self._events_collection_ref is not None:
            await asyncio.to_thread(lambda: list(self._events_collection_ref.limit(1).stream()))

    async def close(self) -> None:
        if self._redis is not None:
            close = getattr(self._redis, "aclose", None)
            if close:
                await close()
            else:
                await self._redis.close()
            self._redis = None

        if self._firestore is not None:
            await asyncio.to_thread(self._firestore.close)
            self._firestore = None
        self._events_collection_ref = None
