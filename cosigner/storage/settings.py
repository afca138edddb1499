from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

from .helpers import to_bool, to_int

StorageBackend = Literal["memory", "redis"]


def normalize_backend(value: str | None) -> StorageBackend:
    backend = (value or "").strip().lower()
    if backend == "redis":
        return "redis"
    return "memory"


@dataclass(slots=True)
class StorageSettings:
    backend: StorageBackend
    redis_url: str
    pending_prefix: str
    lock_prefix: str
    lock_ttl_seconds: int
    lock_poll_interval_seconds: float
    pending_ttl_seconds: int
    firestore_project_id: str | None
    audit_collection: str
    audit_events_enabled: bool
    service_env: str

    @classmethod
    def from_env(cls) -> "StorageSettings":
        return cls(
            backend=normalize_backend(os.getenv("STORAGE_BACKEND")),
            redis_url=os.getenv("REDIS_URL", "redis://redis:6379/0"),
            pending_prefix=os.getenv("REDIS_PENDING_PREFIX", "cosigner:pending"),
            lock_prefix=os.getenv("REDIS_LOCK_PREFIX", "cosigner:lock"),
            lock_ttl_seconds=max(5, to_int(os.getenv("LOCK_TTL_SECONDS"), 30)),
            lock_poll_interval_seconds=max(
                0.05,
                to_int(os.getenv("LOCK_POLL_INTERVAL_MS"), 100) / 1000,
            ),
            # redis expiry is a backstop and must outlive the confirm window
            pending_ttl_seconds=max(
                60,
                to_int(os.getenv("PENDING_MAX_AGE_SECONDS"), 900),
                to_int(os.getenv("CONFIRM_WINDOW_SECONDS"), 600),
            ),
            firestore_project_id=os.getenv("FIRESTORE_PROJECT_ID") or None,
            audit_collection=(os.getenv("FIRESTORE_AUDIT_COLLECTION", "cosigner_events").strip("/")
                              or "cosigner_events"),
            audit_events_enabled=to_bool(os.getenv("AUDIT_EVENTS_ENABLED"), False),
            service_env=os.getenv("SERVICE_ENV", "dev"),
        )
