from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

from cosigner.errors import OperationNotFoundError


def make_request_id() -> str:
    return secrets.token_hex(16)


@dataclass(slots=True, frozen=True)
class PendingOperation:
    request_id: str
    operation_type: str
    resource_key: str
    unsigned_bundles: tuple[str, ...]
    bundle_hashes: tuple[str, ...]
    metadata: dict[str, Any]
    config_fingerprint: str
    custody_address: str
    cosigner_address: str
    created_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if len(self.unsigned_bundles) != len(self.bundle_hashes):
            raise ValueError("unsigned_bundles and bundle_hashes must have the same length.")
        if not self.unsigned_bundles:
            raise ValueError("A pending operation must carry at least one bundle.")

    @property
    def lock_key(self) -> str:
        return f"{self.operation_type}:{self.resource_key}"

    def age_seconds(self, now: float | None = None) -> float:
        return (time.time() if now is None else now) - self.created_at

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["unsigned_bundles"] = list(self.unsigned_bundles)
        payload["bundle_hashes"] = list(self.bundle_hashes)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "PendingOperation":
        return cls(
            request_id=str(payload["request_id"]),
            operation_type=str(payload["operation_type"]),
            resource_key=str(payload["resource_key"]),
            unsigned_bundles=tuple(str(item) for item in payload["unsigned_bundles"]),
            bundle_hashes=tuple(str(item) for item in payload["bundle_hashes"]),
            metadata=dict(payload.get("metadata") or {}),
            config_fingerprint=str(payload.get("config_fingerprint", "")),
            custody_address=str(payload.get("custody_address", "")),
            cosigner_address=str(payload.get("cosigner_address", "")),
            created_at=float(payload["created_at"]),
        )


class PendingOperationStore(Protocol):
    async def put(self, operation: PendingOperation) -> None:
        ...

    async def get(self, request_id: str) -> PendingOperation:
        ...

    async def delete(self, request_id: str) -> None:
        ...

    async def sweep(self, max_age_seconds: float, *, now: float | None = None) -> int:
        ...


class InMemoryPendingOperationStore:
    def __init__(self) -> None:
        self._operations: dict[str, PendingOperation] = {}
        self._guard = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._operations)

    async def put(self, operation: PendingOperation) -> None:
        async with self._guard:
            if operation.request_id in self._operations:
                raise KeyError(f"Pending operation {operation.request_id} already exists.")
            self._operations[operation.request_id] = operation

    async def get(self, request_id: str) -> PendingOperation:
        operation = self._operations.get(request_id)
        if operation is None:
            raise OperationNotFoundError(
                "Request not found or expired. Call build again.",
                request_id=request_id,
            )
        return operation

    async def delete(self, request_id: str) -> None:
        async with self._guard:
            self._operations.pop(request_id, None)

    async def sweep(self, max_age_seconds: float, *, now: float | None = None) -> int:
        current = time.time() if now is None else now
        async with self._guard:
            expired = [
                request_id
                for request_id, operation in self._operations.items()
                if current - operation.created_at > max_age_seconds
            ]
            for request_id in expired:
                del self._operations[request_id]
        return len(expired)
