from __future__ import annotations

import asyncio
import hashlib
import json
from datetime import datetime, timezone
from typing import Any

from google.cloud import firestore

from cosigner.common import guarded_call, log_event


class FirestoreAuditOps:
    """Append-only audit trail of build/confirm outcomes."""

    @staticmethod
    def _doc_id_from_text(value: str) -> str:
        normalized = value.strip().replace("/", "_")
        if not normalized:
            raise ValueError("Document id source must not be empty.")

        if len(normalized) <= 128:
            return normalized

        digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]
        return f"{normalized[:96]}-{digest}"

    @staticmethod
    def _hash_payload(payload: dict[str, Any]) -> str:
        encoded = json.dumps(
            payload,
            sort_keys=True,
            ensure_ascii=False,
            separators=(",", ":"),
            default=str,
        )
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:24]

    async def publish_event(
        self,
        *,
        level: str,
        event: str,
        message: str,
        details: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> None:
        if self._events_collection_ref is None:
            if self.settings.audit_events_enabled:
                log_event(
                    self._logger,
                    level="debug",
                    event="audit_publish_skipped",
                    message="Skipping audit event because Firestore client is not ready",
                    audit_event=event,
                )
            return

        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc),
            "server_timestamp": firestore.SERVER_TIMESTAMP,
            "level": level,
            "event": event,
            "message": message,
            "env": self.settings.service_env,
        }
        if details:
            payload["details"] = details

        async def write_event() -> None:
            if event_id:
                document_id = self._doc_id_from_text(f"{event}-{event_id}")
            else:
                document_id = self._doc_id_from_text(f"{event}-{self._hash_payload(payload)}")
            event_ref = self._events_collection_ref.document(document_id)
            await asyncio.to_thread(event_ref.set, payload, merge=True)

        await guarded_call(
            write_event,
            logger=self._logger,
            event="audit_publish_failed",
            message="Failed to publish audit event",
            level="error",
            audit_event=event,
        )
