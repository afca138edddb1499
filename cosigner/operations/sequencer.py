from __future__ import annotations

import logging
import time
from typing import Any, Callable, Mapping, Protocol, Sequence

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from cosigner.common import log_event
from cosigner.errors import (
    BundleModifiedError,
    ConfigurationError,
    ExpiryError,
    OperationNotFoundError,
    PartialSequenceFailure,
    ValidationError,
)
from cosigner.storage import PendingOperation, PendingOperationStore, ResourceLockManager, make_request_id

from .bundles import add_signature, compile_unsigned_bundle, encode_bundle
from .custody import KeyCustody
from .directory import ResourceDirectory
from .integrity import TransactionIntegrityVerifier, bundle_hash
from .ledger import Ledger
from .types import BuildResult, BundlePlan, ConfirmResult, ResourceConfig

DEFAULT_CONFIRM_WINDOW_SECONDS = 600.0


class AuditSink(Protocol):
    async def publish_event(
        self,
        *,
        level: str,
        event: str,
        message: str,
        details: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> None:
        ...


class OperationDefinition(Protocol):
    """Operation-specific half of a build/confirm flow."""

    operation_type: str

    def parse_request(self, payload: Mapping[str, Any]) -> tuple[str, Any]:
        ...

    async def plan(self, config: ResourceConfig, params: Any) -> BundlePlan:
        ...

    def finalize(self, operation: PendingOperation, signatures: Sequence[str]) -> dict[str, Any]:
        ...


def require_pubkey(value: Any, *, field: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"Missing required field: {field}", field=field)
    try:
        Pubkey.from_string(text)
    except ValueError as error:
        raise ValidationError(f"Invalid {field}: must be a valid public key", field=field) from error
    return text


class OperationSequencer:
    def __init__(
        self,
        *,
        definition: OperationDefinition,
        store: PendingOperationStore,
        locks: ResourceLockManager,
        directory: ResourceDirectory,
        custody: KeyCustody,
        ledger: Ledger,
        verifier: TransactionIntegrityVerifier,
        logger: logging.Logger,
        audit: AuditSink | None = None,
        confirm_window_seconds: float = DEFAULT_CONFIRM_WINDOW_SECONDS,
        confirm_timeout_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._definition = definition
        self._store = store
        self._locks = locks
        self._directory = directory
        self._custody = custody
        self._ledger = ledger
        self._verifier = verifier
        self._logger = logger
        self._audit = audit
        self._confirm_window_seconds = confirm_window_seconds
        self._confirm_timeout_seconds = confirm_timeout_seconds
        self._clock = clock

    @property
    def operation_type(self) -> str:
        return self._definition.operation_type

    async def _publish(self, *, level: str, event: str, message: str, request_id: str, **details: Any) -> None:
        if self._audit is None:
            return
        await self._audit.publish_event(
            level=level,
            event=event,
            message=message,
            details={"operation": self.operation_type, "request_id": request_id, **details},
            event_id=request_id,
        )

    async def build(self, payload: Mapping[str, Any]) -> BuildResult:
        resource_address, params = self._definition.parse_request(payload)
        config = await self._directory.resolve(resource_address, self.operation_type)

        plan = await self._definition.plan(config, params)
        if not plan.bundles:
            raise ValidationError("Nothing to execute for this request.")

        recent_blockhash = await self._ledger.get_latest_blockhash()
        transactions = [
            compile_unsigned_bundle(
                instructions,
                fee_payer=config.manager_pubkey,
                custody=config.custody_pubkey,
                recent_blockhash=recent_blockhash,
                label=f"{self.operation_type}:{index}",
            )
            for index, instructions in enumerate(plan.bundles)
        ]

        metadata = {"resourceAddress": config.resource_address, **plan.metadata}
        operation = PendingOperation(
            request_id=make_request_id(),
            operation_type=self.operation_type,
            resource_key=config.resource_key,
            unsigned_bundles=tuple(encode_bundle(transaction) for transaction in transactions),
            bundle_hashes=tuple(bundle_hash(transaction) for transaction in transactions),
            metadata=metadata,
            config_fingerprint=config.fingerprint,
            custody_address=config.custody_address,
            cosigner_address=config.manager_address,
            created_at=self._clock(),
        )
        await self._store.put(operation)

        log_event(
            self._logger,
            level="info",
            event="operation_built",
            message="Unsigned bundles built and awaiting co-signature",
            operation=self.operation_type,
            request_id=operation.request_id,
            resource_key=operation.resource_key,
            bundle_count=len(operation.unsigned_bundles),
        )
        await self._publish(
            level="INFO",
            event="operation_built",
            message="Unsigned bundles built",
            request_id=operation.request_id,
            resource_key=operation.resource_key,
            bundle_count=len(operation.unsigned_bundles),
        )
        return BuildResult(
            request_id=operation.request_id,
            operation_type=self.operation_type,
            resource_key=operation.resource_key,
            transactions=operation.unsigned_bundles,
            metadata=metadata,
        )

    async def _discard(self, operation: PendingOperation, *, reason: str) -> None:
        await self._store.delete(operation.request_id)
        log_event(
            self._logger,
            level="info",
            event="operation_discarded",
            message="Pending operation removed",
            operation=self.operation_type,
            request_id=operation.request_id,
            reason=reason,
        )

    async def _ensure_within_window(self, operation: PendingOperation) -> None:
        age = self._clock() - operation.created_at
        if age > self._confirm_window_seconds:
            await self._discard(operation, reason="expired")
            raise ExpiryError(
                "Request expired. Call build again.",
                request_id=operation.request_id,
                age_seconds=round(age, 3),
            )

    async def _load(self, request_id: str) -> PendingOperation:
        operation = await self._store.get(request_id)
        if operation.operation_type != self.operation_type:
            raise OperationNotFoundError(
                "Request not found or expired. Call build again.",
                request_id=request_id,
            )
        return operation

    async def _resolve_signer(self, operation: PendingOperation) -> tuple[ResourceConfig, Keypair]:
        try:
            config = await self._directory.resolve(operation.resource_key, self.operation_type)
        except ConfigurationError:
            await self._discard(operation, reason="resource_deauthorized")
            raise

        if config.fingerprint != operation.config_fingerprint:
            await self._discard(operation, reason="configuration_changed")
            raise ConfigurationError(
                "Resource configuration changed since build. Call build again.",
                request_id=operation.request_id,
            )

        signer = await self._custody.get_signer(config.custody_index)
        if signer.pubkey() != config.custody_pubkey:
            await self._discard(operation, reason="custody_mismatch")
            raise ConfigurationError(
                "Custody key does not match the configured custody address.",
                request_id=operation.request_id,
            )
        return config, signer

    async def confirm(self, request_id: Any, signed_bundles: Any) -> ConfirmResult:
        if not isinstance(request_id, str) or not request_id.strip():
            raise ValidationError("Missing required field: requestId", field="requestId")
        if (
            not isinstance(signed_bundles, list)
            or not signed_bundles
            or not all(isinstance(item, str) for item in signed_bundles)
        ):
            raise ValidationError(
                "signedTransactions must be a non-empty list of encoded bundles",
                field="signedTransactions",
            )
        request_id = request_id.strip()

        operation = await self._load(request_id)
        await self._ensure_within_window(operation)

        async with self._locks.hold(operation.lock_key):
            # a confirm queued ahead of us may have consumed or expired it
            operation = await self._load(request_id)
            await self._ensure_within_window(operation)

            config, signer = await self._resolve_signer(operation)
            try:
                transactions = await self._verifier.verify(
                    operation,
                    signed_bundles,
                    cosigner=config.manager_pubkey,
                )
            except BundleModifiedError as error:
                await self._discard(operation, reason="tamper")
                log_event(
                    self._logger,
                    level="critical",
                    event="bundle_tamper_detected",
                    message="Signed bundle does not match the built bundle",
                    operation=self.operation_type,
                    request_id=request_id,
                    resource_key=operation.resource_key,
                    bundle_index=error.bundle_index,
                )
                await self._publish(
                    level="CRITICAL",
                    event="bundle_tamper_detected",
                    message="Signed bundle does not match the built bundle",
                    request_id=request_id,
                    bundle_index=error.bundle_index,
                )
                raise
            except ExpiryError:
                await self._discard(operation, reason="blockhash_expired")
                raise

            return await self._submit(operation, transactions, signer)

    async def _submit(
        self,
        operation: PendingOperation,
        transactions: list[VersionedTransaction],
        signer: Keypair,
    ) -> ConfirmResult:
        signatures: list[str] = []
        unconfirmed: list[int] = []
        total = len(transactions)

        for index, transaction in enumerate(transactions):
            try:
                signed = add_signature(transaction, signer)
                signature = await self._ledger.broadcast(signed)
            except Exception as error:
                raise await self._partial_failure(operation, index=index, signatures=signatures, error=error) from error

            signatures.append(signature)
            log_event(
                self._logger,
                level="info",
                event="bundle_broadcast",
                message="Bundle broadcast",
                request_id=operation.request_id,
                bundle_index=index,
                bundle_count=total,
                signature=signature,
            )

            try:
                landed = await self._ledger.await_confirmation(
                    signature,
                    timeout_seconds=self._confirm_timeout_seconds,
                )
            except Exception as error:
                # bundle is already on the wire; the request must not stay confirmable
                raise await self._partial_failure(operation, index=index, signatures=signatures, error=error) from error

            if not landed:
                unconfirmed.append(index)
                log_event(
                    self._logger,
                    level="warning",
                    event="bundle_confirm_timeout",
                    message="Bundle confirmation timed out; continuing with the sequence",
                    request_id=operation.request_id,
                    bundle_index=index,
                    signature=signature,
                )

        await self._discard(operation, reason="confirmed")
        metadata = self._definition.finalize(operation, signatures)
        log_event(
            self._logger,
            level="info",
            event="operation_confirmed",
            message="All bundles submitted",
            operation=self.operation_type,
            request_id=operation.request_id,
            resource_key=operation.resource_key,
            signatures=signatures,
            unconfirmed_indexes=unconfirmed,
        )
        await self._publish(
            level="INFO",
            event="operation_confirmed",
            message="All bundles submitted",
            request_id=operation.request_id,
            signatures=signatures,
            unconfirmed_indexes=unconfirmed,
        )
        return ConfirmResult(
            request_id=operation.request_id,
            operation_type=self.operation_type,
            signatures=tuple(signatures),
            unconfirmed_indexes=tuple(unconfirmed),
            metadata=metadata,
        )

    async def _partial_failure(
        self,
        operation: PendingOperation,
        *,
        index: int,
        signatures: list[str],
        error: Exception,
    ) -> PartialSequenceFailure:
        await self._discard(operation, reason="partial_failure")
        applied = index
        log_event(
            self._logger,
            level="critical",
            event="partial_sequence_failure",
            message="Bundle sequence aborted after a hard failure",
            operation=self.operation_type,
            request_id=operation.request_id,
            resource_key=operation.resource_key,
            failed_index=index,
            applied_count=applied,
            total_count=len(operation.unsigned_bundles),
            signatures=signatures,
            error=str(error),
            error_type=type(error).__name__,
        )
        await self._publish(
            level="CRITICAL",
            event="partial_sequence_failure",
            message="Bundle sequence aborted after a hard failure",
            request_id=operation.request_id,
            failed_index=index,
            applied_count=applied,
            signatures=list(signatures),
            error=str(error),
        )
        return PartialSequenceFailure(
            f"Bundle {index} failed after {applied} of {len(operation.unsigned_bundles)} bundles were applied.",
            failed_index=index,
            applied_count=applied,
            total_count=len(operation.unsigned_bundles),
            signatures=signatures,
            cause=str(error),
        )
