from __future__ import annotations

from typing import Any


class OperationError(Exception):
    """Base class for failures reported to build/confirm callers."""

    kind = "operation"
    http_status = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ConfigurationError(OperationError):
    kind = "configuration"
    http_status = 500


class ValidationError(OperationError):
    kind = "validation"
    http_status = 400


class IntegrityError(OperationError):
    kind = "integrity"
    http_status = 400

    def __init__(self, message: str, *, bundle_index: int | None = None, **details: Any) -> None:
        if bundle_index is not None:
            details["bundle_index"] = bundle_index
        super().__init__(message, **details)
        self.bundle_index = bundle_index


class BundleModifiedError(IntegrityError):
    kind = "tamper"
    http_status = 409


class ExpiryError(OperationError):
    kind = "expiry"
    http_status = 410


class OperationNotFoundError(OperationError):
    kind = "not_found"
    http_status = 404


class PartialSequenceFailure(OperationError):
    kind = "partial_failure"
    http_status = 502

    def __init__(
        self,
        message: str,
        *,
        failed_index: int,
        applied_count: int,
        total_count: int,
        signatures: list[str],
        cause: str,
    ) -> None:
        super().__init__(
            message,
            failed_index=failed_index,
            applied_count=applied_count,
            total_count=total_count,
            signatures=list(signatures),
            cause=cause,
        )
        self.failed_index = failed_index
        self.applied_count = applied_count
        self.total_count = total_count
        self.signatures = list(signatures)
        self.cause = cause


class LedgerRejectedError(RuntimeError):
    """Broadcast was refused by the ledger (preflight/simulation failure)."""


class LedgerConfirmationError(RuntimeError):
    """Bundle landed but the ledger reports an execution error."""


class LedgerUnavailableError(RuntimeError):
    """RPC node could not be reached or answered with an error."""


class KeyCustodyError(RuntimeError):
    pass


class PriceUnavailableError(RuntimeError):
    pass


class PositionSdkError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status
