from __future__ import annotations

import hashlib
import logging
from typing import Protocol, Sequence

from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from cosigner.common import log_event
from cosigner.errors import BundleModifiedError, ExpiryError, IntegrityError, ValidationError
from cosigner.storage import PendingOperation

from .bundles import decode_bundle, signable_message


def bundle_hash(transaction: VersionedTransaction) -> str:
    """sha256 over the signable message, so added signatures leave it unchanged."""
    return hashlib.sha256(signable_message(transaction)).hexdigest()


class BlockhashOracle(Protocol):
    async def is_blockhash_valid(self, blockhash: Hash) -> bool:
        ...


class TransactionIntegrityVerifier:
    def __init__(self, *, ledger: BlockhashOracle, logger: logging.Logger) -> None:
        self._ledger = ledger
        self._logger = logger

    def check_bundle(
        self,
        *,
        index: int,
        encoded: str,
        expected_hash: str,
        cosigner: Pubkey,
    ) -> VersionedTransaction:
        try:
            transaction = decode_bundle(encoded)
        except ValueError as error:
            raise IntegrityError(
                f"Bundle {index} could not be deserialized.",
                bundle_index=index,
                reason=str(error),
            ) from error

        message = transaction.message
        account_keys = message.account_keys
        if message.header.num_required_signatures < 1 or not account_keys:
            raise IntegrityError(f"Bundle {index} has no fee payer.", bundle_index=index)
        if account_keys[0] != cosigner:
            raise IntegrityError(
                f"Bundle {index} fee payer does not match the co-signer.",
                bundle_index=index,
                fee_payer=str(account_keys[0]),
            )
        if len(transaction.signatures) != message.header.num_required_signatures:
            raise IntegrityError(f"Bundle {index} has a malformed signature list.", bundle_index=index)

        signature = transaction.signatures[0]
        if signature == Signature.default():
            raise IntegrityError(f"Bundle {index} is missing the co-signer signature.", bundle_index=index)
        if not signature.verify(cosigner, signable_message(transaction)):
            raise IntegrityError(f"Bundle {index} co-signer signature is invalid.", bundle_index=index)

        if bundle_hash(transaction) != expected_hash:
            raise BundleModifiedError(
                f"Bundle {index} was modified after it was built.",
                bundle_index=index,
            )
        return transaction

    async def verify(
        self,
        operation: PendingOperation,
        signed_bundles: Sequence[str],
        *,
        cosigner: Pubkey,
    ) -> list[VersionedTransaction]:
        """Run every check on every bundle; nothing may be broadcast unless this returns."""
        if len(signed_bundles) != len(operation.bundle_hashes):
            raise ValidationError(
                f"Expected {len(operation.bundle_hashes)} signed bundles, got {len(signed_bundles)}.",
                expected=len(operation.bundle_hashes),
                received=len(signed_bundles),
            )

        transactions = [
            self.check_bundle(index=index, encoded=encoded, expected_hash=expected, cosigner=cosigner)
            for index, (encoded, expected) in enumerate(zip(signed_bundles, operation.bundle_hashes))
        ]

        checked: dict[str, bool] = {}
        for index, transaction in enumerate(transactions):
            blockhash = transaction.message.recent_blockhash
            key = str(blockhash)
            if key not in checked:
                checked[key] = await self._ledger.is_blockhash_valid(blockhash)
            if not checked[key]:
                raise ExpiryError(
                    "Bundle blockhash has expired. Call build again.",
                    bundle_index=index,
                )

        log_event(
            self._logger,
            level="info",
            event="bundles_verified",
            message="Signed bundles passed integrity checks",
            request_id=operation.request_id,
            bundle_count=len(transactions),
            distinct_blockhashes=len(checked),
        )
        return transactions
