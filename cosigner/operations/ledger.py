from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from cosigner.common import log_event
from cosigner.errors import LedgerConfirmationError, LedgerRejectedError, LedgerUnavailableError

from .bundles import associated_token_address
from .types import MintInfo

# solders enums are unhashable, so membership is checked against a tuple
LANDED_STATUSES = (
    TransactionConfirmationStatus.Confirmed,
    TransactionConfirmationStatus.Finalized,
)
TRANSPORT_ERRORS = (RPCException, SolanaRpcException, httpx.HTTPError, OSError)


class Ledger(Protocol):
    async def get_latest_blockhash(self) -> Hash:
        ...

    async def is_blockhash_valid(self, blockhash: Hash) -> bool:
        ...

    async def broadcast(self, transaction: VersionedTransaction) -> str:
        ...

    async def await_confirmation(self, signature: str, *, timeout_seconds: float) -> bool:
        ...

    async def get_token_balance(self, owner: Pubkey, mint: MintInfo) -> int:
        ...


class SolanaLedgerClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc_url: str,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        self._logger = logger
        self._rpc_url = rpc_url
        self._poll_interval_seconds = max(0.1, poll_interval_seconds)
        self._client: AsyncClient | None = None

    async def connect(self) -> None:
        if not self._rpc_url:
            raise ValueError("RPC_URL is required.")
        if self._client is None:
            self._client = AsyncClient(self._rpc_url, commitment=Confirmed)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def healthcheck(self) -> None:
        await self.get_latest_blockhash()

    def _require_client(self) -> AsyncClient:
        if self._client is None:
            raise RuntimeError("Ledger client is not connected.")
        return self._client

    async def get_latest_blockhash(self) -> Hash:
        try:
            response = await self._require_client().get_latest_blockhash(Confirmed)
        except TRANSPORT_ERRORS as error:
            raise LedgerUnavailableError(f"Failed to fetch latest blockhash: {error}") from error
        return response.value.blockhash

    async def is_blockhash_valid(self, blockhash: Hash) -> bool:
        try:
            response = await self._require_client().is_blockhash_valid(blockhash, Confirmed)
        except TRANSPORT_ERRORS as error:
            raise LedgerUnavailableError(f"Failed to check blockhash validity: {error}") from error
        return bool(response.value)

    async def broadcast(self, transaction: VersionedTransaction) -> str:
        try:
            response = await self._require_client().send_raw_transaction(
                bytes(transaction),
                opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed),
            )
        except RPCException as error:
            raise LedgerRejectedError(f"Broadcast rejected: {error}") from error
        except (SolanaRpcException, httpx.HTTPError, OSError) as error:
            raise LedgerUnavailableError(f"Broadcast failed: {error}") from error
        return str(response.value)

    async def await_confirmation(self, signature: str, *, timeout_seconds: float) -> bool:
        """Poll until the signature lands; False on timeout, raises if it landed with an error.

        RPC failures while polling are retried until the deadline, so an unknown
        outcome reads as a timeout rather than an error.
        """
        client = self._require_client()
        parsed = Signature.from_string(signature)

        async def poll() -> None:
            while True:
                try:
                    response = await client.get_signature_statuses([parsed])
                except TRANSPORT_ERRORS as error:
                    log_event(
                        self._logger,
                        level="warning",
                        event="confirmation_poll_failed",
                        message="Signature status poll failed; retrying",
                        signature=signature,
                        error=str(error),
                        error_type=type(error).__name__,
                    )
                    await asyncio.sleep(self._poll_interval_seconds)
                    continue
                status = response.value[0] if response.value else None
                if status is not None:
                    if status.err is not None:
                        raise LedgerConfirmationError(f"Transaction {signature} failed on-chain: {status.err}")
                    if status.confirmation_status in LANDED_STATUSES:
                        return
                await asyncio.sleep(self._poll_interval_seconds)

        try:
            await asyncio.wait_for(poll(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def get_token_balance(self, owner: Pubkey, mint: MintInfo) -> int:
        client = self._require_client()
        if mint.is_native:
            response = await client.get_balance(owner, Confirmed)
            return int(response.value)

        token_account = associated_token_address(owner, mint)
        try:
            response = await client.get_token_account_balance(token_account, Confirmed)
        except RPCException as error:
            log_event(
                self._logger,
                level="info",
                event="token_account_missing",
                message="Token account not found; treating balance as zero",
                owner=str(owner),
                mint=str(mint.address),
                error=str(error),
            )
            return 0
        return int(response.value.amount)
