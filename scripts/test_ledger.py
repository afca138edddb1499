from __future__ import annotations

import logging
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
from solana.rpc.core import RPCException
from solders.hash import Hash
from solders.keypair import Keypair
from solders.transaction_status import TransactionConfirmationStatus

from cosigner.errors import LedgerConfirmationError, LedgerUnavailableError
from cosigner.operations import SolanaLedgerClient

SIGNATURE = str(Keypair().sign_message(b"bundle"))


def _statuses(*statuses: object) -> SimpleNamespace:
    return SimpleNamespace(value=list(statuses))


def _status(confirmation_status: object, err: object = None) -> SimpleNamespace:
    return SimpleNamespace(confirmation_status=confirmation_status, err=err)


class SolanaLedgerClientTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.ledger = SolanaLedgerClient(
            logger=logging.getLogger("test.ledger"),
            rpc_url="http://rpc.local",
            poll_interval_seconds=0.1,
        )
        self.client = AsyncMock()
        self.ledger._client = self.client

    async def test_confirmation_returns_once_the_signature_lands(self) -> None:
        self.client.get_signature_statuses.side_effect = [
            _statuses(None),
            _statuses(_status(TransactionConfirmationStatus.Processed)),
            _statuses(_status(TransactionConfirmationStatus.Confirmed)),
        ]

        landed = await self.ledger.await_confirmation(SIGNATURE, timeout_seconds=5.0)

        self.assertTrue(landed)
        self.assertEqual(self.client.get_signature_statuses.await_count, 3)

    async def test_on_chain_error_raises(self) -> None:
        self.client.get_signature_statuses.return_value = _statuses(
            _status(TransactionConfirmationStatus.Confirmed, err="InstructionError")
        )

        with self.assertRaises(LedgerConfirmationError):
            await self.ledger.await_confirmation(SIGNATURE, timeout_seconds=5.0)

    async def test_unseen_signature_times_out_softly(self) -> None:
        self.client.get_signature_statuses.return_value = _statuses(None)

        landed = await self.ledger.await_confirmation(SIGNATURE, timeout_seconds=0.35)

        self.assertFalse(landed)

    async def test_transport_errors_while_polling_are_retried(self) -> None:
        self.client.get_signature_statuses.side_effect = [
            httpx.ConnectError("connection reset"),
            ConnectionError("connection reset"),
            _statuses(_status(TransactionConfirmationStatus.Finalized)),
        ]

        landed = await self.ledger.await_confirmation(SIGNATURE, timeout_seconds=5.0)

        self.assertTrue(landed)

    async def test_persistent_transport_errors_become_a_timeout(self) -> None:
        self.client.get_signature_statuses.side_effect = ConnectionError("node down")

        landed = await self.ledger.await_confirmation(SIGNATURE, timeout_seconds=0.35)

        self.assertFalse(landed)

    async def test_blockhash_rpc_failures_are_ledger_unavailable(self) -> None:
        self.client.get_latest_blockhash.side_effect = httpx.ConnectError("refused")
        self.client.is_blockhash_valid.side_effect = RPCException("node is behind")

        with self.assertRaises(LedgerUnavailableError):
            await self.ledger.get_latest_blockhash()
        with self.assertRaises(LedgerUnavailableError):
            await self.ledger.is_blockhash_valid(Hash.default())


if __name__ == "__main__":
    unittest.main()
