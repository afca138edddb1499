from __future__ import annotations

import logging
import unittest
from decimal import Decimal
from unittest.mock import AsyncMock

from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_PROGRAM_ID, WRAPPED_SOL_MINT

from cosigner.errors import ConfigurationError, PriceUnavailableError, ValidationError
from cosigner.operations import (
    FeeClaimOperation,
    FeeRecipient,
    LiquidityDepositOperation,
    LiquidityWithdrawOperation,
    MintInfo,
    ResourceConfig,
)
from cosigner.operations.liquidity import CLEANUP_SOL_RESERVE_LAMPORTS
from cosigner.operations.sdk import DepositQuote, FeeClaimQuote, PoolSnapshot, WithdrawQuote

MANAGER = Keypair().pubkey()
CUSTODY = Keypair().pubkey()
POOL = Keypair().pubkey()
PROGRAM = Keypair().pubkey()
TOKEN_MINT = MintInfo(address=Keypair().pubkey(), decimals=6, token_program=TOKEN_PROGRAM_ID)
USDC_MINT = MintInfo(address=Keypair().pubkey(), decimals=6, token_program=TOKEN_PROGRAM_ID)
SOL_MINT = MintInfo(address=WRAPPED_SOL_MINT, decimals=9, token_program=TOKEN_PROGRAM_ID)


def _program_instruction(tag: int) -> Instruction:
    return Instruction(PROGRAM, bytes([tag]), [AccountMeta(pubkey=CUSTODY, is_signer=True, is_writable=True)])


def _config(*recipients: tuple[str, str], operations: frozenset[str] | None = None) -> ResourceConfig:
    return ResourceConfig(
        resource_key=str(POOL).lower(),
        resource_address=str(POOL),
        custody_index=10,
        custody_address=str(CUSTODY),
        manager_address=str(MANAGER),
        operations=operations or frozenset({"fee_claim", "liquidity_withdraw", "liquidity_deposit"}),
        fee_recipients=tuple(FeeRecipient(address=address, percent=Decimal(percent)) for address, percent in recipients),
    )


def _pool(mint_a: MintInfo = TOKEN_MINT, mint_b: MintInfo = USDC_MINT, price: str = "0.5") -> PoolSnapshot:
    return PoolSnapshot(mint_a=mint_a, mint_b=mint_b, pool_price=Decimal(price), position="position-1")


class FeeClaimOperationTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.sdk = AsyncMock()
        self.operation = FeeClaimOperation(sdk=self.sdk, logger=logging.getLogger("test.fee_claim"))
        self.alice = str(Keypair().pubkey())
        self.bob = str(Keypair().pubkey())

    async def test_fees_are_split_into_a_single_bundle(self) -> None:
        self.sdk.fee_claim_quote.return_value = FeeClaimQuote(
            pool=_pool(TOKEN_MINT, SOL_MINT),
            fee_a=1_000_000,
            fee_b=0,
            instructions=[_program_instruction(1)],
        )

        plan = await self.operation.plan(_config((self.alice, "70"), (self.bob, "30")), None)

        self.assertEqual(len(plan.bundles), 1)
        # custody ATA, claim, then ATA + transfer_checked per recipient for token A only
        self.assertEqual(len(plan.bundles[0]), 6)
        shares = plan.metadata["distribution"]["tokenA"]["shares"]
        self.assertEqual([share["amount"] for share in shares], ["700000", "300000"])
        self.assertEqual(plan.metadata["distribution"]["tokenB"]["total"], "0")

    async def test_native_fee_uses_system_transfer(self) -> None:
        self.sdk.fee_claim_quote.return_value = FeeClaimQuote(
            pool=_pool(TOKEN_MINT, SOL_MINT),
            fee_a=0,
            fee_b=10_000,
            instructions=[_program_instruction(1)],
        )

        plan = await self.operation.plan(_config((self.alice, "100")), None)

        self.assertEqual(len(plan.bundles[0]), 2)
        self.assertEqual(plan.bundles[0][-1].program_id, Pubkey.from_string("11111111111111111111111111111111"))

    async def test_no_fees_is_a_validation_error(self) -> None:
        self.sdk.fee_claim_quote.return_value = FeeClaimQuote(
            pool=_pool(),
            fee_a=0,
            fee_b=0,
            instructions=[_program_instruction(1)],
        )

        with self.assertRaises(ValidationError):
            await self.operation.plan(_config((self.alice, "100")), None)

    async def test_bad_percentages_fail_before_the_sdk_is_called(self) -> None:
        with self.assertRaises(ConfigurationError):
            await self.operation.plan(_config((self.alice, "60"), (self.bob, "30")), None)
        self.sdk.fee_claim_quote.assert_not_awaited()

    def test_parse_request_requires_a_pool_address(self) -> None:
        with self.assertRaises(ValidationError):
            self.operation.parse_request({})
        self.assertEqual(self.operation.parse_request({"poolAddress": str(POOL)}), (str(POOL), None))


class LiquidityWithdrawOperationTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.sdk = AsyncMock()
        self.prices = AsyncMock()
        self.operation = LiquidityWithdrawOperation(
            sdk=self.sdk,
            prices=self.prices,
            logger=logging.getLogger("test.withdraw"),
        )
        self.sdk.withdraw_quote.return_value = WithdrawQuote(
            pool=_pool(price="0.4"),
            amount_a=100_000_000,
            amount_b=40_000_000,
            chunks=[[_program_instruction(2)]],
        )
        self.sdk.deposit_instructions.return_value = DepositQuote(
            chunks=[[_program_instruction(3)]],
            liquidity_delta=500,
        )

    async def test_balanced_pair_goes_to_manager_and_leftover_is_redeposited(self) -> None:
        self.prices.price_b_per_a.return_value = Decimal("0.5")

        plan = await self.operation.plan(_config(), Decimal("12.5"))

        self.sdk.withdraw_quote.assert_awaited_once_with(str(POOL), CUSTODY, 1250)
        self.sdk.deposit_instructions.assert_awaited_once_with(str(POOL), CUSTODY, 20_000_000, 0)
        self.assertEqual(len(plan.bundles), 3)
        self.assertEqual(plan.bundles[0][0].data, bytes([2]))
        self.assertEqual(plan.bundles[1][0].data, bytes([3]))
        self.assertEqual(plan.metadata["transferred"], {"tokenA": "80000000", "tokenB": "40000000"})
        self.assertEqual(plan.metadata["redeposited"], {"tokenA": "20000000", "tokenB": "0"})
        self.assertEqual(plan.metadata["priceSource"], "market")

    async def test_pool_price_is_used_when_market_price_is_unavailable(self) -> None:
        self.prices.price_b_per_a.side_effect = PriceUnavailableError("down")

        plan = await self.operation.plan(_config(), Decimal("10"))

        self.assertEqual(plan.metadata["priceSource"], "pool")
        self.assertEqual(plan.metadata["marketPrice"], "0.4")

    async def test_tiny_leftover_is_not_redeposited(self) -> None:
        self.prices.price_b_per_a.return_value = Decimal("0.4")

        plan = await self.operation.plan(_config(), Decimal("10"))

        self.sdk.deposit_instructions.assert_not_awaited()
        self.assertEqual(len(plan.bundles), 2)

    async def test_empty_position_is_rejected(self) -> None:
        self.sdk.withdraw_quote.return_value = WithdrawQuote(pool=_pool(), amount_a=0, amount_b=0, chunks=[])

        with self.assertRaises(ValidationError):
            await self.operation.plan(_config(), Decimal("10"))

    def test_percentage_bounds(self) -> None:
        for value in (0, -1, 50.01, 80, "abc", None):
            with self.assertRaises(ValidationError):
                self.operation.parse_request({"poolAddress": str(POOL), "withdrawalPercentage": value})
        _, percent = self.operation.parse_request({"poolAddress": str(POOL), "withdrawalPercentage": 50})
        self.assertEqual(percent, Decimal(50))


class LiquidityDepositOperationTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.sdk = AsyncMock()
        self.ledger = AsyncMock()
        self.operation = LiquidityDepositOperation(
            sdk=self.sdk,
            ledger=self.ledger,
            logger=logging.getLogger("test.deposit"),
            restricted_custody_addresses=frozenset(),
        )
        self.sdk.pool_snapshot.return_value = _pool(price="0.5")
        self.sdk.deposit_instructions.return_value = DepositQuote(
            chunks=[[_program_instruction(4)], [_program_instruction(5)]],
            liquidity_delta=1_000,
        )

    async def test_explicit_amounts_are_funded_then_deposited(self) -> None:
        _, params = self.operation.parse_request(
            {"poolAddress": str(POOL), "tokenAAmount": "12", "tokenBAmount": "5"}
        )

        plan = await self.operation.plan(_config(), params)

        self.sdk.deposit_instructions.assert_awaited_once_with(str(POOL), CUSTODY, 10_000_000, 5_000_000)
        self.assertEqual(len(plan.bundles), 2)
        # two funding transfers (ATA + transfer_checked each) ahead of the first chunk
        self.assertEqual(len(plan.bundles[0]), 5)
        self.assertEqual(plan.metadata["leftover"], {"tokenA": "2000000", "tokenB": "0"})
        self.assertFalse(plan.metadata["cleanupMode"])

    async def test_cleanup_uses_custody_balances_and_keeps_sol_reserve(self) -> None:
        self.sdk.pool_snapshot.return_value = _pool(TOKEN_MINT, SOL_MINT, price="0.5")
        self.ledger.get_token_balance.side_effect = [4_000_000, CLEANUP_SOL_RESERVE_LAMPORTS + 2_000_000_000]
        _, params = self.operation.parse_request({"poolAddress": str(POOL)})

        plan = await self.operation.plan(_config(), params)

        self.assertTrue(plan.metadata["cleanupMode"])
        self.assertEqual(plan.metadata["provided"], {"tokenA": "4000000", "tokenB": "2000000000"})
        self.sdk.deposit_instructions.assert_awaited_once_with(str(POOL), CUSTODY, 4_000_000, 2_000_000_000)
        # only the custody ATA for the SPL leg; no funding transfers in cleanup mode
        self.assertEqual(len(plan.bundles[0]), 2)

    async def test_cleanup_with_empty_custody_is_rejected(self) -> None:
        self.ledger.get_token_balance.side_effect = [0, 0]
        _, params = self.operation.parse_request({"poolAddress": str(POOL), "tokenAAmount": 0, "tokenBAmount": 0})

        with self.assertRaises(ValidationError):
            await self.operation.plan(_config(), params)

    async def test_cleanup_is_forbidden_for_restricted_custody(self) -> None:
        operation = LiquidityDepositOperation(
            sdk=self.sdk,
            ledger=self.ledger,
            logger=logging.getLogger("test.deposit"),
            restricted_custody_addresses=frozenset({str(CUSTODY)}),
        )
        _, params = operation.parse_request({"poolAddress": str(POOL)})

        with self.assertRaises(ConfigurationError):
            await operation.plan(_config(), params)
        self.ledger.get_token_balance.assert_not_awaited()

    async def test_dust_deposit_is_rejected(self) -> None:
        self.sdk.deposit_instructions.return_value = DepositQuote(chunks=[], liquidity_delta=0)
        _, params = self.operation.parse_request(
            {"poolAddress": str(POOL), "tokenAAmount": "0.000001", "tokenBAmount": "0"}
        )

        with self.assertRaises(ValidationError):
            await self.operation.plan(_config(), params)

    def test_one_missing_amount_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.operation.parse_request({"poolAddress": str(POOL), "tokenAAmount": "1"})
        with self.assertRaises(ValidationError):
            self.operation.parse_request({"poolAddress": str(POOL), "tokenAAmount": "-1", "tokenBAmount": "1"})


if __name__ == "__main__":
    unittest.main()
