from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Mapping, Sequence

from solders.instruction import Instruction

from cosigner.common import log_event
from cosigner.errors import ConfigurationError, PriceUnavailableError, ValidationError
from cosigner.storage import PendingOperation

from .bundles import create_associated_token_account_idempotent, token_transfer_instructions
from .fees import to_decimal
from .ledger import Ledger
from .pricing import PriceSource
from .rebalance import rebalance
from .sdk import PoolSnapshot, PositionSdk
from .sequencer import require_pubkey
from .types import BundlePlan, ResourceConfig

MAX_WITHDRAWAL_PERCENT = Decimal(50)
# leftovers at or below this share of the withdrawn leg are not worth a redeposit
REDEPOSIT_SIGNIFICANCE = Decimal("0.001")
CLEANUP_SOL_RESERVE_LAMPORTS = 333_000_000


class LiquidityWithdrawOperation:
    """Withdraw a share of the position, send a price-balanced pair to the manager, redeposit the rest."""

    operation_type = "liquidity_withdraw"

    def __init__(self, *, sdk: PositionSdk, prices: PriceSource, logger: logging.Logger) -> None:
        self._sdk = sdk
        self._prices = prices
        self._logger = logger

    def parse_request(self, payload: Mapping[str, Any]) -> tuple[str, Decimal]:
        resource = require_pubkey(payload.get("poolAddress") or payload.get("resourceKey"), field="poolAddress")
        percent = to_decimal(payload.get("withdrawalPercentage"), field="withdrawalPercentage")
        if percent <= 0 or percent > MAX_WITHDRAWAL_PERCENT:
            raise ValidationError("withdrawalPercentage must be a number between 0 and 50.")
        return resource, percent

    async def _market_price(self, pool: PoolSnapshot) -> tuple[Decimal, str]:
        try:
            return await self._prices.price_b_per_a(str(pool.mint_a.address), str(pool.mint_b.address)), "market"
        except PriceUnavailableError as error:
            log_event(
                self._logger,
                level="warning",
                event="market_price_fallback",
                message="Market price unavailable; using pool price",
                mint_a=str(pool.mint_a.address),
                mint_b=str(pool.mint_b.address),
                error=str(error),
            )
        if pool.pool_price <= 0:
            raise ValidationError("No usable price for this pool.")
        return pool.pool_price, "pool"

    async def plan(self, config: ResourceConfig, params: Decimal) -> BundlePlan:
        custody = config.custody_pubkey
        manager = config.manager_pubkey
        withdrawal_bps = int((params * 100).to_integral_value(rounding=ROUND_FLOOR))
        if withdrawal_bps <= 0:
            raise ValidationError("withdrawalPercentage is below the minimum of 0.01.")

        quote = await self._sdk.withdraw_quote(config.resource_address, custody, withdrawal_bps)
        if quote.amount_a == 0 and quote.amount_b == 0:
            raise ValidationError("No liquidity in position.")
        if not quote.chunks:
            raise ValidationError("Position returned no removal instructions.")

        pool = quote.pool
        price, price_source = await self._market_price(pool)
        withdrawn_a = pool.mint_a.to_decimal(quote.amount_a)
        withdrawn_b = pool.mint_b.to_decimal(quote.amount_b)
        result = rebalance(
            withdrawn_a,
            withdrawn_b,
            price,
            dust_a=withdrawn_a * REDEPOSIT_SIGNIFICANCE,
            dust_b=withdrawn_b * REDEPOSIT_SIGNIFICANCE,
        )

        transfer_a = pool.mint_a.to_raw(result.balanced_a)
        transfer_b = pool.mint_b.to_raw(result.balanced_b)
        redeposit_a = pool.mint_a.to_raw(result.leftover_a)
        redeposit_b = pool.mint_b.to_raw(result.leftover_b)

        bundles: list[list[Instruction]] = [list(chunk) for chunk in quote.chunks]
        if redeposit_a > 0 or redeposit_b > 0:
            deposit = await self._sdk.deposit_instructions(
                config.resource_address,
                custody,
                redeposit_a,
                redeposit_b,
            )
            bundles.extend(list(chunk) for chunk in deposit.chunks)

        if not config.is_same_wallet:
            transfer: list[Instruction] = []
            for mint, amount in ((pool.mint_a, transfer_a), (pool.mint_b, transfer_b)):
                transfer.extend(
                    token_transfer_instructions(
                        mint=mint,
                        source_owner=custody,
                        destination_owner=manager,
                        amount=amount,
                        payer=manager,
                    )
                )
            if transfer:
                bundles.append(transfer)

        log_event(
            self._logger,
            level="info",
            event="withdraw_planned",
            message="Withdrawal rebalanced",
            resource_key=config.resource_key,
            price=str(price),
            price_source=price_source,
            removal_chunks=len(quote.chunks),
            bundle_count=len(bundles),
        )
        return BundlePlan(
            bundles=bundles,
            metadata={
                "position": pool.position,
                "tokenAMint": str(pool.mint_a.address),
                "tokenBMint": str(pool.mint_b.address),
                "tokenADecimals": pool.mint_a.decimals,
                "tokenBDecimals": pool.mint_b.decimals,
                "withdrawalPercentage": str(params),
                "marketPrice": str(price),
                "priceSource": price_source,
                "destinationAddress": config.manager_address,
                "withdrawn": {"tokenA": str(quote.amount_a), "tokenB": str(quote.amount_b)},
                "transferred": (
                    {"tokenA": "0", "tokenB": "0"}
                    if config.is_same_wallet
                    else {"tokenA": str(transfer_a), "tokenB": str(transfer_b)}
                ),
                "redeposited": {"tokenA": str(redeposit_a), "tokenB": str(redeposit_b)},
            },
        )

    def finalize(self, operation: PendingOperation, signatures: Sequence[str]) -> dict[str, Any]:
        return dict(operation.metadata)


@dataclass(slots=True, frozen=True)
class DepositParams:
    amount_a: Decimal
    amount_b: Decimal
    cleanup: bool


class LiquidityDepositOperation:
    """Fund the custody wallet from the manager and deposit the price-balanced part of it."""

    operation_type = "liquidity_deposit"

    def __init__(
        self,
        *,
        sdk: PositionSdk,
        ledger: Ledger,
        logger: logging.Logger,
        restricted_custody_addresses: frozenset[str] = frozenset(),
    ) -> None:
        self._sdk = sdk
        self._ledger = ledger
        self._logger = logger
        self._restricted = restricted_custody_addresses

    def parse_request(self, payload: Mapping[str, Any]) -> tuple[str, DepositParams]:
        resource = require_pubkey(payload.get("poolAddress") or payload.get("resourceKey"), field="poolAddress")
        raw_a = payload.get("tokenAAmount")
        raw_b = payload.get("tokenBAmount")
        if raw_a is None and raw_b is None:
            return resource, DepositParams(Decimal(0), Decimal(0), cleanup=True)
        if raw_a is None or raw_b is None:
            raise ValidationError(
                "Missing required fields: tokenAAmount and tokenBAmount (or omit both for cleanup mode)."
            )

        amount_a = to_decimal(raw_a, field="tokenAAmount")
        amount_b = to_decimal(raw_b, field="tokenBAmount")
        if amount_a < 0 or amount_b < 0:
            raise ValidationError("Token amounts must be non-negative.")
        cleanup = amount_a == 0 and amount_b == 0
        return resource, DepositParams(amount_a, amount_b, cleanup=cleanup)

    async def _cleanup_balances(self, config: ResourceConfig, pool: PoolSnapshot) -> tuple[int, int]:
        if config.custody_address in self._restricted:
            raise ConfigurationError("Deposits from custody balances are not permitted for this custody address.")

        custody = config.custody_pubkey
        balances = []
        for mint in (pool.mint_a, pool.mint_b):
            balance = await self._ledger.get_token_balance(custody, mint)
            if mint.is_native:
                balance = max(0, balance - CLEANUP_SOL_RESERVE_LAMPORTS)
            balances.append(balance)
        if balances[0] == 0 and balances[1] == 0:
            raise ValidationError("No tokens available in custody wallet for cleanup deposit.")
        return balances[0], balances[1]

    async def plan(self, config: ResourceConfig, params: DepositParams) -> BundlePlan:
        custody = config.custody_pubkey
        manager = config.manager_pubkey
        pool = await self._sdk.pool_snapshot(config.resource_address, custody)

        if params.cleanup:
            raw_a, raw_b = await self._cleanup_balances(config, pool)
        else:
            raw_a = pool.mint_a.to_raw(params.amount_a)
            raw_b = pool.mint_b.to_raw(params.amount_b)

        result = rebalance(pool.mint_a.to_decimal(raw_a), pool.mint_b.to_decimal(raw_b), pool.pool_price)
        deposit_a = pool.mint_a.to_raw(result.balanced_a)
        deposit_b = pool.mint_b.to_raw(result.balanced_b)

        deposit = await self._sdk.deposit_instructions(config.resource_address, custody, deposit_a, deposit_b)
        if deposit.liquidity_delta <= 0 or not deposit.chunks:
            raise ValidationError("Deposit amount too small.")

        setup: list[Instruction] = []
        fund = not params.cleanup and not config.is_same_wallet
        for mint, amount in ((pool.mint_a, raw_a), (pool.mint_b, raw_b)):
            if fund and amount > 0:
                setup.extend(
                    token_transfer_instructions(
                        mint=mint,
                        source_owner=manager,
                        destination_owner=custody,
                        amount=amount,
                        payer=manager,
                    )
                )
            elif not mint.is_native:
                setup.append(create_associated_token_account_idempotent(manager, custody, mint))

        bundles = [list(chunk) for chunk in deposit.chunks]
        bundles[0] = setup + bundles[0]

        log_event(
            self._logger,
            level="info",
            event="deposit_planned",
            message="Deposit rebalanced",
            resource_key=config.resource_key,
            cleanup=params.cleanup,
            pool_price=str(pool.pool_price),
            bundle_count=len(bundles),
        )
        return BundlePlan(
            bundles=bundles,
            metadata={
                "position": pool.position,
                "tokenAMint": str(pool.mint_a.address),
                "tokenBMint": str(pool.mint_b.address),
                "cleanupMode": params.cleanup,
                "poolPrice": str(pool.pool_price),
                "liquidityDelta": str(deposit.liquidity_delta),
                "provided": {"tokenA": str(raw_a), "tokenB": str(raw_b)},
                "deposited": {"tokenA": str(deposit_a), "tokenB": str(deposit_b)},
                "leftover": {
                    "tokenA": str(pool.mint_a.to_raw(result.leftover_a)),
                    "tokenB": str(pool.mint_b.to_raw(result.leftover_b)),
                },
            },
        )

    def finalize(self, operation: PendingOperation, signatures: Sequence[str]) -> dict[str, Any]:
        return dict(operation.metadata)
