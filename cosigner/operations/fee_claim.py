from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from cosigner.common import log_event
from cosigner.errors import ValidationError
from cosigner.storage import PendingOperation

from .bundles import create_associated_token_account_idempotent, token_transfer_instructions
from .fees import distribute_fees, validate_recipients
from .sdk import PositionSdk
from .sequencer import require_pubkey
from .types import BundlePlan, ResourceConfig


class FeeClaimOperation:
    """Claim accrued position fees and split them across the configured recipients in one bundle."""

    operation_type = "fee_claim"

    def __init__(self, *, sdk: PositionSdk, logger: logging.Logger) -> None:
        self._sdk = sdk
        self._logger = logger

    def parse_request(self, payload: Mapping[str, Any]) -> tuple[str, None]:
        resource = require_pubkey(payload.get("poolAddress") or payload.get("resourceKey"), field="poolAddress")
        return resource, None

    async def plan(self, config: ResourceConfig, params: None) -> BundlePlan:
        recipients = validate_recipients(config.fee_recipients)
        custody = config.custody_pubkey
        payer = config.manager_pubkey

        # only the first position is claimed
        quote = await self._sdk.fee_claim_quote(config.resource_address, custody)
        if quote.fee_a == 0 and quote.fee_b == 0:
            raise ValidationError("No fees available to claim.")

        split_a = distribute_fees(quote.fee_a, recipients)
        split_b = distribute_fees(quote.fee_b, recipients)
        mint_a, mint_b = quote.pool.mint_a, quote.pool.mint_b

        instructions: list[Instruction] = []
        for mint, amount in ((mint_a, quote.fee_a), (mint_b, quote.fee_b)):
            if amount > 0 and not mint.is_native:
                instructions.append(create_associated_token_account_idempotent(payer, custody, mint))
        instructions.extend(quote.instructions)

        for share_a, share_b in zip(split_a.shares, split_b.shares):
            destination = Pubkey.from_string(share_a.recipient.address)
            if destination == custody:
                continue
            instructions.extend(
                token_transfer_instructions(
                    mint=mint_a,
                    source_owner=custody,
                    destination_owner=destination,
                    amount=share_a.amount,
                    payer=payer,
                )
            )
            instructions.extend(
                token_transfer_instructions(
                    mint=mint_b,
                    source_owner=custody,
                    destination_owner=destination,
                    amount=share_b.amount,
                    payer=payer,
                )
            )

        log_event(
            self._logger,
            level="info",
            event="fee_claim_planned",
            message="Fee claim distribution computed",
            resource_key=config.resource_key,
            fee_a=quote.fee_a,
            fee_b=quote.fee_b,
            dust_a=split_a.dust,
            dust_b=split_b.dust,
            recipients=len(recipients),
        )
        return BundlePlan(
            bundles=[instructions],
            metadata={
                "position": quote.pool.position,
                "tokenAMint": str(mint_a.address),
                "tokenBMint": str(mint_b.address),
                "custodyAddress": config.custody_address,
                "feePayerAddress": config.manager_address,
                "estimatedFees": {"tokenA": str(quote.fee_a), "tokenB": str(quote.fee_b)},
                "distribution": {"tokenA": split_a.to_dict(), "tokenB": split_b.to_dict()},
            },
        )

    def finalize(self, operation: PendingOperation, signatures: Sequence[str]) -> dict[str, Any]:
        return {**operation.metadata, "transactionCount": len(signatures)}
