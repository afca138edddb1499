from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from decimal import ROUND_FLOOR, Decimal
from typing import Any

from solders.instruction import Instruction
from solders.pubkey import Pubkey
from spl.token.constants import WRAPPED_SOL_MINT

from .fees import FeeRecipient


@dataclass(slots=True, frozen=True)
class MintInfo:
    address: Pubkey
    decimals: int
    token_program: Pubkey

    @property
    def is_native(self) -> bool:
        return self.address == WRAPPED_SOL_MINT

    def to_decimal(self, raw_amount: int) -> Decimal:
        return Decimal(raw_amount).scaleb(-self.decimals)

    def to_raw(self, amount: Decimal) -> int:
        # floor: never move more than the decimal amount quoted
        return int(amount.scaleb(self.decimals).to_integral_value(rounding=ROUND_FLOOR))


@dataclass(slots=True, frozen=True)
class ResourceConfig:
    """Authorization snapshot for one resource, resolved identically at build and confirm."""

    resource_key: str
    resource_address: str
    custody_index: int
    custody_address: str
    manager_address: str
    operations: frozenset[str]
    fee_recipients: tuple[FeeRecipient, ...] = ()

    @property
    def custody_pubkey(self) -> Pubkey:
        return Pubkey.from_string(self.custody_address)

    @property
    def manager_pubkey(self) -> Pubkey:
        return Pubkey.from_string(self.manager_address)

    @property
    def is_same_wallet(self) -> bool:
        return self.custody_address == self.manager_address

    @property
    def fingerprint(self) -> str:
        payload = {
            "resource_key": self.resource_key,
            "resource_address": self.resource_address,
            "custody_index": self.custody_index,
            "custody_address": self.custody_address,
            "manager_address": self.manager_address,
            "operations": sorted(self.operations),
            "fee_recipients": [recipient.to_dict() for recipient in self.fee_recipients],
        }
        encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class BundlePlan:
    """Ordered instruction groups; each group becomes one bundle."""

    bundles: list[list[Instruction]]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class BuildResult:
    request_id: str
    operation_type: str
    resource_key: str
    transactions: tuple[str, ...]
    metadata: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "operation": self.operation_type,
            "resourceKey": self.resource_key,
            "transactions": list(self.transactions),
            "transactionCount": len(self.transactions),
            "metadata": self.metadata,
        }


@dataclass(slots=True, frozen=True)
class ConfirmResult:
    request_id: str
    operation_type: str
    signatures: tuple[str, ...]
    unconfirmed_indexes: tuple[int, ...]
    metadata: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        return {
            "requestId": payload["request_id"],
            "operation": payload["operation_type"],
            "signatures": list(self.signatures),
            "unconfirmedIndexes": list(self.unconfirmed_indexes),
            "metadata": payload["metadata"],
        }
