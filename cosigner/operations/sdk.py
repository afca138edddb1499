from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

import aiohttp
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from cosigner.common import log_event
from cosigner.errors import PositionSdkError

from .types import MintInfo


@dataclass(slots=True, frozen=True)
class PoolSnapshot:
    mint_a: MintInfo
    mint_b: MintInfo
    pool_price: Decimal
    position: str


@dataclass(slots=True, frozen=True)
class FeeClaimQuote:
    pool: PoolSnapshot
    fee_a: int
    fee_b: int
    instructions: list[Instruction]


@dataclass(slots=True, frozen=True)
class WithdrawQuote:
    pool: PoolSnapshot
    amount_a: int
    amount_b: int
    chunks: list[list[Instruction]]


@dataclass(slots=True, frozen=True)
class DepositQuote:
    chunks: list[list[Instruction]]
    liquidity_delta: int


class PositionSdk(Protocol):
    async def pool_snapshot(self, resource_address: str, owner: Pubkey) -> PoolSnapshot:
        ...

    async def fee_claim_quote(self, resource_address: str, owner: Pubkey) -> FeeClaimQuote:
        ...

    async def withdraw_quote(self, resource_address: str, owner: Pubkey, withdrawal_bps: int) -> WithdrawQuote:
        ...

    async def deposit_instructions(
        self,
        resource_address: str,
        owner: Pubkey,
        amount_a: int,
        amount_b: int,
    ) -> DepositQuote:
        ...


def decode_instruction(raw: Any, *, section: str) -> Instruction:
    if not isinstance(raw, dict):
        raise PositionSdkError(f"Invalid instruction payload in {section}: {raw}")

    program_id = str(raw.get("programId") or "").strip()
    if not program_id:
        raise PositionSdkError(f"Instruction programId is missing in {section}")

    raw_accounts = raw.get("accounts")
    if not isinstance(raw_accounts, list):
        raise PositionSdkError(f"Instruction accounts are missing in {section}")

    metas: list[AccountMeta] = []
    for idx, account in enumerate(raw_accounts):
        if not isinstance(account, dict):
            raise PositionSdkError(f"Instruction account[{idx}] is invalid in {section}: {account}")
        pubkey = str(account.get("pubkey") or "").strip()
        if not pubkey:
            raise PositionSdkError(f"Instruction account[{idx}] pubkey is missing in {section}")
        metas.append(
            AccountMeta(
                pubkey=Pubkey.from_string(pubkey),
                is_signer=bool(account.get("isSigner")),
                is_writable=bool(account.get("isWritable")),
            )
        )

    try:
        data = base64.b64decode(str(raw.get("data") or ""), validate=True)
    except binascii.Error as error:
        raise PositionSdkError(f"Instruction data decode failed in {section}: {error}") from error

    return Instruction(Pubkey.from_string(program_id), data, metas)


def decode_instruction_list(raw: Any, *, section: str) -> list[Instruction]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise PositionSdkError(f"Instruction list is invalid in {section}: {raw}")
    return [decode_instruction(item, section=f"{section}[{index}]") for index, item in enumerate(raw)]


def decode_chunks(raw: Any, *, section: str) -> list[list[Instruction]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise PositionSdkError(f"Chunk list is invalid in {section}: {raw}")
    chunks = [decode_instruction_list(item, section=f"{section}[{index}]") for index, item in enumerate(raw)]
    return [chunk for chunk in chunks if chunk]


def _decode_mint(raw: Any, *, section: str) -> MintInfo:
    if not isinstance(raw, dict):
        raise PositionSdkError(f"Mint payload is invalid in {section}: {raw}")
    try:
        return MintInfo(
            address=Pubkey.from_string(str(raw["address"])),
            decimals=int(raw["decimals"]),
            token_program=Pubkey.from_string(str(raw["tokenProgram"])),
        )
    except (KeyError, TypeError, ValueError) as error:
        raise PositionSdkError(f"Mint payload is incomplete in {section}: {error}") from error


def _decode_amount(raw: Any, *, field: str) -> int:
    try:
        value = int(str(raw))
    except (TypeError, ValueError) as error:
        raise PositionSdkError(f"{field} must be an integer amount: {raw}") from error
    if value < 0:
        raise PositionSdkError(f"{field} must not be negative: {raw}")
    return value


def _decode_pool(body: dict[str, Any]) -> PoolSnapshot:
    try:
        pool_price = Decimal(str(body.get("poolPrice")))
    except (InvalidOperation, ValueError) as error:
        raise PositionSdkError(f"poolPrice is invalid: {body.get('poolPrice')}") from error
    return PoolSnapshot(
        mint_a=_decode_mint(body.get("mintA"), section="mintA"),
        mint_b=_decode_mint(body.get("mintB"), section="mintB"),
        pool_price=pool_price,
        position=str(body.get("position") or ""),
    )


class HttpPositionSdk:
    """Client for the AMM sidecar that owns pool math and instruction building."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        base_url: str,
        pool_type: str,
        timeout_seconds: float = 20.0,
    ) -> None:
        self._logger = logger
        self._base_url = base_url.rstrip("/")
        self._pool_type = pool_type
        self._timeout_seconds = timeout_seconds
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("AMM SDK HTTP session is not initialized.")

        url = f"{self._base_url}/{self._pool_type}/{path}"
        try:
            async with self._session.post(url, json=payload) as response:
                body = await response.json(content_type=None)
                if response.status >= 400:
                    error = body.get("error") if isinstance(body, dict) else body
                    raise PositionSdkError(f"AMM SDK {path} failed: {error}", status=response.status)
        except (aiohttp.ClientError, ValueError) as error:
            raise PositionSdkError(f"AMM SDK {path} request failed: {error}") from error

        if not isinstance(body, dict):
            raise PositionSdkError(f"Invalid AMM SDK response for {path}: {body}")
        return body

    async def pool_snapshot(self, resource_address: str, owner: Pubkey) -> PoolSnapshot:
        body = await self._post("pool", {"pool": resource_address, "owner": str(owner)})
        return _decode_pool(body)

    async def fee_claim_quote(self, resource_address: str, owner: Pubkey) -> FeeClaimQuote:
        body = await self._post("fee-claim", {"pool": resource_address, "owner": str(owner)})
        quote = FeeClaimQuote(
            pool=_decode_pool(body),
            fee_a=_decode_amount(body.get("feeA"), field="feeA"),
            fee_b=_decode_amount(body.get("feeB"), field="feeB"),
            instructions=decode_instruction_list(body.get("instructions"), section="instructions"),
        )
        log_event(
            self._logger,
            level="info",
            event="sdk_fee_claim_quoted",
            message="AMM SDK returned fee claim quote",
            pool=resource_address,
            position=quote.pool.position,
            fee_a=quote.fee_a,
            fee_b=quote.fee_b,
        )
        return quote

    async def withdraw_quote(self, resource_address: str, owner: Pubkey, withdrawal_bps: int) -> WithdrawQuote:
        body = await self._post(
            "withdraw",
            {"pool": resource_address, "owner": str(owner), "bps": withdrawal_bps},
        )
        return WithdrawQuote(
            pool=_decode_pool(body),
            amount_a=_decode_amount(body.get("amountA"), field="amountA"),
            amount_b=_decode_amount(body.get("amountB"), field="amountB"),
            chunks=decode_chunks(body.get("chunks"), section="chunks"),
        )

    async def deposit_instructions(
        self,
        resource_address: str,
        owner: Pubkey,
        amount_a: int,
        amount_b: int,
    ) -> DepositQuote:
        body = await self._post(
            "deposit",
            {
                "pool": resource_address,
                "owner": str(owner),
                "amountA": str(amount_a),
                "amountB": str(amount_b),
            },
        )
        return DepositQuote(
            chunks=decode_chunks(body.get("chunks"), section="chunks"),
            liquidity_delta=_decode_amount(body.get("liquidityDelta", 0), field="liquidityDelta"),
        )
