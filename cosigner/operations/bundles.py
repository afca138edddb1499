from __future__ import annotations

import base64
import binascii
from typing import Sequence

from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID
from spl.token.instructions import TransferCheckedParams, transfer_checked

from .types import MintInfo

MEMO_PROGRAM_ID = Pubkey.from_string("MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr")
CREATE_IDEMPOTENT_DISCRIMINATOR = bytes([1])
MAX_TRANSACTION_SIZE = 1232


def encode_bundle(transaction: VersionedTransaction) -> str:
    return base64.b64encode(bytes(transaction)).decode("ascii")


def decode_bundle(encoded: str) -> VersionedTransaction:
    """Decode a base64 bundle; raises ValueError on malformed input."""
    if not isinstance(encoded, str) or not encoded.strip():
        raise ValueError("Bundle must be a non-empty base64 string.")
    try:
        raw = base64.b64decode(encoded.strip(), validate=True)
    except binascii.Error as error:
        raise ValueError(f"Bundle is not valid base64: {error}") from error
    try:
        return VersionedTransaction.from_bytes(raw)
    except Exception as error:
        raise ValueError(f"Bundle is not a valid transaction: {error}") from error


def signable_message(transaction: VersionedTransaction) -> bytes:
    return to_bytes_versioned(transaction.message)


def required_signers(transaction: VersionedTransaction) -> list[Pubkey]:
    message = transaction.message
    return list(message.account_keys[: message.header.num_required_signatures])


def is_required_signer(instructions: Sequence[Instruction], signer: Pubkey) -> bool:
    return any(meta.pubkey == signer and meta.is_signer for ix in instructions for meta in ix.accounts)


def signer_memo(signer: Pubkey, label: str) -> Instruction:
    return Instruction(
        MEMO_PROGRAM_ID,
        label.encode("utf-8"),
        [AccountMeta(pubkey=signer, is_signer=True, is_writable=False)],
    )


def compile_unsigned_bundle(
    instructions: Sequence[Instruction],
    *,
    fee_payer: Pubkey,
    custody: Pubkey,
    recent_blockhash: Hash,
    label: str,
) -> VersionedTransaction:
    """Compile instructions paid by ``fee_payer`` with ``custody`` as a co-required signer.

    Every signature slot is left as the default placeholder.
    """
    resolved = list(instructions)
    if not resolved:
        raise ValueError("Cannot compile an empty bundle.")
    if custody != fee_payer and not is_required_signer(resolved, custody):
        resolved.append(signer_memo(custody, label))

    message = MessageV0.try_compile(fee_payer, resolved, [], recent_blockhash)
    placeholders = [Signature.default()] * message.header.num_required_signatures
    transaction = VersionedTransaction.populate(message, placeholders)

    size = len(bytes(transaction))
    if size > MAX_TRANSACTION_SIZE:
        raise ValueError(f"Bundle '{label}' is oversized: size={size} bytes")
    return transaction


def add_signature(transaction: VersionedTransaction, signer: Keypair) -> VersionedTransaction:
    signers = required_signers(transaction)
    try:
        index = signers.index(signer.pubkey())
    except ValueError as error:
        raise ValueError(f"{signer.pubkey()} is not a required signer of this bundle.") from error

    signatures = list(transaction.signatures)
    signatures[index] = signer.sign_message(signable_message(transaction))
    return VersionedTransaction.populate(transaction.message, signatures)


def associated_token_address(owner: Pubkey, mint: MintInfo) -> Pubkey:
    address, _bump = Pubkey.find_program_address(
        [bytes(owner), bytes(mint.token_program), bytes(mint.address)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


def create_associated_token_account_idempotent(payer: Pubkey, owner: Pubkey, mint: MintInfo) -> Instruction:
    return Instruction(
        ASSOCIATED_TOKEN_PROGRAM_ID,
        CREATE_IDEMPOTENT_DISCRIMINATOR,
        [
            AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
            AccountMeta(pubkey=associated_token_address(owner, mint), is_signer=False, is_writable=True),
            AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
            AccountMeta(pubkey=mint.address, is_signer=False, is_writable=False),
            AccountMeta(pubkey=SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(pubkey=mint.token_program, is_signer=False, is_writable=False),
        ],
    )


def token_transfer_instructions(
    *,
    mint: MintInfo,
    source_owner: Pubkey,
    destination_owner: Pubkey,
    amount: int,
    payer: Pubkey,
) -> list[Instruction]:
    """Move ``amount`` base units; native SOL travels as lamports, SPL via checked transfer."""
    if amount <= 0:
        return []
    if mint.is_native:
        return [transfer(TransferParams(from_pubkey=source_owner, to_pubkey=destination_owner, lamports=amount))]

    return [
        create_associated_token_account_idempotent(payer, destination_owner, mint),
        transfer_checked(
            TransferCheckedParams(
                program_id=mint.token_program,
                source=associated_token_address(source_owner, mint),
                mint=mint.address,
                dest=associated_token_address(destination_owner, mint),
                owner=source_owner,
                amount=amount,
                decimals=mint.decimals,
            )
        ),
    ]
