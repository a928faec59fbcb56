"""Anchor account layouts, instruction encoding and address derivation for the vault program."""

from __future__ import annotations

import hashlib
import re
import struct

import base58
from solders.pubkey import Pubkey

from kryptos_keeper.errors import LedgerErrorKind
from kryptos_keeper.models import (
    DcaVaultState,
    ExecutionStyle,
    IntentStatus,
    IntentType,
    IntentVaultState,
    TriggerType,
)

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")

DCA_VAULT_SEED = b"dca_vault"
INPUT_VAULT_SEED = b"input_vault"
OUTPUT_VAULT_SEED = b"output_vault"
INTENT_VAULT_SEED = b"intent_vault"

# Borsh, little-endian, no padding. Enums are a single variant byte.
DCA_VAULT_FORMAT = "<32s32s32s32s32sQQHBBBBQQIqq?qBBB"
INTENT_VAULT_FORMAT = "<32sQB32s32s32sQBQQBBBqqqqBQQBB"


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:8]


def instruction_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


DCA_VAULT_DISCRIMINATOR = account_discriminator("DcaVault")
INTENT_VAULT_DISCRIMINATOR = account_discriminator("IntentVault")
EXECUTE_DCA_DISCRIMINATOR = instruction_discriminator("execute_dca")
EXECUTE_INTENT_DISCRIMINATOR = instruction_discriminator("execute_intent")


def discriminator_b58(disc: bytes) -> str:
    return base58.b58encode(disc).decode()


def _key(raw: bytes) -> str:
    return str(Pubkey.from_bytes(raw))


def decode_dca_vault(data: bytes) -> DcaVaultState:
    if data[:8] != DCA_VAULT_DISCRIMINATOR:
        raise ValueError("not a DcaVault account")
    (
        authority,
        input_mint,
        output_mint,
        input_vault,
        output_vault,
        total_amount,
        amount_per_trade,
        variance_bps,
        min_executions,
        max_executions,
        window_start_hour,
        window_end_hour,
        total_spent,
        total_received,
        execution_count,
        last_execution,
        next_execution,
        is_active,
        created_at,
        _bump,
        _input_bump,
        _output_bump,
    ) = struct.unpack_from(DCA_VAULT_FORMAT, data, 8)
    return DcaVaultState(
        authority=_key(authority),
        input_token=_key(input_mint),
        output_token=_key(output_mint),
        input_escrow=_key(input_vault),
        output_escrow=_key(output_vault),
        total_amount=total_amount,
        amount_per_trade=amount_per_trade,
        variance_bps=variance_bps,
        min_executions=min_executions,
        max_executions=max_executions,
        window_start_hour=window_start_hour,
        window_end_hour=window_end_hour,
        total_spent=total_spent,
        total_received=total_received,
        execution_count=execution_count,
        last_execution=last_execution,
        next_execution=next_execution,
        is_active=is_active,
        created_at=created_at,
    )


def decode_intent_vault(data: bytes) -> IntentVaultState:
    if data[:8] != INTENT_VAULT_DISCRIMINATOR:
        raise ValueError("not an IntentVault account")
    (
        authority,
        nonce,
        intent_type,
        input_mint,
        output_mint,
        input_vault,
        amount,
        trigger_type,
        trigger_price,
        trigger_price_max,
        execution_style,
        num_chunks,
        chunks_executed,
        expires_at,
        triggered_at,
        executed_at,
        created_at,
        status,
        total_spent,
        total_received,
        _bump,
        _vault_bump,
    ) = struct.unpack_from(INTENT_VAULT_FORMAT, data, 8)
    return IntentVaultState(
        authority=_key(authority),
        nonce=nonce,
        intent_type=IntentType(intent_type),
        input_token=_key(input_mint),
        output_token=_key(output_mint),
        input_escrow=_key(input_vault),
        amount=amount,
        trigger_type=TriggerType(trigger_type),
        trigger_price=trigger_price,
        trigger_price_max=trigger_price_max,
        execution_style=ExecutionStyle(execution_style),
        num_chunks=num_chunks,
        chunks_executed=chunks_executed,
        expires_at=expires_at,
        triggered_at=triggered_at,
        executed_at=executed_at,
        created_at=created_at,
        status=IntentStatus(status),
        total_spent=total_spent,
        total_received=total_received,
    )


def encode_execute_dca(swap_amount: int, received_amount: int) -> bytes:
    return EXECUTE_DCA_DISCRIMINATOR + struct.pack("<QQ", swap_amount, received_amount)


def encode_execute_intent(current_price: int, swap_amount: int, received_amount: int) -> bytes:
    return EXECUTE_INTENT_DISCRIMINATOR + struct.pack(
        "<QQQ", current_price, swap_amount, received_amount
    )


def dca_vault_address(program_id: Pubkey, authority: Pubkey, input_mint: Pubkey, output_mint: Pubkey) -> Pubkey:
    return Pubkey.find_program_address(
        [DCA_VAULT_SEED, bytes(authority), bytes(input_mint), bytes(output_mint)], program_id
    )[0]


def escrow_addresses(program_id: Pubkey, dca_vault: Pubkey) -> tuple[Pubkey, Pubkey]:
    inp = Pubkey.find_program_address([INPUT_VAULT_SEED, bytes(dca_vault)], program_id)[0]
    out = Pubkey.find_program_address([OUTPUT_VAULT_SEED, bytes(dca_vault)], program_id)[0]
    return inp, out


def intent_vault_address(program_id: Pubkey, authority: Pubkey, input_mint: Pubkey, nonce: int) -> Pubkey:
    return Pubkey.find_program_address(
        [INTENT_VAULT_SEED, bytes(authority), bytes(input_mint), struct.pack("<Q", nonce)],
        program_id,
    )[0]


def associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    return Pubkey.find_program_address(
        [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)], ASSOCIATED_TOKEN_PROGRAM_ID
    )[0]


# Anchor custom errors are numbered 6000 + position in the program's error enum.
PROGRAM_ERRORS: dict[int, tuple[str, LedgerErrorKind]] = {
    6000: ("Unauthorized", LedgerErrorKind.UNAUTHORIZED),
    6001: ("InvalidAmount", LedgerErrorKind.INVALID_AMOUNT),
    6002: ("InsufficientFunds", LedgerErrorKind.INSUFFICIENT_ESCROW),
    6003: ("MathOverflow", LedgerErrorKind.INVALID_AMOUNT),
    6004: ("DcaNotActive", LedgerErrorKind.INVALID_STATE),
    6005: ("DcaCompleted", LedgerErrorKind.INVALID_STATE),
    6006: ("DcaExecutionNotAllowed", LedgerErrorKind.TIMING_NOT_YET_ALLOWED),
    6011: ("IntentExpired", LedgerErrorKind.INTENT_EXPIRED),
    6012: ("IntentNotMonitoring", LedgerErrorKind.INVALID_STATE),
    6013: ("TriggerConditionNotMet", LedgerErrorKind.TRIGGER_CONDITION_NOT_MET),
    6014: ("IntentAlreadyExecuted", LedgerErrorKind.INVALID_STATE),
    6015: ("IntentAlreadyCancelled", LedgerErrorKind.INVALID_STATE),
    6024: ("TokenAccountMismatch", LedgerErrorKind.INVALID_STATE),
    6025: ("InvalidKeeper", LedgerErrorKind.UNAUTHORIZED),
}
_BY_NAME = {name: kind for name, kind in PROGRAM_ERRORS.values()}

_HEX_CODE = re.compile(r"custom program error: 0x([0-9a-fA-F]+)")
_DEC_CODE = re.compile(r"Custom\W+(\d+)")
_NAME = re.compile(r"Error Code: (\w+)")


def classify_program_error(text: str) -> LedgerErrorKind:
    """Map an RPC/simulation error message to a ledger error kind.

    Unknown program errors are treated as INVALID_STATE; anything that does not look
    like a program error at all is an RPC_ERROR.
    """
    m = _NAME.search(text)
    if m and m.group(1) in _BY_NAME:
        return _BY_NAME[m.group(1)]
    code = None
    m = _HEX_CODE.search(text)
    if m:
        code = int(m.group(1), 16)
    else:
        m = _DEC_CODE.search(text)
        if m:
            code = int(m.group(1))
    if code is None:
        return LedgerErrorKind.RPC_ERROR
    if code in PROGRAM_ERRORS:
        return PROGRAM_ERRORS[code][1]
    return LedgerErrorKind.INVALID_STATE
