from __future__ import annotations

import asyncio
import itertools
import random
import time
from dataclasses import dataclass, field, replace
from typing import Callable

from solders.pubkey import Pubkey

from kryptos_keeper.chains import layout
from kryptos_keeper.chains.ledger import LookupStatus, OnSigned, SwapLookup
from kryptos_keeper.errors import LedgerError, LedgerErrorKind
from kryptos_keeper.execution.eligibility import trigger_condition_met
from kryptos_keeper.execution.randomization import plan_next_execution
from kryptos_keeper.models import (
    DcaVaultState,
    ExecutionStyle,
    IntentStatus,
    IntentVaultState,
    SettlementOutcome,
    SwapFill,
    TriggerType,
)

MAX_VARIANCE_BPS = 5000
FIRST_EXECUTION_DELAY_SEC = 3600


def _reject(kind: LedgerErrorKind, message: str = "") -> SettlementOutcome:
    return SettlementOutcome(error=LedgerError(kind, message))


@dataclass
class _Escrow:
    input_balance: int = 0
    output_balance: int = 0


@dataclass
class SimulatedLedger:
    """In-process model of the vault program.

    Applies the same validation the on-chain program applies on settlement, withdrawal
    and close, and keeps escrow balances so the counters can be checked against them.
    Each operation runs without yielding between its checks and its writes, which is
    what instruction atomicity gives the real ledger.
    """

    clock: Callable[[], int] = lambda: int(time.time())
    rng: random.Random = field(default_factory=random.Random)
    program_id: Pubkey = field(default_factory=Pubkey.new_unique)
    keeper_lamports: int = 1_000_000_000
    dca_vaults: dict[str, DcaVaultState] = field(default_factory=dict)
    intent_vaults: dict[str, IntentVaultState] = field(default_factory=dict)
    escrows: dict[str, _Escrow] = field(default_factory=dict)
    # signature -> realized fill; None when the swap landed but its amounts are unknown
    landed_swaps: dict[str, SwapFill | None] = field(default_factory=dict)
    failed_swaps: set[str] = field(default_factory=set)
    settlements: list[tuple[str, int, int]] = field(default_factory=list)
    settled_signatures: set[str] = field(default_factory=set)
    _slot: itertools.count = field(default_factory=lambda: itertools.count(1))
    _sig: itertools.count = field(default_factory=lambda: itertools.count(1))

    def _signature(self) -> str:
        return f"simsig{next(self._sig)}"

    def _sign(self, on_signed: OnSigned | None) -> str:
        signature = self._signature()
        if on_signed is not None:
            on_signed(signature)
        return signature

    def _applied(
        self, signature: str, address: str, swap_amount: int, received_amount: int
    ) -> SettlementOutcome:
        self.settlements.append((address, swap_amount, received_amount))
        self.settled_signatures.add(signature)
        return SettlementOutcome(signature=signature)

    # --- owner operations ------------------------------------------------

    def initialize_dca(
        self,
        authority: str,
        input_token: str,
        output_token: str,
        total_amount: int,
        amount_per_trade: int,
        variance_bps: int = 2000,
        min_executions: int = 5,
        max_executions: int = 10,
        window_start_hour: int = 0,
        window_end_hour: int = 23,
    ) -> str:
        if total_amount <= 0 or amount_per_trade <= 0:
            raise ValueError("amounts must be positive")
        if variance_bps > MAX_VARIANCE_BPS:
            raise ValueError("variance_bps above 5000")
        if not (0 < min_executions <= max_executions):
            raise ValueError("invalid execution range")
        if not (window_start_hour < 24 and window_end_hour < 24):
            raise ValueError("invalid time window")
        vault = layout.dca_vault_address(
            self.program_id,
            Pubkey.from_string(authority),
            Pubkey.from_string(input_token),
            Pubkey.from_string(output_token),
        )
        address = str(vault)
        if address in self.dca_vaults:
            raise ValueError("vault already exists")
        input_escrow, output_escrow = layout.escrow_addresses(self.program_id, vault)
        now = self.clock()
        self.dca_vaults[address] = DcaVaultState(
            authority=authority,
            input_token=input_token,
            output_token=output_token,
            input_escrow=str(input_escrow),
            output_escrow=str(output_escrow),
            total_amount=total_amount,
            amount_per_trade=amount_per_trade,
            variance_bps=variance_bps,
            min_executions=min_executions,
            max_executions=max_executions,
            window_start_hour=window_start_hour,
            window_end_hour=window_end_hour,
            next_execution=now + FIRST_EXECUTION_DELAY_SEC,
            created_at=now,
        )
        self.escrows[address] = _Escrow(input_balance=total_amount)
        return address

    def create_intent(
        self,
        authority: str,
        input_token: str,
        output_token: str,
        amount: int,
        trigger_type: TriggerType,
        trigger_price: int,
        expiry_seconds: int,
        nonce: int,
        trigger_price_max: int = 0,
        execution_style: ExecutionStyle = ExecutionStyle.IMMEDIATE,
        num_chunks: int = 1,
    ) -> str:
        if amount <= 0:
            raise ValueError("amount must be positive")
        if trigger_price <= 0:
            raise ValueError("trigger price must be positive")
        if expiry_seconds <= 0:
            raise ValueError("expiry must be in the future")
        if trigger_type == TriggerType.PRICE_RANGE and trigger_price_max <= trigger_price:
            raise ValueError("price range max must exceed min")
        address = str(
            layout.intent_vault_address(
                self.program_id, Pubkey.from_string(authority), Pubkey.from_string(input_token), nonce
            )
        )
        if address in self.intent_vaults:
            raise ValueError("intent already exists")
        now = self.clock()
        self.intent_vaults[address] = IntentVaultState(
            authority=authority,
            nonce=nonce,
            input_token=input_token,
            output_token=output_token,
            input_escrow=str(Pubkey.new_unique()),
            amount=amount,
            trigger_type=trigger_type,
            trigger_price=trigger_price,
            trigger_price_max=trigger_price_max,
            execution_style=execution_style,
            num_chunks=max(1, num_chunks),
            expires_at=now + expiry_seconds,
            created_at=now,
        )
        self.escrows[address] = _Escrow(input_balance=amount)
        return address

    def withdraw_dca(self, address: str, authority: str) -> SettlementOutcome:
        vault = self.dca_vaults.get(address)
        if vault is None:
            return _reject(LedgerErrorKind.INVALID_STATE, "vault not found")
        if vault.authority != authority:
            return _reject(LedgerErrorKind.UNAUTHORIZED)
        escrow = self.escrows[address]
        escrow.input_balance = 0
        escrow.output_balance = 0
        self.dca_vaults[address] = replace(vault, is_active=False)
        return SettlementOutcome(signature=self._signature())

    def close_dca(self, address: str, authority: str) -> SettlementOutcome:
        vault = self.dca_vaults.get(address)
        if vault is None:
            return _reject(LedgerErrorKind.INVALID_STATE, "vault not found")
        if vault.authority != authority:
            return _reject(LedgerErrorKind.UNAUTHORIZED)
        escrow = self.escrows[address]
        if escrow.input_balance or escrow.output_balance:
            return _reject(LedgerErrorKind.INVALID_STATE, "escrow not empty")
        del self.dca_vaults[address]
        del self.escrows[address]
        return SettlementOutcome(signature=self._signature())

    def cancel_intent(self, address: str, authority: str) -> SettlementOutcome:
        vault = self.intent_vaults.get(address)
        if vault is None:
            return _reject(LedgerErrorKind.INVALID_STATE, "intent not found")
        if vault.authority != authority:
            return _reject(LedgerErrorKind.UNAUTHORIZED)
        if not vault.status.can_transition(IntentStatus.CANCELLED):
            return _reject(LedgerErrorKind.INVALID_STATE, f"cannot cancel from {vault.status.name}")
        self.escrows[address].input_balance = 0
        self.intent_vaults[address] = replace(vault, status=IntentStatus.CANCELLED)
        return SettlementOutcome(signature=self._signature())

    def expire_intent(self, address: str) -> SettlementOutcome:
        vault = self.intent_vaults.get(address)
        if vault is None:
            return _reject(LedgerErrorKind.INVALID_STATE, "intent not found")
        if self.clock() < vault.expires_at:
            return _reject(LedgerErrorKind.INVALID_STATE, "not expired yet")
        if not vault.status.can_transition(IntentStatus.EXPIRED):
            return _reject(LedgerErrorKind.INVALID_STATE, f"cannot expire from {vault.status.name}")
        self.intent_vaults[address] = replace(vault, status=IntentStatus.EXPIRED)
        return SettlementOutcome(signature=self._signature())

    def close_intent(self, address: str, authority: str) -> SettlementOutcome:
        vault = self.intent_vaults.get(address)
        if vault is None:
            return _reject(LedgerErrorKind.INVALID_STATE, "intent not found")
        if vault.authority != authority:
            return _reject(LedgerErrorKind.UNAUTHORIZED)
        if not vault.status.is_terminal or self.escrows[address].input_balance:
            return _reject(LedgerErrorKind.INVALID_STATE, "intent still holds funds")
        del self.intent_vaults[address]
        del self.escrows[address]
        return SettlementOutcome(signature=self._signature())

    # --- Ledger protocol -------------------------------------------------

    async def health(self) -> int:
        return next(self._slot)

    async def keeper_balance(self) -> int:
        return self.keeper_lamports

    async def fetch_all_dca_vaults(self) -> list[tuple[str, DcaVaultState]]:
        return list(self.dca_vaults.items())

    async def fetch_all_intent_vaults(self) -> list[tuple[str, IntentVaultState]]:
        return list(self.intent_vaults.items())

    async def fetch_dca_vault(self, address: str) -> DcaVaultState | None:
        return self.dca_vaults.get(address)

    async def fetch_intent_vault(self, address: str) -> IntentVaultState | None:
        return self.intent_vaults.get(address)

    async def settle_dca(
        self, address: str, swap_amount: int, received_amount: int, on_signed: OnSigned | None = None
    ) -> SettlementOutcome:
        signature = self._sign(on_signed)
        await asyncio.sleep(0)
        vault = self.dca_vaults.get(address)
        if vault is None or not vault.is_active or vault.total_spent >= vault.total_amount:
            return _reject(LedgerErrorKind.INVALID_STATE, "vault not active")
        now = self.clock()
        if now < vault.next_execution:
            return _reject(LedgerErrorKind.TIMING_NOT_YET_ALLOWED)
        if swap_amount <= 0 or swap_amount > vault.remaining or received_amount <= 0:
            return _reject(LedgerErrorKind.INVALID_AMOUNT)
        escrow = self.escrows[address]
        if escrow.input_balance < swap_amount:
            return _reject(LedgerErrorKind.INSUFFICIENT_ESCROW)

        escrow.input_balance -= swap_amount
        escrow.output_balance += received_amount
        total_spent = vault.total_spent + swap_amount
        self.dca_vaults[address] = replace(
            vault,
            total_spent=total_spent,
            total_received=vault.total_received + received_amount,
            execution_count=vault.execution_count + 1,
            last_execution=now,
            next_execution=plan_next_execution(
                now,
                vault.min_executions,
                vault.max_executions,
                vault.window_start_hour,
                vault.window_end_hour,
                self.rng,
            ),
            is_active=total_spent < vault.total_amount,
        )
        return self._applied(signature, address, swap_amount, received_amount)

    async def settle_intent(
        self,
        address: str,
        price: int,
        swap_amount: int,
        received_amount: int,
        on_signed: OnSigned | None = None,
    ) -> SettlementOutcome:
        signature = self._sign(on_signed)
        await asyncio.sleep(0)
        vault = self.intent_vaults.get(address)
        if vault is None:
            return _reject(LedgerErrorKind.INVALID_STATE, "intent not found")
        now = self.clock()
        if vault.status.is_terminal:
            return _reject(LedgerErrorKind.INVALID_STATE, f"intent is {vault.status.name}")
        if now >= vault.expires_at:
            return _reject(LedgerErrorKind.INTENT_EXPIRED)
        status = vault.status
        triggered_at = vault.triggered_at
        if status == IntentStatus.MONITORING:
            if not trigger_condition_met(
                vault.trigger_type, price, vault.trigger_price, vault.trigger_price_max
            ):
                return _reject(LedgerErrorKind.TRIGGER_CONDITION_NOT_MET)
            status, triggered_at = IntentStatus.TRIGGERED, now
        if swap_amount <= 0 or swap_amount > vault.remaining or received_amount <= 0:
            return _reject(LedgerErrorKind.INVALID_AMOUNT)
        escrow = self.escrows[address]
        if escrow.input_balance < swap_amount:
            return _reject(LedgerErrorKind.INSUFFICIENT_ESCROW)

        if status != IntentStatus.EXECUTING:
            status = IntentStatus.EXECUTING
        escrow.input_balance -= swap_amount
        chunks_executed = vault.chunks_executed + 1
        executed_at = vault.executed_at
        total_spent = vault.total_spent + swap_amount
        if chunks_executed >= vault.chunks_total:
            status = IntentStatus.EXECUTED
            executed_at = now
        self.intent_vaults[address] = replace(
            vault,
            status=status,
            triggered_at=triggered_at,
            executed_at=executed_at,
            chunks_executed=chunks_executed,
            total_spent=total_spent,
            total_received=vault.total_received + received_amount,
        )
        return self._applied(signature, address, swap_amount, received_amount)

    async def ensure_token_account(self, mint: str) -> None:
        return None

    async def lookup_swap(self, signature: str, input_token: str, output_token: str) -> SwapLookup:
        if signature in self.failed_swaps:
            return SwapLookup(LookupStatus.FAILED)
        if signature not in self.landed_swaps:
            return SwapLookup(LookupStatus.NOT_FOUND)
        return SwapLookup(LookupStatus.LANDED, self.landed_swaps[signature])

    async def lookup_signature(self, signature: str) -> LookupStatus:
        if signature in self.failed_swaps:
            return LookupStatus.FAILED
        if signature in self.landed_swaps or signature in self.settled_signatures:
            return LookupStatus.LANDED
        # Rejected settlements fail preflight and are never broadcast.
        return LookupStatus.NOT_FOUND
