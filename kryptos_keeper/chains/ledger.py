from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol

from kryptos_keeper.models import DcaVaultState, IntentVaultState, SettlementOutcome, SwapFill

# Called with the transaction signature after signing and before it is sent.
OnSigned = Callable[[str], None]


class LookupStatus(str, Enum):
    LANDED = "landed"
    FAILED = "failed"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class SwapLookup:
    status: LookupStatus
    fill: SwapFill | None = None


class Ledger(Protocol):
    """What the keeper needs from the vault program and the chain it lives on."""

    async def health(self) -> int: ...

    async def keeper_balance(self) -> int: ...

    async def fetch_all_dca_vaults(self) -> list[tuple[str, DcaVaultState]]: ...

    async def fetch_all_intent_vaults(self) -> list[tuple[str, IntentVaultState]]: ...

    async def fetch_dca_vault(self, address: str) -> DcaVaultState | None: ...

    async def fetch_intent_vault(self, address: str) -> IntentVaultState | None: ...

    async def settle_dca(
        self, address: str, swap_amount: int, received_amount: int, on_signed: OnSigned | None = None
    ) -> SettlementOutcome: ...

    async def settle_intent(
        self,
        address: str,
        price: int,
        swap_amount: int,
        received_amount: int,
        on_signed: OnSigned | None = None,
    ) -> SettlementOutcome: ...

    async def ensure_token_account(self, mint: str) -> None: ...

    async def lookup_swap(self, signature: str, input_token: str, output_token: str) -> SwapLookup: ...

    async def lookup_signature(self, signature: str) -> LookupStatus: ...
