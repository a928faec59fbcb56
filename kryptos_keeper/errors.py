from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class KeeperStartupError(Exception):
    """Unrecoverable startup failure: bad key material, unreachable RPC, bad config."""


class SwapErrorKind(str, Enum):
    QUOTE_UNAVAILABLE = "quote_unavailable"
    QUOTE_EXPIRED = "quote_expired"
    SIGNING_FAILED = "signing_failed"
    SUBMIT_FAILED = "submit_failed"
    EXECUTION_FAILED = "execution_failed"
    TIMEOUT = "timeout"

    @property
    def retryable(self) -> bool:
        # Every swap failure leaves escrow untouched, so the next poll cycle may try again.
        return True

    @property
    def may_have_landed(self) -> bool:
        # Raised after the signed transaction was handed off; only the chain can say.
        return self in _IN_FLIGHT_SWAP

    def describe(self) -> str:
        return _SWAP_MESSAGES[self]


_IN_FLIGHT_SWAP = {SwapErrorKind.SUBMIT_FAILED, SwapErrorKind.EXECUTION_FAILED, SwapErrorKind.TIMEOUT}

_SWAP_MESSAGES = {
    SwapErrorKind.QUOTE_UNAVAILABLE: "No swap route available for this pair right now (insufficient liquidity).",
    SwapErrorKind.QUOTE_EXPIRED: "The price quote expired before it could be used. It will be refreshed.",
    SwapErrorKind.SIGNING_FAILED: "The swap transaction could not be signed.",
    SwapErrorKind.SUBMIT_FAILED: "The swap could not be submitted. Try again later.",
    SwapErrorKind.EXECUTION_FAILED: "The swap was rejected during execution (price moved or slippage exceeded).",
    SwapErrorKind.TIMEOUT: "The swap did not confirm in time. Try again later.",
}


class LedgerErrorKind(str, Enum):
    INVALID_STATE = "invalid_state"
    TIMING_NOT_YET_ALLOWED = "timing_not_yet_allowed"
    INSUFFICIENT_ESCROW = "insufficient_escrow"
    INVALID_AMOUNT = "invalid_amount"
    TRIGGER_CONDITION_NOT_MET = "trigger_condition_not_met"
    INTENT_EXPIRED = "intent_expired"
    UNAUTHORIZED = "unauthorized"
    RPC_ERROR = "rpc_error"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE_LEDGER

    def describe(self) -> str:
        return _LEDGER_MESSAGES[self]


_RETRYABLE_LEDGER = {
    LedgerErrorKind.TIMING_NOT_YET_ALLOWED,
    LedgerErrorKind.TRIGGER_CONDITION_NOT_MET,
    LedgerErrorKind.RPC_ERROR,
}

_LEDGER_MESSAGES = {
    LedgerErrorKind.INVALID_STATE: "The vault is no longer in a state that accepts executions.",
    LedgerErrorKind.TIMING_NOT_YET_ALLOWED: "The next execution is not allowed yet.",
    LedgerErrorKind.INSUFFICIENT_ESCROW: "The vault escrow does not hold enough funds for this execution.",
    LedgerErrorKind.INVALID_AMOUNT: "The execution amount is outside what the vault allows.",
    LedgerErrorKind.TRIGGER_CONDITION_NOT_MET: "The price condition is no longer met.",
    LedgerErrorKind.INTENT_EXPIRED: "The order has expired.",
    LedgerErrorKind.UNAUTHORIZED: "The keeper is not authorized for this vault.",
    LedgerErrorKind.RPC_ERROR: "The network could not be reached. Try again later.",
}


@dataclass(frozen=True)
class SwapError:
    kind: SwapErrorKind
    message: str = ""

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}" if self.message else self.kind.value


@dataclass(frozen=True)
class LedgerError:
    kind: LedgerErrorKind
    message: str = ""

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}" if self.message else self.kind.value
