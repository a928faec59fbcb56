from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from kryptos_keeper.errors import LedgerError, SwapError

PRICE_DECIMALS = 6
PRICE_SCALE = 10**PRICE_DECIMALS


class TriggerType(int, Enum):
    PRICE_ABOVE = 0
    PRICE_BELOW = 1
    PRICE_RANGE = 2


class ExecutionStyle(int, Enum):
    IMMEDIATE = 0
    STEALTH = 1
    TWAP = 2


class IntentType(int, Enum):
    BUY = 0
    SELL = 1
    SWAP = 2


class IntentStatus(int, Enum):
    MONITORING = 0
    TRIGGERED = 1
    EXECUTING = 2
    EXECUTED = 3
    EXPIRED = 4
    CANCELLED = 5

    @property
    def is_terminal(self) -> bool:
        return self in (IntentStatus.EXECUTED, IntentStatus.EXPIRED, IntentStatus.CANCELLED)

    def can_transition(self, to: IntentStatus) -> bool:
        return to in INTENT_TRANSITIONS[self]


INTENT_TRANSITIONS: dict[IntentStatus, frozenset[IntentStatus]] = {
    IntentStatus.MONITORING: frozenset(
        {IntentStatus.TRIGGERED, IntentStatus.EXPIRED, IntentStatus.CANCELLED}
    ),
    IntentStatus.TRIGGERED: frozenset({IntentStatus.EXECUTING, IntentStatus.CANCELLED}),
    # Chunked orders stay in EXECUTING between chunks.
    IntentStatus.EXECUTING: frozenset({IntentStatus.EXECUTING, IntentStatus.EXECUTED}),
    IntentStatus.EXECUTED: frozenset(),
    IntentStatus.EXPIRED: frozenset(),
    IntentStatus.CANCELLED: frozenset(),
}


@dataclass(frozen=True)
class DcaVaultState:
    authority: str
    input_token: str
    output_token: str
    input_escrow: str
    output_escrow: str
    total_amount: int
    amount_per_trade: int
    variance_bps: int
    min_executions: int
    max_executions: int
    window_start_hour: int
    window_end_hour: int
    total_spent: int = 0
    total_received: int = 0
    execution_count: int = 0
    last_execution: int = 0
    next_execution: int = 0
    is_active: bool = True
    created_at: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.total_amount - self.total_spent)


@dataclass(frozen=True)
class IntentVaultState:
    authority: str
    nonce: int
    input_token: str
    output_token: str
    input_escrow: str
    amount: int
    trigger_type: TriggerType
    trigger_price: int
    expires_at: int
    trigger_price_max: int = 0
    intent_type: IntentType = IntentType.SWAP
    execution_style: ExecutionStyle = ExecutionStyle.IMMEDIATE
    num_chunks: int = 1
    chunks_executed: int = 0
    status: IntentStatus = IntentStatus.MONITORING
    created_at: int = 0
    triggered_at: int = 0
    executed_at: int = 0
    total_spent: int = 0
    total_received: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.amount - self.total_spent)

    @property
    def chunks_total(self) -> int:
        # The ledger completes an order on its chunk count alone, whatever the style.
        return max(1, self.num_chunks)

    def next_chunk_amount(self) -> int:
        """Input amount for the next execution: the full remainder on the last chunk,
        an even split of the remainder over the chunks left otherwise."""
        chunks_left = max(1, self.chunks_total - self.chunks_executed)
        if chunks_left == 1:
            return self.remaining
        return min(self.remaining, max(1, self.remaining // chunks_left))


@dataclass(frozen=True)
class ExecutionQuote:
    input_token: str
    output_token: str
    input_amount: int
    expected_output_amount: int
    route_id: str
    valid_until: float
    transaction_payload: str


@dataclass(frozen=True)
class SwapFill:
    signature: str
    input_amount: int
    output_amount: int


@dataclass(frozen=True)
class SwapOutcome:
    fill: SwapFill | None = None
    error: SwapError | None = None
    quote: ExecutionQuote | None = None

    @property
    def ok(self) -> bool:
        return self.fill is not None


@dataclass(frozen=True)
class SettlementOutcome:
    signature: str | None = None
    error: LedgerError | None = None

    @property
    def ok(self) -> bool:
        return self.signature is not None
