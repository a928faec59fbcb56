"""Pure eligibility checks over ledger snapshots.

Nothing here performs I/O. Times are unix seconds (UTC), prices are 6-decimal
fixed-point integers.
"""

from __future__ import annotations

from enum import Enum

from kryptos_keeper.models import DcaVaultState, IntentStatus, IntentVaultState, TriggerType

SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 86_400


def hour_of_day(ts: int) -> int:
    return (int(ts) // SECONDS_PER_HOUR) % 24


def in_window(hour: int, start_hour: int, end_hour: int) -> bool:
    """Inclusive hour window; start > end wraps past midnight."""
    if start_hour <= end_hour:
        return start_hour <= hour <= end_hour
    return hour >= start_hour or hour <= end_hour


def is_dca_due(vault: DcaVaultState, now: int) -> bool:
    return (
        vault.is_active
        and vault.total_spent < vault.total_amount
        and now >= vault.next_execution
        and in_window(hour_of_day(now), vault.window_start_hour, vault.window_end_hour)
    )


def trigger_condition_met(
    trigger_type: TriggerType, price: int, trigger_price: int, trigger_price_max: int = 0
) -> bool:
    if trigger_type == TriggerType.PRICE_ABOVE:
        return price > trigger_price
    if trigger_type == TriggerType.PRICE_BELOW:
        return price < trigger_price
    if trigger_type == TriggerType.PRICE_RANGE:
        return trigger_price <= price <= trigger_price_max
    return False


class IntentAction(str, Enum):
    SKIP = "skip"  # terminal, nothing to do
    EXPIRE = "expire"  # deadline passed
    WAIT = "wait"  # monitoring, condition not met
    TRIGGER = "trigger"  # monitoring, condition met now
    RESUME = "resume"  # already triggered/executing, continue at the execution step


def effective_status(vault: IntentVaultState, advisory: IntentStatus | None = None) -> IntentStatus:
    """Merge the on-chain status with the keeper's advisory status.

    The advisory status only refines an on-chain MONITORING order; anything the
    ledger has moved past wins.
    """
    if advisory is not None and vault.status == IntentStatus.MONITORING:
        return advisory
    return vault.status


def evaluate_intent(
    vault: IntentVaultState,
    price: int | None,
    now: int,
    advisory: IntentStatus | None = None,
) -> IntentAction:
    status = effective_status(vault, advisory)
    if status.is_terminal:
        return IntentAction.SKIP
    if now >= vault.expires_at:
        return IntentAction.EXPIRE
    if status in (IntentStatus.TRIGGERED, IntentStatus.EXECUTING):
        return IntentAction.RESUME
    if not price or price <= 0:
        return IntentAction.WAIT
    if trigger_condition_met(vault.trigger_type, price, vault.trigger_price, vault.trigger_price_max):
        return IntentAction.TRIGGER
    return IntentAction.WAIT


def is_intent_triggered(
    vault: IntentVaultState, price: int, now: int, advisory: IntentStatus | None = None
) -> bool:
    return evaluate_intent(vault, price, now, advisory) == IntentAction.TRIGGER
