"""Randomized trade sizing and scheduling for DCA vaults.

Fixed per-trade amounts on a fixed period make a DCA schedule easy to pick out of
on-chain transfers. Both the size and the spacing of executions are drawn from a
band around the configured values instead.

Scheduling works in *window time*: only seconds that fall inside the vault's UTC
hour window count toward the interval. The interval is drawn as

    target  ~ Uniform(min_executions, max_executions)   executions per week
    base    =  window seconds per week / target
    interval = base * Uniform(0.75, 1.25), at least one hour

and the next execution is the instant reached after walking `interval` window
seconds forward from the last execution. The result therefore always lands inside
the window, and the expected weekly count stays within the configured bounds as
long as the window holds at least `max_executions` hours per week.
"""

from __future__ import annotations

import random

from kryptos_keeper.execution.eligibility import SECONDS_PER_HOUR, hour_of_day, in_window

SECONDS_PER_WEEK = 604_800
MIN_INTERVAL_SEC = SECONDS_PER_HOUR
JITTER = 0.25
_UNIFORM_SCALE = 1 << 32

_system_rng = random.SystemRandom()


def compute_trade_amount(
    amount_per_trade: int,
    variance_bps: int,
    remaining: int,
    rng: random.Random | None = None,
) -> int:
    """Per-execution input amount: amount_per_trade +/- a random share of the variance band,
    capped at what is left in the vault.

    Integer math throughout; the uniform draw is a 32-bit fraction so the result is
    exact for any amount size.
    """
    if remaining <= 0:
        return 0
    rng = rng or _system_rng
    u = rng.randrange(_UNIFORM_SCALE)
    variance = (amount_per_trade * variance_bps * u) // (10_000 * _UNIFORM_SCALE)
    if rng.getrandbits(1):
        amount = amount_per_trade + variance
    else:
        amount = amount_per_trade - variance
    return max(1, min(amount, remaining))


def window_hours(start_hour: int, end_hour: int) -> int:
    if start_hour <= end_hour:
        return end_hour - start_hour + 1
    return 24 - start_hour + end_hour + 1


def advance_window_time(start: int, seconds: int, start_hour: int, end_hour: int) -> int:
    """Walk `seconds` of in-window time forward from `start` and return the instant reached."""
    t = int(start)
    remaining = max(0, int(seconds))
    while True:
        slot_end = (t // SECONDS_PER_HOUR + 1) * SECONDS_PER_HOUR
        if in_window(hour_of_day(t), start_hour, end_hour):
            available = slot_end - t
            if remaining < available:
                return t + remaining
            remaining -= available
        t = slot_end


def plan_next_execution(
    last_execution: int,
    min_executions: int,
    max_executions: int,
    window_start_hour: int,
    window_end_hour: int,
    rng: random.Random | None = None,
) -> int:
    rng = rng or _system_rng
    lo, hi = sorted((max(1, min_executions), max(1, max_executions)))
    target = rng.uniform(lo, hi)
    active_per_week = window_hours(window_start_hour, window_end_hour) * 7 * SECONDS_PER_HOUR
    interval = active_per_week / target * rng.uniform(1 - JITTER, 1 + JITTER)
    interval = max(MIN_INTERVAL_SEC, int(interval))
    return advance_window_time(last_execution, interval, window_start_hour, window_end_hour)
