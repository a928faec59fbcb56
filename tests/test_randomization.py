import random

import pytest
from conftest import T0

from kryptos_keeper.execution.eligibility import hour_of_day, in_window
from kryptos_keeper.execution.randomization import (
    MIN_INTERVAL_SEC,
    SECONDS_PER_WEEK,
    advance_window_time,
    compute_trade_amount,
    plan_next_execution,
    window_hours,
)


def test_trade_amount_is_deterministic_for_a_seed():
    a = compute_trade_amount(100_000, 2000, 10**9, random.Random(42))
    b = compute_trade_amount(100_000, 2000, 10**9, random.Random(42))
    assert a == b


@pytest.mark.parametrize("remaining", [1, 100, 200, 10**18])
def test_trade_amount_bounds(remaining):
    rng = random.Random(1)
    for _ in range(500):
        amount = compute_trade_amount(100, 5000, remaining, rng)
        assert 1 <= amount <= remaining


def test_trade_amount_within_variance_band():
    rng = random.Random(3)
    seen = {compute_trade_amount(100, 2000, 10_000, rng) for _ in range(2_000)}
    assert min(seen) >= 80
    assert max(seen) <= 120
    # both sides of the band are used
    assert min(seen) < 100 < max(seen)


def test_trade_amount_zero_variance_and_empty_vault():
    assert compute_trade_amount(100, 0, 1_000, random.Random(0)) == 100
    assert compute_trade_amount(100, 2000, 0, random.Random(0)) == 0


def test_window_hours():
    assert window_hours(0, 23) == 24
    assert window_hours(9, 17) == 9
    assert window_hours(22, 2) == 5
    assert window_hours(5, 5) == 1


def test_advance_window_time_skips_closed_hours():
    # 12:00 with a 09-17 window: 6h of window left today (12..17 inclusive)
    assert advance_window_time(T0, 3600, 9, 17) == T0 + 3600
    reached = advance_window_time(T0, 6 * 3600 + 60, 9, 17)
    assert hour_of_day(reached) == 9
    assert reached == T0 + 21 * 3600 + 60


def test_next_execution_is_after_last_and_inside_window():
    rng = random.Random(11)
    last = T0
    for _ in range(200):
        nxt = plan_next_execution(last, 5, 10, 22, 2, rng)
        assert nxt - last >= MIN_INTERVAL_SEC
        assert in_window(hour_of_day(nxt), 22, 2)
        last = nxt


@pytest.mark.parametrize("window", [(0, 23), (9, 17), (22, 2)])
def test_weekly_execution_rate_within_bounds(window):
    rng = random.Random(5)
    weeks = 52
    end = T0 + weeks * SECONDS_PER_WEEK
    t, count = T0, 0
    while True:
        t = plan_next_execution(t, 5, 10, window[0], window[1], rng)
        if t >= end:
            break
        count += 1
    assert 5 * weeks <= count <= 10 * weeks
