from __future__ import annotations

import asyncio
import random
from decimal import Decimal

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from kryptos_keeper.analytics.pricing import price_to_fixed
from kryptos_keeper.config import AppSettings
from kryptos_keeper.context import KeeperContext
from kryptos_keeper.db import Base, make_engine, make_session_factory
from kryptos_keeper.errors import SwapError, SwapErrorKind
from kryptos_keeper.execution.journal import ExecutionJournal
from kryptos_keeper.models import SwapFill, SwapOutcome

# 2023-11-15 12:00:00 UTC
T0 = 1_700_049_600


class Clock:
    def __init__(self, t: int = T0):
        self.t = t

    def __call__(self) -> int:
        return self.t


class FakePrices:
    def __init__(self, price="1"):
        self.price = price
        self.calls = 0

    def get_prices(self, mints):
        self.calls += 1
        return {m: Decimal(str(self.price)) for m in mints}

    def get_price_fixed(self, mint) -> int:
        return price_to_fixed(self.price)


class FakeSwaps:
    """Stands in for SwapExecutor; fills at `rate` output per input unit.

    Like the real executor, the signature is reported only once the transaction is
    signed, so quote errors leave no signature behind. With `lands_anyway` the swap
    lands on the ledger even though an error is returned.
    """

    def __init__(self, ledger=None, rate: int = 2, error: SwapError | None = None, lands_anyway: bool = False):
        self.ledger = ledger
        self.rate = rate
        self.error = error
        self.lands_anyway = lands_anyway
        self.calls: list[tuple[str, str, int]] = []

    async def execute(self, input_token, output_token, amount, on_signed=None):
        self.calls.append((input_token, output_token, amount))
        error = self.error
        if error is not None and not error.kind.may_have_landed:
            return SwapOutcome(error=error)
        sig = f"swap{len(self.calls)}"
        if on_signed is not None:
            on_signed(sig, f"req{len(self.calls)}")
        await asyncio.sleep(0)
        fill = SwapFill(signature=sig, input_amount=amount, output_amount=amount * self.rate)
        if self.ledger is not None:
            if error is None or self.lands_anyway:
                self.ledger.landed_swaps[sig] = fill
            elif error.kind == SwapErrorKind.EXECUTION_FAILED:
                self.ledger.failed_swaps.add(sig)
        if error is not None:
            return SwapOutcome(error=error)
        return SwapOutcome(fill=fill)


def new_key() -> str:
    return str(Pubkey.new_unique())


@pytest.fixture
def session_factory(tmp_path):
    db_url = f"sqlite+pysqlite:///{tmp_path / 'journal.db'}"
    Base.metadata.create_all(make_engine(db_url))
    return make_session_factory(db_url)


@pytest.fixture
def journal(session_factory):
    return ExecutionJournal(session_factory)


@pytest.fixture
def make_ctx(journal):
    def _make(ledger, swaps=None, clock=None, prices=None, rng_seed: int = 7, **settings):
        return KeeperContext(
            settings=AppSettings(**settings),
            keypair=Keypair(),
            ledger=ledger,
            prices=prices or FakePrices(),
            swaps=swaps or FakeSwaps(ledger),
            journal=journal,
            clock=clock or Clock(),
            rng=random.Random(rng_seed),
        )

    return _make
