import asyncio
import random
from dataclasses import replace

from conftest import Clock, FakeSwaps, new_key

from kryptos_keeper.chains.simulated import SimulatedLedger
from kryptos_keeper.db import Base, RecordStatus, make_engine, make_session_factory
from kryptos_keeper.errors import LedgerError, LedgerErrorKind, SwapError, SwapErrorKind
from kryptos_keeper.execution.dca_loop import DcaScheduler
from kryptos_keeper.execution.journal import ExecutionJournal
from kryptos_keeper.execution.swap_executor import SwapExecutor
from kryptos_keeper.models import SettlementOutcome, SwapFill


class LostAckLedger(SimulatedLedger):
    """Applies the first settlement but reports it as an RPC error."""

    lost_acks = 1

    async def settle_dca(self, address, swap_amount, received_amount, on_signed=None):
        result = await super().settle_dca(address, swap_amount, received_amount, on_signed)
        if result.ok and self.lost_acks:
            self.lost_acks -= 1
            return SettlementOutcome(error=LedgerError(LedgerErrorKind.RPC_ERROR, "confirmation timed out"))
        return result


class UnreachableSettleLedger(SimulatedLedger):
    """Signs settlements but never gets them to the cluster."""

    attempts = 0

    async def settle_dca(self, address, swap_amount, received_amount, on_signed=None):
        self.attempts += 1
        if on_signed is not None:
            on_signed(f"unsent{self.attempts}")
        return SettlementOutcome(error=LedgerError(LedgerErrorKind.RPC_ERROR, "node unreachable"))


def setup_vault(clock, ledger_cls=SimulatedLedger, **kw):
    ledger = ledger_cls(clock=clock, rng=random.Random(0))
    params = dict(total_amount=1_000, amount_per_trade=100, variance_bps=2000)
    params.update(kw)
    addr = ledger.initialize_dca(new_key(), new_key(), new_key(), **params)
    clock.t = ledger.dca_vaults[addr].next_execution
    return ledger, addr


def test_due_vault_executes_and_settles_randomized_amount(make_ctx, journal):
    clock = Clock()
    ledger, addr = setup_vault(clock)
    swaps = FakeSwaps(ledger)
    ctx = make_ctx(ledger, swaps, clock)

    asyncio.run(DcaScheduler(ctx).run_once())

    v = ledger.dca_vaults[addr]
    assert len(swaps.calls) == 1
    amount = swaps.calls[0][2]
    assert 80 <= amount <= 120
    assert v.total_spent == amount
    assert v.total_received == amount * 2
    assert v.execution_count == 1
    assert v.next_execution > clock.t
    assert journal.open_record(addr) is None


def test_not_due_vault_is_left_alone(make_ctx):
    clock = Clock()
    ledger, addr = setup_vault(clock)
    clock.t -= 1
    swaps = FakeSwaps(ledger)
    asyncio.run(DcaScheduler(make_ctx(ledger, swaps, clock)).run_once())
    assert swaps.calls == []
    assert ledger.dca_vaults[addr].total_spent == 0


def test_budget_invariant_over_full_life(make_ctx):
    clock = Clock()
    ledger, addr = setup_vault(clock, total_amount=1_000, amount_per_trade=300, variance_bps=5000)
    swaps = FakeSwaps(ledger)
    sched = DcaScheduler(make_ctx(ledger, swaps, clock))
    for _ in range(20):
        v = ledger.dca_vaults[addr]
        if not v.is_active:
            break
        clock.t = v.next_execution
        asyncio.run(sched.run_once())
    v = ledger.dca_vaults[addr]
    assert not v.is_active
    assert v.total_spent == v.total_amount
    assert v.total_spent == sum(amount for _, amount, _ in ledger.settlements)


def test_quote_failure_leaves_vault_unchanged(make_ctx, journal):
    clock = Clock()
    ledger, addr = setup_vault(clock)
    before = ledger.dca_vaults[addr]
    ctx = make_ctx(ledger, clock=clock)
    executor = SwapExecutor(ctx.settings, ctx.keypair, order_fn=lambda url, **kw: None)
    ctx = make_ctx(ledger, executor, clock)

    status = asyncio.run(DcaScheduler(ctx).process_vault(addr))

    assert status == RecordStatus.FAILED
    assert ledger.dca_vaults[addr] == before
    assert ledger.settlements == []
    rec = journal.get(1)
    assert rec.error_kind == SwapErrorKind.QUOTE_UNAVAILABLE.value


def test_swap_failure_is_retried_next_cycle(make_ctx):
    clock = Clock()
    ledger, addr = setup_vault(clock)
    swaps = FakeSwaps(ledger, error=SwapError(SwapErrorKind.EXECUTION_FAILED, "slippage"))
    sched = DcaScheduler(make_ctx(ledger, swaps, clock))
    asyncio.run(sched.run_once())
    assert ledger.dca_vaults[addr].execution_count == 0
    swaps.error = None
    asyncio.run(sched.run_once())
    assert ledger.dca_vaults[addr].execution_count == 1


def test_concurrent_passes_settle_once(make_ctx):
    clock = Clock()
    ledger, addr = setup_vault(clock)
    swaps = FakeSwaps(ledger)
    sched = DcaScheduler(make_ctx(ledger, swaps, clock))
    snapshot = ledger.dca_vaults[addr]

    async def race():
        await asyncio.gather(sched.process(addr, snapshot), sched.process(addr, snapshot))

    asyncio.run(race())
    assert len(ledger.settlements) == 1
    assert len(swaps.calls) == 1
    assert ledger.dca_vaults[addr].execution_count == 1


def test_two_keepers_race_and_ledger_rejects_the_loser(tmp_path, make_ctx):
    clock = Clock()
    ledger, addr = setup_vault(clock)
    swaps_a, swaps_b = FakeSwaps(ledger), FakeSwaps(ledger)
    ctx_a = make_ctx(ledger, swaps_a, clock)

    db_url = f"sqlite+pysqlite:///{tmp_path / 'other.db'}"
    Base.metadata.create_all(make_engine(db_url))
    journal_b = ExecutionJournal(make_session_factory(db_url))
    ctx_b = replace(make_ctx(ledger, swaps_b, clock), journal=journal_b)

    snapshot = ledger.dca_vaults[addr]

    async def race():
        await asyncio.gather(
            DcaScheduler(ctx_a).process(addr, snapshot),
            DcaScheduler(ctx_b).process(addr, snapshot),
        )

    asyncio.run(race())
    assert len(ledger.settlements) == 1
    assert ledger.dca_vaults[addr].execution_count == 1
    statuses = sorted(
        r.status for j in (ctx_a.journal, journal_b) for r in [j.get(1)] if r is not None
    )
    assert statuses == [RecordStatus.SETTLED.value, RecordStatus.SWAPPED.value]


def test_swapped_record_is_settled_before_a_new_swap(make_ctx, journal):
    clock = Clock()
    ledger, addr = setup_vault(clock)
    v = ledger.dca_vaults[addr]
    swaps = FakeSwaps(ledger)
    rid = journal.begin("dca", addr, 0, v.input_token, v.output_token, 100)
    journal.mark_swapped(rid, SwapFill("earlier", 100, 300))

    status = asyncio.run(DcaScheduler(make_ctx(ledger, swaps, clock)).process_vault(addr))

    assert status == RecordStatus.SETTLED
    assert swaps.calls == []
    assert ledger.settlements == [(addr, 100, 300)]
    assert journal.get(rid).status == RecordStatus.SETTLED.value


def test_permanent_settlement_rejection_orphans_the_record(make_ctx, journal):
    clock = Clock()
    ledger, addr = setup_vault(clock)
    ledger.escrows[addr].input_balance = 1
    swaps = FakeSwaps(ledger)
    status = asyncio.run(DcaScheduler(make_ctx(ledger, swaps, clock)).process_vault(addr))
    assert status == RecordStatus.ORPHANED
    rec = journal.get(1)
    assert rec.error_kind == "insufficient_escrow"
    assert rec.swap_signature == "swap1"


def test_dry_run_quotes_but_never_settles(make_ctx, journal):
    clock = Clock()
    ledger, addr = setup_vault(clock)
    ctx = make_ctx(ledger, clock=clock, dry_run=True)
    order = {"requestId": "r", "transaction": "AA==", "inAmount": "100", "outAmount": "200"}
    ctx = make_ctx(ledger, SwapExecutor(ctx.settings, ctx.keypair, order_fn=lambda url, **kw: order), clock, dry_run=True)
    status = asyncio.run(DcaScheduler(ctx).process_vault(addr))
    assert status == RecordStatus.SKIPPED
    assert ledger.settlements == []
    assert journal.get(1).status == RecordStatus.SKIPPED.value


def test_stop_prevents_new_swaps(make_ctx):
    clock = Clock()
    ledger, addr = setup_vault(clock)
    swaps = FakeSwaps(ledger)
    sched = DcaScheduler(make_ctx(ledger, swaps, clock))
    sched.stop.set()
    asyncio.run(sched.run())
    assert swaps.calls == []


def test_one_failing_vault_does_not_block_others(make_ctx):
    clock = Clock()
    ledger, good = setup_vault(clock)
    bad = ledger.initialize_dca(new_key(), new_key(), new_key(), total_amount=500, amount_per_trade=50)
    clock.t = max(ledger.dca_vaults[good].next_execution, ledger.dca_vaults[bad].next_execution)

    class PickySwaps(FakeSwaps):
        async def execute(self, input_token, output_token, amount, on_signed=None):
            if input_token == ledger.dca_vaults[bad].input_token:
                raise RuntimeError("boom")
            return await super().execute(input_token, output_token, amount, on_signed)

    swaps = PickySwaps(ledger)
    seen = asyncio.run(DcaScheduler(make_ctx(ledger, swaps, clock)).run_once())
    assert seen == 2
    assert ledger.dca_vaults[good].execution_count == 1
    assert ledger.dca_vaults[bad].execution_count == 0


def test_timed_out_swap_that_lands_is_settled_not_repeated(make_ctx, journal):
    clock = Clock()
    ledger, addr = setup_vault(clock)
    swaps = FakeSwaps(ledger, error=SwapError(SwapErrorKind.TIMEOUT), lands_anyway=True)
    sched = DcaScheduler(make_ctx(ledger, swaps, clock))

    assert asyncio.run(sched.process_vault(addr)) == RecordStatus.EXECUTING
    rec = journal.get(1)
    assert rec.status == RecordStatus.EXECUTING.value
    assert rec.swap_signature == "swap1"
    assert ledger.settlements == []

    swaps.error = None
    assert asyncio.run(sched.process_vault(addr)) == RecordStatus.SETTLED
    assert len(swaps.calls) == 1
    amount = swaps.calls[0][2]
    assert ledger.settlements == [(addr, amount, amount * 2)]
    assert journal.get(1).status == RecordStatus.SETTLED.value


def test_unconfirmed_submit_blocks_a_new_swap(make_ctx, journal):
    clock = Clock()
    ledger, addr = setup_vault(clock)
    swaps = FakeSwaps(ledger, error=SwapError(SwapErrorKind.SUBMIT_FAILED, "502 Bad Gateway"))
    sched = DcaScheduler(make_ctx(ledger, swaps, clock))

    assert asyncio.run(sched.process_vault(addr)) == RecordStatus.EXECUTING
    swaps.error = None
    # not visible on chain yet and still inside the landing window
    assert asyncio.run(sched.process_vault(addr)) is None
    assert len(swaps.calls) == 1
    assert journal.get(1).error_kind == SwapErrorKind.SUBMIT_FAILED.value


def test_settlement_landed_behind_rpc_error_is_not_sent_twice(make_ctx, journal):
    clock = Clock()
    ledger, addr = setup_vault(clock, ledger_cls=LostAckLedger)
    swaps = FakeSwaps(ledger)
    sched = DcaScheduler(make_ctx(ledger, swaps, clock))

    assert asyncio.run(sched.process_vault(addr)) == RecordStatus.SWAPPED
    settle_sig = journal.get(1).settle_signature
    assert settle_sig in ledger.settled_signatures

    clock.t = ledger.dca_vaults[addr].next_execution
    assert asyncio.run(sched.process_vault(addr)) == RecordStatus.SETTLED
    assert len(swaps.calls) == 1
    assert len(ledger.settlements) == 1
    assert ledger.dca_vaults[addr].execution_count == 1
    rec = journal.get(1)
    assert rec.status == RecordStatus.SETTLED.value
    assert rec.settle_signature == settle_sig


def test_unseen_settlement_is_not_resent_inside_landing_window(make_ctx, journal):
    clock = Clock()
    ledger, addr = setup_vault(clock, ledger_cls=UnreachableSettleLedger)
    sched = DcaScheduler(make_ctx(ledger, FakeSwaps(ledger), clock))

    assert asyncio.run(sched.process_vault(addr)) == RecordStatus.SWAPPED
    assert asyncio.run(sched.process_vault(addr)) == RecordStatus.SWAPPED
    assert ledger.attempts == 1
    assert journal.get(1).settle_signature == "unsent1"
