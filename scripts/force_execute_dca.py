from __future__ import annotations

import argparse
import asyncio
import sys

from loguru import logger

from kryptos_keeper.config import AppSettings
from kryptos_keeper.context import KeeperContext
from kryptos_keeper.errors import KeeperStartupError
from kryptos_keeper.execution.dca_loop import DcaScheduler
from kryptos_keeper.execution.eligibility import hour_of_day, is_dca_due
from kryptos_keeper.supervisor import build_context


def describe_vault(address: str, vault, now: int) -> str:
    pct = 100 * vault.total_spent / vault.total_amount if vault.total_amount else 0
    lines = [
        f"Vault {address}",
        f"  authority:      {vault.authority}",
        f"  pair:           {vault.input_token} -> {vault.output_token}",
        f"  spent:          {vault.total_spent} / {vault.total_amount} ({pct:.1f}%)",
        f"  received:       {vault.total_received}",
        f"  per trade:      {vault.amount_per_trade} +/- {vault.variance_bps / 100:.0f}%",
        f"  executions:     {vault.execution_count} (target {vault.min_executions}-{vault.max_executions}/week)",
        f"  window (UTC):   {vault.window_start_hour:02d}:00-{vault.window_end_hour:02d}:59, now {hour_of_day(now):02d}h",
        f"  next execution: {vault.next_execution} ({max(0, vault.next_execution - now)}s from now)",
        f"  active:         {vault.is_active}",
        f"  due now:        {is_dca_due(vault, now)}",
    ]
    return "\n".join(lines)


async def force_execute(ctx: KeeperContext, address: str) -> int:
    vault = await ctx.ledger.fetch_dca_vault(address)
    if vault is None:
        print(f"No DCA vault at {address}", file=sys.stderr)
        return 2
    print(describe_vault(address, vault, ctx.now()))
    scheduler = DcaScheduler(ctx)
    async with ctx.locks.get(address):
        status = await scheduler.process_vault(address)
    if status is None:
        print("Nothing executed (vault not due, not active, or an earlier swap is still unresolved)")
        return 1
    print(f"Result: {status.value}")
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Run one guarded DCA execution for a single vault")
    p.add_argument("vault", help="DCA vault address")
    p.add_argument("--dry-run", action="store_true", help="Quote only; do not submit or settle")
    args = p.parse_args(argv)

    settings = AppSettings()
    if args.dry_run:
        settings = settings.model_copy(update={"dry_run": True})
    logger.remove()
    logger.add(lambda m: print(m, end=""), level=settings.log_level)
    try:
        ctx = build_context(settings)
    except KeeperStartupError as e:
        print(f"Startup failed: {e}", file=sys.stderr)
        return 1
    return asyncio.run(force_execute(ctx, args.vault))


if __name__ == "__main__":
    sys.exit(main())
