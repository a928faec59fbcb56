"""Resolve journal records left mid-swap by a previous run.

An EXECUTING record means a swap may have been submitted without the keeper seeing
its result. The stored swap signature is the idempotency key: the chain is asked
whether it landed before anything is retried, so an escrow is never swapped twice.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta

from loguru import logger

from kryptos_keeper.chains.ledger import LookupStatus
from kryptos_keeper.context import KeeperContext
from kryptos_keeper.db import ExecutionRecord, RecordStatus
from kryptos_keeper.models import SwapFill

# A submitted transaction can still land until its blockhash expires (~150 slots).
LANDING_GRACE_SEC = 120


def within_grace(updated_at: datetime, grace_sec: float = LANDING_GRACE_SEC) -> bool:
    return datetime.utcnow() - updated_at < timedelta(seconds=grace_sec)


def _retrigger(ctx: KeeperContext, rec: ExecutionRecord) -> None:
    if rec.kind == "intent" and rec.trigger_price:
        ctx.journal.record_trigger(
            rec.vault_address,
            rec.nonce,
            rec.sequence,
            rec.input_token,
            rec.output_token,
            int(rec.trigger_price),
        )


def _abandon(ctx: KeeperContext, rec: ExecutionRecord, reason: str) -> RecordStatus:
    ctx.journal.mark_abandoned(rec.id, reason)
    _retrigger(ctx, rec)
    logger.info("Record {} for {} abandoned: {}", rec.id, rec.vault_address[:8], reason)
    return RecordStatus.ABANDONED


async def reconcile_record(
    ctx: KeeperContext, rec: ExecutionRecord, grace_sec: float = LANDING_GRACE_SEC
) -> RecordStatus:
    if rec.status != RecordStatus.EXECUTING.value:
        return RecordStatus(rec.status)
    if not rec.swap_signature:
        return _abandon(ctx, rec, "no swap was submitted")

    lookup = await ctx.ledger.lookup_swap(rec.swap_signature, rec.input_token, rec.output_token)
    if lookup.status == LookupStatus.LANDED:
        if lookup.fill is None:
            ctx.journal.mark_orphaned(rec.id, "unknown_fill", "swap landed but realized amounts are unknown")
            logger.error(
                "Swap {} for {} landed but its amounts could not be recovered; record {} needs operator attention",
                rec.swap_signature[:8],
                rec.vault_address[:8],
                rec.id,
            )
            return RecordStatus.ORPHANED
        fill = lookup.fill
        if fill.input_amount <= 0 and rec.planned_amount:
            fill = SwapFill(fill.signature, int(rec.planned_amount), fill.output_amount)
        ctx.journal.mark_swapped(rec.id, fill)
        logger.info(
            "Swap {} for {} had landed ({} -> {}); settlement pending",
            rec.swap_signature[:8],
            rec.vault_address[:8],
            fill.input_amount,
            fill.output_amount,
        )
        return RecordStatus.SWAPPED
    if lookup.status == LookupStatus.FAILED:
        return _abandon(ctx, rec, f"swap {rec.swap_signature[:8]} failed on chain")

    if within_grace(rec.updated_at, grace_sec):
        logger.warning("Swap {} for {} not visible yet; checking again later", rec.swap_signature[:8], rec.vault_address[:8])
        return RecordStatus.EXECUTING
    return _abandon(ctx, rec, f"swap {rec.swap_signature[:8]} never landed")


async def reconcile(ctx: KeeperContext, grace_sec: float = LANDING_GRACE_SEC) -> Counter:
    """Resolve every EXECUTING record in the journal. Returns counts by resulting status."""
    counts: Counter = Counter()
    for rec in ctx.journal.open_records(status=RecordStatus.EXECUTING):
        try:
            status = await reconcile_record(ctx, rec, grace_sec)
            counts[status.value] += 1
        except Exception as e:
            logger.warning("Reconcile of record {} failed, leaving it open: {}", rec.id, e)
            counts[RecordStatus.EXECUTING.value] += 1
    if counts:
        logger.info("Reconciled {} in-flight record(s): {}", sum(counts.values()), dict(counts))
    return counts
