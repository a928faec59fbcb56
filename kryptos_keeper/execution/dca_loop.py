from __future__ import annotations

from loguru import logger

from kryptos_keeper.db import ExecutionRecord, RecordStatus
from kryptos_keeper.execution.eligibility import is_dca_due
from kryptos_keeper.execution.loop import PollingLoop
from kryptos_keeper.execution.randomization import compute_trade_amount
from kryptos_keeper.execution.reconcile import reconcile_record
from kryptos_keeper.models import DcaVaultState, SwapFill


def fill_from_record(rec: ExecutionRecord) -> SwapFill:
    return SwapFill(
        signature=rec.swap_signature or "",
        input_amount=int(rec.input_amount or 0),
        output_amount=int(rec.output_amount or 0),
    )


class DcaScheduler(PollingLoop):
    name = "dca"

    @property
    def interval(self) -> float:
        return self.ctx.settings.dca_check_interval_sec

    async def candidates(self) -> list[tuple[str, DcaVaultState]]:
        return await self.ctx.ledger.fetch_all_dca_vaults()

    async def process(self, address: str, vault: DcaVaultState) -> None:
        pending = self.ctx.journal.open_record(address)
        if pending is None and not is_dca_due(vault, self.ctx.now()):
            logger.debug("dca: {} not due (next {})", address[:8], vault.next_execution)
            return
        async with self.ctx.locks.get(address):
            await self.process_vault(address)

    async def process_vault(self, address: str) -> RecordStatus | None:
        """Run at most one execution step for a vault. Caller holds the vault lock.

        An unsettled swap from an earlier pass is settled first and takes the place of a
        new execution. Eligibility is re-checked against a fresh read, so a vault that
        another pass just settled is left alone.
        """
        ctx = self.ctx
        journal = ctx.journal
        rec = journal.open_record(address)
        if rec is not None and rec.status == RecordStatus.EXECUTING.value:
            status = await reconcile_record(ctx, rec)
            if status in (RecordStatus.EXECUTING, RecordStatus.ORPHANED):
                return None
            # An abandoned swap never moved funds; a fresh execution may follow.
            rec = journal.get(rec.id) if status == RecordStatus.SWAPPED else None
        if rec is not None and rec.status == RecordStatus.SWAPPED.value:
            logger.info("dca: settling earlier swap {} for {}", (rec.swap_signature or "")[:8], address[:8])
            return await self._settle(rec, address)

        vault = await ctx.ledger.fetch_dca_vault(address)
        if vault is None:
            logger.warning("dca: vault {} disappeared", address[:8])
            return None
        now = ctx.now()
        if not is_dca_due(vault, now):
            logger.debug("dca: {} no longer due", address[:8])
            return None
        if self.stop.is_set():
            return None

        amount = compute_trade_amount(vault.amount_per_trade, vault.variance_bps, vault.remaining, ctx.rng)
        if amount <= 0:
            return None
        if not ctx.settings.dry_run:
            try:
                await ctx.ledger.ensure_token_account(vault.input_token)
                await ctx.ledger.ensure_token_account(vault.output_token)
            except Exception as e:
                logger.warning("dca: keeper token accounts for {} not ready: {}", address[:8], e)
                return None

        logger.info(
            "dca: executing {} #{}: {} {} -> {}",
            address[:8],
            vault.execution_count + 1,
            amount,
            vault.input_token[:8],
            vault.output_token[:8],
        )
        record_id = journal.begin(
            "dca", address, vault.execution_count, vault.input_token, vault.output_token, amount
        )
        outcome = await ctx.swaps.execute(
            vault.input_token,
            vault.output_token,
            amount,
            on_signed=lambda sig, request_id: journal.mark_signed(record_id, sig, request_id),
        )
        if not outcome.ok:
            if outcome.error is None:
                journal.mark_skipped(record_id, "dry run")
                logger.info(
                    "[dry-run] dca: {} would swap {} for ~{}",
                    address[:8],
                    amount,
                    outcome.quote.expected_output_amount if outcome.quote else "?",
                )
                return RecordStatus.SKIPPED
            err = outcome.error
            if err.kind.may_have_landed:
                journal.note_swap_error(record_id, err.kind.value, err.message)
                logger.warning(
                    "dca: swap for {} may still land ({}); resolving by signature next pass", address[:8], err
                )
                return RecordStatus.EXECUTING
            journal.mark_failed(record_id, err.kind.value, err.message)
            logger.warning("dca: swap for {} failed: {} ({})", address[:8], err.kind.describe(), err)
            return RecordStatus.FAILED

        fill = outcome.fill
        journal.mark_swapped(record_id, fill)
        logger.info("dca: swapped {} -> {} for {} ({})", fill.input_amount, fill.output_amount, address[:8], fill.signature[:8])
        return await self._settle(journal.get(record_id), address)

    async def _settle(self, rec: ExecutionRecord, address: str) -> RecordStatus:
        fill = fill_from_record(rec)
        return await self.settle(
            rec,
            address,
            lambda on_signed: self.ctx.ledger.settle_dca(
                address, fill.input_amount, fill.output_amount, on_signed=on_signed
            ),
        )
