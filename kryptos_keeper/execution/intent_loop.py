from __future__ import annotations

import asyncio

from loguru import logger

from kryptos_keeper.db import ExecutionRecord, RecordStatus
from kryptos_keeper.execution.dca_loop import fill_from_record
from kryptos_keeper.execution.eligibility import IntentAction, evaluate_intent
from kryptos_keeper.execution.loop import PollingLoop
from kryptos_keeper.execution.reconcile import reconcile_record
from kryptos_keeper.models import IntentStatus, IntentVaultState

_ADVISORY = {
    RecordStatus.TRIGGERED.value: IntentStatus.TRIGGERED,
    RecordStatus.EXECUTING.value: IntentStatus.EXECUTING,
    RecordStatus.SWAPPED.value: IntentStatus.EXECUTING,
}


def advisory_status(rec: ExecutionRecord | None) -> IntentStatus | None:
    if rec is None:
        return None
    return _ADVISORY.get(rec.status)


class IntentMonitor(PollingLoop):
    """Watches price-triggered orders and executes them once their condition holds.

    The keeper-side Triggered/Executing states live in the execution journal: a trigger
    is recorded before any swap is attempted, so an order whose swap failed or was cut
    short resumes at the execution step instead of waiting for the price again.
    """

    name = "intent"

    @property
    def interval(self) -> float:
        return self.ctx.settings.intent_check_interval_sec

    async def candidates(self) -> list[tuple[str, IntentVaultState]]:
        vaults = await self.ctx.ledger.fetch_all_intent_vaults()
        # Nothing on chain expires an order, so one journaled as expired stays MONITORING.
        expired = self.ctx.journal.expired_vaults()
        return [(a, v) for a, v in vaults if not v.status.is_terminal and (a, v.nonce) not in expired]

    async def prepare(self, items: list[tuple[str, IntentVaultState]]) -> None:
        # One batched request warms the cache for every order still watching its price.
        mints = sorted({v.output_token for _, v in items if v.status == IntentStatus.MONITORING})
        if mints:
            await asyncio.to_thread(self.ctx.prices.get_prices, mints)

    async def current_price(self, mint: str) -> int:
        return await asyncio.to_thread(self.ctx.prices.get_price_fixed, mint)

    async def process(self, address: str, vault: IntentVaultState) -> None:
        rec = self.ctx.journal.open_record(address)
        advisory = advisory_status(rec)
        if rec is None and vault.status == IntentStatus.MONITORING and self.ctx.now() < vault.expires_at:
            price = await self.current_price(vault.output_token)
            if evaluate_intent(vault, price, self.ctx.now()) == IntentAction.WAIT:
                logger.debug("intent: {} waiting (price {} vs trigger {})", address[:8], price, vault.trigger_price)
                return
        elif advisory is None and evaluate_intent(vault, None, self.ctx.now()) == IntentAction.SKIP:
            return
        async with self.ctx.locks.get(address):
            await self.process_intent(address)

    async def process_intent(self, address: str) -> RecordStatus | None:
        """One step for one order under its lock: settle, expire, trigger or execute."""
        ctx = self.ctx
        journal = ctx.journal
        rec = journal.open_record(address)
        if rec is not None and rec.status == RecordStatus.EXECUTING.value:
            status = await reconcile_record(ctx, rec)
            if status in (RecordStatus.EXECUTING, RecordStatus.ORPHANED):
                return None
            rec = journal.open_record(address)
        if rec is not None and rec.status == RecordStatus.SWAPPED.value:
            logger.info("intent: settling earlier swap {} for {}", (rec.swap_signature or "")[:8], address[:8])
            return await self._settle(rec, address)

        vault = await ctx.ledger.fetch_intent_vault(address)
        if vault is None:
            logger.warning("intent: {} disappeared", address[:8])
            return None
        now = ctx.now()
        advisory = advisory_status(rec)
        price = None
        if advisory is None and vault.status == IntentStatus.MONITORING and now < vault.expires_at:
            price = await self.current_price(vault.output_token)
        action = evaluate_intent(vault, price, now, advisory)

        if action == IntentAction.SKIP:
            return None
        if action == IntentAction.EXPIRE:
            if not journal.is_expired(address, vault.nonce):
                journal.record_expired(address, vault.nonce)
                logger.info("intent: {} expired without triggering", address[:8])
            return RecordStatus.EXPIRED
        if action == IntentAction.WAIT:
            logger.debug("intent: {} waiting (price {})", address[:8], price)
            return None

        if action == IntentAction.TRIGGER:
            rec = journal.record_trigger(
                address, vault.nonce, vault.chunks_executed, vault.input_token, vault.output_token, price
            )
            logger.info(
                "intent: {} triggered at {} ({} {})",
                address[:8],
                price,
                vault.trigger_type.name.lower(),
                vault.trigger_price,
            )

        if rec is not None and rec.trigger_price:
            settle_price = int(rec.trigger_price)
        else:
            # Between chunks the ledger no longer checks the trigger; any observed price will do.
            settle_price = await self.current_price(vault.output_token) or vault.trigger_price
        return await self._execute(address, vault, rec, settle_price)

    async def _execute(
        self,
        address: str,
        vault: IntentVaultState,
        rec: ExecutionRecord | None,
        settle_price: int,
    ) -> RecordStatus | None:
        ctx = self.ctx
        journal = ctx.journal
        if self.stop.is_set():
            return None
        amount = vault.next_chunk_amount()
        if amount <= 0:
            logger.error(
                "intent: {} is {} with chunk {}/{} pending but nothing left to swap; needs operator attention",
                address[:8],
                vault.status.name.lower(),
                vault.chunks_executed + 1,
                vault.chunks_total,
            )
            return None
        chunk = vault.chunks_executed + 1
        logger.info(
            "intent: executing {} chunk {}/{}: {} {} -> {}",
            address[:8],
            chunk,
            vault.chunks_total,
            amount,
            vault.input_token[:8],
            vault.output_token[:8],
        )
        record_id = journal.begin(
            "intent",
            address,
            vault.chunks_executed,
            vault.input_token,
            vault.output_token,
            amount,
            nonce=vault.nonce,
            record_id=rec.id if rec is not None else None,
            trigger_price=settle_price,
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
                logger.info("[dry-run] intent: {} would swap {}", address[:8], amount)
                return RecordStatus.SKIPPED
            err = outcome.error
            if err.kind.may_have_landed:
                journal.note_swap_error(record_id, err.kind.value, err.message)
                logger.warning(
                    "intent: swap for {} may still land ({}); resolving by signature next pass", address[:8], err
                )
                return RecordStatus.EXECUTING
            journal.revert_to_triggered(record_id, err.kind.value, err.message)
            logger.warning(
                "intent: swap for {} failed, staying triggered: {} ({})", address[:8], err.kind.describe(), err
            )
            return RecordStatus.TRIGGERED

        fill = outcome.fill
        journal.mark_swapped(record_id, fill)
        logger.info("intent: swapped {} -> {} for {} ({})", fill.input_amount, fill.output_amount, address[:8], fill.signature[:8])
        return await self._settle(journal.get(record_id), address)

    async def _settle(self, rec: ExecutionRecord, address: str) -> RecordStatus:
        fill = fill_from_record(rec)
        price = int(rec.trigger_price or 0)
        return await self.settle(
            rec,
            address,
            lambda on_signed: self.ctx.ledger.settle_intent(
                address, price, fill.input_amount, fill.output_amount, on_signed=on_signed
            ),
        )
