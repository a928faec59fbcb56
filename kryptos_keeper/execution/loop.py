from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from loguru import logger

from kryptos_keeper.chains.ledger import LookupStatus, OnSigned
from kryptos_keeper.context import KeeperContext
from kryptos_keeper.db import ExecutionRecord, RecordStatus
from kryptos_keeper.execution.reconcile import within_grace
from kryptos_keeper.models import SettlementOutcome


@dataclass
class PollingLoop(ABC):
    """Poll -> filter -> execute -> sleep, until the stop event is set.

    Items in one cycle run concurrently up to `max_concurrency`; an exception in one
    item is logged and does not affect the others or the loop. The stop event only
    gates the start of new work, so an item that has swapped always reaches settlement.
    """

    ctx: KeeperContext
    stop: asyncio.Event = field(default_factory=asyncio.Event)
    name = "loop"

    @property
    @abstractmethod
    def interval(self) -> float: ...

    @abstractmethod
    async def candidates(self) -> list[tuple[str, object]]: ...

    @abstractmethod
    async def process(self, address: str, state) -> None: ...

    async def prepare(self, items: list[tuple[str, object]]) -> None:
        return None

    async def run(self) -> None:
        logger.info("Starting {} (interval={}s, dry_run={})", self.name, self.interval, self.ctx.settings.dry_run)
        while not self.stop.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self.stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("{} stopped", self.name)

    async def run_once(self) -> int:
        """One poll cycle. Returns the number of candidate items seen."""
        try:
            items = await self.candidates()
        except Exception as e:
            logger.warning("{}: fetching vaults failed: {}", self.name, e)
            return 0
        if not items:
            logger.debug("{}: no vaults", self.name)
            return 0
        try:
            await self.prepare(items)
        except Exception as e:
            logger.warning("{}: prepare failed: {}", self.name, e)
        sem = asyncio.Semaphore(self.ctx.settings.max_concurrency)

        async def guarded(address: str, state) -> None:
            async with sem:
                if self.stop.is_set():
                    return
                try:
                    await self.process(address, state)
                except Exception as e:
                    logger.exception("{}: error processing {}: {}", self.name, address[:8], e)

        await asyncio.gather(*(guarded(a, s) for a, s in items))
        return len(items)

    async def settle(
        self,
        rec: ExecutionRecord,
        address: str,
        send: Callable[[OnSigned], Awaitable[SettlementOutcome]],
    ) -> RecordStatus:
        """Settle a swapped record; `send` submits the settlement transaction.

        The settlement signature is journaled before broadcast. A record that already
        carries one is looked up first: a settlement that landed behind an RPC error is
        recorded as settled rather than sent a second time.
        """
        journal = self.ctx.journal
        if rec.settle_signature:
            status = await self.ctx.ledger.lookup_signature(rec.settle_signature)
            if status == LookupStatus.LANDED:
                journal.mark_settled(rec.id, rec.settle_signature)
                logger.info(
                    "{}: earlier settlement {} for {} had landed", self.name, rec.settle_signature[:8], address[:8]
                )
                return RecordStatus.SETTLED
            if status == LookupStatus.NOT_FOUND and within_grace(rec.updated_at):
                logger.warning(
                    "{}: settlement {} for {} not visible yet; checking again later",
                    self.name,
                    rec.settle_signature[:8],
                    address[:8],
                )
                return RecordStatus.SWAPPED
        result = await send(lambda sig: journal.mark_settle_signed(rec.id, sig))
        return self.record_settlement(rec.id, address, result)

    def record_settlement(self, record_id: int, address: str, result: SettlementOutcome) -> RecordStatus:
        journal = self.ctx.journal
        if result.ok:
            journal.mark_settled(record_id, result.signature)
            logger.info(
                "{}: settled {} -> {}", self.name, address[:8], self.ctx.settings.explorer_url(result.signature)
            )
            return RecordStatus.SETTLED
        err = result.error
        if err.kind.retryable:
            journal.note_settle_error(record_id, err.kind.value, err.message)
            logger.warning("{}: settlement for {} rejected, will retry: {}", self.name, address[:8], err)
            return RecordStatus.SWAPPED
        journal.mark_orphaned(record_id, err.kind.value, err.message)
        logger.error(
            "{}: swap landed but settlement for {} was permanently rejected ({}); record {} needs operator attention",
            self.name,
            address[:8],
            err,
            record_id,
        )
        return RecordStatus.ORPHANED
