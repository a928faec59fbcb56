from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass, field

from loguru import logger
from solders.keypair import Keypair

from kryptos_keeper.analytics.metrics import get_summary
from kryptos_keeper.analytics.pricing import PriceOracle
from kryptos_keeper.chains.ledger import Ledger
from kryptos_keeper.chains.solana import SolanaLedger
from kryptos_keeper.config import AppSettings
from kryptos_keeper.context import KeeperContext
from kryptos_keeper.db import make_session_factory
from kryptos_keeper.errors import KeeperStartupError
from kryptos_keeper.execution.dca_loop import DcaScheduler
from kryptos_keeper.execution.intent_loop import IntentMonitor
from kryptos_keeper.execution.journal import ExecutionJournal
from kryptos_keeper.execution.reconcile import reconcile
from kryptos_keeper.execution.swap_executor import SwapExecutor


def build_context(
    settings: AppSettings,
    keypair: Keypair | None = None,
    ledger: Ledger | None = None,
    SessionFactory=None,
) -> KeeperContext:
    """Load key material and construct every client. Raises KeeperStartupError."""
    keypair = keypair or settings.load_keypair()
    if ledger is None:
        try:
            ledger = SolanaLedger.create(settings, keypair)
        except Exception as e:
            raise KeeperStartupError(f"Cannot construct ledger client: {e}") from e
    if SessionFactory is None:
        SessionFactory = make_session_factory(settings.database_url)
    return KeeperContext(
        settings=settings,
        keypair=keypair,
        ledger=ledger,
        prices=PriceOracle(
            settings.jupiter_price_url,
            ttl_sec=settings.price_cache_ttl_sec,
            timeout=settings.http_timeout_sec,
        ),
        swaps=SwapExecutor(settings, keypair),
        journal=ExecutionJournal(SessionFactory),
    )


@dataclass
class Supervisor:
    ctx: KeeperContext
    stop: asyncio.Event = field(default_factory=asyncio.Event)

    async def startup(self) -> None:
        ctx = self.ctx
        logger.info("Keeper {} on {} (program {})", ctx.keypair.pubkey(), ctx.settings.sol_network, ctx.settings.program_id)
        try:
            slot = await ctx.ledger.health()
        except Exception as e:
            raise KeeperStartupError(f"RPC {ctx.settings.sol_rpc_url} unreachable: {e}") from e
        logger.info("Connected to {} at slot {}", ctx.settings.sol_rpc_url, slot)
        try:
            balance = await ctx.ledger.keeper_balance()
        except Exception as e:
            logger.warning("Could not read keeper balance: {}", e)
        else:
            logger.info("Keeper balance: {:.4f} SOL", balance / 1e9)
            if balance < ctx.settings.min_keeper_balance_lamports:
                logger.warning(
                    "Keeper balance below {:.2f} SOL; settlements may fail for fees",
                    ctx.settings.min_keeper_balance_lamports / 1e9,
                )
        await reconcile(ctx)

    def request_stop(self) -> None:
        if not self.stop.is_set():
            logger.info("Shutdown requested; finishing in-flight executions")
            self.stop.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handler for {} not supported here", sig)

    async def run(self) -> None:
        await self.startup()
        self._install_signal_handlers()
        loops = [DcaScheduler(self.ctx, self.stop), IntentMonitor(self.ctx, self.stop)]
        try:
            await asyncio.gather(*(lp.run() for lp in loops))
        finally:
            logger.info("Journal: {}", get_summary(self.ctx.journal.SessionFactory))
            logger.info("Keeper stopped")


def run(settings: AppSettings) -> int:
    """Process entry: 0 after a graceful shutdown, 1 on a startup failure."""
    try:
        ctx = build_context(settings)
        asyncio.run(Supervisor(ctx).run())
    except KeeperStartupError as e:
        logger.error("Startup failed: {}", e)
        return 1
    return 0
