from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Callable

from solders.keypair import Keypair

from kryptos_keeper.analytics.pricing import PriceOracle
from kryptos_keeper.chains.ledger import Ledger
from kryptos_keeper.config import AppSettings
from kryptos_keeper.execution.journal import ExecutionJournal
from kryptos_keeper.execution.locks import VaultLocks
from kryptos_keeper.execution.swap_executor import SwapExecutor


@dataclass(frozen=True)
class KeeperContext:
    """Everything a loop needs, built once at startup and passed explicitly."""

    settings: AppSettings
    keypair: Keypair
    ledger: Ledger
    prices: PriceOracle
    swaps: SwapExecutor
    journal: ExecutionJournal
    locks: VaultLocks = field(default_factory=VaultLocks)
    clock: Callable[[], float] = time.time
    # None -> SystemRandom inside the randomization policy
    rng: random.Random | None = None

    def now(self) -> int:
        return int(self.clock())
