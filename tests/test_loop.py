import asyncio

import pytest

from kryptos_keeper.chains.simulated import SimulatedLedger
from kryptos_keeper.execution.locks import VaultLocks
from kryptos_keeper.execution.loop import PollingLoop


def test_polling_loop_needs_its_hooks(make_ctx):
    with pytest.raises(TypeError):
        PollingLoop(make_ctx(SimulatedLedger()))


def test_vault_lock_is_shared_while_held_and_dropped_after():
    locks = VaultLocks()

    async def hold():
        async with locks.get("vault-a"):
            assert locks.locked("vault-a")
            assert locks.get("vault-a") is locks.get("vault-a")
            assert not locks.locked("vault-b")

    asyncio.run(hold())
    assert not locks.locked("vault-a")
    assert len(locks) == 0
