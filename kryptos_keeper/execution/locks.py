from __future__ import annotations

import asyncio
import weakref
from dataclasses import dataclass, field


@dataclass
class VaultLocks:
    """One asyncio.Lock per vault address, held across quote -> swap -> settle.

    Entries are weak: a lock lives only while some pass holds or waits on it, so
    closed vaults do not accumulate.
    """

    _locks: weakref.WeakValueDictionary = field(default_factory=weakref.WeakValueDictionary)

    def get(self, address: str) -> asyncio.Lock:
        lock = self._locks.get(address)
        if lock is None:
            lock = self._locks[address] = asyncio.Lock()
        return lock

    def locked(self, address: str) -> bool:
        lock = self._locks.get(address)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
