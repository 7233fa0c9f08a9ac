"""
Per-account serialization for ledger writes.

Every read-modify-write of an account's balance runs while holding the lock
for that user id. Row locks (SELECT ... FOR UPDATE) extend the guarantee
across worker processes; this registry covers concurrent tasks inside one
process, including database backends that ignore FOR UPDATE.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import UUID


class AccountLockRegistry:
    """
    Lazily created asyncio.Lock per account key.

    Locks are dropped once no task holds or awaits them, so the registry
    stays proportional to the number of accounts currently being written.
    """

    def __init__(self) -> None:
        self._locks: dict[UUID, asyncio.Lock] = {}
        self._waiters: dict[UUID, int] = {}

    @asynccontextmanager
    async def hold(self, user_id: UUID) -> AsyncIterator[None]:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        self._waiters[user_id] = self._waiters.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._waiters[user_id] - 1
            if remaining:
                self._waiters[user_id] = remaining
            else:
                del self._waiters[user_id]
                del self._locks[user_id]

    def is_held(self, user_id: UUID) -> bool:
        lock = self._locks.get(user_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


# Process-wide registry shared by every LedgerService instance
account_locks = AccountLockRegistry()
