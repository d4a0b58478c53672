"""
Per-scope serialization.

Assignment decisions for one (hotel, branch) scope run one at a time inside
a process. Across processes the conditional counter UPDATE and the
``SELECT ... FOR UPDATE`` on the order row are the guards.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator


class ScopeLocks:
    """Registry of asyncio locks keyed by scope."""

    def __init__(self):
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def hold(self, scope_key: str) -> AsyncIterator[None]:
        lock = self._locks[scope_key]
        async with lock:
            yield

    def is_locked(self, scope_key: str) -> bool:
        lock = self._locks.get(scope_key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
