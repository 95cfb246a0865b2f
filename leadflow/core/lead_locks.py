"""
Per-lead mutual exclusion for lead-mutating actions.

Runs for different leads never wait on each other. Two runs touching the same
lead in this process serialize their read-modify-write; across processes the
lead store's version check is what catches conflicts.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

logger = logging.getLogger(__name__)


class LeadLocks:
    """
    Registry of asyncio.Lock objects keyed by lead id.

    A lock only exists while somebody holds or waits for it, so the registry
    does not grow with the number of leads ever touched.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, lead_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(lead_id)
        if lock is None:
            lock = self._locks[lead_id] = asyncio.Lock()
        self._waiters[lead_id] = self._waiters.get(lead_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[lead_id] -= 1
            if self._waiters[lead_id] == 0:
                del self._waiters[lead_id]
                del self._locks[lead_id]

    def is_locked(self, lead_id: str) -> bool:
        lock = self._locks.get(lead_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
