# cci/pipeline/locks.py
import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class UserLocks:
    """
    One asyncio.Lock per creator; serializes duplicate check, cap read and payout write.
    A creator's lock is dropped once nobody holds or waits on it.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def for_user(self, user_id: str):
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._users[user_id] = self._users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[user_id] -= 1
            if not self._users[user_id]:
                del self._users[user_id]
                del self._locks[user_id]

    def tracked(self) -> int:
        """Number of creators with a live lock."""
        return len(self._locks)
