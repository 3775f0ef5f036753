"""Run-level locks keyed by table identity."""

from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager

from lens.core.errors import ConcurrentRunError


class RunLockRegistry:
    """One lock per target table identity.

    ``acquire`` never waits: if another run already holds the lock, the
    caller gets ``ConcurrentRunError`` and may retry later.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def is_locked(self, identity: str) -> bool:
        lock = self._locks.get(identity)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def acquire(self, identity: str):
        lock = self._locks.setdefault(identity, asyncio.Lock())
        if lock.locked():
            raise ConcurrentRunError(identity)
        async with lock:
            yield


_default_registry = RunLockRegistry()


def get_lock_registry() -> RunLockRegistry:
    return _default_registry
