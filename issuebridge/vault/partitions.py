"""Keyed serialization for credential partitions.

Each partition (one GitHub App tenant, or the singleton deployment
secret) behaves like a single-threaded actor: operations addressed to the
same key run strictly one after another, operations on different keys
run in parallel.

Implemented as a registry of ``asyncio.Lock`` objects keyed by partition
name. Locks are reference-counted and dropped once no task holds or waits
on them, so the registry does not grow with the number of tenants ever
seen.

Typical usage:

    async with registry.hold(app_id):
        row = await session.get(...)
        ...
        await session.commit()

Scope is one event loop in one process. Multi-worker deployments get
row-level idempotency from the upserts, not cross-process mutual
exclusion.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class PartitionRegistry:
    """Registry of per-key locks with automatic cleanup."""

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._entries.pop(key, None)

    def is_held(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)
