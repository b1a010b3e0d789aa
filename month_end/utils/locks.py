"""Per-key asyncio locks that are forgotten once nobody holds or waits on them."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable, List


class KeyedLocks:
    """``async with locks.hold(key):`` serializes callers sharing ``key``.

    Each entry counts its holders and waiters; the last one out removes it, so
    the map only holds keys that are in use right now.
    """

    def __init__(self) -> None:
        self._entries: Dict[Hashable, List] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries


__all__ = ["KeyedLocks"]
