"""Per-key lock registries so writes for one (server, day) never interleave.

An entry lives only while someone holds or waits on its lock, so the
registries stay as small as the number of keys in flight.
"""
import asyncio
import threading
from collections.abc import Hashable
from contextlib import asynccontextmanager, contextmanager


class _Slot:
    __slots__ = ("lock", "users")

    def __init__(self, lock):
        self.lock = lock
        self.users = 0


class KeyedLocks:
    """Thread locks created on demand, one per key."""

    def __init__(self):
        self._slots: dict[Hashable, _Slot] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        return len(self._slots)

    @contextmanager
    def hold(self, key: Hashable):
        with self._guard:
            slot = self._slots.get(key)
            if slot is None:
                slot = self._slots[key] = _Slot(threading.Lock())
            slot.users += 1
        try:
            with slot.lock:
                yield
        finally:
            with self._guard:
                slot.users -= 1
                if slot.users == 0:
                    del self._slots[key]


class AsyncKeyedLocks:
    """asyncio flavour: a second caller for the same key queues behind the first."""

    def __init__(self):
        self._slots: dict[Hashable, _Slot] = {}

    def __len__(self) -> int:
        return len(self._slots)

    def busy(self, key: Hashable) -> bool:
        return key in self._slots

    @asynccontextmanager
    async def hold(self, key: Hashable):
        slot = self._slots.get(key)
        if slot is None:
            slot = self._slots[key] = _Slot(asyncio.Lock())
        slot.users += 1
        try:
            async with slot.lock:
                yield
        finally:
            slot.users -= 1
            if slot.users == 0:
                del self._slots[key]
