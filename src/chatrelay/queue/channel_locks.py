"""Per-channel locks that serialize attach/detach for one channel at a time.

Different channels proceed in parallel; operations on the same channel
run one at a time. A channel's lock only exists while some thread holds
or waits on it, so a long-running relay that has seen thousands of
channels keeps no leftovers.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Generator


class _ChannelLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0  # holder plus waiters


class ChannelLocks:
    """Per-channel locking for registry mutations.

    Example::

        locks = ChannelLocks()
        with locks.lock("UC123"):
            ...  # only one attach/detach at a time for this channel
    """

    def __init__(self) -> None:
        self._locks: dict[str, _ChannelLock] = {}
        self._meta_lock = threading.Lock()  # guards _locks and every users count

    @contextmanager
    def lock(self, channel_id: str) -> Generator[None, None, None]:
        """Acquire the lock for one channel.

        The meta-lock is held only while registering interest or dropping
        it, so a busy channel never blocks the others. The entry is removed
        when the last holder or waiter leaves.
        """
        with self._meta_lock:
            entry = self._locks.get(channel_id)
            if entry is None:
                entry = self._locks[channel_id] = _ChannelLock()
            entry.users += 1

        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._meta_lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[channel_id]

    @property
    def active_channels(self) -> list[str]:
        """Channels whose lock is currently held (for monitoring)."""
        with self._meta_lock:
            return [key for key, entry in self._locks.items() if entry.lock.locked()]

    def __len__(self) -> int:
        """Number of channels with a live lock entry."""
        with self._meta_lock:
            return len(self._locks)
