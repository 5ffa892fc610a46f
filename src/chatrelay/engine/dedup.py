"""Bounded window of recently seen message ids.

Oldest ids are evicted once the window is full, so a very old duplicate
may pass through again. That trade-off keeps long sessions at constant
memory.
"""

from __future__ import annotations

import hashlib
import json
import threading
from collections import deque
from typing import Any

DEFAULT_CAPACITY = 2000


def synthesize_id(raw: Any) -> str:
    """Derive a stable id for a payload that has none.

    Same input gives the same id within a process run. Not meant as a
    cross-session identity.
    """
    try:
        canonical = json.dumps(raw, sort_keys=True, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        canonical = repr(raw)
    digest = hashlib.sha1(canonical.encode("utf-8")).hexdigest()
    return f"syn:{digest[:20]}"


class Deduplicator:
    """Set of seen ids with FIFO eviction.

    Example::

        dedup = Deduplicator(capacity=3)
        dedup.check_and_add("a")  # True, first sighting
        dedup.check_and_add("a")  # False, duplicate
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._seen: set[str] = set()
        self._order: deque[str] = deque()
        self._lock = threading.Lock()

    def check_and_add(self, message_id: str) -> bool:
        """Record an id. Returns True if it was not in the window."""
        with self._lock:
            if message_id in self._seen:
                return False
            self._seen.add(message_id)
            self._order.append(message_id)
            while len(self._order) > self._capacity:
                self._seen.discard(self._order.popleft())
            return True

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()
            self._order.clear()

    def __contains__(self, message_id: str) -> bool:
        with self._lock:
            return message_id in self._seen

    def __len__(self) -> int:
        with self._lock:
            return len(self._order)

    @property
    def capacity(self) -> int:
        return self._capacity
