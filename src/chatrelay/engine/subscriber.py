"""Subscriber handles — where a session delivers its batches.

Transports own their subscribers; sessions only keep weak references.
Delivery must never block the poll loop, so `QueueSubscriber` drops its
oldest pending item when full.
"""

from __future__ import annotations

import itertools
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any

from chatrelay.engine.models import ChatMessage

_ids = itertools.count(1)


class Subscriber(ABC):
    """Receives message batches and status lines from one session."""

    @abstractmethod
    def on_batch(self, messages: list[ChatMessage]) -> None:
        """Called with each new ordered batch. Must not block."""
        ...

    @abstractmethod
    def on_status(self, text: str) -> None:
        """Called with operator-visible status changes."""
        ...


@dataclass(frozen=True)
class Delivery:
    """One item in a subscriber queue.

    Attributes:
        kind: "batch" or "status".
        payload: list of ChatMessage for batches, str for status.
    """

    kind: str
    payload: Any


class QueueSubscriber(Subscriber):
    """Subscriber backed by a bounded in-memory queue.

    Usage::

        sub = QueueSubscriber(maxsize=100)
        handle = registry.attach("UC123", sub)
        item = sub.get(timeout=15)  # None on timeout
    """

    def __init__(self, maxsize: int = 256, name: str | None = None) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self._items: deque[Delivery] = deque()
        self._maxsize = maxsize
        self._cond = threading.Condition()
        self._dropped = 0
        self._closed = False
        self.name = name or f"sub-{next(_ids)}"

    def _put(self, item: Delivery) -> None:
        with self._cond:
            if self._closed:
                return
            if len(self._items) >= self._maxsize:
                self._items.popleft()
                self._dropped += 1
            self._items.append(item)
            self._cond.notify()

    def on_batch(self, messages: list[ChatMessage]) -> None:
        self._put(Delivery(kind="batch", payload=list(messages)))

    def on_status(self, text: str) -> None:
        self._put(Delivery(kind="status", payload=text))

    def get(self, timeout: float | None = None) -> Delivery | None:
        """Pop the oldest item, waiting up to `timeout` seconds.

        Returns None on timeout or once the subscriber is closed and drained.
        """
        with self._cond:
            if not self._items and not self._closed:
                self._cond.wait(timeout=timeout)
            if self._items:
                return self._items.popleft()
            return None

    def close(self) -> None:
        """Stop accepting items and wake any waiting reader."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def dropped(self) -> int:
        """Items discarded because the queue was full."""
        with self._cond:
            return self._dropped

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def __repr__(self) -> str:
        return f"QueueSubscriber({self.name!r})"
