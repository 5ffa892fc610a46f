"""Console transport — tail one channel's chat in the terminal."""

from __future__ import annotations

import threading
from typing import Callable

from chatrelay.channels.base import TransportAdapter
from chatrelay.engine.models import Badge, ChatMessage
from chatrelay.engine.registry import SessionHandle, SessionRegistry
from chatrelay.engine.subscriber import Subscriber

_BADGE_MARKS = {Badge.OWNER: "👑", Badge.MODERATOR: "🔧", Badge.MEMBER: "⭐"}


def format_message(message: ChatMessage) -> str:
    """One terminal line for a chat message."""
    ts = message.received_at.astimezone().strftime("%H:%M:%S")
    marks = "".join(_BADGE_MARKS[b] for b in (Badge.OWNER, Badge.MODERATOR, Badge.MEMBER)
                    if b in message.author_badges)
    author = f"{marks} {message.author_name}" if marks else message.author_name
    line = f"[{ts}] {author}: {message.plain_text}"
    if message.monetary:
        tier = f" {message.monetary.tier}" if message.monetary.tier else ""
        line += f"  💰 {message.monetary.amount}{tier}"
    return line


class ConsoleSubscriber(Subscriber):
    """Prints every batch and status line."""

    def __init__(self, out: Callable[[str], None] = print) -> None:
        self._out = out

    def on_batch(self, messages: list[ChatMessage]) -> None:
        for message in messages:
            self._out(format_message(message))

    def on_status(self, text: str) -> None:
        self._out(f"  ℹ️  {text}")


class ConsoleChannel(TransportAdapter):
    """Attaches one console subscriber to a channel until stopped.

    Usage::

        ConsoleChannel(registry, "@somechannel").start()  # blocks until Ctrl+C
    """

    name = "console"

    def __init__(
        self,
        registry: SessionRegistry,
        channel_id: str,
        out: Callable[[str], None] = print,
    ) -> None:
        super().__init__(registry)
        self._channel_id = channel_id
        self._subscriber = ConsoleSubscriber(out)
        self._out = out
        self._handle: SessionHandle | None = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        """Attach and block until `stop()` or Ctrl+C."""
        self._stop_event.clear()
        self._handle = self.join(self._channel_id, self._subscriber)
        self._out(f"Watching {self._channel_id} (Ctrl+C to quit)")
        try:
            while not self._stop_event.wait(timeout=0.5):
                if self._handle.session.is_terminal:
                    break
        except KeyboardInterrupt:
            self._out("\nGoodbye!")
        finally:
            self._detach()

    def stop(self) -> None:
        self._stop_event.set()

    def _detach(self) -> None:
        if self._handle is not None:
            self.leave(self._handle, self._subscriber)
            self._handle = None
