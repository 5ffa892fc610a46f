"""Base class for transports that relay channel sessions to their clients.

Each transport turns its own connections (an SSE response, a terminal)
into engine subscribers and joins or leaves channel sessions through
the shared registry. Transports run in their own threads.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from chatrelay.engine.registry import SessionHandle, SessionRegistry
from chatrelay.engine.subscriber import Subscriber

logger = logging.getLogger(__name__)


class TransportAdapter(ABC):
    """A relay front end (HTTP/SSE, console) bound to one session registry."""

    name: str = "transport"

    def __init__(self, registry: SessionRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def join(self, channel_id: str, subscriber: Subscriber) -> SessionHandle:
        """Attach a subscriber to the channel's session, starting one if needed."""
        handle = self._registry.attach(channel_id, subscriber)
        logger.info("[%s] %r joined %s", self.name, subscriber, channel_id)
        return handle

    def leave(self, handle: SessionHandle, subscriber: Subscriber) -> None:
        """Detach a subscriber; the session idles out once nobody is left."""
        self._registry.detach(handle, subscriber)
        logger.info("[%s] %r left %s", self.name, subscriber, handle.channel_id)

    @abstractmethod
    def start(self) -> None:
        """Start the transport (blocking or spawns its own thread)."""

    @abstractmethod
    def stop(self) -> None:
        """Gracefully stop the transport."""
