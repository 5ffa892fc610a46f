"""Feed client boundary — the only network seam the engine talks through.

A feed client knows how to find the live feed behind a channel identifier
and how to page through it with an opaque cursor. Everything about the
upstream wire format stays behind this interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


class FeedError(Exception):
    """Base class for feed client failures."""


class FeedNotFound(FeedError):
    """The channel has no active feed right now."""


class FeedTransientError(FeedError):
    """Network or upstream hiccup; the same call may succeed later."""


class FeedEnded(FeedError):
    """The feed finished; a successor must be resolved."""


@dataclass(frozen=True, eq=False)
class FeedHandle:
    """An opaque reference to one discovered active feed.

    Attributes:
        feed_id: Upstream identifier of the feed (e.g. a live video id).
        data: Adapter-private state needed to fetch from this feed.
    """

    feed_id: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class FetchResult:
    """One page of raw events.

    Attributes:
        events: Raw upstream events, oldest first.
        next_cursor: Continuation token for the next fetch.
        ended: True when the upstream signalled the end of the feed
            alongside this final page.
        suggested_delay: Upstream's preferred wait before the next fetch,
            in seconds. The engine never waits less than its own floor.
    """

    events: list[Any] = field(default_factory=list)
    next_cursor: str = ""
    ended: bool = False
    suggested_delay: float | None = None


class FeedClient(ABC):
    """Capability the engine consumes to reach an upstream feed."""

    @abstractmethod
    def resolve(self, channel_id: str) -> FeedHandle:
        """Find the currently active feed for a channel.

        Raises:
            FeedNotFound: nothing is live for the channel.
            FeedTransientError: the lookup failed and may be retried.
        """
        ...

    @abstractmethod
    def fetch_batch(self, handle: FeedHandle, cursor: str) -> FetchResult:
        """Fetch the next page of events. An empty cursor means initial fetch.

        Raises:
            FeedEnded: the feed is over.
            FeedTransientError: the fetch failed and may be retried.
        """
        ...

    def close(self) -> None:
        """Release any resources held by the client."""
