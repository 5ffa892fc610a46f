"""Session registry — the process-wide map from channel id to live session.

Sessions are created on the first attach and torn down once they have had
no subscribers for the idle grace period. All mutations for one channel
go through that channel's lock; the map itself is only locked for
lookups and swaps, never across I/O.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

from chatrelay.config import EngineDef
from chatrelay.engine.models import SessionState
from chatrelay.engine.session import ChannelSession
from chatrelay.engine.subscriber import Subscriber
from chatrelay.feed.client import FeedClient
from chatrelay.queue.channel_locks import ChannelLocks

logger = logging.getLogger(__name__)

SessionFactory = Callable[..., ChannelSession]


@dataclass(frozen=True, eq=False)
class SessionHandle:
    """What `attach` hands back; pass it to `detach` later.

    Holds the exact session the subscriber joined, so a detach after a
    session was replaced never touches its successor.
    """

    channel_id: str
    session: ChannelSession

    @property
    def state(self) -> SessionState:
        return self.session.state


class SessionRegistry:
    """Creates, shares and reclaims channel sessions.

    Usage::

        registry = SessionRegistry(feed_client, EngineDef(idle_grace=20))
        handle = registry.attach("UC123", subscriber)
        # ...
        registry.detach(handle, subscriber)
        registry.shutdown()
    """

    def __init__(
        self,
        feed_client: FeedClient,
        settings: EngineDef | None = None,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self._feed = feed_client
        self._settings = settings or EngineDef()
        self._factory = session_factory or ChannelSession
        self._sessions: dict[str, ChannelSession] = {}
        self._timers: dict[str, threading.Timer] = {}
        self._map_lock = threading.Lock()
        self._locks = ChannelLocks()
        self._closed = False

    # ── Control surface ──

    def attach(self, channel_id: str, subscriber: Subscriber) -> SessionHandle:
        """Join (or start) the session for a channel."""
        if not channel_id:
            raise ValueError("channel_id is required")

        with self._locks.lock(channel_id):
            with self._map_lock:
                if self._closed:
                    raise RuntimeError("registry is shut down")
                session = self._sessions.get(channel_id)
                timer = self._timers.pop(channel_id, None)
            if timer is not None:
                timer.cancel()

            count = 0
            created = session is None or session.is_terminal
            if not created:
                count = session.attach(subscriber)
                # 0 means it started stopping after the check above
                created = count == 0
            if created:
                session = self._factory(
                    channel_id,
                    self._feed,
                    self._settings,
                    on_ended=self._on_session_ended,
                    on_idle=self._on_session_idle,
                )
                with self._map_lock:
                    self._sessions[channel_id] = session
                count = session.attach(subscriber)
                session.start()
                logger.info("Started session for %s", channel_id)
            logger.debug("Channel %s now has %d subscriber(s)", channel_id, count)

        return SessionHandle(channel_id=channel_id, session=session)

    def detach(self, handle: SessionHandle, subscriber: Subscriber) -> None:
        """Leave a session. The last one out arms the idle timer."""
        channel_id = handle.channel_id
        with self._locks.lock(channel_id):
            remaining = handle.session.detach(subscriber)
            logger.debug("Channel %s now has %d subscriber(s)", channel_id, remaining)
            if remaining == 0 and self._current(channel_id) is handle.session:
                self._arm_idle_timer(channel_id, handle.session)

    def status(self, channel_id: str) -> SessionState | None:
        """Current state of a channel's session, or None if there is none."""
        session = self._current(channel_id)
        return session.state if session else None

    def get(self, channel_id: str) -> ChannelSession | None:
        return self._current(channel_id)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Per-channel state and subscriber count (for diagnostics)."""
        with self._map_lock:
            sessions = dict(self._sessions)
        return {
            channel_id: {
                "state": session.state.value,
                "subscribers": session.subscriber_count,
                "feed": session.feed_handle.feed_id if session.feed_handle else None,
            }
            for channel_id, session in sessions.items()
        }

    @property
    def channel_ids(self) -> list[str]:
        with self._map_lock:
            return list(self._sessions.keys())

    @property
    def pending_teardowns(self) -> list[str]:
        """Channels whose idle timer is armed."""
        with self._map_lock:
            return list(self._timers.keys())

    def shutdown(self, wait: float | None = 2.0) -> None:
        """Stop every session and cancel every idle timer."""
        with self._map_lock:
            self._closed = True
            sessions = list(self._sessions.values())
            timers = list(self._timers.values())
            self._sessions.clear()
            self._timers.clear()

        for timer in timers:
            timer.cancel()
        for session in sessions:
            session.stop(wait=wait)
        logger.info("Registry shut down (%d session(s) stopped)", len(sessions))

    def __len__(self) -> int:
        with self._map_lock:
            return len(self._sessions)

    # ── Internals ──

    def _current(self, channel_id: str) -> ChannelSession | None:
        with self._map_lock:
            return self._sessions.get(channel_id)

    def _arm_idle_timer(self, channel_id: str, session: ChannelSession) -> None:
        """Start (or restart) the idle countdown. Caller holds the channel lock."""
        timer = threading.Timer(self._settings.idle_grace, self._expire, args=(channel_id, session))
        timer.daemon = True
        timer.name = f"idle:{channel_id}"
        with self._map_lock:
            if self._closed:
                return
            previous = self._timers.pop(channel_id, None)
            self._timers[channel_id] = timer
        if previous is not None:
            previous.cancel()
        timer.start()
        logger.info("Channel %s idle, teardown in %.1fs", channel_id, self._settings.idle_grace)

    def _expire(self, channel_id: str, session: ChannelSession) -> None:
        """Idle timer callback; runs on the timer's own thread."""
        with self._locks.lock(channel_id):
            with self._map_lock:
                # a cancelled timer may still fire once; only the armed one counts
                if self._timers.get(channel_id) is not threading.current_thread():
                    return
                del self._timers[channel_id]
                if self._sessions.get(channel_id) is not session or session.subscriber_count:
                    return
                del self._sessions[channel_id]

        logger.info("Channel %s idle past grace period, stopping session", channel_id)
        session.stop()

    def _on_session_ended(self, session: ChannelSession) -> None:
        """Called from the session's poll thread after teardown."""
        channel_id = session.channel_id
        with self._locks.lock(channel_id):
            with self._map_lock:
                if self._sessions.get(channel_id) is not session:
                    return
                del self._sessions[channel_id]
                timer = self._timers.pop(channel_id, None)
        if timer is not None:
            timer.cancel()
        logger.info("Removed ended session for %s", channel_id)

    def _on_session_idle(self, session: ChannelSession) -> None:
        """Subscribers vanished without detaching (dead or collected)."""
        channel_id = session.channel_id
        with self._locks.lock(channel_id):
            if self._current(channel_id) is not session or session.subscriber_count:
                return
            with self._map_lock:
                if channel_id in self._timers:
                    return
            self._arm_idle_timer(channel_id, session)
