"""Channel session — one poll loop, one dedup window, many subscribers.

State machine::

    RESOLVING -> POLLING -> ROTATING -> POLLING ...
        |           |          |
        +-----> BACKING_OFF <--+        (transient failure / not found)
    any -> STOPPING -> ENDED

The poll loop runs on its own daemon thread and suspends in exactly one
place per iteration: `threading.Event.wait` on the stop event. Cursor,
feed handle and dedup window are touched only by that thread. The
subscriber set is the one piece of state shared with callers and has its
own lock.
"""

from __future__ import annotations

import logging
import threading
import time
import weakref
from datetime import datetime, timezone
from typing import Callable

from chatrelay.config import EngineDef
from chatrelay.engine.backoff import BackoffPolicy
from chatrelay.engine.dedup import Deduplicator
from chatrelay.engine.models import ChatMessage, SessionState
from chatrelay.engine.normalizer import normalize_all
from chatrelay.engine.subscriber import Subscriber
from chatrelay.feed.client import (
    FeedClient,
    FeedEnded,
    FeedHandle,
    FeedNotFound,
    FeedTransientError,
)

logger = logging.getLogger(__name__)

STATUS_CONNECTING = "Connecting…"
STATUS_WAITING = "Waiting for stream…"
STATUS_ROTATING = "Stream ended. Waiting for next live…"
STATUS_RECONNECTING = "Reconnecting…"
STATUS_ENDED = "Stream ended"

# Callback type: (session) -> None
SessionCallback = Callable[["ChannelSession"], None] | None


class ChannelSession:
    """Polls one channel's live feed and fans batches out to subscribers.

    Usage::

        session = ChannelSession("UC123", feed_client, EngineDef())
        session.attach(subscriber)
        session.start()
        # ...
        session.stop()
    """

    def __init__(
        self,
        channel_id: str,
        feed_client: FeedClient,
        settings: EngineDef | None = None,
        on_ended: SessionCallback = None,
        on_idle: SessionCallback = None,
    ) -> None:
        """
        Args:
            channel_id: Channel identifier handed to `FeedClient.resolve`.
            feed_client: Upstream capability.
            settings: Timing and sizing knobs.
            on_ended: Called once from the poll thread after teardown.
            on_idle: Called when the subscriber set empties without an
                explicit detach (dead or garbage-collected subscribers).
        """
        self.channel_id = channel_id
        self._feed = feed_client
        self._settings = settings or EngineDef()
        self._on_ended = on_ended
        self._on_idle = on_idle

        s = self._settings
        self._transient_policy = BackoffPolicy(base=s.transient_backoff_base, cap=s.backoff_cap)
        self._not_found_policy = BackoffPolicy(
            base=s.not_found_interval, cap=max(s.backoff_cap, s.not_found_interval)
        )

        # Owned by the poll thread
        self._dedup = Deduplicator(s.dedup_capacity)
        self._handle: FeedHandle | None = None
        self._cursor = ""
        self._retry_state = SessionState.RESOLVING
        self._retry_delay = 0.0
        self._failures = 0
        self._not_found_count = 0

        self._state = SessionState.RESOLVING
        self._state_lock = threading.Lock()
        self._status_text = STATUS_CONNECTING

        self._subscribers: weakref.WeakSet[Subscriber] = weakref.WeakSet()
        self._sub_lock = threading.Lock()
        self._idle_notified = False

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._torn_down = False

        self.last_activity_at = time.monotonic()
        self.batches_delivered = 0

    # ── Lifecycle ──

    def start(self) -> None:
        """Spawn the poll thread. No-op if already started."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run, daemon=True, name=f"session:{self.channel_id}"
        )
        self._thread.start()

    def stop(self, wait: float | None = None) -> None:
        """Ask the poll loop to stop; unblocks any pending wait immediately.

        Args:
            wait: If given, join the poll thread for up to this many seconds.
        """
        with self._state_lock:
            if self._state is SessionState.ENDED:
                return
            self._state = SessionState.STOPPING
        self._stop_event.set()
        logger.info("Session %s stopping", self.channel_id)

        if self._thread is None:
            self._teardown()
            return
        if wait is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=wait)

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    # ── Subscribers ──

    def attach(self, subscriber: Subscriber) -> int:
        """Add a subscriber. Returns the new subscriber count.

        Returns 0 without adding anything once the session has begun
        stopping; the caller needs a fresh session in that case.
        """
        with self._sub_lock:
            if self.is_terminal:
                return 0
            self._subscribers.add(subscriber)
            self._idle_notified = False
            count = len(self._subscribers)
            status = self._status_text
        self.last_activity_at = time.monotonic()
        self._notify_status(subscriber, status)
        return count

    def detach(self, subscriber: Subscriber) -> int:
        """Remove a subscriber. Returns the remaining subscriber count."""
        with self._sub_lock:
            self._subscribers.discard(subscriber)
            count = len(self._subscribers)
        self.last_activity_at = time.monotonic()
        return count

    @property
    def subscriber_count(self) -> int:
        with self._sub_lock:
            return len(self._subscribers)

    def _snapshot_subscribers(self) -> list[Subscriber]:
        with self._sub_lock:
            return list(self._subscribers)

    # ── State ──

    @property
    def state(self) -> SessionState:
        with self._state_lock:
            return self._state

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def status_text(self) -> str:
        with self._sub_lock:
            return self._status_text

    @property
    def feed_handle(self) -> FeedHandle | None:
        return self._handle

    @property
    def cursor(self) -> str:
        return self._cursor

    @property
    def dedup_size(self) -> int:
        return len(self._dedup)

    def _set_state(self, new_state: SessionState) -> None:
        with self._state_lock:
            # STOPPING/ENDED are only left through teardown
            if self._state.is_terminal:
                return
            old = self._state
            self._state = new_state
        if old is not new_state:
            logger.info("Session %s: %s -> %s", self.channel_id, old.value, new_state.value)

    # ── Poll loop ──

    def _run(self) -> None:
        try:
            while not self._stop_event.is_set():
                state = self.state
                if state in (SessionState.RESOLVING, SessionState.ROTATING):
                    self._step_resolve(state)
                elif state is SessionState.POLLING:
                    self._step_poll()
                elif state is SessionState.BACKING_OFF:
                    self._step_backoff()
                else:
                    break
        except Exception:
            logger.exception("Session %s poll loop failed", self.channel_id)
        finally:
            self._teardown()

    def _wait(self, seconds: float) -> bool:
        """Sleep unless stopped. Returns False if the session was stopped."""
        return not self._stop_event.wait(timeout=max(0.0, seconds))

    def _step_resolve(self, state: SessionState) -> None:
        try:
            handle = self._feed.resolve(self.channel_id)
        except FeedNotFound:
            self._on_not_found(state)
            return
        except FeedTransientError as e:
            logger.warning("Session %s: resolve failed: %s", self.channel_id, e)
            self._on_transient(state)
            return
        except Exception:
            logger.exception("Session %s: unexpected resolve error", self.channel_id)
            self._on_transient(state)
            return

        if self._stop_event.is_set():
            return

        # message ids are feed-scoped
        self._handle = handle
        self._cursor = ""
        self._dedup.clear()
        self._failures = 0
        self._not_found_count = 0
        self._set_state(SessionState.POLLING)
        self._broadcast_status(f"Connected to live chat ({handle.feed_id})")

    def _step_poll(self) -> None:
        if self._handle is None:
            self._set_state(SessionState.ROTATING)
            return
        try:
            result = self._feed.fetch_batch(self._handle, self._cursor)
        except FeedEnded:
            self._enter_rotation()
            return
        except FeedTransientError as e:
            logger.warning("Session %s: fetch failed: %s", self.channel_id, e)
            self._on_transient(SessionState.POLLING)
            return
        except Exception:
            logger.exception("Session %s: unexpected fetch error", self.channel_id)
            self._on_transient(SessionState.POLLING)
            return

        if self._stop_event.is_set():
            return

        self._failures = 0
        received_at = datetime.now(timezone.utc)
        messages = normalize_all(result.events, received_at)
        fresh = [m for m in messages if self._dedup.check_and_add(m.id)]
        self._cursor = result.next_cursor or ""

        if fresh:
            self._deliver(fresh)
        self._check_idle()

        if result.ended:
            self._enter_rotation()
            return

        # the floor always wins over a shorter upstream hint
        delay = max(self._settings.poll_interval, result.suggested_delay or 0.0)
        self._wait(delay)

    def _step_backoff(self) -> None:
        if not self._wait(self._retry_delay):
            return
        self._set_state(self._retry_state)

    def _back_off(self, retry_state: SessionState, delay: float) -> None:
        self._retry_state = retry_state
        self._retry_delay = delay
        logger.info(
            "Session %s backing off %.2fs before %s", self.channel_id, delay, retry_state.value
        )
        self._set_state(SessionState.BACKING_OFF)

    def _on_not_found(self, state: SessionState) -> None:
        if self._finish_if_unsubscribed():
            logger.info("Session %s: no feed and no subscribers, ending", self.channel_id)
            return

        self._not_found_count += 1
        limit = self._settings.max_not_found_retries
        if limit and self._not_found_count > limit:
            logger.info("Session %s: no feed after %d attempts, ending", self.channel_id, limit)
            self._finish()
            return

        if self._not_found_count == 1 and state is SessionState.RESOLVING:
            self._broadcast_status(STATUS_WAITING)
        self._back_off(state, self._not_found_policy.delay(self._not_found_count))

    def _on_transient(self, state: SessionState) -> None:
        self._failures += 1
        delay = self._transient_policy.delay(self._failures)
        retry_state = state

        if self._failures >= self._settings.max_consecutive_failures:
            # the cursor itself is the usual suspect; start over from resolve
            logger.warning(
                "Session %s: %d consecutive failures, forcing re-resolution",
                self.channel_id, self._failures,
            )
            self._failures = 0
            self._discard_feed()
            retry_state = SessionState.ROTATING
            self._broadcast_status(STATUS_RECONNECTING)

        self._back_off(retry_state, delay)

    def _enter_rotation(self) -> None:
        feed_id = self._handle.feed_id if self._handle else "?"
        logger.info("Session %s: feed %s ended, rotating", self.channel_id, feed_id)
        self._discard_feed()
        self._broadcast_status(STATUS_ROTATING)
        self._set_state(SessionState.ROTATING)

    def _discard_feed(self) -> None:
        self._handle = None
        self._cursor = ""
        self._dedup.clear()

    def _finish(self) -> None:
        with self._state_lock:
            self._state = SessionState.STOPPING
        self._stop_event.set()

    def _finish_if_unsubscribed(self) -> bool:
        # attach() holds _sub_lock too, so nobody can join between the check and STOPPING
        with self._sub_lock:
            if self._subscribers:
                return False
            with self._state_lock:
                self._state = SessionState.STOPPING
        self._stop_event.set()
        return True

    def _teardown(self) -> None:
        with self._state_lock:
            if self._torn_down:
                return
            self._torn_down = True
            self._state = SessionState.STOPPING
        self._stop_event.set()
        self._discard_feed()

        # final status goes out before ENDED is observable
        if self._snapshot_subscribers():
            self._broadcast_status(STATUS_ENDED)
        with self._state_lock:
            self._state = SessionState.ENDED
        logger.info("Session %s ended", self.channel_id)

        if self._on_ended:
            self._on_ended(self)

    # ── Fan-out ──

    def _deliver(self, batch: list[ChatMessage]) -> None:
        for sub in self._snapshot_subscribers():
            try:
                sub.on_batch(list(batch))
            except Exception:
                logger.exception("Session %s: subscriber %r failed, detaching", self.channel_id, sub)
                self.detach(sub)
        self.batches_delivered += 1
        self.last_activity_at = time.monotonic()

    def _broadcast_status(self, text: str) -> None:
        with self._sub_lock:
            self._status_text = text
        for sub in self._snapshot_subscribers():
            self._notify_status(sub, text)

    def _notify_status(self, sub: Subscriber, text: str) -> None:
        try:
            sub.on_status(text)
        except Exception:
            logger.exception("Session %s: subscriber %r failed, detaching", self.channel_id, sub)
            self.detach(sub)

    def _check_idle(self) -> None:
        """Report an emptied subscriber set nobody explicitly detached from."""
        with self._sub_lock:
            if self._subscribers or self._idle_notified:
                return
            self._idle_notified = True
        if self._on_idle:
            self._on_idle(self)

    def __repr__(self) -> str:
        return f"ChannelSession({self.channel_id!r}, state={self.state.value})"
