"""Tests for the per-channel poll loop."""

import gc
import threading
import time
from dataclasses import replace
from unittest.mock import MagicMock

import pytest
from conftest import RecordingSubscriber, ScriptedFeedClient, page, wait_until

from chatrelay.engine.models import SessionState, TextSegment
from chatrelay.engine.session import (
    STATUS_CONNECTING,
    STATUS_ENDED,
    STATUS_RECONNECTING,
    STATUS_ROTATING,
    STATUS_WAITING,
    ChannelSession,
)
from chatrelay.feed.client import FeedEnded, FeedHandle, FeedNotFound, FeedTransientError


@pytest.fixture
def sessions():
    """Collects sessions so every test stops its poll threads."""
    started: list[ChannelSession] = []
    yield started
    for session in started:
        session.stop(wait=2)


def _session(sessions, client, settings, **kwargs) -> ChannelSession:
    session = ChannelSession("UC1", client, settings, **kwargs)
    sessions.append(session)
    return session


class TestResolve:
    def test_not_found_retries_until_live(self, sessions, fast_settings):
        client = ScriptedFeedClient(resolves=[
            FeedNotFound(), FeedNotFound(), FeedNotFound(), FeedHandle("v1"),
        ])
        sub = RecordingSubscriber()
        session = _session(sessions, client, fast_settings)
        session.attach(sub)
        session.start()

        assert wait_until(lambda: session.state is SessionState.POLLING)
        assert len(client.resolve_calls) == 4
        assert session.feed_handle.feed_id == "v1"
        assert sub.statuses[:2] == [STATUS_CONNECTING, STATUS_WAITING]
        assert sub.statuses.count(STATUS_WAITING) == 1

    def test_not_found_without_subscribers_ends(self, sessions, fast_settings):
        on_ended = MagicMock()
        client = ScriptedFeedClient(resolves=[FeedNotFound()])
        session = _session(sessions, client, fast_settings, on_ended=on_ended)
        session.start()

        assert wait_until(lambda: on_ended.called)
        on_ended.assert_called_once_with(session)
        assert session.state is SessionState.ENDED
        assert client.resolve_calls == ["UC1"]

    def test_subscriber_joining_during_resolve_keeps_session(self, sessions, fast_settings):
        sub = RecordingSubscriber()

        def join_then_miss():
            # a viewer arrives while the lookup is still in flight
            session.attach(sub)
            return FeedNotFound()

        client = ScriptedFeedClient(resolves=[join_then_miss, FeedHandle("v1")])
        session = _session(sessions, client, fast_settings)
        session.start()

        assert wait_until(lambda: session.state is SessionState.POLLING)
        assert session.subscriber_count == 1
        assert STATUS_WAITING in sub.statuses

    def test_not_found_retry_limit_ends_with_status(self, sessions, fast_settings):
        settings = replace(fast_settings, max_not_found_retries=2)
        client = ScriptedFeedClient()  # never live
        sub = RecordingSubscriber()
        session = _session(sessions, client, settings)
        session.attach(sub)
        session.start()

        assert wait_until(lambda: session.state is SessionState.ENDED)
        assert len(client.resolve_calls) == 3
        assert sub.statuses[-1] == STATUS_ENDED

    def test_transient_resolve_error_retries(self, sessions, fast_settings):
        client = ScriptedFeedClient(resolves=[FeedTransientError("503"), FeedHandle("v1")])
        session = _session(sessions, client, fast_settings)
        session.attach(RecordingSubscriber())
        session.start()

        assert wait_until(lambda: session.state is SessionState.POLLING)
        assert len(client.resolve_calls) == 2


class TestPolling:
    def test_duplicate_across_fetches_delivered_once(self, sessions, fast_settings):
        client = ScriptedFeedClient(
            resolves=[FeedNotFound(), FeedNotFound(), FeedHandle("v1")],
            fetches=[
                page({"id": "m1", "text": "hi"}, cursor="tok1"),
                page({"id": "m1", "text": "hi"}, cursor="tok2"),
            ],
        )
        sub = RecordingSubscriber()
        session = _session(sessions, client, fast_settings)
        session.attach(sub)
        session.start()

        assert wait_until(lambda: len(client.fetch_calls) >= 3)
        assert sub.ids == [["m1"]]
        assert sub.batches[0][0].rich_text == (TextSegment("hi"),)
        assert [c for _, c in client.fetch_calls[:3]] == ["", "tok1", "tok2"]

    def test_batches_keep_upstream_order(self, sessions, fast_settings):
        client = ScriptedFeedClient(
            resolves=[FeedHandle("v1")],
            fetches=[
                page({"id": "a", "text": "1"}, {"id": "b", "text": "2"}, cursor="t1"),
                page({"id": "b", "text": "2"}, {"id": "c", "text": "3"}, cursor="t2"),
            ],
        )
        sub = RecordingSubscriber()
        session = _session(sessions, client, fast_settings)
        session.attach(sub)
        session.start()

        assert wait_until(lambda: len(sub.batches) == 2)
        assert sub.ids == [["a", "b"], ["c"]]

    def test_empty_page_delivers_nothing(self, sessions, fast_settings):
        client = ScriptedFeedClient(resolves=[FeedHandle("v1")], fetches=[page(cursor="t1")])
        sub = RecordingSubscriber()
        session = _session(sessions, client, fast_settings)
        session.attach(sub)
        session.start()

        assert wait_until(lambda: len(client.fetch_calls) >= 2)
        assert sub.batches == []
        assert session.batches_delivered == 0

    def test_malformed_event_does_not_drop_siblings(self, sessions, fast_settings):
        client = ScriptedFeedClient(
            resolves=[FeedHandle("v1")],
            fetches=[page({"id": "a", "text": "x"}, "garbage", {"id": "b", "text": "y"}, cursor="t1")],
        )
        sub = RecordingSubscriber()
        session = _session(sessions, client, fast_settings)
        session.attach(sub)
        session.start()

        assert wait_until(lambda: sub.batches)
        assert sub.ids == [["a", "b"]]

    def test_transient_fetch_keeps_cursor(self, sessions, fast_settings):
        client = ScriptedFeedClient(
            resolves=[FeedHandle("v1")],
            fetches=[
                page({"id": "m1", "text": "a"}, cursor="tok1"),
                FeedTransientError("timeout"),
                page({"id": "m1", "text": "a"}, {"id": "m2", "text": "b"}, cursor="tok2"),
            ],
        )
        sub = RecordingSubscriber()
        session = _session(sessions, client, fast_settings)
        session.attach(sub)
        session.start()

        assert wait_until(lambda: len(sub.batches) == 2)
        assert [c for _, c in client.fetch_calls[:3]] == ["", "tok1", "tok1"]
        assert sub.ids == [["m1"], ["m2"]]
        assert len(client.resolve_calls) == 1

    def test_poll_interval_is_a_floor(self, sessions, fast_settings):
        settings = replace(fast_settings, poll_interval=0.1)
        stamps: list[float] = []

        def timed_page(cursor):
            def step():
                stamps.append(time.monotonic())
                return page(cursor=cursor, delay=0.0)
            return step

        client = ScriptedFeedClient(
            resolves=[FeedHandle("v1")],
            fetches=[timed_page("t1"), timed_page("t2"), timed_page("t3")],
        )
        session = _session(sessions, client, settings)
        session.attach(RecordingSubscriber())
        session.start()

        assert wait_until(lambda: len(stamps) == 3)
        assert stamps[1] - stamps[0] >= 0.09
        assert stamps[2] - stamps[1] >= 0.09

    def test_longer_upstream_hint_is_honoured(self, sessions, fast_settings):
        stamps: list[float] = []

        def step():
            stamps.append(time.monotonic())
            return page(cursor="t", delay=0.15)

        client = ScriptedFeedClient(resolves=[FeedHandle("v1")], fetches=[step, step])
        session = _session(sessions, client, fast_settings)
        session.attach(RecordingSubscriber())
        session.start()

        assert wait_until(lambda: len(stamps) == 2)
        assert stamps[1] - stamps[0] >= 0.14


class TestRotation:
    def test_feed_end_rotates_and_clears_dedup(self, sessions, fast_settings):
        client = ScriptedFeedClient(
            resolves=[FeedHandle("v1")],
            fetches=[page({"id": "m1", "text": "a"}, cursor="t1"), FeedEnded("over")],
        )
        sub = RecordingSubscriber()
        session = _session(sessions, client, fast_settings)
        sizes_at_resolve: list[int] = []

        def second_resolve():
            sizes_at_resolve.append(session.dedup_size)
            return FeedHandle("v2")

        client.resolves.append(second_resolve)
        client.fetches.append(page({"id": "m1", "text": "a"}, cursor="u1"))

        session.attach(sub)
        session.start()

        assert wait_until(lambda: len(sub.batches) == 2)
        assert sizes_at_resolve == [0]
        assert sub.ids == [["m1"], ["m1"]]
        assert STATUS_ROTATING in sub.statuses
        assert session.feed_handle.feed_id == "v2"
        assert ("v2", "") in client.fetch_calls

    def test_page_marked_ended_delivers_then_rotates(self, sessions, fast_settings):
        client = ScriptedFeedClient(
            resolves=[FeedHandle("v1"), FeedHandle("v2")],
            fetches=[page({"id": "last", "text": "bye"}, ended=True)],
        )
        sub = RecordingSubscriber()
        session = _session(sessions, client, fast_settings)
        session.attach(sub)
        session.start()

        assert wait_until(lambda: len(client.resolve_calls) == 2)
        assert sub.ids == [["last"]]
        assert STATUS_ROTATING in sub.statuses

    def test_consecutive_failures_force_reresolve(self, sessions, fast_settings):
        client = ScriptedFeedClient(
            resolves=[FeedHandle("v1"), FeedHandle("v2")],
            fetches=[
                page({"id": "m1", "text": "a"}, cursor="t1"),
                FeedTransientError("1"),
                FeedTransientError("2"),
                FeedTransientError("3"),
            ],
        )
        sub = RecordingSubscriber()
        session = _session(sessions, client, fast_settings)
        session.attach(sub)
        session.start()

        assert wait_until(lambda: ("v2", "") in client.fetch_calls)
        assert len(client.resolve_calls) == 2
        assert STATUS_RECONNECTING in sub.statuses
        assert client.fetch_calls.count(("v1", "t1")) == 3


class TestSubscribers:
    def test_attach_receives_current_status(self, sessions, fast_settings):
        session = _session(sessions, ScriptedFeedClient(), fast_settings)
        sub = RecordingSubscriber()
        assert session.attach(sub) == 1
        assert sub.statuses == [STATUS_CONNECTING]

    def test_late_subscriber_gets_no_replay(self, sessions, fast_settings):
        gate = threading.Event()

        def gated():
            gate.wait(timeout=5)
            return page({"id": "m2", "text": "b"}, cursor="t2")

        client = ScriptedFeedClient(
            resolves=[FeedHandle("v1")],
            fetches=[page({"id": "m1", "text": "a"}, cursor="t1"), gated],
        )
        first, late = RecordingSubscriber(), RecordingSubscriber()
        session = _session(sessions, client, fast_settings)
        session.attach(first)
        session.start()

        assert wait_until(lambda: len(first.batches) == 1)
        session.attach(late)
        gate.set()

        assert wait_until(lambda: len(first.batches) == 2)
        assert first.ids == [["m1"], ["m2"]]
        assert late.ids == [["m2"]]

    def test_failing_subscriber_is_detached(self, sessions, fast_settings):
        client = ScriptedFeedClient(
            resolves=[FeedHandle("v1")],
            fetches=[page({"id": "a", "text": "x"}, cursor="t1"), page({"id": "b", "text": "y"}, cursor="t2")],
        )
        bad = MagicMock()
        bad.on_batch.side_effect = RuntimeError("socket closed")
        good = RecordingSubscriber()
        session = _session(sessions, client, fast_settings)
        session.attach(bad)
        session.attach(good)
        session.start()

        assert wait_until(lambda: len(good.batches) == 2)
        assert bad.on_batch.call_count == 1
        assert session.subscriber_count == 1

    def test_garbage_collected_subscriber_reports_idle(self, sessions, fast_settings):
        on_idle = MagicMock()
        client = ScriptedFeedClient(resolves=[FeedHandle("v1")])
        session = _session(sessions, client, fast_settings, on_idle=on_idle)
        sub = RecordingSubscriber()
        session.attach(sub)
        session.start()
        assert wait_until(lambda: session.state is SessionState.POLLING)

        del sub
        gc.collect()

        assert wait_until(lambda: on_idle.called)
        on_idle.assert_called_once_with(session)
        assert session.subscriber_count == 0

    def test_batches_are_independent_copies(self, sessions, fast_settings):
        client = ScriptedFeedClient(resolves=[FeedHandle("v1")], fetches=[page({"id": "a", "text": "x"})])
        s1, s2 = RecordingSubscriber(), RecordingSubscriber()
        session = _session(sessions, client, fast_settings)
        session.attach(s1)
        session.attach(s2)
        session.start()

        assert wait_until(lambda: s1.batches and s2.batches)
        assert s1.batches[0] == s2.batches[0]
        assert s1.batches[0] is not s2.batches[0]


class TestStop:
    def test_stop_interrupts_long_wait(self, sessions, fast_settings):
        settings = replace(fast_settings, poll_interval=30.0)
        client = ScriptedFeedClient(resolves=[FeedHandle("v1")], fetches=[page(cursor="t1")])
        on_ended = MagicMock()
        session = _session(sessions, client, settings, on_ended=on_ended)
        session.attach(RecordingSubscriber())
        session.start()
        assert wait_until(lambda: len(client.fetch_calls) == 1)

        started = time.monotonic()
        session.stop(wait=2)
        assert time.monotonic() - started < 1.0
        assert session.state is SessionState.ENDED
        on_ended.assert_called_once_with(session)

    def test_result_after_stop_is_discarded(self, sessions, fast_settings):
        gate = threading.Event()
        in_flight = threading.Event()

        def slow_fetch():
            in_flight.set()
            gate.wait(timeout=5)
            return page({"id": "late", "text": "x"}, cursor="t1")

        client = ScriptedFeedClient(resolves=[FeedHandle("v1")], fetches=[slow_fetch])
        sub = RecordingSubscriber()
        session = _session(sessions, client, fast_settings)
        session.attach(sub)
        session.start()
        assert in_flight.wait(timeout=2)

        session.stop()
        gate.set()
        session.join(timeout=2)

        assert sub.batches == []
        assert session.state is SessionState.ENDED
        assert sub.statuses[-1] == STATUS_ENDED

    def test_stop_before_start_tears_down(self, fast_settings):
        on_ended = MagicMock()
        session = ChannelSession("UC1", ScriptedFeedClient(), fast_settings, on_ended=on_ended)
        session.stop()
        assert session.state is SessionState.ENDED
        on_ended.assert_called_once_with(session)

    def test_stopped_session_refuses_attach(self, fast_settings):
        session = ChannelSession("UC1", ScriptedFeedClient(), fast_settings)
        session.stop()
        sub = RecordingSubscriber()

        assert session.attach(sub) == 0
        assert session.subscriber_count == 0
        assert sub.statuses == []

    def test_stop_is_idempotent(self, sessions, fast_settings):
        on_ended = MagicMock()
        session = _session(sessions, ScriptedFeedClient(resolves=[FeedHandle("v1")]), fast_settings,
                           on_ended=on_ended)
        session.attach(RecordingSubscriber())
        session.start()
        session.stop(wait=2)
        session.stop(wait=2)
        assert on_ended.call_count == 1
