"""Shared fixtures: a scripted feed client and a recording subscriber."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable

import pytest

from chatrelay.config import EngineDef
from chatrelay.engine.models import ChatMessage
from chatrelay.engine.subscriber import Subscriber
from chatrelay.feed.client import FeedClient, FeedHandle, FeedNotFound, FetchResult


def wait_until(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.005) -> bool:
    """Poll `predicate` until true or timeout. Returns the last result."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def page(*events: dict[str, Any], cursor: str = "", ended: bool = False, delay: float | None = None) -> FetchResult:
    return FetchResult(events=list(events), next_cursor=cursor, ended=ended, suggested_delay=delay)


class ScriptedFeedClient(FeedClient):
    """FeedClient that replays scripted answers.

    Each step is either a value to return, an exception instance to raise,
    or a zero-argument callable producing one of those. When the resolve
    script runs out it answers "not found"; when the fetch script runs out
    it returns an empty page with the same cursor.
    """

    def __init__(self, resolves: list[Any] | None = None, fetches: list[Any] | None = None) -> None:
        self.resolves = list(resolves or [])
        self.fetches = list(fetches or [])
        self.resolve_calls: list[str] = []
        self.fetch_calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    @staticmethod
    def _play(step: Any) -> Any:
        if callable(step) and not isinstance(step, (FeedHandle, FetchResult)):
            step = step()
        if isinstance(step, BaseException):
            raise step
        return step

    def resolve(self, channel_id: str) -> FeedHandle:
        with self._lock:
            self.resolve_calls.append(channel_id)
            step = self.resolves.pop(0) if self.resolves else FeedNotFound("script exhausted")
        return self._play(step)

    def fetch_batch(self, handle: FeedHandle, cursor: str) -> FetchResult:
        with self._lock:
            self.fetch_calls.append((handle.feed_id, cursor))
            step = self.fetches.pop(0) if self.fetches else FetchResult(events=[], next_cursor=cursor)
        return self._play(step)


class RecordingSubscriber(Subscriber):
    """Remembers everything delivered to it."""

    def __init__(self) -> None:
        self.batches: list[list[ChatMessage]] = []
        self.statuses: list[str] = []
        self._lock = threading.Lock()

    def on_batch(self, messages: list[ChatMessage]) -> None:
        with self._lock:
            self.batches.append(messages)

    def on_status(self, text: str) -> None:
        with self._lock:
            self.statuses.append(text)

    @property
    def ids(self) -> list[list[str]]:
        with self._lock:
            return [[m.id for m in batch] for batch in self.batches]


@pytest.fixture
def fast_settings() -> EngineDef:
    """Engine settings with intervals small enough for tests."""
    return EngineDef(
        poll_interval=0.01,
        idle_grace=0.1,
        dedup_capacity=100,
        transient_backoff_base=0.01,
        not_found_interval=0.01,
        backoff_cap=0.05,
        max_consecutive_failures=3,
        max_not_found_retries=0,
        subscriber_queue_size=16,
    )
