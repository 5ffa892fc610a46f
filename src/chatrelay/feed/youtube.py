"""YouTube live chat feed client.

Resolves a channel (id, @handle, custom name, URL or video id) to its
current live video, scrapes the innertube key and initial continuation
from the live-chat popout page, then pages through `get_live_chat`.

All wire-format guesswork lives here; the engine only ever sees
`FeedHandle`, cursors and raw action dicts.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qs, urlparse

import httpx

from chatrelay.config import FeedDef
from chatrelay.feed.client import (
    FeedClient,
    FeedEnded,
    FeedHandle,
    FeedNotFound,
    FeedTransientError,
    FetchResult,
)

logger = logging.getLogger(__name__)

BASE_URL = "https://www.youtube.com"

_VIDEO_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")
_CANONICAL_RE = re.compile(
    r'<link\s+rel="canonical"\s+href="https?://(?:www\.)?youtube\.com/watch\?v=([A-Za-z0-9_-]{11})"'
)

# fallback chains, first match wins
_API_KEY_RES = [
    re.compile(r'"INNERTUBE_API_KEY"\s*:\s*"([^"]+)"'),
    re.compile(r'innertubeApiKey["\']?\s*[:=]\s*["\']([^"\']+)["\']', re.IGNORECASE),
]
_CLIENT_VERSION_RES = [
    re.compile(r'"INNERTUBE_CONTEXT_CLIENT_VERSION"\s*:\s*"([^"]+)"'),
    re.compile(r'"INNERTUBE_CLIENT_VERSION"\s*:\s*"([^"]+)"'),
    re.compile(r'"clientVersion"\s*:\s*"([^"]+)"'),
]
_CONTINUATION_RE = re.compile(r'"continuation"\s*:\s*"([^"]+)"')

_CONTINUATION_KEYS = (
    "invalidationContinuationData",
    "timedContinuationData",
    "reloadContinuationData",
    "liveChatReplayContinuationData",
)


@dataclass(frozen=True)
class ChannelRef:
    """A parsed channel input.

    Attributes:
        kind: "channel_id", "handle", "custom" or "video_id".
        id: The identifier itself (handles keep their leading "@").
    """

    kind: str
    id: str


def parse_channel_input(text: str) -> ChannelRef:
    """Classify what the user gave us as a channel reference.

    Raises:
        ValueError: empty input or an unrecognized URL.
    """
    s = (text or "").strip()
    if not s:
        raise ValueError("channel input is empty")

    if s.startswith(("http://", "https://")):
        u = urlparse(s)
        parts = [p for p in u.path.split("/") if p]
        v = parse_qs(u.query).get("v")
        if v:
            return ChannelRef("video_id", v[0])
        if u.netloc.endswith("youtu.be") and parts:
            return ChannelRef("video_id", parts[0])
        if len(parts) >= 2 and parts[0] == "channel":
            return ChannelRef("channel_id", parts[1])
        if len(parts) >= 2 and parts[0] in ("c", "user"):
            return ChannelRef("custom", parts[1])
        if parts and parts[0].startswith("@"):
            return ChannelRef("handle", parts[0])
        raise ValueError(f"unrecognized channel URL: {s}")

    if _VIDEO_ID_RE.match(s):
        return ChannelRef("video_id", s)
    if s.startswith("UC") and len(s) > 20:
        return ChannelRef("channel_id", s)
    if s.startswith("@"):
        return ChannelRef("handle", s)
    return ChannelRef("custom", s)


def _first_match(patterns: list[re.Pattern[str]], text: str) -> str | None:
    for pattern in patterns:
        m = pattern.search(text)
        if m:
            return m.group(1)
    return None


def parse_chat_response(data: Any) -> FetchResult:
    """Turn a `get_live_chat` JSON body into a FetchResult.

    Raises:
        FeedEnded: the response carries no live chat continuation at all.
        FeedTransientError: the body is not a JSON object.
    """
    if not isinstance(data, dict):
        raise FeedTransientError("unexpected get_live_chat body")
    contents = (data.get("continuationContents") or {}).get("liveChatContinuation")
    if not isinstance(contents, dict):
        raise FeedEnded("no live chat continuation in response")

    actions = contents.get("actions") or []
    next_cursor = ""
    timeout_ms = None
    for entry in contents.get("continuations") or []:
        if not isinstance(entry, dict):
            continue
        for key in _CONTINUATION_KEYS:
            cont = entry.get(key)
            if isinstance(cont, dict) and cont.get("continuation"):
                next_cursor = cont["continuation"]
                timeout_ms = cont.get("timeoutMs")
                break
        if next_cursor:
            break

    if not next_cursor:
        # last page of a finished stream
        return FetchResult(events=list(actions), next_cursor="", ended=True)

    delay = timeout_ms / 1000.0 if isinstance(timeout_ms, (int, float)) else None
    return FetchResult(events=list(actions), next_cursor=next_cursor, suggested_delay=delay)


class YouTubeFeedClient(FeedClient):
    """FeedClient backed by the public YouTube web endpoints.

    Usage::

        client = YouTubeFeedClient(FeedDef())
        handle = client.resolve("@somechannel")
        page = client.fetch_batch(handle, "")
    """

    def __init__(
        self,
        settings: FeedDef | None = None,
        http_client: httpx.Client | None = None,
        base_url: str = BASE_URL,
    ) -> None:
        self._settings = settings or FeedDef()
        self._base = base_url.rstrip("/")
        # Shared HTTP client, reused across polls
        self._http = http_client or httpx.Client(
            timeout=self._settings.request_timeout,
            follow_redirects=True,
            headers={
                "User-Agent": self._settings.user_agent,
                "Accept-Language": "en-US,en;q=0.9",
            },
        )

    def close(self) -> None:
        self._http.close()

    # ── Resolve ──

    def resolve(self, channel_id: str) -> FeedHandle:
        try:
            ref = parse_channel_input(channel_id)
        except ValueError as e:
            raise FeedNotFound(str(e)) from e

        video_id = ref.id if ref.kind == "video_id" else self._find_live_video(ref)
        if not video_id:
            raise FeedNotFound(f"no live video for {channel_id}")
        return self._open_chat(video_id)

    def _live_urls(self, ref: ChannelRef) -> list[str]:
        if ref.kind == "channel_id":
            return [f"{self._base}/channel/{ref.id}/live"]
        if ref.kind == "handle":
            return [f"{self._base}/{ref.id}/live"]
        return [
            f"{self._base}/{ref.id}/live",
            f"{self._base}/c/{ref.id}/live",
            f"{self._base}/user/{ref.id}/live",
        ]

    def _find_live_video(self, ref: ChannelRef) -> str | None:
        for url in self._live_urls(ref):
            resp = self._get(url)
            if resp.status_code == 404:
                continue
            v = resp.url.params.get("v")
            if v and _VIDEO_ID_RE.match(v):
                return v
            m = _CANONICAL_RE.search(resp.text)
            if m:
                return m.group(1)
        return None

    def _open_chat(self, video_id: str) -> FeedHandle:
        resp = self._get(f"{self._base}/live_chat", params={"v": video_id, "is_popout": "1"})
        if resp.status_code == 404:
            raise FeedNotFound(f"no live chat for video {video_id}")
        html = resp.text

        api_key = _first_match(_API_KEY_RES, html)
        continuation_match = _CONTINUATION_RE.search(html)
        if not api_key or not continuation_match:
            raise FeedNotFound(f"live chat not available for video {video_id}")

        client_version = _first_match(_CLIENT_VERSION_RES, html) or self._settings.client_version
        logger.info("Opened live chat for video %s (client %s)", video_id, client_version)
        return FeedHandle(
            feed_id=video_id,
            data={
                "api_key": api_key,
                "client_version": client_version,
                "continuation": continuation_match.group(1),
            },
        )

    # ── Fetch ──

    def fetch_batch(self, handle: FeedHandle, cursor: str) -> FetchResult:
        continuation = cursor or handle.data.get("continuation", "")
        payload = {
            "context": {
                "client": {
                    "clientName": "WEB",
                    "clientVersion": handle.data.get("client_version", self._settings.client_version),
                },
            },
            "continuation": continuation,
        }
        try:
            resp = self._http.post(
                f"{self._base}/youtubei/v1/live_chat/get_live_chat",
                params={"key": handle.data.get("api_key", ""), "prettyPrint": "false"},
                json=payload,
                headers={"Referer": f"{self._base}/watch?v={handle.feed_id}"},
            )
        except httpx.HTTPError as e:
            raise FeedTransientError(f"get_live_chat failed: {e}") from e

        if resp.status_code in (404, 410):
            raise FeedEnded(f"live chat for {handle.feed_id} is gone ({resp.status_code})")
        if resp.status_code >= 400:
            raise FeedTransientError(f"get_live_chat returned {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as e:
            raise FeedTransientError("get_live_chat returned invalid JSON") from e
        return parse_chat_response(data)

    # ── HTTP ──

    def _get(self, url: str, params: dict[str, str] | None = None) -> httpx.Response:
        try:
            resp = self._http.get(url, params=params)
        except httpx.HTTPError as e:
            raise FeedTransientError(f"GET {url} failed: {e}") from e
        if resp.status_code == 429 or resp.status_code >= 500:
            raise FeedTransientError(f"GET {url} returned {resp.status_code}")
        return resp
