"""Canonical chat records produced by the normalizer.

`ChatMessage.to_dict()` is the wire shape handed to transports; it carries
every field so a transport can serialize it without loss.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


class Badge(str, Enum):
    OWNER = "owner"
    MODERATOR = "moderator"
    MEMBER = "member"


class EventKind(str, Enum):
    """Logical kind of an upstream event, resolved once by the normalizer."""

    TEXT = "text"
    PAID = "paid"
    PAID_STICKER = "paid_sticker"
    MEMBERSHIP = "membership"
    UNKNOWN = "unknown"


class SessionState(str, Enum):
    RESOLVING = "resolving"
    POLLING = "polling"
    ROTATING = "rotating"
    BACKING_OFF = "backing_off"
    STOPPING = "stopping"
    ENDED = "ended"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.STOPPING, SessionState.ENDED)


@dataclass(frozen=True)
class TextSegment:
    text: str


@dataclass(frozen=True)
class ImageSegment:
    """Inline image (custom emoji, sticker) inside a message."""

    url: str
    alt: str = ""


Segment = Union[TextSegment, ImageSegment]


@dataclass(frozen=True)
class MonetaryAnnotation:
    """Amount and tier of a paid message.

    Attributes:
        amount: Display string as sent upstream (e.g. "$5.00").
        tier: Colour tier name, or a "#rrggbb" fallback.
    """

    amount: str
    tier: str = ""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts is not None else None


def _parse_iso(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class ChatMessage:
    """One normalized chat message.

    Attributes:
        id: Upstream id, or a synthesized stable id when upstream has none.
        author_name: Display name ("User" when missing).
        author_badges: Role badges of the author.
        rich_text: Ordered text and image segments, upstream order preserved.
        monetary: Present only for paid messages.
        received_at: Assigned by the engine when the event was normalized.
        kind: Logical event kind.
        author_channel_id: Upstream id of the author, if known.
        author_photo: Avatar URL, if known.
        member_badge_urls: Image URLs of the author's membership badges.
        sent_at: Upstream timestamp, if the payload carried one.
    """

    id: str
    author_name: str
    author_badges: frozenset[Badge] = frozenset()
    rich_text: tuple[Segment, ...] = ()
    monetary: MonetaryAnnotation | None = None
    received_at: datetime = field(default_factory=_utcnow)
    kind: EventKind = EventKind.TEXT
    author_channel_id: str | None = None
    author_photo: str | None = None
    member_badge_urls: tuple[str, ...] = ()
    sent_at: datetime | None = None

    @property
    def plain_text(self) -> str:
        """Message text with images replaced by their alt text."""
        parts = []
        for seg in self.rich_text:
            parts.append(seg.text if isinstance(seg, TextSegment) else seg.alt)
        return "".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-ready dict."""
        rich_text: list[dict[str, str]] = []
        for seg in self.rich_text:
            if isinstance(seg, TextSegment):
                rich_text.append({"type": "text", "text": seg.text})
            else:
                rich_text.append({"type": "image", "url": seg.url, "alt": seg.alt})

        return {
            "id": self.id,
            "kind": self.kind.value,
            "author": {
                "name": self.author_name,
                # sorted so the wire shape is deterministic
                "badges": sorted(b.value for b in self.author_badges),
                "channelId": self.author_channel_id,
                "photo": self.author_photo,
                "memberBadgeUrls": list(self.member_badge_urls),
            },
            "richText": rich_text,
            "monetary": (
                {"amount": self.monetary.amount, "tier": self.monetary.tier}
                if self.monetary else None
            ),
            "sentAt": _iso(self.sent_at),
            "receivedAt": _iso(self.received_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatMessage:
        """Rebuild a message from `to_dict()` output."""
        author = data.get("author", {})
        segments: list[Segment] = []
        for seg in data.get("richText", []):
            if seg.get("type") == "image":
                segments.append(ImageSegment(url=seg["url"], alt=seg.get("alt", "")))
            else:
                segments.append(TextSegment(text=seg.get("text", "")))

        monetary = data.get("monetary")
        return cls(
            id=data["id"],
            author_name=author.get("name", "User"),
            author_badges=frozenset(Badge(b) for b in author.get("badges", [])),
            rich_text=tuple(segments),
            monetary=MonetaryAnnotation(**monetary) if monetary else None,
            received_at=_parse_iso(data.get("receivedAt")) or _utcnow(),
            kind=EventKind(data.get("kind", EventKind.TEXT.value)),
            author_channel_id=author.get("channelId"),
            author_photo=author.get("photo"),
            member_badge_urls=tuple(author.get("memberBadgeUrls", [])),
            sent_at=_parse_iso(data.get("sentAt")),
        )
