"""Message normalizer — raw upstream events to canonical ChatMessage records.

Two payload shapes are understood:

1. innertube live-chat actions (``addChatItemAction``, replayed actions,
   or a bare item carrying one of the known renderers)
2. flat records ``{"id", "type", "author", "text" | "message" | "runs", ...}``
   as produced by simpler feeds and by tests

Each event is classified once into an `EventKind`. Unknown kinds are
dropped (None), never errors. Missing fields degrade to defaults.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from chatrelay.engine.dedup import synthesize_id
from chatrelay.engine.models import (
    Badge,
    ChatMessage,
    EventKind,
    ImageSegment,
    MonetaryAnnotation,
    Segment,
    TextSegment,
)

logger = logging.getLogger(__name__)

DEFAULT_AUTHOR = "User"

_RENDERER_KINDS = {
    "liveChatTextMessageRenderer": EventKind.TEXT,
    "liveChatPaidMessageRenderer": EventKind.PAID,
    "liveChatPaidStickerRenderer": EventKind.PAID_STICKER,
    "liveChatMembershipItemRenderer": EventKind.MEMBERSHIP,
}

# flat "type" values, lower-cased with "_" and "-" removed
_FLAT_KINDS = {
    "text": EventKind.TEXT,
    "textmessage": EventKind.TEXT,
    "chat": EventKind.TEXT,
    "livechattextmessage": EventKind.TEXT,
    "paid": EventKind.PAID,
    "superchat": EventKind.PAID,
    "livechatpaidmessage": EventKind.PAID,
    "paidsticker": EventKind.PAID_STICKER,
    "supersticker": EventKind.PAID_STICKER,
    "livechatpaidsticker": EventKind.PAID_STICKER,
    "membership": EventKind.MEMBERSHIP,
    "livechatmembershipitem": EventKind.MEMBERSHIP,
}

# Super Chat header colours (ARGB) -> tier name
_TIER_PALETTE = {
    0xFF1565C0: "blue",
    0xFF00B8D4: "lightblue",
    0xFF00BFA5: "green",
    0xFFFFB300: "yellow",
    0xFFE65100: "orange",
    0xFFC2185B: "magenta",
    0xFFD00000: "red",
}


class MalformedEventError(ValueError):
    """A single raw event could not be normalized."""


@dataclass(frozen=True)
class ClassifiedEvent:
    """A raw event tagged with its kind.

    Attributes:
        kind: Resolved logical kind.
        body: The renderer dict (innertube) or the record itself (flat).
        flat: True for flat records.
    """

    kind: EventKind
    body: Mapping[str, Any]
    flat: bool = False


_UNKNOWN = ClassifiedEvent(kind=EventKind.UNKNOWN, body={})

# a typeless flat record is only a chat message when it carries one of these
_FLAT_CONTENT_KEYS = ("text", "message", "runs")


def _extract_item(raw: Mapping[str, Any]) -> Mapping[str, Any] | None:
    """Find the chat item inside an innertube action, if any."""
    add = raw.get("addChatItemAction")
    if isinstance(add, Mapping):
        item = add.get("item")
        return item if isinstance(item, Mapping) else None

    replay = raw.get("replayChatItemAction")
    if isinstance(replay, Mapping):
        for action in replay.get("actions") or []:
            if isinstance(action, Mapping) and isinstance(action.get("addChatItemAction"), Mapping):
                item = action["addChatItemAction"].get("item")
                return item if isinstance(item, Mapping) else None
        return None

    if any(key in raw for key in _RENDERER_KINDS):
        return raw
    return None


def _is_action_payload(raw: Mapping[str, Any]) -> bool:
    return any(isinstance(key, str) and key.endswith(("Action", "Renderer")) for key in raw)


def classify(raw: Mapping[str, Any]) -> ClassifiedEvent:
    """Resolve the logical kind of a raw event."""
    item = _extract_item(raw)
    if item is not None:
        for key, kind in _RENDERER_KINDS.items():
            renderer = item.get(key)
            if isinstance(renderer, Mapping):
                return ClassifiedEvent(kind=kind, body=renderer)
        return _UNKNOWN

    if _is_action_payload(raw):
        # deletions, tickers, banners, engagement messages
        return _UNKNOWN

    type_name = raw.get("type") or raw.get("item_type")
    if type_name is None:
        if not any(key in raw for key in _FLAT_CONTENT_KEYS):
            return _UNKNOWN
        return ClassifiedEvent(kind=EventKind.TEXT, body=raw, flat=True)
    key = str(type_name).lower().replace("_", "").replace("-", "")
    kind = _FLAT_KINDS.get(key, EventKind.UNKNOWN)
    if kind is EventKind.UNKNOWN:
        return _UNKNOWN
    return ClassifiedEvent(kind=kind, body=raw, flat=True)


# ── Field helpers ──


def _pick_thumbnail(thumbs: Any) -> str | None:
    """Largest (last) thumbnail URL."""
    if not isinstance(thumbs, list) or not thumbs:
        return None
    for thumb in (thumbs[-1], thumbs[0]):
        if isinstance(thumb, Mapping) and thumb.get("url"):
            return str(thumb["url"])
    return None


def _plain(text_obj: Any) -> str:
    """Flatten a simpleText/runs object into a plain string."""
    if text_obj is None:
        return ""
    if isinstance(text_obj, str):
        return text_obj
    if isinstance(text_obj, Mapping):
        if text_obj.get("simpleText") is not None:
            return str(text_obj["simpleText"])
        runs = text_obj.get("runs")
        if isinstance(runs, list):
            return "".join(
                str(r.get("text", "")) for r in runs if isinstance(r, Mapping)
            )
    return ""


def _accessibility_label(obj: Any) -> str | None:
    """``accessibility.accessibilityData.label``, or None if any level is off-shape."""
    node = obj
    for key in ("accessibility", "accessibilityData", "label"):
        if not isinstance(node, Mapping):
            return None
        node = node.get(key)
    return str(node) if node else None


def _emoji_segment(emoji: Mapping[str, Any]) -> Segment:
    image = emoji.get("image") if isinstance(emoji.get("image"), Mapping) else {}
    url = (
        _pick_thumbnail(image.get("thumbnails"))
        or _pick_thumbnail(emoji.get("thumbnails"))
        or image.get("url")
    )

    shortcuts = emoji.get("shortcuts")
    alt = (
        (shortcuts[0] if isinstance(shortcuts, list) and shortcuts else None)
        or _accessibility_label(image)
        or emoji.get("emojiId")
        or "emoji"
    )
    if url:
        return ImageSegment(url=str(url), alt=str(alt))
    return TextSegment(text=str(alt))


def _segments_from_runs(runs: Iterable[Any]) -> list[Segment]:
    segments: list[Segment] = []
    for run in runs:
        if isinstance(run, str):
            segments.append(TextSegment(text=run))
        elif isinstance(run, Mapping):
            if run.get("text") is not None:
                segments.append(TextSegment(text=str(run["text"])))
            elif isinstance(run.get("emoji"), Mapping):
                segments.append(_emoji_segment(run["emoji"]))
            elif run.get("url"):
                segments.append(ImageSegment(url=str(run["url"]), alt=str(run.get("alt", ""))))
    return segments


def _rich_text(text_obj: Any) -> list[Segment]:
    """Convert a text object (simpleText, runs, list or str) into segments."""
    if text_obj is None:
        return []
    if isinstance(text_obj, str):
        return [TextSegment(text=text_obj)] if text_obj else []
    if isinstance(text_obj, list):
        return _segments_from_runs(text_obj)
    if isinstance(text_obj, Mapping):
        if text_obj.get("simpleText") is not None:
            return [TextSegment(text=str(text_obj["simpleText"]))]
        if isinstance(text_obj.get("runs"), list):
            return _segments_from_runs(text_obj["runs"])
    return []


def _badges(entries: Any) -> tuple[frozenset[Badge], tuple[str, ...]]:
    """Role badges plus the image URLs of membership badges."""
    badges: set[Badge] = set()
    member_urls: list[str] = []
    if not isinstance(entries, list):
        return frozenset(), ()

    for entry in entries:
        if isinstance(entry, str):
            info: Mapping[str, Any] = {}
            label = entry.lower()
            icon = ""
        elif isinstance(entry, Mapping):
            info = entry.get("liveChatAuthorBadgeRenderer", entry)
            if not isinstance(info, Mapping):
                continue
            label = str(info.get("tooltip") or info.get("label") or "").lower()
            icon_obj = info.get("icon")
            icon = str(icon_obj.get("iconType", "")).lower() if isinstance(icon_obj, Mapping) else ""
        else:
            continue

        if "owner" in label or icon == "owner":
            badges.add(Badge.OWNER)
        if "moderator" in label or icon == "moderator":
            badges.add(Badge.MODERATOR)
        custom = info.get("customThumbnail")
        if "member" in label or isinstance(custom, Mapping):
            badges.add(Badge.MEMBER)
            url = _pick_thumbnail(custom.get("thumbnails")) if isinstance(custom, Mapping) else None
            if url:
                member_urls.append(url)

    return frozenset(badges), tuple(member_urls)


def _tier(color: Any) -> str:
    if isinstance(color, bool) or not isinstance(color, int):
        return ""
    named = _TIER_PALETTE.get(color & 0xFFFFFFFF)
    if named:
        return named
    return f"#{color & 0xFFFFFF:06x}"


def _timestamp_usec(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1_000_000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


# ── Builders per shape ──


def _from_renderer(event: ClassifiedEvent, raw: Mapping[str, Any], received_at: datetime) -> ChatMessage:
    body = event.body
    badges, member_urls = _badges(body.get("authorBadges"))

    text = body.get("message")
    if text is None and event.kind is EventKind.MEMBERSHIP:
        text = body.get("headerSubtext") or body.get("headerPrimaryText")
    segments = _rich_text(text)
    if event.kind is EventKind.PAID_STICKER and not segments:
        sticker = body.get("sticker") if isinstance(body.get("sticker"), Mapping) else {}
        url = _pick_thumbnail(sticker.get("thumbnails"))
        if url:
            segments = [ImageSegment(url=url, alt=_accessibility_label(sticker) or "sticker")]

    monetary = None
    if event.kind in (EventKind.PAID, EventKind.PAID_STICKER):
        color = body.get("headerBackgroundColor", body.get("bodyBackgroundColor", body.get("backgroundColor")))
        monetary = MonetaryAnnotation(amount=_plain(body.get("purchaseAmountText")), tier=_tier(color))

    photo = body.get("authorPhoto")
    return ChatMessage(
        id=str(body.get("id") or synthesize_id(raw)),
        author_name=_plain(body.get("authorName")) or DEFAULT_AUTHOR,
        author_badges=badges,
        rich_text=tuple(segments),
        monetary=monetary,
        received_at=received_at,
        kind=event.kind,
        author_channel_id=body.get("authorExternalChannelId"),
        author_photo=_pick_thumbnail(photo.get("thumbnails")) if isinstance(photo, Mapping) else None,
        member_badge_urls=member_urls,
        sent_at=_timestamp_usec(body.get("timestampUsec")),
    )


def _from_flat(event: ClassifiedEvent, raw: Mapping[str, Any], received_at: datetime) -> ChatMessage:
    body = event.body
    author = body.get("author")
    if isinstance(author, Mapping):
        author_name = _plain(author.get("name"))
        author_id = author.get("channelId") or author.get("id")
        author_photo = author.get("photo")
        badge_entries = author.get("badges", body.get("badges"))
    else:
        author_name = author if isinstance(author, str) else _plain(body.get("authorName"))
        author_id = body.get("authorChannelId")
        author_photo = body.get("authorPhoto")
        badge_entries = body.get("badges")

    badges, member_urls = _badges(badge_entries)
    for flag, badge in (("isOwner", Badge.OWNER), ("isModerator", Badge.MODERATOR), ("isMember", Badge.MEMBER)):
        if body.get(flag) is True:
            badges = badges | {badge}

    if body.get("runs") is not None:
        segments = _rich_text(body.get("runs"))
    elif body.get("text") is not None:
        segments = _rich_text(body.get("text"))
    else:
        segments = _rich_text(body.get("message"))

    monetary = None
    if event.kind in (EventKind.PAID, EventKind.PAID_STICKER):
        monetary = MonetaryAnnotation(
            amount=_plain(body.get("amount")),
            tier=str(body.get("tier") or _tier(body.get("color"))),
        )

    return ChatMessage(
        id=str(body.get("id") or synthesize_id(raw)),
        author_name=author_name or DEFAULT_AUTHOR,
        author_badges=badges,
        rich_text=tuple(segments),
        monetary=monetary,
        received_at=received_at,
        kind=event.kind,
        author_channel_id=str(author_id) if author_id else None,
        author_photo=str(author_photo) if author_photo else None,
        member_badge_urls=member_urls,
        sent_at=_timestamp_usec(body.get("timestampUsec")),
    )


def normalize(raw: Any, received_at: datetime | None = None) -> ChatMessage | None:
    """Normalize one raw event.

    Returns None for event kinds that are not chat messages.

    Raises:
        MalformedEventError: the payload is structurally unusable.
    """
    if not isinstance(raw, Mapping):
        raise MalformedEventError(f"expected a mapping, got {type(raw).__name__}")

    received_at = received_at or datetime.now(timezone.utc)
    try:
        event = classify(raw)
        if event.kind is EventKind.UNKNOWN:
            return None
        if event.flat:
            return _from_flat(event, raw, received_at)
        return _from_renderer(event, raw, received_at)
    except (TypeError, AttributeError, KeyError, ValueError) as e:
        raise MalformedEventError(str(e)) from e


def normalize_all(events: Iterable[Any], received_at: datetime | None = None) -> list[ChatMessage]:
    """Normalize a page of events, dropping non-messages and malformed ones.

    A malformed event is logged and skipped; its siblings are unaffected.
    """
    received_at = received_at or datetime.now(timezone.utc)
    messages: list[ChatMessage] = []
    for raw in events:
        try:
            message = normalize(raw, received_at)
        except MalformedEventError as e:
            logger.warning("Dropping malformed event: %s", e)
            continue
        if message is not None:
            messages.append(message)
    return messages
