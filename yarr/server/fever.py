"""The Fever API, as used by mobile and desktop feed reader clients."""

from __future__ import annotations

import base64
import hashlib
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Optional

from ..storage.feeds import HTTPState
from ..storage.items import ItemFilter, ItemStatus, MarkFilter
from .auth import strings_equal
from .router import Context, Request

log = logging.getLogger(__name__)

API_VERSION = 3
# only a limited number of items is returned per request
LIST_LIMIT = 50
BLANK_ICON = "data:image/gif;base64,R0lGODlhAQABAAAAACw="

_INT = re.compile(r"[+-]?[0-9]+\Z")

_HTML_TAGS = (
    b"<!DOCTYPE HTML", b"<HTML", b"<HEAD", b"<SCRIPT", b"<IFRAME", b"<H1",
    b"<DIV", b"<FONT", b"<TABLE", b"<A", b"<STYLE", b"<TITLE", b"<B",
    b"<BODY", b"<BR", b"<P", b"<!--",
)
_SIGNATURES = (
    (b"%PDF-", "application/pdf"),
    (b"%!PS-Adobe-", "application/postscript"),
    (b"\xfe\xff", "text/plain; charset=utf-16be"),
    (b"\xff\xfe", "text/plain; charset=utf-16le"),
    (b"\xef\xbb\xbf", "text/plain; charset=utf-8"),
    (b"\x00\x00\x01\x00", "image/x-icon"),
    (b"\x00\x00\x02\x00", "image/x-icon"),
    (b"BM", "image/bmp"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x1f\x8b\x08", "application/x-gzip"),
    (b"PK\x03\x04", "application/zip"),
)
_BINARY_BYTES = frozenset(
    [*range(0x00, 0x09), 0x0B, *range(0x0E, 0x1B), *range(0x1C, 0x20)]
)
_WHITESPACE = b"\t\n\x0c\r "


def detect_content_type(data: bytes) -> str:
    """Guess a MIME type from the first 512 bytes of data."""
    head = bytes(data[:512])
    stripped = head.lstrip(_WHITESPACE)
    upper = stripped.upper()
    for tag in _HTML_TAGS:
        if upper.startswith(tag) and len(stripped) > len(tag) and stripped[len(tag)] in b" >":
            return "text/html; charset=utf-8"
    if stripped.startswith(b"<?xml"):
        return "text/xml; charset=utf-8"
    for signature, ctype in _SIGNATURES:
        if head.startswith(signature):
            return ctype
    if head[:4] == b"RIFF" and head[8:14] == b"WEBPVP":
        return "image/webp"
    if any(byte in _BINARY_BYTES for byte in head):
        return "application/octet-stream"
    return "text/plain; charset=utf-8"


def join_ints(values: Iterable[int]) -> str:
    """Comma-separated decimal integers."""
    return ",".join(str(value) for value in values)


def last_refreshed_on_time(http_states: Mapping[int, HTTPState]) -> int:
    """Latest refresh time of any feed as a Unix timestamp, 0 if none."""
    return max(
        [0, *(int(state.last_refreshed.timestamp()) for state in http_states.values())]
    )


def _parse_int(text: str) -> Optional[int]:
    if not _INT.match(text):
        return None
    value = int(text)
    if not -(2**63) <= value < 2**63:
        return None
    return value


class FeverAPI:
    """Request handler serving the Fever API from the storage."""

    def __init__(self, db: Any, username: Optional[str] = None,
                 password: Optional[str] = None) -> None:
        self.db = db
        self.username = username or ""
        self.password = password or ""

    def authorized(self, request: Request) -> bool:
        """Check the api_key (md5 of "username:password") when credentials are set."""
        if not (self.username and self.password):
            return True
        supplied = request.form_get("api_key").lower()
        expected = hashlib.md5(f"{self.username}:{self.password}".encode("utf-8")).hexdigest()
        return strings_equal(supplied, expected)

    def __call__(self, context: Context) -> None:
        if not self.authorized(context.req):
            context.json(200, {"api_version": API_VERSION, "auth": 0,
                               "last_refreshed_on_time": 0})
            return
        actions: list[tuple[str, Callable[[Context], None]]] = [
            ("groups", self._groups),
            ("feeds", self._feeds),
            ("unread_item_ids", self._unread_item_ids),
            ("saved_item_ids", self._saved_item_ids),
            ("favicons", self._favicons),
            ("items", self._items),
            ("links", self._links),
            ("mark", self._mark),
        ]
        form = context.req.form
        for key, action in actions:
            if key in form:
                action(context)
                return
        context.json(200, {
            "api_version": API_VERSION,
            "auth": 1,
            "last_refreshed_on_time": self._last_refreshed(),
        })

    def _last_refreshed(self) -> int:
        return last_refreshed_on_time(self.db.list_http_states())

    def _write(self, context: Context, data: dict[str, Any],
               last_refreshed: Optional[int] = None) -> None:
        data["api_version"] = API_VERSION
        data["auth"] = 1
        data["last_refreshed_on_time"] = (
            self._last_refreshed() if last_refreshed is None else last_refreshed
        )
        context.json(200, data)

    def _feed_groups(self) -> list[dict[str, Any]]:
        grouped: dict[int, list[int]] = {}
        for feed in self.db.list_feeds():
            if feed.folder_id is not None:
                grouped.setdefault(feed.folder_id, []).append(feed.id)
        return [
            {"group_id": group_id, "feed_ids": join_ints(feed_ids)}
            for group_id, feed_ids in grouped.items()
        ]

    def _groups(self, context: Context) -> None:
        groups = [{"id": f.id, "title": f.title} for f in self.db.list_folders()]
        self._write(context, {"groups": groups, "feeds_groups": self._feed_groups()})

    def _feeds(self, context: Context) -> None:
        states = self.db.list_http_states()
        feeds = []
        for feed in self.db.list_feeds():
            state = states.get(feed.id)
            feeds.append({
                "id": feed.id,
                "favicon_id": feed.id,
                "title": feed.title,
                "url": feed.feed_link,
                "site_url": feed.link,
                "is_spark": 0,
                "last_updated_on_time": int(state.last_refreshed.timestamp()) if state else 0,
            })
        self._write(context, {"feeds": feeds, "feeds_groups": self._feed_groups()},
                    last_refreshed_on_time(states))

    def _favicons(self, context: Context) -> None:
        favicons = []
        for feed in self.db.list_feeds():
            data = BLANK_ICON
            if feed.has_icon:
                full = self.db.get_feed(feed.id)
                icon = full.icon if full is not None and full.icon is not None else b""
                data = "data:{};base64,{}".format(
                    detect_content_type(icon), base64.b64encode(icon).decode("ascii")
                )
            favicons.append({"id": feed.id, "data": data})
        self._write(context, {"favicons": favicons})

    def _items(self, context: Context) -> None:
        req = context.req
        item_filter = ItemFilter()
        with_ids = req.query_get("with_ids")
        since_id = req.query_get("since_id")
        max_id = req.query_get("max_id")
        if with_ids:
            parsed = (_parse_int(text) for text in with_ids.split(","))
            item_filter.ids = [value for value in parsed if value is not None]
        elif since_id:
            item_filter.since_id = _parse_int(since_id)
        elif max_id:
            item_filter.max_id = _parse_int(max_id)

        items = [
            {
                "id": item.id,
                "feed_id": item.feed_id,
                "title": item.title,
                "author": "",
                "html": item.content,
                "url": item.link,
                "is_saved": int(item.status == ItemStatus.STARRED),
                "is_read": int(item.status == ItemStatus.READ),
                "created_on_time": int(item.date.timestamp()),
            }
            for item in self.db.list_items(item_filter, LIST_LIMIT, True, True)
        ]
        total = self.db.count_items(ItemFilter())
        self._write(context, {"items": items, "total_items": total})

    def _links(self, context: Context) -> None:
        self._write(context, {"links": []})

    def _item_ids(self, status: ItemStatus) -> list[int]:
        item_filter = ItemFilter(status=status)
        ids: list[int] = []
        while True:
            items = self.db.list_items(item_filter, LIST_LIMIT, True, False)
            if not items:
                return ids
            ids.extend(item.id for item in items)
            item_filter.after = items[-1].id

    def _unread_item_ids(self, context: Context) -> None:
        ids = self._item_ids(ItemStatus.UNREAD)
        self._write(context, {"unread_item_ids": join_ints(ids)})

    def _saved_item_ids(self, context: Context) -> None:
        ids = self._item_ids(ItemStatus.STARRED)
        self._write(context, {"saved_item_ids": join_ints(ids)})

    def _mark_filter_before(self, context: Context, mark_filter: MarkFilter) -> MarkFilter:
        before = _parse_int(context.req.form_get("before")) or 0
        if before > 0:
            mark_filter.before = datetime.fromtimestamp(before, timezone.utc)
        return mark_filter

    def _mark(self, context: Context) -> None:
        req = context.req
        target = _parse_int(req.form_get("id"))
        if target is None:
            log.warning("invalid id: %r", req.form_get("id"))
            return

        kind = req.form_get("mark")
        mark_as = req.form_get("as")
        if kind == "item":
            statuses = {
                "read": ItemStatus.READ,
                "unread": ItemStatus.UNREAD,
                "saved": ItemStatus.STARRED,
                "unsaved": ItemStatus.READ,
            }
            status = statuses.get(mark_as)
            if status is None:
                context.out.write_header(400)
                return
            self.db.update_item_status(target, status)
        elif kind in ("feed", "group"):
            if mark_as != "read":
                context.out.write_header(400)
            mark_filter = (
                MarkFilter(feed_id=target) if kind == "feed" else MarkFilter(folder_id=target)
            )
            self.db.mark_items_read(self._mark_filter_before(context, mark_filter))
        else:
            context.out.write_header(400)
            return
        context.json(200, {"api_version": API_VERSION, "auth": 1})