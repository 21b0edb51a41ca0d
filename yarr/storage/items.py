"""Feed items: storage, filtering, search indexing and cleanup."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from html.parser import HTMLParser
from typing import Any, Iterable, Optional

log = logging.getLogger(__name__)

ITEMS_KEEP_SIZE = 50
ITEMS_KEEP_DAYS = 15

_EPOCH = datetime.fromtimestamp(0, timezone.utc)


class ItemStatus(IntEnum):
    UNREAD = 0
    READ = 1
    STARRED = 2

    @classmethod
    def parse(cls, name: str) -> "ItemStatus":
        """Status for its lower-case name; unknown names mean unread."""
        return {status.name.lower(): status for status in cls}.get(name, cls.UNREAD)

    def __str__(self) -> str:
        return self.name.lower()


def _format_time(value: datetime) -> str:
    """UTC text form used for timestamps in the database."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")


def _format_date(value: datetime) -> str:
    # item dates are stored with millisecond precision
    return _format_time(value)[:-3]


def _parse_time(value: Any) -> datetime:
    if not value:
        return _EPOCH
    try:
        parsed = datetime.fromisoformat(str(value).strip())
    except ValueError:
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _json_time(value: datetime) -> str:
    text = value.replace(microsecond=0).isoformat()
    if value.microsecond:
        fraction = f"{value.microsecond:06d}".rstrip("0")
        text = text[:19] + "." + fraction + text[19:]
    return text.replace("+00:00", "Z")


def _status(value: Any) -> ItemStatus | int:
    try:
        return ItemStatus(value or 0)
    except ValueError:
        return int(value)


class _TextExtractor(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.parts: list[str] = []
        self._skip = 0

    def handle_starttag(self, tag: str, attrs: list) -> None:
        if tag in ("script", "style"):
            self._skip += 1

    def handle_endtag(self, tag: str) -> None:
        if tag in ("script", "style") and self._skip:
            self._skip -= 1

    def handle_data(self, data: str) -> None:
        if not self._skip:
            self.parts.append(data)


def _extract_text(markup: str) -> str:
    parser = _TextExtractor()
    parser.feed(markup or "")
    parser.close()
    return " ".join(" ".join(parser.parts).split())


@dataclass
class Item:
    id: int = 0
    guid: str = ""
    feed_id: int = 0
    title: str = ""
    link: str = ""
    content: str = ""
    date: datetime = field(default_factory=lambda: _EPOCH)
    status: ItemStatus = ItemStatus.UNREAD
    image_url: Optional[str] = None
    audio_url: Optional[str] = None

    def sort_key(self) -> str:
        """Date to the second followed by the guid; items are stored in this order."""
        stamp = self.date.replace(microsecond=0).isoformat().replace("+00:00", "Z")
        return f"{stamp}::{self.guid}"

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "guid": self.guid,
            "feed_id": self.feed_id,
            "title": self.title,
            "link": self.link,
        }
        if self.content:
            result["content"] = self.content
        result["date"] = _json_time(self.date)
        result["status"] = str(self.status) if isinstance(self.status, ItemStatus) else ""
        result["image"] = self.image_url
        result["podcast_url"] = self.audio_url
        return result


@dataclass
class ItemFilter:
    folder_id: Optional[int] = None
    feed_id: Optional[int] = None
    status: Optional[ItemStatus] = None
    search: Optional[str] = None
    after: Optional[int] = None
    ids: Optional[list[int]] = None
    since_id: Optional[int] = None
    max_id: Optional[int] = None
    before: Optional[datetime] = None


@dataclass
class MarkFilter:
    folder_id: Optional[int] = None
    feed_id: Optional[int] = None
    before: Optional[datetime] = None


@dataclass
class FeedStat:
    feed_id: int
    unread_count: int
    starred_count: int

    def to_dict(self) -> dict[str, int]:
        return {
            "feed_id": self.feed_id,
            "unread": self.unread_count,
            "starred": self.starred_count,
        }


def list_query_predicate(item_filter: ItemFilter, newest_first: bool) -> tuple[str, list]:
    """SQL condition on items aliased ``i`` and its parameters."""
    cond: list[str] = []
    args: list[Any] = []
    f = item_filter
    if f.folder_id is not None:
        cond.append("i.feed_id in (select id from feeds where folder_id = ?)")
        args.append(f.folder_id)
    if f.feed_id is not None:
        cond.append("i.feed_id = ?")
        args.append(f.feed_id)
    if f.status is not None:
        cond.append("i.status = ?")
        args.append(int(f.status))
    if f.search is not None:
        cond.append("i.search_rowid in (select rowid from search where search match ?)")
        args.append(" ".join(word + "*" for word in f.search.split()))
    if f.after is not None:
        compare = "<" if newest_first else ">"
        cond.append(f"(i.date, i.id) {compare} (select date, id from items where id = ?)")
        args.append(f.after)
    if f.ids:
        cond.append("i.id in (" + ",".join("?" * len(f.ids)) + ")")
        args.extend(f.ids)
    if f.since_id is not None:
        cond.append("i.id > ?")
        args.append(f.since_id)
    if f.max_id is not None:
        cond.append("i.id < ?")
        args.append(f.max_id)
    if f.before is not None:
        cond.append("i.date < ?")
        args.append(_format_date(f.before))
    return (" and ".join(cond) if cond else "1"), args


_ITEM_COLUMNS = (
    "i.id, i.guid, i.feed_id, i.title, i.link, i.date, i.status, i.image, i.podcast_url"
)


def _row_to_item(row: tuple) -> Item:
    return Item(
        id=row[0],
        guid=row[1],
        feed_id=row[2],
        title=row[3] or "",
        link=row[4] or "",
        date=_parse_time(row[5]),
        status=_status(row[6]),
        image_url=row[7],
        audio_url=row[8],
        content=row[9] or "",
    )


class ItemsMixin:
    """Item records; expects ``conn`` and ``lock`` from the database class."""

    conn: sqlite3.Connection
    lock: Any

    def create_items(self, items: Iterable[Item]) -> bool:
        """Insert new items in one transaction, skipping known guids."""
        now = _format_time(datetime.now(timezone.utc))
        with self.lock:
            try:
                self.conn.execute("begin")
                for item in sorted(items, key=Item.sort_key):
                    self.conn.execute(
                        "insert into items ("
                        " guid, feed_id, title, link, date,"
                        " content, image, podcast_url,"
                        " date_arrived, status)"
                        " values (?, ?, ?, ?, strftime('%Y-%m-%d %H:%M:%f', ?),"
                        " ?, ?, ?, ?, ?)"
                        " on conflict (feed_id, guid) do nothing",
                        (
                            item.guid, item.feed_id, item.title, item.link,
                            _format_time(item.date), item.content,
                            item.image_url, item.audio_url,
                            now, int(ItemStatus.UNREAD),
                        ),
                    )
                self.conn.execute("commit")
            except sqlite3.Error as exc:
                log.error("%s", exc)
                if self.conn.in_transaction:
                    self.conn.execute("rollback")
                return False
        return True

    def count_items(self, item_filter: Optional[ItemFilter] = None) -> int:
        predicate, args = list_query_predicate(item_filter or ItemFilter(), False)
        try:
            with self.lock:
                row = self.conn.execute(
                    f"select count(*) from items i where {predicate}", args
                ).fetchone()
        except sqlite3.Error as exc:
            log.error("%s", exc)
            return 0
        return row[0]

    def list_items(self, item_filter: Optional[ItemFilter], limit: int,
                   newest_first: bool = True, with_content: bool = False) -> list[Item]:
        """Items matching the filter, in date order unless ids are selected."""
        item_filter = item_filter or ItemFilter()
        predicate, args = list_query_predicate(item_filter, newest_first)
        order = "date desc, id desc" if newest_first else "date asc, id asc"
        if item_filter.ids is not None or item_filter.since_id is not None:
            order = "i.id asc"
        if item_filter.max_id is not None:
            order = "i.id desc"
        columns = _ITEM_COLUMNS + (", i.content" if with_content else ", '' as content")
        sql = (
            f"select {columns} from items i where {predicate} "
            f"order by {order} limit {int(limit)}"
        )
        try:
            with self.lock:
                rows = self.conn.execute(sql, args).fetchall()
        except sqlite3.Error as exc:
            log.error("%s", exc)
            return []
        return [_row_to_item(row) for row in rows]

    def get_item(self, item_id: int) -> Optional[Item]:
        with self.lock:
            row = self.conn.execute(
                f"select {_ITEM_COLUMNS}, i.content from items i where i.id = ?",
                (item_id,),
            ).fetchone()
        return _row_to_item(row) if row is not None else None

    def update_item_status(self, item_id: int, status: ItemStatus) -> bool:
        try:
            with self.lock:
                self.conn.execute(
                    "update items set status = ? where id = ?", (int(status), item_id)
                )
        except sqlite3.Error as exc:
            log.error("%s", exc)
            return False
        return True

    def mark_items_read(self, mark_filter: Optional[MarkFilter] = None) -> bool:
        """Mark matching items read; starred items keep their status."""
        mark_filter = mark_filter or MarkFilter()
        predicate, args = list_query_predicate(
            ItemFilter(
                folder_id=mark_filter.folder_id,
                feed_id=mark_filter.feed_id,
                before=mark_filter.before,
            ),
            False,
        )
        sql = (
            f"update items as i set status = {int(ItemStatus.READ)} "
            f"where {predicate} and i.status != {int(ItemStatus.STARRED)}"
        )
        try:
            with self.lock:
                self.conn.execute(sql, args)
        except sqlite3.Error as exc:
            log.error("%s", exc)
            return False
        return True

    def feed_stats(self) -> list[FeedStat]:
        """Unread and starred counts for each feed that has items."""
        try:
            with self.lock:
                rows = self.conn.execute(
                    "select feed_id,"
                    f" sum(case status when {int(ItemStatus.UNREAD)} then 1 else 0 end),"
                    f" sum(case status when {int(ItemStatus.STARRED)} then 1 else 0 end)"
                    " from items group by feed_id"
                ).fetchall()
        except sqlite3.Error as exc:
            log.error("%s", exc)
            return []
        return [FeedStat(feed_id, unread or 0, starred or 0) for feed_id, unread, starred in rows]

    def sync_search(self) -> None:
        """Add items not yet in the full-text index to it."""
        try:
            with self.lock:
                rows = self.conn.execute(
                    "select id, title, content from items where search_rowid is null"
                ).fetchall()
        except sqlite3.Error as exc:
            log.error("%s", exc)
            return
        for item_id, title, content in rows:
            try:
                with self.lock:
                    cursor = self.conn.execute(
                        "insert into search (title, description, content) values (?, '', ?)",
                        (title or "", _extract_text(content or "")),
                    )
                    if cursor.rowcount == 1 and cursor.lastrowid is not None:
                        self.conn.execute(
                            "update items set search_rowid = ? where id = ?",
                            (cursor.lastrowid, item_id),
                        )
            except sqlite3.Error as exc:
                log.error("%s", exc)
                return

    def delete_old_items(self) -> None:
        """Remove old items to save space.

        Starred items are never deleted; each feed keeps at least as many
        items as it last provided (and no fewer than ITEMS_KEEP_SIZE), and
        items that arrived within ITEMS_KEEP_DAYS are kept.
        """
        starred = int(ItemStatus.STARRED)
        try:
            with self.lock:
                rows = self.conn.execute(
                    "select i.feed_id, max(coalesce(s.size, 0), ?) as max_items,"
                    " count(*) as num_items"
                    " from items i"
                    " left outer join feed_sizes s on s.feed_id = i.feed_id"
                    " where status != ?"
                    " group by i.feed_id",
                    (ITEMS_KEEP_SIZE, starred),
                ).fetchall()
        except sqlite3.Error as exc:
            log.error("%s", exc)
            return
        threshold = _format_time(datetime.now(timezone.utc) - timedelta(days=ITEMS_KEEP_DAYS))
        for feed_id, limit, _count in rows:
            try:
                with self.lock:
                    cursor = self.conn.execute(
                        "delete from items where id in ("
                        " select i.id from items i"
                        " where i.feed_id = ? and status != ?"
                        " order by date desc"
                        " limit -1 offset ?"
                        ") and date_arrived < ?",
                        (feed_id, starred, limit, threshold),
                    )
            except sqlite3.Error as exc:
                log.error("%s", exc)
                return
            if cursor.rowcount > 0:
                log.info("Deleted %d old items (feed: %d)", cursor.rowcount, feed_id)