"""Feeds, folders and per-feed HTTP caching state kept in the database."""

from __future__ import annotations

import base64
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

log = logging.getLogger(__name__)

_EPOCH = datetime.fromtimestamp(0, timezone.utc)


def _parse_utc(value: Any) -> datetime:
    """Read a stored timestamp as an aware UTC datetime (epoch when unreadable)."""
    if isinstance(value, datetime):
        parsed = value
    elif not value:
        return _EPOCH
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip())
        except ValueError:
            return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class Feed:
    id: int = 0
    folder_id: Optional[int] = None
    title: str = ""
    description: str = ""
    link: str = ""
    feed_link: str = ""
    icon: Optional[bytes] = None
    has_icon: bool = False

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "folder_id": self.folder_id,
            "title": self.title,
            "description": self.description,
            "link": self.link,
            "feed_link": self.feed_link,
        }
        if self.icon is not None:
            result["icon"] = base64.b64encode(self.icon).decode("ascii")
        result["has_icon"] = self.has_icon
        return result


@dataclass
class Folder:
    id: int = 0
    title: str = ""
    is_expanded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "title": self.title, "is_expanded": self.is_expanded}


@dataclass
class HTTPState:
    feed_id: int
    last_refreshed: datetime
    last_modified: str = ""
    etag: str = ""


class FeedsMixin:
    """Feed records; expects ``conn`` and ``lock`` from the database class."""

    conn: sqlite3.Connection
    lock: Any

    def create_feed(self, title: str, description: str, link: str, feed_link: str,
                    folder_id: Optional[int] = None) -> Optional[Feed]:
        """Insert a feed, or move an existing one with the same feed link.

        Returns None when the database refuses the row.
        """
        if not title:
            title = feed_link
        try:
            with self.lock:
                rows = self.conn.execute(
                    "insert into feeds (title, description, link, feed_link, folder_id) "
                    "values (?, ?, ?, ?, ?) "
                    "on conflict (feed_link) do update set folder_id = ? "
                    "returning id",
                    (title, description, link, feed_link, folder_id, folder_id),
                ).fetchall()
        except sqlite3.Error as exc:
            log.error("%s", exc)
            return None
        if not rows:
            return None
        return Feed(
            id=rows[0][0],
            folder_id=folder_id,
            title=title,
            description=description,
            link=link,
            feed_link=feed_link,
        )

    def delete_feed(self, feed_id: int) -> bool:
        """Delete a feed; True only if exactly one feed was removed."""
        try:
            with self.lock:
                cursor = self.conn.execute("delete from feeds where id = ?", (feed_id,))
        except sqlite3.Error as exc:
            log.error("%s", exc)
            return False
        return cursor.rowcount == 1

    def _update(self, sql: str, params: tuple) -> bool:
        try:
            with self.lock:
                self.conn.execute(sql, params)
        except sqlite3.Error as exc:
            log.error("%s", exc)
            return False
        return True

    def rename_feed(self, feed_id: int, title: str) -> bool:
        return self._update("update feeds set title = ? where id = ?", (title, feed_id))

    def update_feed_folder(self, feed_id: int, folder_id: Optional[int]) -> bool:
        return self._update(
            "update feeds set folder_id = ? where id = ?", (folder_id, feed_id)
        )

    def update_feed_icon(self, feed_id: int, icon: Optional[bytes]) -> bool:
        return self._update("update feeds set icon = ? where id = ?", (icon, feed_id))

    def list_feeds(self) -> list[Feed]:
        """All feeds ordered by title, without icon data."""
        try:
            with self.lock:
                rows = self.conn.execute(
                    "select id, folder_id, title, description, link, feed_link, "
                    "ifnull(length(icon), 0) > 0 as has_icon "
                    "from feeds order by title collate nocase"
                ).fetchall()
        except sqlite3.Error as exc:
            log.error("%s", exc)
            return []
        return [
            Feed(
                id=row[0],
                folder_id=row[1],
                title=row[2],
                description=row[3] or "",
                link=row[4] or "",
                feed_link=row[5],
                has_icon=bool(row[6]),
            )
            for row in rows
        ]

    def list_feeds_missing_icons(self) -> list[Feed]:
        """Feeds for which no icon lookup has been stored yet."""
        try:
            with self.lock:
                rows = self.conn.execute(
                    "select id, folder_id, title, description, link, feed_link "
                    "from feeds where icon is null"
                ).fetchall()
        except sqlite3.Error as exc:
            log.error("%s", exc)
            return []
        return [
            Feed(
                id=row[0],
                folder_id=row[1],
                title=row[2],
                description=row[3] or "",
                link=row[4] or "",
                feed_link=row[5],
            )
            for row in rows
        ]

    def get_feed(self, feed_id: int) -> Optional[Feed]:
        """A feed with its icon, or None if there is no such feed."""
        try:
            with self.lock:
                row = self.conn.execute(
                    "select id, folder_id, title, link, feed_link, "
                    "icon, ifnull(icon, '') != '' as has_icon "
                    "from feeds where id = ?",
                    (feed_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            log.error("%s", exc)
            return None
        if row is None:
            return None
        icon = row[5]
        if isinstance(icon, str):
            icon = icon.encode("utf-8")
        return Feed(
            id=row[0],
            folder_id=row[1],
            title=row[2],
            link=row[3] or "",
            feed_link=row[4],
            icon=bytes(icon) if icon is not None else None,
            has_icon=bool(row[6]),
        )

    def reset_feed_errors(self) -> None:
        self._update("delete from feed_errors", ())

    def set_feed_error(self, feed_id: int, error: Any) -> None:
        self._update(
            "insert into feed_errors (feed_id, error) values (?, ?) "
            "on conflict (feed_id) do update set error = excluded.error",
            (feed_id, str(error)),
        )

    def get_feed_errors(self) -> dict[int, str]:
        try:
            with self.lock:
                rows = self.conn.execute("select feed_id, error from feed_errors").fetchall()
        except sqlite3.Error as exc:
            log.error("%s", exc)
            return {}
        return {feed_id: error or "" for feed_id, error in rows}

    def set_feed_size(self, feed_id: int, size: int) -> None:
        self._update(
            "insert into feed_sizes (feed_id, size) values (?, ?) "
            "on conflict (feed_id) do update set size = excluded.size",
            (feed_id, size),
        )


class FoldersMixin:
    """Folder records; expects ``conn`` and ``lock`` from the database class."""

    conn: sqlite3.Connection
    lock: Any

    def create_folder(self, title: str) -> Optional[Folder]:
        """Create a folder, or return the id of the one with the same title."""
        expanded = True
        try:
            with self.lock:
                rows = self.conn.execute(
                    "insert into folders (title, is_expanded) values (?, ?) "
                    "on conflict (title) do update set title = ? "
                    "returning id",
                    (title, expanded, title),
                ).fetchall()
        except sqlite3.Error as exc:
            log.error("%s", exc)
            return None
        if not rows:
            return None
        return Folder(id=rows[0][0], title=title, is_expanded=expanded)

    def _change(self, sql: str, params: tuple) -> bool:
        try:
            with self.lock:
                self.conn.execute(sql, params)
        except sqlite3.Error as exc:
            log.error("%s", exc)
            return False
        return True

    def delete_folder(self, folder_id: int) -> bool:
        return self._change("delete from folders where id = ?", (folder_id,))

    def rename_folder(self, folder_id: int, title: str) -> bool:
        return self._change("update folders set title = ? where id = ?", (title, folder_id))

    def toggle_folder_expanded(self, folder_id: int, is_expanded: bool) -> bool:
        return self._change(
            "update folders set is_expanded = ? where id = ?", (bool(is_expanded), folder_id)
        )

    def list_folders(self) -> list[Folder]:
        try:
            with self.lock:
                rows = self.conn.execute(
                    "select id, title, is_expanded from folders order by title collate nocase"
                ).fetchall()
        except sqlite3.Error as exc:
            log.error("%s", exc)
            return []
        return [Folder(id=r[0], title=r[1], is_expanded=bool(r[2])) for r in rows]


class HTTPStatesMixin:
    """Conditional-request state per feed; expects ``conn`` and ``lock``."""

    conn: sqlite3.Connection
    lock: Any

    _COLUMNS = "feed_id, last_refreshed, last_modified, etag"

    @staticmethod
    def _state(row: tuple) -> HTTPState:
        return HTTPState(
            feed_id=row[0],
            last_refreshed=_parse_utc(row[1]),
            last_modified=row[2] or "",
            etag=row[3] or "",
        )

    def list_http_states(self) -> dict[int, HTTPState]:
        try:
            with self.lock:
                rows = self.conn.execute(
                    f"select {self._COLUMNS} from http_states"
                ).fetchall()
        except sqlite3.Error as exc:
            log.error("%s", exc)
            return {}
        return {row[0]: self._state(row) for row in rows}

    def get_http_state(self, feed_id: int) -> Optional[HTTPState]:
        with self.lock:
            row = self.conn.execute(
                f"select {self._COLUMNS} from http_states where feed_id = ?", (feed_id,)
            ).fetchone()
        return self._state(row) if row is not None else None

    def set_http_state(self, feed_id: int, last_modified: str, etag: str) -> None:
        try:
            with self.lock:
                self.conn.execute(
                    "insert into http_states (feed_id, last_modified, etag, last_refreshed) "
                    "values (?, ?, ?, datetime()) "
                    "on conflict (feed_id) do update set last_modified = ?, etag = ?, "
                    "last_refreshed = datetime()",
                    (feed_id, last_modified, etag, last_modified, etag),
                )
        except sqlite3.Error as exc:
            log.error("%s", exc)