"""SQLite connection handling, schema migrations and user settings."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

log = logging.getLogger(__name__)

_SQLITE_DATETIME = "%Y-%m-%d %H:%M:%f"


def settings_defaults() -> dict[str, Any]:
    """Return a fresh copy of the default user settings."""
    return dict(
        filter="",
        feed="",
        feed_list_width=300,
        item_list_width=300,
        sort_newest_first=True,
        theme_name="light",
        theme_font="",
        theme_size=1,
        refresh_rate=0,
    )


# --- schema description -----------------------------------------------------

_PRIMARY_KEY = "id integer primary key autoincrement"
_CASCADE = " on delete cascade"


def _create_table(name: str, columns: Iterable[str]) -> str:
    return f"create table if not exists {name} ({', '.join(columns)})"


def _create_index(name: str, table: str, columns: str, unique: bool) -> str:
    kind = "unique index" if unique else "index"
    return f"create {kind} if not exists {name} on {table}({columns})"


def _folder_columns() -> list[str]:
    return [_PRIMARY_KEY, "title text not null", "is_expanded boolean not null default false"]


def _feed_columns(on_folder_delete: str = "") -> list[str]:
    return [
        _PRIMARY_KEY,
        f"folder_id references folders(id){on_folder_delete}",
        "title text not null",
        "description text",
        "link text",
        "feed_link text not null",
        "icon blob",
    ]


def _item_columns(on_feed_delete: str = "") -> list[str]:
    text_columns = ("title", "link", "description", "content", "author")
    date_columns = ("date", "date_updated", "date_arrived")
    return [
        _PRIMARY_KEY,
        "guid string not null",
        f"feed_id references feeds(id){on_feed_delete}",
        *(f"{name} text" for name in text_columns),
        *(f"{name} datetime" for name in date_columns),
        "status integer",
        "image text",
        "search_rowid integer",
    ]


def _http_state_columns(on_feed_delete: str = "") -> list[str]:
    return [
        f"feed_id references feeds(id){on_feed_delete} unique",
        "last_refreshed datetime not null",
        "last_modified string not null",
        "etag string not null",
    ]


def _feed_error_columns(on_feed_delete: str = "") -> list[str]:
    return [f"feed_id references feeds(id){on_feed_delete} unique", "error string"]


_FEED_INDEXES = [
    _create_index("idx_feed_folder_id", "feeds", "folder_id", False),
    _create_index("idx_feed_feed_link", "feeds", "feed_link", True),
]

_ITEM_INDEXES = [
    _create_index("idx_item_feed_id", "items", "feed_id", False),
    _create_index("idx_item_status", "items", "status", False),
    _create_index("idx_item_search_rowid", "items", "search_rowid", False),
    _create_index("idx_item_guid", "items", "feed_id, guid", True),
]

_SEARCH_CLEANUP_TRIGGER = (
    "create trigger if not exists del_item_search after delete on items "
    "begin delete from search where rowid = old.search_rowid; end"
)


def _steps(*statements: str) -> Callable[[sqlite3.Connection], None]:
    def run(conn: sqlite3.Connection) -> None:
        for statement in statements:
            conn.execute(statement)

    return run


def _rebuild_with_delete_actions() -> list[str]:
    """Statements that recreate the tables with on-delete actions."""
    tables = {
        "feeds": _feed_columns(" on delete set null"),
        "items": _item_columns(_CASCADE),
        "http_states": _http_state_columns(_CASCADE),
        "feed_errors": _feed_error_columns(_CASCADE),
    }
    statements = [_create_table(f"new_{name}", cols) for name, cols in tables.items()]
    statements += [f"insert into new_{name} select * from {name}" for name in tables]
    statements += [f"drop table {name}" for name in tables]
    statements += [f"alter table new_{name} rename to {name}" for name in tables]
    statements += _FEED_INDEXES + _ITEM_INDEXES
    statements.append(_SEARCH_CLEANUP_TRIGGER)
    statements.append("pragma foreign_key_check")
    return statements


def _utc_text(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return value
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed.strftime("%Y-%m-%d %H:%M:%S.%f")


def _normalize_datetimes(conn: sqlite3.Connection) -> None:
    for item_id, arrived in conn.execute("select id, date_arrived from items").fetchall():
        conn.execute(
            "update items set date_arrived = ? where id = ?",
            (_utc_text(arrived), item_id),
        )
    conn.execute(f"update items set date = strftime('{_SQLITE_DATETIME}', date)")


_MIGRATIONS: list[Callable[[sqlite3.Connection], None]] = [
    _steps(
        _create_table("folders", _folder_columns()),
        _create_index("idx_folder_title", "folders", "title", True),
        _create_table("feeds", _feed_columns()),
        *_FEED_INDEXES,
        _create_table("items", _item_columns()),
        *_ITEM_INDEXES,
        _create_table("settings", ["key string primary key", "val blob"]),
        "create virtual table if not exists search using fts4(title, description, content)",
        _SEARCH_CLEANUP_TRIGGER,
    ),
    _steps(
        _create_table("http_states", _http_state_columns()),
        _create_table("feed_errors", _feed_error_columns()),
    ),
    _steps(*_rebuild_with_delete_actions()),
    _steps("alter table items add podcast_url text"),
    _steps(
        "update items set content = description "
        "where content is null or length(content) = 0"
    ),
    _steps("update items set date = 0 where date is null"),
    _steps(
        _create_table(
            "feed_sizes",
            [f"feed_id references feeds(id){_CASCADE} unique", "size integer not null default 0"],
        )
    ),
    _normalize_datetimes,
]

MAX_VERSION = len(_MIGRATIONS)


def _migrate_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute("begin")
    try:
        _MIGRATIONS[version - 1](conn)
        conn.execute(f"pragma user_version = {version}")
        conn.execute("commit")
    except Exception:
        log.error("schema migration %d failed", version)
        if conn.in_transaction:
            conn.execute("rollback")
        raise


def migrate(conn: sqlite3.Connection) -> None:
    """Bring the schema of an autocommit connection up to the latest version."""
    version = conn.execute("pragma user_version").fetchone()[0]
    if version >= MAX_VERSION:
        return
    log.info("schema version %d, upgrading to %d", version, MAX_VERSION)
    for target in range(version + 1, MAX_VERSION + 1):
        # table rebuilds need foreign keys off while the tables are swapped
        rebuild = target == 3
        log.info("schema migration %d: starting", target)
        if rebuild:
            conn.execute("pragma foreign_keys=off")
        try:
            _migrate_version(conn, target)
        finally:
            if rebuild:
                conn.execute("pragma foreign_keys=on")
        log.info("schema migration %d: done", target)


class Database:
    """An SQLite database, optionally held in memory and saved back on close."""

    def __init__(self, path: str, db_fast: bool = False) -> None:
        self.path = path
        self.db_fast = db_fast
        self.lock = threading.RLock()
        if db_fast:
            self.conn = self._connect(":memory:")
            log.info("Loading %s into memory", path)
            source = sqlite3.connect(path)
            try:
                source.backup(self.conn)
            finally:
                source.close()
        else:
            self.conn = self._connect(path)
        self.conn.execute("pragma foreign_keys=on")
        migrate(self.conn)

    @staticmethod
    def _connect(path: str) -> sqlite3.Connection:
        return sqlite3.connect(path, isolation_level=None, check_same_thread=False)

    def close(self) -> None:
        """Close the connection, first saving an in-memory copy to its file."""
        try:
            if self.db_fast:
                log.info("Saving in-memory database to %s", self.path)
                target = sqlite3.connect(self.path)
                try:
                    with self.lock:
                        self.conn.backup(target)
                finally:
                    target.close()
        finally:
            self.conn.close()

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def get_settings_value(self, key: str) -> Any:
        """Return the stored value of a setting, or None when it is not stored."""
        with self.lock:
            row = self.conn.execute(
                "select val from settings where key = ?", (key,)
            ).fetchone()
        if row is None or not row[0]:
            return None
        try:
            return json.loads(row[0])
        except (ValueError, TypeError) as exc:
            log.warning("%s", exc)
            return None

    def get_settings_value_int(self, key: str) -> int:
        """Return a numeric setting as an integer, 0 when absent or not a number."""
        value = self.get_settings_value(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
        return 0

    def get_settings(self) -> dict[str, Any]:
        """Return all settings, stored values over the defaults."""
        result = settings_defaults()
        with self.lock:
            rows = self.conn.execute("select key, val from settings").fetchall()
        for key, raw in rows:
            try:
                result[key] = json.loads(raw)
            except (ValueError, TypeError) as exc:
                log.warning("%s", exc)
        return result

    def update_settings(self, values: dict[str, Any]) -> bool:
        """Store known settings; unknown keys are ignored. False if a value cannot be encoded."""
        defaults = settings_defaults()
        for key, value in values.items():
            if key not in defaults:
                continue
            try:
                encoded = json.dumps(value).encode()
            except (TypeError, ValueError) as exc:
                log.warning("%s", exc)
                return False
            with self.lock:
                self.conn.execute(
                    "insert into settings (key, val) values (?, ?) "
                    "on conflict (key) do update set val = excluded.val",
                    (key, encoded),
                )
        return True