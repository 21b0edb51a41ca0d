import sqlite3

import pytest

from yarr.storage.items import Item, ItemFilter
from yarr.storage.store import Storage


def test_storage_opens_in_memory():
    db = Storage(":memory:")
    try:
        assert db.list_feeds() == []
        assert db.list_folders() == []
        assert db.get_settings()["theme_name"] == "light"
    finally:
        db.close()


def test_schema_is_at_latest_version():
    with Storage(":memory:") as db:
        assert db.conn.execute("pragma user_version").fetchone()[0] == 8


def test_context_manager_closes_connection():
    with Storage(":memory:") as db:
        db.create_folder("x")
    with pytest.raises(sqlite3.ProgrammingError):
        db.conn.execute("select 1")


def test_file_database_persists(tmp_path):
    path = str(tmp_path / "plain.db")
    with Storage(path) as db:
        feed = db.create_feed("t", "", "", "http://example.com/f.xml", None)
        db.create_items([Item(guid="a", feed_id=feed.id, title="hello")])
    with Storage(path) as db:
        assert [f.feed_link for f in db.list_feeds()] == ["http://example.com/f.xml"]
        assert db.count_items(ItemFilter()) == 1


def test_fast_database_saved_on_close(tmp_path):
    path = str(tmp_path / "fast.db")
    with Storage(path, db_fast=True) as db:
        folder = db.create_folder("news")
        db.create_feed("t", "", "", "http://example.com/f.xml", folder.id)
        db.update_settings({"refresh_rate": 30})
    with Storage(path) as db:
        assert [f.title for f in db.list_folders()] == ["news"]
        assert db.list_feeds()[0].folder_id == folder.id
        assert db.get_settings_value_int("refresh_rate") == 30


def test_fast_database_loads_existing_file(tmp_path):
    path = str(tmp_path / "existing.db")
    with Storage(path) as db:
        db.create_folder("kept")
    with Storage(path, db_fast=True) as db:
        assert [f.title for f in db.list_folders()] == ["kept"]