from datetime import datetime, timedelta, timezone

import pytest

from yarr.storage.feeds import Feed, Folder
from yarr.storage.store import Storage


@pytest.fixture
def db():
    storage = Storage(":memory:")
    yield storage
    storage.close()


def test_create_feed(db):
    feed1 = db.create_feed("title", "", "http://example.com", "http://example.com/feed.xml", None)
    assert feed1 is not None and feed1.id != 0
    assert db.get_feed(feed1.id) == feed1


def test_create_feed_same_link(db):
    feed1 = db.create_feed("title", "", "", "http://example1.com/feed.xml", None)
    assert feed1 is not None and feed1.id != 0
    for _ in range(10):
        db.create_feed("title", "", "", "http://example2.com/feed.xml", None)
    feed2 = db.create_feed("title", "", "http://example.com", "http://example1.com/feed.xml", None)
    assert feed2.id == feed1.id


def test_create_feed_empty_title_uses_feed_link(db):
    feed = db.create_feed("", "", "", "http://example.com/rss", None)
    assert feed.title == "http://example.com/rss"
    assert db.get_feed(feed.id).title == "http://example.com/rss"


def test_create_feed_unknown_folder_fails(db):
    assert db.create_feed("t", "", "", "http://example.com/x.xml", 999) is None


def test_read_feed(db):
    assert db.get_feed(100500) is None
    feed1 = db.create_feed("feed 1", "", "http://example1.com", "http://example1.com/feed.xml", None)
    feed2 = db.create_feed("feed 2", "", "http://example2.com", "http://example2.com/feed.xml", None)
    assert db.list_feeds() == [feed1, feed2]


def test_list_feeds_ignores_case_in_order(db):
    db.create_feed("beta", "", "", "http://example.com/b.xml", None)
    db.create_feed("Alpha", "", "", "http://example.com/a.xml", None)
    assert [f.title for f in db.list_feeds()] == ["Alpha", "beta"]


def test_update_feed(db):
    feed1 = db.create_feed("feed 1", "", "http://example1.com", "http://example1.com/feed.xml", None)
    folder = db.create_folder("test")
    assert db.rename_feed(feed1.id, "newtitle")
    assert db.update_feed_folder(feed1.id, folder.id)
    assert db.update_feed_icon(feed1.id, b"icon")
    feed2 = db.get_feed(feed1.id)
    assert feed2.title == "newtitle"
    assert feed2.folder_id == folder.id
    assert feed2.has_icon
    assert feed2.icon == b"icon"


def test_update_feed_folder_unknown_folder(db):
    feed = db.create_feed("f", "", "", "http://example.com/f.xml", None)
    assert db.update_feed_folder(feed.id, 4242) is False
    assert db.get_feed(feed.id).folder_id is None


def test_delete_feed(db):
    feed1 = db.create_feed("title", "", "http://example.com", "http://example.com/feed.xml", None)
    assert db.delete_feed(100500) is False
    assert db.delete_feed(feed1.id) is True
    assert db.get_feed(feed1.id) is None


def test_feeds_missing_icons(db):
    with_icon = db.create_feed("a", "", "", "http://example.com/a.xml", None)
    without = db.create_feed("b", "", "", "http://example.com/b.xml", None)
    db.update_feed_icon(with_icon.id, b"png")
    assert [f.id for f in db.list_feeds_missing_icons()] == [without.id]
    listed = {f.id: f.has_icon for f in db.list_feeds()}
    assert listed == {with_icon.id: True, without.id: False}


def test_feed_errors(db):
    feed = db.create_feed("a", "", "", "http://example.com/a.xml", None)
    db.set_feed_error(feed.id, ValueError("boom"))
    assert db.get_feed_errors() == {feed.id: "boom"}
    db.set_feed_error(feed.id, "again")
    assert db.get_feed_errors() == {feed.id: "again"}
    db.reset_feed_errors()
    assert db.get_feed_errors() == {}


def test_feed_size(db):
    feed = db.create_feed("a", "", "", "http://example.com/a.xml", None)
    db.set_feed_size(feed.id, 10)
    db.set_feed_size(feed.id, 25)
    rows = db.conn.execute("select feed_id, size from feed_sizes").fetchall()
    assert rows == [(feed.id, 25)]


def test_feed_to_dict():
    feed = Feed(id=3, folder_id=None, title="t", link="l", feed_link="f", icon=b"ab", has_icon=True)
    assert feed.to_dict() == {
        "id": 3,
        "folder_id": None,
        "title": "t",
        "description": "",
        "link": "l",
        "feed_link": "f",
        "icon": "YWI=",
        "has_icon": True,
    }
    assert "icon" not in Feed(id=1).to_dict()


def test_folders(db):
    folder = db.create_folder("test")
    assert folder == Folder(id=folder.id, title="test", is_expanded=True)
    assert db.create_folder("test").id == folder.id
    assert db.rename_folder(folder.id, "renamed")
    assert db.toggle_folder_expanded(folder.id, False)
    assert db.list_folders() == [Folder(id=folder.id, title="renamed", is_expanded=False)]
    assert folder.to_dict() == {"id": folder.id, "title": "test", "is_expanded": True}


def test_delete_folder_detaches_feeds(db):
    folder = db.create_folder("news")
    feed = db.create_feed("a", "", "", "http://example.com/a.xml", folder.id)
    assert db.delete_folder(folder.id)
    assert db.list_folders() == []
    assert db.get_feed(feed.id).folder_id is None


def test_http_states(db):
    feed = db.create_feed("a", "", "", "http://example.com/a.xml", None)
    assert db.get_http_state(feed.id) is None
    db.set_http_state(feed.id, "Mon, 01 Jan 2024 00:00:00 GMT", "tag1")
    state = db.get_http_state(feed.id)
    assert (state.feed_id, state.last_modified, state.etag) == (
        feed.id, "Mon, 01 Jan 2024 00:00:00 GMT", "tag1")
    assert abs(datetime.now(timezone.utc) - state.last_refreshed) < timedelta(minutes=1)
    db.set_http_state(feed.id, "", "tag2")
    states = db.list_http_states()
    assert list(states) == [feed.id]
    assert states[feed.id].etag == "tag2"
    assert states[feed.id].last_modified == ""