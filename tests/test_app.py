import gzip
import io
import json
from datetime import datetime, timezone
from wsgiref.util import setup_testing_defaults

import pytest

from yarr.server.app import Server
from yarr.storage.items import Item
from yarr.storage.store import Storage

PASSWORD = "password"


def call(app, method, path, body=b"", headers=None, query=""):
    environ = {
        "REQUEST_METHOD": method,
        "PATH_INFO": path,
        "QUERY_STRING": query,
        "wsgi.input": io.BytesIO(body),
        "CONTENT_LENGTH": str(len(body)),
    }
    for name, value in (headers or {}).items():
        if name.lower() == "content-type":
            environ["CONTENT_TYPE"] = value
        else:
            environ["HTTP_" + name.upper().replace("-", "_")] = value
    setup_testing_defaults(environ)
    captured = {}
    chunks = []

    def start_response(status, response_headers, exc_info=None):
        captured["status"] = status
        captured["headers"] = response_headers
        return chunks.append

    result = app(environ, start_response)
    try:
        chunks.extend(result)
    finally:
        if hasattr(result, "close"):
            result.close()
    status = int(captured["status"].split()[0])
    headers = {}
    for name, value in captured["headers"]:
        headers.setdefault(name.lower(), []).append(value)
    return status, headers, b"".join(chunks)


def header(headers, name):
    return headers.get(name.lower(), [""])[0]


@pytest.fixture
def db():
    store = Storage(":memory:")
    yield store
    store.close()


@pytest.fixture
def static_dir(tmp_path):
    (tmp_path / "javascripts").mkdir()
    (tmp_path / "javascripts" / "app.js").write_text("console.log(1);")
    (tmp_path / "login.html").write_text("<html></html>")
    return tmp_path


def test_static(db, static_dir):
    server = Server(db, "127.0.0.1:8000")
    server.static_dir = static_dir
    status, _, body = call(server.handler(), "GET", "/static/javascripts/app.js")
    assert status == 200
    assert body == b"console.log(1);"


def test_static_with_base(db, static_dir):
    server = Server(db, "127.0.0.1:8000", base_path="/sub")
    server.static_dir = static_dir
    status, _, _ = call(server.handler(), "GET", "/sub/static/javascripts/app.js")
    assert status == 200


def test_static_ban_templates(db, static_dir):
    server = Server(db, "127.0.0.1:8000")
    server.static_dir = static_dir
    status, _, _ = call(server.handler(), "GET", "/static/login.html")
    assert status == 404


def test_static_missing_file(db, static_dir):
    server = Server(db, "127.0.0.1:8000")
    server.static_dir = static_dir
    status, _, _ = call(server.handler(), "GET", "/static/nothing.js")
    assert status == 404


def test_index_gzipped(db):
    handler = Server(db, "127.0.0.1:8000").handler()
    status, headers, body = call(handler, "GET", "/", headers={"Accept-Encoding": "gzip"})
    assert status == 200
    assert header(headers, "content-encoding") == "gzip"
    assert header(headers, "content-type") == "text/html"
    assert b"<html" in gzip.decompress(body)


def test_feed_icons(db):
    feed = db.create_feed("", "", "", "", None)
    db.update_feed_icon(feed.id, b"test")
    handler = Server(db, "127.0.0.1:8000").handler()
    url = f"/api/feeds/{feed.id}/icon"

    status, headers, body = call(handler, "GET", url)
    assert status == 200
    assert body == b"test"
    etag = header(headers, "etag")
    assert len(etag) == 16

    status2, _, _ = call(handler, "GET", url, headers={"If-None-Match": etag})
    assert status2 == 304


def test_feed_icon_missing(db):
    handler = Server(db, "127.0.0.1:8000").handler()
    status, _, _ = call(handler, "GET", "/api/feeds/100500/icon")
    assert status == 404


def test_get_addr(db):
    assert Server(db, "127.0.0.1:8000").get_addr() == "http://127.0.0.1:8000"
    secure = Server(db, "localhost:7070", base_path="/sub", cert_file="c.pem", key_file="k.pem")
    assert secure.get_addr() == "https://localhost:7070/sub"


def test_manifest(db):
    handler = Server(db, "127.0.0.1:8000", base_path="/sub").handler()
    status, _, body = call(handler, "GET", "/sub/manifest.json")
    data = json.loads(body)
    assert status == 200
    assert data["start_url"] == "/sub"
    assert data["icons"][0]["src"] == "/sub/static/graphicarts/favicon.png"


def test_folders_create_and_list(db):
    handler = Server(db, "127.0.0.1:8000").handler()
    status, _, body = call(handler, "POST", "/api/folders",
                           body=json.dumps({"title": "news"}).encode())
    assert status == 201
    created = json.loads(body)
    assert created["title"] == "news"
    assert created["is_expanded"] is True

    status, _, body = call(handler, "GET", "/api/folders")
    assert status == 200
    assert [f["title"] for f in json.loads(body)] == ["news"]


def test_folder_title_missing(db):
    handler = Server(db, "127.0.0.1:8000").handler()
    status, _, body = call(handler, "POST", "/api/folders", body=b"{}")
    assert status == 400
    assert json.loads(body) == {"error": "Folder title missing."}


def test_folder_bad_json(db):
    handler = Server(db, "127.0.0.1:8000").handler()
    status, _, _ = call(handler, "POST", "/api/folders", body=b"{not json")
    assert status == 400


def test_folder_update(db):
    folder = db.create_folder("old")
    handler = Server(db, "127.0.0.1:8000").handler()
    status, _, _ = call(handler, "PUT", f"/api/folders/{folder.id}",
                        body=json.dumps({"title": "new", "is_expanded": False}).encode())
    assert status == 200
    folders = db.list_folders()
    assert [(f.title, f.is_expanded) for f in folders] == [("new", False)]


def test_feed_update_and_delete(db):
    feed = db.create_feed("feed", "", "", "http://example.com/feed.xml", None)
    folder = db.create_folder("folder")
    handler = Server(db, "127.0.0.1:8000").handler()
    status, _, _ = call(handler, "PUT", f"/api/feeds/{feed.id}",
                        body=json.dumps({"title": "renamed", "folder_id": folder.id}).encode())
    assert status == 200
    stored = db.get_feed(feed.id)
    assert stored.title == "renamed"
    assert stored.folder_id == folder.id

    status, _, _ = call(handler, "DELETE", f"/api/feeds/{feed.id}")
    assert status == 204
    assert db.get_feed(feed.id) is None


def test_feed_refresh_method_not_allowed(db):
    handler = Server(db, "127.0.0.1:8000").handler()
    status, _, _ = call(handler, "GET", "/api/feeds/refresh")
    assert status == 405


def test_item_relative_link_and_status(db):
    feed = db.create_feed("feed", "", "https://example.com/blog/",
                          "https://example.com/feed.xml", None)
    db.create_items([Item(guid="a", feed_id=feed.id, title="a", link="post/1")])
    item_id = db.list_items(None, 10)[0].id
    handler = Server(db, "127.0.0.1:8000").handler()

    status, _, body = call(handler, "GET", f"/api/items/{item_id}")
    assert status == 200
    assert json.loads(body)["link"] == "https://example.com/blog/post/1"

    status, _, _ = call(handler, "PUT", f"/api/items/{item_id}",
                        body=json.dumps({"status": "starred"}).encode())
    assert status == 200
    assert str(db.get_item(item_id).status) == "starred"


def test_settings(db):
    handler = Server(db, "127.0.0.1:8000").handler()
    status, _, _ = call(handler, "PUT", "/api/settings",
                        body=json.dumps({"theme_name": "night", "bogus": 1}).encode())
    assert status == 200
    _, _, body = call(handler, "GET", "/api/settings")
    data = json.loads(body)
    assert data["theme_name"] == "night"
    assert "bogus" not in data


def test_opml_export(db):
    folder = db.create_folder("tech")
    db.create_feed("inside", "", "https://a.example.com/", "https://a.example.com/feed", folder.id)
    db.create_feed("outside", "", "https://b.example.com/", "https://b.example.com/feed", None)
    handler = Server(db, "127.0.0.1:8000").handler()
    status, headers, body = call(handler, "GET", "/opml/export")
    text = body.decode()
    assert status == 200
    assert header(headers, "content-type") == "application/xml; charset=utf-8"
    assert '  <outline text="tech">' in text
    assert 'text="inside" xmlUrl="https://a.example.com/feed"' in text
    assert text.index("tech") < text.index("outside")


def test_opml_import(db):
    document = (
        '<?xml version="1.0" encoding="UTF-8"?><opml version="1.1"><body>'
        '<outline text="sub"><outline type="rss" text="one" '
        'xmlUrl="https://a.example.com/feed" htmlUrl="https://a.example.com/"/></outline>'
        '<outline type="rss" text="two" xmlUrl="https://b.example.com/feed" '
        'htmlUrl="https://b.example.com/"/></body></opml>'
    ).encode()
    boundary = "XyZboundary"
    body = (
        f"--{boundary}\r\n"
        'Content-Disposition: form-data; name="opml"; filename="subs.opml"\r\n'
        "Content-Type: application/xml\r\n\r\n"
    ).encode() + document + f"\r\n--{boundary}--\r\n".encode()
    handler = Server(db, "127.0.0.1:8000").handler()
    status, _, _ = call(handler, "POST", "/opml/import", body=body,
                        headers={"Content-Type": f"multipart/form-data; boundary={boundary}"})
    assert status == 200
    feeds = {feed.title: feed for feed in db.list_feeds()}
    assert sorted(feeds) == ["one", "two"]
    assert feeds["two"].folder_id is None
    assert feeds["one"].folder_id == db.list_folders()[0].id


def test_status(db):
    feed = db.create_feed("feed", "", "", "http://example.com/feed.xml", None)
    db.create_items([Item(guid="a", feed_id=feed.id, title="a")])
    handler = Server(db, "127.0.0.1:8000").handler()
    _, _, body = call(handler, "GET", "/api/status")
    data = json.loads(body)
    assert data["running"] == 0
    assert data["stats"] == [{"feed_id": feed.id, "unread": 1, "starred": 0}]


def test_auth_required(db):
    password = PASSWORD
    handler = Server(db, "127.0.0.1:8000", username="user", password=password).handler()
    status, _, _ = call(handler, "GET", "/api/feeds")
    assert status == 401


def test_fever_is_public_but_checks_key(db):
    password = PASSWORD
    handler = Server(db, "127.0.0.1:8000", username="user", password=password).handler()
    status, _, body = call(handler, "GET", "/fever/", query="api_key=placeholder")
    assert status == 200
    assert json.loads(body) == {"api_version": 3, "auth": 0, "last_refreshed_on_time": 0}


def test_logout(db):
    handler = Server(db, "127.0.0.1:8000").handler()
    status, headers, _ = call(handler, "GET", "/logout")
    assert status == 204
    assert any(value.startswith("auth=") for value in headers.get("set-cookie", []))


def test_unknown_route(db):
    handler = Server(db, "127.0.0.1:8000").handler()
    status, _, _ = call(handler, "GET", "/nowhere")
    assert status == 404