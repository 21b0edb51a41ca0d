# yarr

yarr is the core of a self-hosted feed reader. It keeps folders, feeds,
articles and settings in a single SQLite database. It serves a JSON API over
WSGI and speaks the Fever API, so feed reader clients can sync with it.

## What is in the package

- `yarr.storage.store.Storage`: the database. It holds folders, feeds, items,
  per-feed HTTP caching state, feed errors and user settings. The schema is
  created and upgraded automatically when the database is opened.
- `yarr.server.app.Server`: the web server. `Server.handler()` returns a
  WSGI application, and `Server.start()` serves it until SIGINT or SIGTERM.
- `yarr.server.fever.FeverAPI`: the Fever API handler, mounted at `/fever/`.
- `yarr.opml`: reading and writing OPML subscription lists.
- `yarr.server.router`: a small path router with middleware chains. It is
  used by the server and can also be used on its own.

## Features

- Feeds grouped into folders, with unread and starred counts per feed
  (`/api/status`).
- Full-text search over item titles and content. Items are indexed by
  `Storage.sync_search()`.
- Paginated item lists that filter by folder, feed, status or search words.
- Marking items read in bulk. Starred items keep their status.
- Cleanup of old items with `Storage.delete_old_items()`. Starred items are
  never deleted. Each feed keeps at least as many items as it last provided,
  and no fewer than 50. Items that arrived within the last 15 days are kept.
- OPML import (`/opml/import`, a multipart upload in the field `opml`) and
  export (`/opml/export`).
- Optional login with a username and a password, held in a signed cookie.
  `/static` and `/fever` stay public. The Fever endpoint checks its own API
  key instead.
- Responses are gzip-compressed for clients that accept it.
- An optional base path, so the reader can be served under a sub-path behind
  a reverse proxy.
- An optional in-memory mode. The database file is loaded into memory when
  the storage opens and written back when it is closed.

## Running a server

```python
from yarr.server.app import Server
from yarr.storage.store import Storage

password = "password"

with Storage("yarr.db", False) as db:
    server = Server(
        db,
        "127.0.0.1:7070",
        base_path="",
        username="admin",
        password=password,
        cert_file="",
        key_file="",
    )
    print("serving at", server.get_addr())
    server.start()
```

If `cert_file` and `key_file` are both set, the server speaks HTTPS.

If `username` or `password` is empty, the API is open and the Fever endpoint
accepts any request. When both are set, Fever clients send `api_key`, the
hexadecimal MD5 of `username:password`.

Because `Server.handler()` is a plain WSGI application, you can mount it in
any WSGI server instead of calling `start()`.

## Working with the storage directly

```python
from yarr.storage.items import Item, ItemFilter, ItemStatus
from yarr.storage.store import Storage

with Storage(":memory:", False) as db:
    folder = db.create_folder("News")
    feed = db.create_feed("Example", "", "https://example.com/",
                          "https://example.com/feed.xml", folder.id)
    db.create_items([Item(guid="1", feed_id=feed.id, title="Hello")])
    db.sync_search()
    for item in db.list_items(ItemFilter(status=ItemStatus.UNREAD), 20):
        print(item.id, item.title)
```

Pass `db_fast=True` to `Storage` to work on an in-memory copy of the file.

Settings live in the same database. `get_settings()` returns the stored values
merged over the defaults from `yarr.storage.database.settings_defaults()`.
`update_settings()` stores only keys that have a default.

## OPML

```python
from yarr.opml import Feed, Folder, parse

doc = Folder(title="", feeds=[Feed(title="Example",
                                   feed_url="https://example.com/feed.xml",
                                   site_url="https://example.com/")])
print(doc.to_opml())

with open("subscriptions.opml", "rb") as source:
    imported = parse(source)
for feed in imported.all_feeds():
    print(feed.title, feed.feed_url)
```

`parse` raises `yarr.opml.OPMLError` if the document is not readable OPML.

## What the package does not do

- **It does not fetch feeds.** Nothing in the package downloads or parses RSS
  or Atom, discovers feeds on a web page, or looks up favicons. To provide
  this, set `Server.worker` to an object with these methods:
  `feeds_pending()`, `refresh_feeds()`, `find_favicons()`,
  `find_feed_favicon(feed)`, `set_refresh_rate(minutes)`,
  `start_feed_cleaner()` and `discover_feed(url)`. The last one returns a
  `yarr.server.app.Discovery`. Without a worker, adding a feed through
  `/api/feeds` answers `{"status": "notfound"}`, refreshing does nothing, and
  `start()` runs only the daily old-item cleanup.
- **It has no web interface of its own.** `/` returns a minimal HTML page.
  The settings are embedded in it as JSON, in a `<script id="app-data">`
  element. `/static/...` serves files from `Server.static_dir`, which the
  package does not ship. Point it at a directory of your own.
- **It has no command-line program.** Start the server from Python as shown
  above.

## Tests

```
pip install -e .[test]
pytest
```