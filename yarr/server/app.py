"""The web application: JSON API, OPML import/export, Fever API and static files."""

from __future__ import annotations

import email.policy
import hashlib
import html
import json
import logging
import mimetypes
import signal
import ssl
import threading
from dataclasses import dataclass, field
from email.parser import BytesParser
from pathlib import Path
from socketserver import ThreadingMixIn
from typing import Any, Optional
from urllib.parse import urljoin, urlparse
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from .. import opml
from ..storage.items import Item, ItemFilter, ItemStatus, MarkFilter
from ..storage.store import Storage
from .auth import AuthMiddleware, logout
from .compression import gzip_middleware
from .fever import FeverAPI, detect_content_type
from .router import Context, Router

log = logging.getLogger(__name__)

PER_PAGE = 20
CLEANUP_INTERVAL = 24 * 60 * 60


@dataclass
class Discovery:
    """What a worker found at a URL: a feed with its items, or a choice of feeds."""

    title: str = ""
    site_url: str = ""
    feed_link: str = ""
    items: list[Item] = field(default_factory=list)
    sources: list[dict[str, str]] = field(default_factory=list)


@dataclass
class _FeedIcon:
    ctype: str
    data: bytes
    etag: str


def _is_possible_link(link: str) -> bool:
    return urlparse(link).scheme in ("http", "https")


def _decode_json(context: Context) -> Any:
    """The request body as JSON; raises ValueError if it is not valid JSON."""
    body = context.req.body or b""
    return json.loads(body)


def _var_int(context: Context, key: str) -> Optional[int]:
    try:
        return context.var_int(key)
    except (LookupError, ValueError, TypeError):
        return None


def _query_int(context: Context, key: str) -> Optional[int]:
    try:
        return context.query_int(key)
    except (LookupError, ValueError, TypeError):
        return None


def _multipart_file(context: Context, name: str) -> Optional[bytes]:
    ctype = context.req.header("content-type")
    if not ctype.lower().startswith("multipart/"):
        return None
    raw = b"Content-Type: " + ctype.encode("latin-1") + b"\r\n\r\n" + (context.req.body or b"")
    message = BytesParser(policy=email.policy.default).parsebytes(raw)
    if not message.is_multipart():
        return None
    for part in message.iter_parts():
        if part.get_param("name", header="content-disposition") == name:
            payload = part.get_payload(decode=True)
            return payload if payload is not None else b""
    return None


def _index_page(settings: dict[str, Any], authenticated: bool, base_path: str) -> str:
    data = json.dumps({"settings": settings, "authenticated": authenticated})
    data = data.replace("</", "<\\/")
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\"><title>yarr!</title>"
        f'<link rel="manifest" href="{html.escape(base_path)}/manifest.json">'
        "</head><body><div id=\"app\"></div>"
        f'<script id="app-data" type="application/json">{data}</script>'
        "</body></html>"
    )


class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _RequestHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        log.debug(format, *args)


class Server:
    """The web server serving the reader over a storage.

    ``worker`` may be set to an object that fetches feeds: it provides
    ``feeds_pending()``, ``refresh_feeds()``, ``find_favicons()``,
    ``find_feed_favicon(feed)``, ``set_refresh_rate(minutes)``,
    ``start_feed_cleaner()`` and ``discover_feed(url)`` returning a Discovery.
    """

    def __init__(self, db: Storage, addr: str, base_path: str = "", username: str = "",
                 password: str = "", cert_file: str = "", key_file: str = "") -> None:
        self.db = db
        self.addr = addr
        self.base_path = base_path
        self.username = username
        self.password = password
        self.cert_file = cert_file
        self.key_file = key_file
        self.worker: Any = None
        self.static_dir: Path = Path(__file__).resolve().parent.parent / "assets"
        self._cache: dict[str, _FeedIcon] = {}
        self._cache_lock = threading.Lock()
        self._stop = threading.Event()

    @property
    def _authenticated(self) -> bool:
        return bool(self.username and self.password)

    def get_addr(self) -> str:
        proto = "https" if self.cert_file and self.key_file else "http"
        return f"{proto}://{self.addr}{self.base_path}"

    def handler(self) -> Router:
        """The WSGI application with all routes."""
        router = Router(self.base_path)
        router.use(gzip_middleware)
        if self._authenticated:
            router.use(AuthMiddleware(
                username=self.username,
                password=self.password,
                base_path=self.base_path,
                public=["/static", "/fever"],
            ))
        router.add("/", self._index)
        router.add("/manifest.json", self._manifest)
        router.add("/static/*path", self._static)
        router.add("/api/status", self._status)
        router.add("/api/folders", self._folder_list)
        router.add("/api/folders/:id", self._folder)
        router.add("/api/feeds", self._feed_list)
        router.add("/api/feeds/refresh", self._feed_refresh)
        router.add("/api/feeds/errors", self._feed_errors)
        router.add("/api/feeds/:id/icon", self._feed_icon)
        router.add("/api/feeds/:id", self._feed)
        router.add("/api/items", self._item_list)
        router.add("/api/items/:id", self._item)
        router.add("/api/settings", self._settings)
        router.add("/opml/import", self._opml_import)
        router.add("/opml/export", self._opml_export)
        router.add("/logout", self._logout)
        router.add("/fever/", FeverAPI(self.db, self.username, self.password))
        return router

    # pages

    def _index(self, c: Context) -> None:
        c.html(200, _index_page(self.db.get_settings(), self._authenticated, self.base_path))

    def _manifest(self, c: Context) -> None:
        c.json(200, {
            "$schema": "https://json.schemastore.org/web-manifest-combined.json",
            "name": "yarr!",
            "short_name": "yarr",
            "description": "yet another rss reader",
            "display": "standalone",
            "start_url": self.base_path,
            "icons": [{
                "src": self.base_path + "/static/graphicarts/favicon.png",
                "sizes": "64x64",
                "type": "image/png",
            }],
        })

    def _static(self, c: Context) -> None:
        prefix = self.base_path + "/static/"
        rel = c.req.path[len(prefix):] if c.req.path.startswith(prefix) else ""
        # templates at the top level are not served
        if "/" not in rel and rel.endswith(".html"):
            c.out.write_header(404)
            return
        root = Path(self.static_dir).resolve()
        target = (root / rel).resolve()
        if root not in target.parents or not target.is_file():
            c.out.write_header(404)
            return
        ctype, _ = mimetypes.guess_type(target.name)
        c.out.headers["Content-Type"] = ctype or "application/octet-stream"
        c.out.write_header(200)
        c.out.write(target.read_bytes())

    def _logout(self, c: Context) -> None:
        logout(c.out, self.base_path)
        c.out.write_header(204)

    # status, folders

    def _status(self, c: Context) -> None:
        running = self.worker.feeds_pending() if self.worker is not None else 0
        c.json(200, {
            "running": running,
            "stats": [stat.to_dict() for stat in self.db.feed_stats()],
        })

    def _folder_list(self, c: Context) -> None:
        method = c.req.method
        if method == "GET":
            c.json(200, [folder.to_dict() for folder in self.db.list_folders()])
        elif method == "POST":
            try:
                body = _decode_json(c)
            except ValueError as exc:
                log.warning("%s", exc)
                c.out.write_header(400)
                return
            title = body.get("title") if isinstance(body, dict) else None
            if title is not None and not isinstance(title, str) or not isinstance(body, dict):
                c.out.write_header(400)
                return
            if not title:
                c.json(400, {"error": "Folder title missing."})
                return
            folder = self.db.create_folder(title)
            c.json(201, folder.to_dict() if folder is not None else None)
        else:
            c.out.write_header(405)

    def _folder(self, c: Context) -> None:
        folder_id = _var_int(c, "id")
        if folder_id is None:
            c.out.write_header(400)
            return
        if c.req.method == "PUT":
            try:
                body = _decode_json(c)
            except ValueError as exc:
                log.warning("%s", exc)
                c.out.write_header(400)
                return
            if not isinstance(body, dict):
                c.out.write_header(400)
                return
            title = body.get("title")
            expanded = body.get("is_expanded")
            if (title is not None and not isinstance(title, str)) or (
                expanded is not None and not isinstance(expanded, bool)
            ):
                c.out.write_header(400)
                return
            if title is not None:
                self.db.rename_folder(folder_id, title)
            if expanded is not None:
                self.db.toggle_folder_expanded(folder_id, expanded)
            c.out.write_header(200)
        elif c.req.method == "DELETE":
            self.db.delete_folder(folder_id)
            c.out.write_header(204)

    # feeds

    def _feed_refresh(self, c: Context) -> None:
        if c.req.method == "POST":
            if self.worker is not None:
                self.worker.refresh_feeds()
            c.out.write_header(200)
        else:
            c.out.write_header(405)

    def _feed_errors(self, c: Context) -> None:
        c.json(200, self.db.get_feed_errors())

    def _feed_icon(self, c: Context) -> None:
        feed_id = _var_int(c, "id")
        if feed_id is None:
            c.out.write_header(400)
            return
        key = f"icon:{feed_id}"
        with self._cache_lock:
            icon = self._cache.get(key)
        if icon is None:
            feed = self.db.get_feed(feed_id)
            if feed is None or feed.icon is None:
                c.out.write_header(404)
                return
            icon = _FeedIcon(
                ctype=detect_content_type(feed.icon),
                data=feed.icon,
                etag=hashlib.md5(feed.icon).hexdigest()[:16],
            )
            with self._cache_lock:
                self._cache[key] = icon
        if c.req.header("if-none-match") == icon.etag:
            c.out.write_header(304)
            return
        c.out.headers["Content-Type"] = icon.ctype
        c.out.headers["Etag"] = icon.etag
        c.out.write_header(200)
        c.out.write(icon.data)

    def _feed_list(self, c: Context) -> None:
        if c.req.method == "GET":
            c.json(200, [feed.to_dict() for feed in self.db.list_feeds()])
        elif c.req.method == "POST":
            try:
                form = _decode_json(c)
            except ValueError as exc:
                log.warning("%s", exc)
                c.out.write_header(400)
                return
            if not isinstance(form, dict):
                c.out.write_header(400)
                return
            url = form.get("url") or ""
            folder_id = form.get("folder_id")
            if folder_id is not None and (isinstance(folder_id, bool)
                                          or not isinstance(folder_id, int)):
                c.out.write_header(400)
                return
            self._add_feed(c, url, folder_id)

    def _add_feed(self, c: Context, url: str, folder_id: Optional[int]) -> None:
        if self.worker is None:
            log.warning("No worker to discover feed for %s", url)
            c.json(200, {"status": "notfound"})
            return
        try:
            result: Discovery = self.worker.discover_feed(url)
        except Exception as exc:  # network and parse errors alike
            log.warning("Failed to discover feed for %s: %s", url, exc)
            c.json(200, {"status": "notfound"})
            return
        if result.sources:
            c.json(200, {"status": "multiple", "choice": result.sources})
            return
        if not result.feed_link:
            c.json(200, {"status": "notfound"})
            return
        feed = self.db.create_feed(result.title, "", result.site_url, result.feed_link,
                                   folder_id)
        if feed is None:
            c.json(200, {"status": "notfound"})
            return
        items = result.items
        for item in items:
            item.feed_id = feed.id
        if items:
            self.db.create_items(items)
            self.db.set_feed_size(feed.id, len(items))
            self.db.sync_search()
        self.worker.find_feed_favicon(feed)
        c.json(200, {"status": "success", "feed": feed.to_dict()})

    def _feed(self, c: Context) -> None:
        feed_id = _var_int(c, "id")
        if feed_id is None:
            c.out.write_header(400)
            return
        if c.req.method == "PUT":
            if self.db.get_feed(feed_id) is None:
                c.out.write_header(400)
                return
            try:
                body = _decode_json(c)
            except ValueError as exc:
                log.warning("%s", exc)
                c.out.write_header(400)
                return
            if not isinstance(body, dict):
                c.out.write_header(400)
                return
            if isinstance(body.get("title"), str):
                self.db.rename_feed(feed_id, body["title"])
            if "folder_id" in body:
                folder_id = body["folder_id"]
                if folder_id is None:
                    self.db.update_feed_folder(feed_id, None)
                elif isinstance(folder_id, (int, float)) and not isinstance(folder_id, bool):
                    self.db.update_feed_folder(feed_id, int(folder_id))
            c.out.write_header(200)
        elif c.req.method == "DELETE":
            self.db.delete_feed(feed_id)
            c.out.write_header(204)
        else:
            c.out.write_header(405)

    # items

    def _item(self, c: Context) -> None:
        item_id = _var_int(c, "id")
        if item_id is None:
            c.out.write_header(400)
            return
        if c.req.method == "GET":
            item = self.db.get_item(item_id)
            if item is None:
                c.out.write_header(400)
                return
            if not _is_possible_link(item.link):
                feed = self.db.get_feed(item.feed_id)
                if feed is not None:
                    item.link = urljoin(feed.link, item.link)
            c.json(200, item.to_dict())
        elif c.req.method == "PUT":
            try:
                body = _decode_json(c)
            except ValueError as exc:
                log.warning("%s", exc)
                c.out.write_header(400)
                return
            if not isinstance(body, dict):
                c.out.write_header(400)
                return
            status = body.get("status")
            if status is not None and not isinstance(status, str):
                c.out.write_header(400)
                return
            if status is not None:
                self.db.update_item_status(item_id, ItemStatus.parse(status))
            c.out.write_header(200)
        else:
            c.out.write_header(405)

    def _item_list(self, c: Context) -> None:
        req = c.req
        if req.method == "GET":
            item_filter = ItemFilter(
                folder_id=_query_int(c, "folder_id"),
                feed_id=_query_int(c, "feed_id"),
                after=_query_int(c, "after"),
            )
            status = req.query_get("status")
            if status:
                item_filter.status = ItemStatus.parse(status)
            search = req.query_get("search")
            if search:
                item_filter.search = search
            newest_first = req.query_get("oldest_first") != "true"
            items = self.db.list_items(item_filter, PER_PAGE + 1, newest_first, False)
            has_more = len(items) == PER_PAGE + 1
            c.json(200, {
                "list": [item.to_dict() for item in items[:PER_PAGE]],
                "has_more": has_more,
            })
        elif req.method == "PUT":
            self.db.mark_items_read(MarkFilter(
                folder_id=_query_int(c, "folder_id"),
                feed_id=_query_int(c, "feed_id"),
            ))
            c.out.write_header(200)
        else:
            c.out.write_header(405)

    # settings

    def _settings(self, c: Context) -> None:
        if c.req.method == "GET":
            c.json(200, self.db.get_settings())
        elif c.req.method == "PUT":
            try:
                settings = _decode_json(c)
            except ValueError:
                c.out.write_header(400)
                return
            if not isinstance(settings, dict):
                c.out.write_header(400)
                return
            if self.db.update_settings(settings):
                if "refresh_rate" in settings and self.worker is not None:
                    self.worker.set_refresh_rate(self.db.get_settings_value_int("refresh_rate"))
                c.out.write_header(200)
            else:
                c.out.write_header(400)

    # opml

    def _opml_import(self, c: Context) -> None:
        if c.req.method != "POST":
            c.out.write_header(405)
            return
        data = _multipart_file(c, "opml")
        if data is None:
            log.warning("no opml file in the request")
            return
        try:
            doc = opml.parse(data)
        except opml.OPMLError as exc:
            log.warning("%s", exc)
            c.out.write_header(400)
            return
        for feed in doc.feeds:
            self.db.create_feed(feed.title, "", feed.site_url, feed.feed_url, None)
        for sub in doc.folders:
            folder = self.db.create_folder(sub.title)
            folder_id = folder.id if folder is not None else None
            for feed in sub.all_feeds():
                self.db.create_feed(feed.title, "", feed.site_url, feed.feed_url, folder_id)
        if self.worker is not None:
            self.worker.find_favicons()
            self.worker.refresh_feeds()
        c.out.write_header(200)

    def _opml_export(self, c: Context) -> None:
        if c.req.method != "GET":
            return
        c.out.headers["Content-Type"] = "application/xml; charset=utf-8"
        c.out.headers["Content-Disposition"] = 'attachment; filename="subscriptions.opml"'
        doc = opml.Folder()
        by_folder: dict[int, list[opml.Feed]] = {}
        for feed in self.db.list_feeds():
            entry = opml.Feed(title=feed.title, feed_url=feed.feed_link, site_url=feed.link)
            if feed.folder_id is None:
                doc.feeds.append(entry)
            else:
                by_folder.setdefault(feed.folder_id, []).append(entry)
        for folder in self.db.list_folders():
            feeds = by_folder.get(folder.id)
            if feeds:
                doc.folders.append(opml.Folder(title=folder.title, feeds=feeds))
        c.out.write_header(200)
        c.out.write(doc.to_opml().encode("utf-8"))

    # running

    def _cleaner(self) -> None:
        while True:
            self.db.delete_old_items()
            if self._stop.wait(CLEANUP_INTERVAL):
                return

    def start(self) -> None:
        """Serve until SIGINT or SIGTERM."""
        refresh_rate = self.db.get_settings_value_int("refresh_rate")
        if self.worker is not None:
            self.worker.find_favicons()
            self.worker.start_feed_cleaner()
            self.worker.set_refresh_rate(refresh_rate)
            if refresh_rate > 0:
                self.worker.refresh_feeds()
        else:
            threading.Thread(target=self._cleaner, daemon=True).start()

        host, _, port = self.addr.rpartition(":")
        httpd = make_server(host or "", int(port), self.handler(),
                            server_class=_ThreadingWSGIServer,
                            handler_class=_RequestHandler)
        if self.cert_file and self.key_file:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            context.load_cert_chain(self.cert_file, self.key_file)
            httpd.socket = context.wrap_socket(httpd.socket, server_side=True)

        def stop(signum: int, frame: Any) -> None:
            threading.Thread(target=httpd.shutdown, daemon=True).start()

        previous = {sig: signal.signal(sig, stop) for sig in (signal.SIGINT, signal.SIGTERM)}
        try:
            httpd.serve_forever()
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)
            httpd.server_close()
            self._stop.set()