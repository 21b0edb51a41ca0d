"""A small path router with middleware chains, usable as a WSGI application."""

from __future__ import annotations

import email.parser
import email.policy
import http
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from http.cookies import SimpleCookie
from typing import Any, Callable, Iterable, Optional
from urllib.parse import parse_qs
from wsgiref.headers import Headers

Handler = Callable[["Context"], None]

_CHUNKS = re.compile(r"[*:]\w+", re.ASCII)
_INT = re.compile(r"[+-]?[0-9]+\Z")


def _parse_int(text: Optional[str]) -> int:
    if text is None or not _INT.match(text):
        raise ValueError(f"invalid integer: {text!r}")
    value = int(text)
    if not -(2**63) <= value < 2**63:
        raise ValueError(f"integer out of range: {text!r}")
    return value


def route_regexp(route: str) -> re.Pattern:
    """Compile a route such as '/feeds/:id' or '/static/*path' into a regex."""

    def repl(match: re.Match) -> str:
        chunk = match.group(0)
        if chunk[0] == "*":
            return f"(?P<{chunk[1:]}>.+)"
        return f"(?P<{chunk[1:]}>[^/]+)"

    return re.compile("^" + _CHUNKS.sub(repl, route) + r"\Z")


def regex_groups(path: str, regex: re.Pattern) -> dict[str, str]:
    """Return the named groups of a route regex matched against a path."""
    match = regex.match(path)
    return dict(match.groupdict()) if match else {}


@dataclass
class UploadedFile:
    filename: str
    content: bytes


@dataclass
class Request:
    method: str = "GET"
    path: str = "/"
    query_string: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def __post_init__(self) -> None:
        self.headers = {k.lower(): v for k, v in self.headers.items()}
        self.query = parse_qs(self.query_string, keep_blank_values=True)
        self._form: Optional[dict[str, list[str]]] = None
        self._files: dict[str, UploadedFile] = {}

    @classmethod
    def from_environ(cls, environ: dict) -> "Request":
        headers = {
            key[5:].replace("_", "-"): value
            for key, value in environ.items()
            if key.startswith("HTTP_")
        }
        for key in ("CONTENT_TYPE", "CONTENT_LENGTH"):
            if environ.get(key):
                headers[key.replace("_", "-")] = environ[key]
        try:
            length = int(environ.get("CONTENT_LENGTH") or 0)
        except ValueError:
            length = 0
        stream = environ.get("wsgi.input")
        body = stream.read(length) if stream is not None and length > 0 else b""
        return cls(
            method=environ.get("REQUEST_METHOD", "GET").upper(),
            path=environ.get("PATH_INFO", "/") or "/",
            query_string=environ.get("QUERY_STRING", ""),
            headers=headers,
            body=body,
        )

    def header(self, name: str) -> str:
        return self.headers.get(name.lower(), "")

    def query_get(self, key: str) -> str:
        """First query value for key, or an empty string."""
        values = self.query.get(key)
        return values[0] if values else ""

    def _parse_body(self) -> dict[str, list[str]]:
        ctype = self.header("content-type")
        result: dict[str, list[str]] = {}
        if self.method not in ("POST", "PUT", "PATCH") or not self.body:
            return result
        if ctype.startswith("application/x-www-form-urlencoded"):
            return parse_qs(self.body.decode("utf-8", "replace"), keep_blank_values=True)
        if ctype.startswith("multipart/form-data"):
            message = email.parser.BytesParser(policy=email.policy.HTTP).parsebytes(
                b"Content-Type: " + ctype.encode("latin-1") + b"\r\n\r\n" + self.body
            )
            for part in message.iter_parts():
                name = part.get_param("name", header="content-disposition")
                if not name:
                    continue
                payload = part.get_payload(decode=True) or b""
                filename = part.get_filename()
                if filename is not None:
                    self._files[name] = UploadedFile(filename, payload)
                else:
                    result.setdefault(name, []).append(payload.decode("utf-8", "replace"))
        return result

    @property
    def form(self) -> dict[str, list[str]]:
        """Body fields followed by query fields, as multi-valued lists."""
        if self._form is None:
            merged = self._parse_body()
            for key, values in self.query.items():
                merged.setdefault(key, []).extend(values)
            self._form = merged
        return self._form

    @property
    def files(self) -> dict[str, UploadedFile]:
        _ = self.form
        return self._files

    def form_get(self, key: str) -> str:
        """First form value for key (body before query), or an empty string."""
        values = self.form.get(key)
        return values[0] if values else ""

    def cookie(self, name: str) -> Optional[str]:
        """Value of a request cookie, or None."""
        jar = SimpleCookie()
        try:
            jar.load(self.header("cookie"))
        except Exception:
            return None
        morsel = jar.get(name)
        return morsel.value if morsel is not None else None


class Response:
    """Collects status, headers and body written by handlers."""

    def __init__(self) -> None:
        self.status: Optional[int] = None
        self.headers = Headers([])
        self._chunks: list[bytes] = []

    @property
    def status_code(self) -> int:
        return self.status or 200

    @property
    def body(self) -> bytes:
        return b"".join(self._chunks)

    def write_header(self, status: int) -> None:
        if self.status is None:
            self.status = status

    def write(self, data: bytes | str) -> int:
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.write_header(200)
        self._chunks.append(bytes(data))
        return len(data)

    def set_cookie(self, name: str, value: str, path: str = "",
                   expires: Optional[datetime] = None, max_age: Optional[int] = None) -> None:
        parts = [f"{name}={value}"]
        if path:
            parts.append(f"Path={path}")
        if expires is not None:
            stamp = expires.astimezone(timezone.utc)
            parts.append("Expires=" + stamp.strftime("%a, %d %b %Y %H:%M:%S GMT"))
        if max_age is not None:
            parts.append(f"Max-Age={max(max_age, 0)}")
        self.headers.add_header("Set-Cookie", "; ".join(parts))


def _json_default(obj: Any) -> Any:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    raise TypeError(f"cannot encode {type(obj).__name__}")


class Context:
    """A request in flight through a middleware chain."""

    def __init__(self, req: Request, out: Response, vars: dict[str, str],
                 chain: list[Handler]) -> None:
        self.req = req
        self.out = out
        self.vars = vars
        self._chain = chain
        self._index = -1

    def next(self) -> None:
        self._index += 1
        self._chain[self._index](self)

    def json(self, status: int, data: Any) -> None:
        body = json.dumps(data, default=_json_default, ensure_ascii=False)
        self.out.headers["Content-Type"] = "application/json; charset=utf-8"
        self.out.write_header(status)
        self.out.write(body.encode("utf-8"))
        self.out.write(b"\n")

    def html(self, status: int, body: str) -> None:
        self.out.headers["Content-Type"] = "text/html"
        self.out.write_header(status)
        self.out.write(body)

    def var_int(self, key: str) -> int:
        if key not in self.vars:
            raise ValueError(f"no such var: {key}")
        return _parse_int(self.vars[key])

    def query_int(self, key: str) -> int:
        return _parse_int(self.req.query_get(key))

    def redirect(self, url: str) -> None:
        self.out.headers["Location"] = url or "/"
        self.out.write_header(http.HTTPStatus.FOUND)


@dataclass
class Route:
    regex: re.Pattern
    chain: list[Handler]


class Router:
    """Routes requests by path; middleware applies to routes added after it."""

    def __init__(self, base: str = "") -> None:
        self.base = base
        self._middle: list[Handler] = []
        self._routes: list[Route] = []

    def use(self, handler: Handler) -> None:
        self._middle.append(handler)

    def add(self, path: str, handler: Handler) -> None:
        self._routes.append(Route(route_regexp(path), [*self._middle, handler]))

    def resolve(self, path: str) -> Optional[Route]:
        return next((r for r in self._routes if r.regex.match(path)), None)

    def handle(self, request: Request) -> Response:
        response = Response()
        if self.base:
            if request.path == self.base:
                response.headers["Location"] = self.base + "/"
                response.write_header(302)
                return response
            if not request.path.startswith(self.base):
                response.write_header(404)
                return response
        path = request.path[len(self.base):] if self.base else request.path
        route = self.resolve(path)
        if route is None:
            response.write_header(404)
            return response
        Context(request, response, regex_groups(path, route.regex), route.chain).next()
        return response

    def __call__(self, environ: dict, start_response: Callable) -> Iterable[bytes]:
        response = self.handle(Request.from_environ(environ))
        code = response.status_code
        try:
            phrase = http.HTTPStatus(code).phrase
        except ValueError:
            phrase = ""
        start_response(f"{code} {phrase}".strip(), response.headers.items())
        return [response.body]