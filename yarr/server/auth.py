"""Cookie-based authentication for the web interface."""

from __future__ import annotations

import hashlib
import hmac
import html
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .router import Context, Request, Response

COOKIE_NAME = "auth"
COOKIE_LIFETIME = timedelta(days=7)
LOGIN_ERROR = "Invalid username/password"

_UNSAFE_METHODS = frozenset({"POST", "PUT", "DELETE"})


def strings_equal(first: str, second: str) -> bool:
    """Compare two strings in constant time."""
    return hmac.compare_digest(first.encode("utf-8"), second.encode("utf-8"))


def secret(msg: str, key: str) -> str:
    """Hex HMAC-SHA256 of msg under key."""
    return hmac.new(key.encode("utf-8"), msg.encode("utf-8"), hashlib.sha256).hexdigest()


def is_authenticated(request: Request, username: str, password: str) -> bool:
    """True if the request carries a valid auth cookie for these credentials."""
    value = request.cookie(COOKIE_NAME)
    if value is None:
        return False
    parts = value.split(":")
    if len(parts) != 2 or not strings_equal(parts[0], username):
        return False
    return strings_equal(parts[1], secret(username, password))


def authenticate(response: Response, username: str, password: str, base_path: str) -> None:
    """Set the auth cookie, valid for one week."""
    response.set_cookie(
        COOKIE_NAME,
        username + ":" + secret(username, password),
        path=base_path,
        expires=datetime.now(timezone.utc) + COOKIE_LIFETIME,
    )


def logout(response: Response, base_path: str) -> None:
    """Expire the auth cookie."""
    response.set_cookie(COOKIE_NAME, "", path=base_path, max_age=-1)


def _is_unsafe_method(method: str) -> bool:
    return method in _UNSAFE_METHODS


def _login_page(values: Optional[dict[str, str]]) -> str:
    values = values or {}
    username = html.escape(values.get("username", ""), quote=True)
    error = values.get("error", "")
    message = f"<p class=\"error\">{html.escape(error)}</p>" if error else ""
    return (
        "<!DOCTYPE html><html><head><title>yarr!</title></head><body>"
        f"{message}"
        '<form method="post">'
        f'<input name="username" value="{username}" autocomplete="username">'
        '<input name="password" type="password" autocomplete="current-password">'
        '<button type="submit">Login</button>'
        "</form></body></html>"
    )


@dataclass
class AuthMiddleware:
    """Lets through public paths and authenticated requests; serves the login page."""

    username: str
    password: str
    base_path: str = ""
    public: list[str] = field(default_factory=list)
    login_page: Callable[[Optional[dict[str, str]]], str] = _login_page

    def __call__(self, context: Context) -> None:
        req = context.req
        if any(req.path.startswith(self.base_path + path) for path in self.public):
            context.next()
            return
        if is_authenticated(req, self.username, self.password):
            context.next()
            return

        root_url = self.base_path + "/"
        if req.path != root_url:
            context.out.write_header(401)
            return

        if req.method == "POST":
            username = req.form_get("username")
            password = req.form_get("password")
            if strings_equal(username, self.username) and strings_equal(password, self.password):
                authenticate(context.out, self.username, self.password, self.base_path)
                context.redirect(root_url)
            else:
                context.html(200, self.login_page({"username": username, "error": LOGIN_ERROR}))
            return
        context.html(200, self.login_page(None))