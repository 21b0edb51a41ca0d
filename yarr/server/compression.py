"""Gzip compression of responses for clients that accept it."""

from __future__ import annotations

import gzip
import io
from typing import Any, Optional

from .router import Context, Response


class _GzipResponse:
    """Passes status and headers to the real response and compresses the body."""

    def __init__(self, src: Response) -> None:
        self._src = src
        self._buffer = io.BytesIO()
        self._gzip = gzip.GzipFile(fileobj=self._buffer, mode="wb", mtime=0)

    @property
    def headers(self):
        return self._src.headers

    @property
    def status(self) -> Optional[int]:
        return self._src.status

    @property
    def status_code(self) -> int:
        return self._src.status_code

    def write_header(self, status: int) -> None:
        self._src.write_header(status)

    def write(self, data: bytes | str) -> int:
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._src.write_header(200)
        self._gzip.write(data)
        return len(data)

    def set_cookie(self, *args: Any, **kwargs: Any) -> None:
        self._src.set_cookie(*args, **kwargs)

    def close(self) -> None:
        self._gzip.close()
        self._src.write(self._buffer.getvalue())


def gzip_middleware(context: Context) -> None:
    """Compress whatever the rest of the chain writes, if the client accepts gzip."""
    if "gzip" not in context.req.header("accept-encoding"):
        context.next()
        return
    source = context.out
    wrapper = _GzipResponse(source)
    source.headers["Content-Encoding"] = "gzip"
    context.out = wrapper
    try:
        context.next()
    finally:
        wrapper.close()
        context.out = source