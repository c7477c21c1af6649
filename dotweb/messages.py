# -*- coding: utf-8 -*-
"""Request and response values passed to and returned from handlers."""

import html
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Optional, Tuple
from urllib.parse import urlsplit


@dataclass
class Request:
    method: str
    target: str                     # raw request-target, e.g. "/a/b?x=1"
    headers: Any = field(default_factory=dict)
    body: bytes = b""
    host: str = ""                  # Host header, may carry a port
    client_address: Optional[Tuple] = None
    tls: bool = False

    def _split(self):
        # origin-form targets are taken as is; "//x/y" is a path, not an authority
        if not self.target.startswith("/"):
            parts = urlsplit(self.target)
            return parts.path or "/", parts.query
        path, _, query = self.target.partition("?")
        return path, query

    @property
    def path(self) -> str:
        return self._split()[0]

    @property
    def query(self) -> str:
        return self._split()[1]

    @property
    def path_with_query(self) -> str:
        q = self.query
        return f"{self.path}?{q}" if q else self.path


@dataclass
class Response:
    status: int = 200
    headers: dict = field(default_factory=dict)
    body: bytes = b""

    def __post_init__(self):
        self.headers = dict(self.headers)
        if isinstance(self.body, str):
            self.body = self.body.encode("utf-8")
            self.headers.setdefault("Content-Type", "text/plain; charset=utf-8")


def to_response(value) -> Response:
    """Normalize whatever a handler returned."""
    if value is None:
        return Response()
    if isinstance(value, Response):
        return value
    if isinstance(value, (bytes, bytearray, str)):
        return Response(body=value if isinstance(value, str) else bytes(value))
    raise TypeError(f"handler returned unsupported type {type(value).__name__}")


def redirect(location: str, status: int = HTTPStatus.MOVED_PERMANENTLY, request: Optional[Request] = None) -> Response:
    headers = {"Location": location}
    body = b""
    # short HTML body for browsers, only for GET/HEAD
    if request is None or request.method in ("GET", "HEAD"):
        headers["Content-Type"] = "text/html; charset=utf-8"
        body = f'<a href="{html.escape(location)}">{HTTPStatus(status).phrase}</a>.\n'.encode("utf-8")
    return Response(status=int(status), headers=headers, body=body)


def split_host_port(hostport: str):
    """'example.com:80' -> ('example.com', '80'); '[::1]' -> ('::1', None)."""
    if hostport.startswith("["):
        end = hostport.find("]")
        if end != -1:
            host, rest = hostport[1:end], hostport[end + 1:]
            return host, rest[1:] if rest.startswith(":") and rest[1:] else None
    if hostport.count(":") == 1:
        host, port = hostport.split(":", 1)
        return host, port or None
    return hostport, None
