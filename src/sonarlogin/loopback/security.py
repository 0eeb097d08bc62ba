"""Request gate for the loopback listener.

The callback port is unauthenticated and reachable by any web page the user
has open, so every request passes through :class:`SecurityGate` before the
token handler sees it:

1. ``OPTIONS`` preflights are answered directly, with CORS grants only for
   loopback or allow-listed origins.
2. A foreign ``Origin`` is refused with 403.
3. A non-loopback ``Host`` is refused with 403 (DNS rebinding).
4. Every other response gets the baseline security headers, composed once
   by the gate rather than patched into the handler's response.

Handlers exchange plain :class:`LoopbackRequest` / :class:`LoopbackResponse`
values so the gate and the token handler can be tested without sockets.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Optional
from urllib.parse import urlsplit

from sonarlogin.exceptions import ForbiddenRequest

logger = logging.getLogger(__name__)

HTTP_OK = 200
HTTP_BAD_REQUEST = 400
HTTP_FORBIDDEN = 403
HTTP_PAYLOAD_TOO_LARGE = 413

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})
"""Hostnames accepted as loopback, as parsed (``[::1]`` appears as ``::1``)."""

SECURITY_HEADERS: Mapping[str, str] = {
    "Content-Security-Policy": "default-src 'none'; connect-src 'self'",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Cache-Control": "no-store",
}

PREFLIGHT_HEADERS: Mapping[str, str] = {
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Allow-Private-Network": "true",
}


@dataclass
class LoopbackRequest:
    """An inbound request as seen by the gate and the token handler.

    Attributes:
        method: HTTP method, case preserved (matching is case-sensitive).
        path: Raw request target, e.g. ``/?token=abc``.
        headers: Request headers; lookups through :meth:`header` ignore case.
        body_reader: Returns the request body when called. ``None`` means
            the request has no body.
    """

    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body_reader: Optional[Callable[[], bytes]] = None

    def __post_init__(self) -> None:
        self._lower = {k.lower(): v for k, v in self.headers.items()}

    def header(self, name: str) -> Optional[str]:
        return self._lower.get(name.lower())

    @property
    def content_length(self) -> int:
        try:
            return max(0, int(self.header("Content-Length") or 0))
        except ValueError:
            return 0

    def read_body(self) -> bytes:
        if self.body_reader is None:
            return b""
        return self.body_reader()


@dataclass
class LoopbackResponse:
    """A response produced by a handler, written to the socket exactly once."""

    status: int = HTTP_OK
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @classmethod
    def text(cls, status: int, message: str) -> LoopbackResponse:
        return cls(
            status=status,
            headers={"Content-Type": "text/plain; charset=utf-8"},
            body=message.encode("utf-8"),
        )


Handler = Callable[[LoopbackRequest], LoopbackResponse]


def is_loopback_origin(origin: str) -> bool:
    """Return True if *origin* (``scheme://host[:port]``) names a loopback host."""
    try:
        hostname = urlsplit(origin).hostname
    except ValueError:
        logger.debug("Invalid origin URL format: %s", origin)
        return False
    return hostname in LOOPBACK_HOSTS


def is_loopback_host(host: str) -> bool:
    """Return True if a ``Host`` header value (``host[:port]``) is a loopback host."""
    try:
        hostname = urlsplit(f"http://{host}").hostname
    except ValueError:
        logger.debug("Invalid Host header format: %s", host)
        return False
    return hostname in LOOPBACK_HOSTS


class SecurityGate:
    """Origin/Host validation and security headers for every loopback request.

    Args:
        allowed_origins: Exact origins (besides loopback ones) that may call
            the listener, typically the authorization server's own origin.

    Example::

        gate = SecurityGate({"https://sonarcloud.io"})
        handler = gate.wrap(token_handler)
        response = handler(request)
    """

    def __init__(self, allowed_origins: Iterable[str] = ()) -> None:
        self.allowed_origins = frozenset(allowed_origins)

    def is_allowed_origin(self, origin: str) -> bool:
        return is_loopback_origin(origin) or origin in self.allowed_origins

    def wrap(self, inner: Handler) -> Handler:
        """Compose the gate in front of *inner*."""

        def gated(request: LoopbackRequest) -> LoopbackResponse:
            return self.handle(request, inner)

        return gated

    def handle(self, request: LoopbackRequest, inner: Handler) -> LoopbackResponse:
        """Run *request* through the gate, forwarding to *inner* only if it passes."""
        origin = request.header("Origin")

        if request.method == "OPTIONS":
            return self._preflight(origin)

        try:
            self.check(request)
        except ForbiddenRequest as exc:
            logger.debug("Rejected loopback request: %s", exc)
            return self._finalize(LoopbackResponse.text(HTTP_FORBIDDEN, "Forbidden"), None)

        return self._finalize(inner(request), origin)

    def check(self, request: LoopbackRequest) -> None:
        """Validate Origin and Host.

        Raises:
            ForbiddenRequest: If either header names a host that is neither
                loopback nor (for Origin) explicitly allowed.
        """
        origin = request.header("Origin")
        if origin is not None and not self.is_allowed_origin(origin):
            raise ForbiddenRequest(f"disallowed origin: {origin}")

        host = request.header("Host")
        if host is not None and not is_loopback_host(host):
            raise ForbiddenRequest(f"non-loopback Host header: {host}")

    def _preflight(self, origin: Optional[str]) -> LoopbackResponse:
        headers = dict(SECURITY_HEADERS)
        if origin is not None and self.is_allowed_origin(origin):
            headers["Access-Control-Allow-Origin"] = origin
            headers.update(PREFLIGHT_HEADERS)
        return LoopbackResponse(status=HTTP_OK, headers=headers)

    def _finalize(self, response: LoopbackResponse, origin: Optional[str]) -> LoopbackResponse:
        """Build the final header set: handler headers, then the baseline on top."""
        headers = {
            key: value
            for key, value in response.headers.items()
            if key.lower() not in _BASELINE_KEYS
        }
        headers.update(SECURITY_HEADERS)
        if origin is not None and not is_loopback_origin(origin) and origin in self.allowed_origins:
            headers["Access-Control-Allow-Origin"] = origin
        return LoopbackResponse(status=response.status, headers=headers, body=response.body)


_BASELINE_KEYS = frozenset(key.lower() for key in SECURITY_HEADERS)
