"""One bound loopback HTTP listener (one address family, one port).

:class:`LoopbackListener` is a :class:`~http.server.ThreadingHTTPServer`
that converts every request into a :class:`LoopbackRequest`, calls a single
:data:`Handler`, and writes the returned :class:`LoopbackResponse` once.

It also tracks open client connections so :meth:`LoopbackListener.close`
can let in-flight responses finish and then forcibly shut down anything
still open after a grace period.
"""

from __future__ import annotations

import logging
import socket
import socketserver
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Optional

from sonarlogin.loopback.security import (
    SECURITY_HEADERS,
    Handler,
    LoopbackRequest,
    LoopbackResponse,
)

logger = logging.getLogger(__name__)

HTTP_INTERNAL_ERROR = 500


class _CallbackRequestHandler(BaseHTTPRequestHandler):
    """Adapter between :mod:`http.server` and a :data:`Handler`."""

    server: LoopbackListener
    server_version = "sonarlogin"
    timeout = 10  # per-connection socket timeout, seconds

    def __getattr__(self, name: str) -> Any:
        # Every method reaches the gate; http.server would answer 501 on its own.
        if name.startswith("do_"):
            return self._dispatch
        raise AttributeError(name)

    def _dispatch(self) -> None:
        request = LoopbackRequest(
            method=self.command,
            path=self.path,
            headers=dict(self.headers.items()),
            body_reader=self._read_body,
        )
        try:
            response = self.server.app(request)
        except Exception:
            logger.exception("Loopback handler failed for %s %s", self.command, self.path)
            response = LoopbackResponse.text(HTTP_INTERNAL_ERROR, "Internal Server Error")
        self._write(response)

    def _read_body(self) -> bytes:
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            length = 0
        if length <= 0:
            return b""
        return self.rfile.read(length)

    def _write(self, response: LoopbackResponse) -> None:
        self.send_response(response.status)
        for key, value in response.headers.items():
            self.send_header(key, value)
        self.send_header("Content-Length", str(len(response.body)))
        self.end_headers()
        if self.command != "HEAD" and response.body:
            self.wfile.write(response.body)

    def send_error(
        self, code: int, message: Optional[str] = None, explain: Optional[str] = None
    ) -> None:
        """Answer a request that could not be parsed, with the baseline headers."""
        self.close_connection = True
        reason = message or self.responses.get(code, ("Error",))[0]
        response = LoopbackResponse.text(code, reason)
        response.headers.update(SECURITY_HEADERS)
        response.headers["Connection"] = "close"
        self._write(response)

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("%s - %s", self.address_string(), format % args)


class LoopbackListener(ThreadingHTTPServer):
    """Threaded HTTP server bound to a single loopback address.

    Binding happens in the constructor; an ``OSError`` from ``bind`` is
    raised to the caller with the socket already closed.

    Args:
        address: ``(host, port)`` to bind, e.g. ``("127.0.0.1", 64120)``.
        app: Handler invoked for every request.
        family: ``socket.AF_INET`` or ``socket.AF_INET6``.
    """

    daemon_threads = True
    block_on_close = False
    # SO_REUSEADDR on Windows and SO_REUSEPORT anywhere let a second socket
    # share an already bound port, which would hide "address in use".
    allow_reuse_address = sys.platform != "win32"
    allow_reuse_port = False

    def __init__(
        self,
        address: tuple[str, int],
        app: Handler,
        family: socket.AddressFamily = socket.AF_INET,
    ) -> None:
        self.address_family = family
        self.app = app
        self._connections: set[socket.socket] = set()
        self._connections_changed = threading.Condition()
        self._thread: Optional[threading.Thread] = None
        super().__init__(address, _CallbackRequestHandler)

    @property
    def port(self) -> int:
        return self.server_address[1]

    @property
    def host(self) -> str:
        return self.server_address[0]

    def server_bind(self) -> None:
        # HTTPServer.server_bind resolves the FQDN of the bound address,
        # which can stall on hosts with slow reverse DNS.
        socketserver.TCPServer.server_bind(self)
        host, port = self.server_address[:2]
        self.server_name = host
        self.server_port = port

    def serve_in_background(self) -> None:
        """Start ``serve_forever`` on a daemon thread."""
        self._thread = threading.Thread(
            target=self.serve_forever,
            kwargs={"poll_interval": 0.1},
            name=f"loopback-{self.host}:{self.port}",
            daemon=True,
        )
        self._thread.start()

    def process_request(self, request: Any, client_address: Any) -> None:
        with self._connections_changed:
            self._connections.add(request)
        super().process_request(request, client_address)

    def shutdown_request(self, request: Any) -> None:
        try:
            super().shutdown_request(request)
        finally:
            with self._connections_changed:
                self._connections.discard(request)
                self._connections_changed.notify_all()

    def handle_error(self, request: Any, client_address: Any) -> None:
        logger.debug("Error while serving %s", client_address, exc_info=True)

    @property
    def open_connections(self) -> int:
        with self._connections_changed:
            return len(self._connections)

    def close(self, grace_period: float) -> None:
        """Stop accepting, drain in-flight requests, then force-close stragglers.

        Args:
            grace_period: Seconds to wait for open connections to finish
                before shutting their sockets down.
        """
        if self._thread is not None:
            self.shutdown()
            self._thread.join()
            self._thread = None
        self.server_close()

        with self._connections_changed:
            drained = self._connections_changed.wait_for(
                lambda: not self._connections, timeout=grace_period
            )
            stragglers = list(self._connections)
            self._connections.clear()

        if not drained:
            logger.debug(
                "Force-closing %d connection(s) on %s:%d", len(stragglers), self.host, self.port
            )
        for sock in stragglers:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()
