"""Login session: the state machine around one loopback token exchange.

A :class:`LoopbackSession` walks through::

    SEARCHING -> LISTENING -> WAITING -> RESOLVED | TIMED_OUT | CANCELLED -> CLOSED

``SEARCHING`` goes straight to ``CLOSED`` when no port can be bound, and
every path ends in ``CLOSED`` through :meth:`LoopbackSession.close`, which the
context manager runs in ``finally``.

Example::

    with LoopbackSession(allowed_origins={"https://sonarcloud.io"}) as session:
        url = build_authorization_url("https://sonarcloud.io", session.port)
        webbrowser.open(url)
        token = session.await_token(timeout=50)
"""

from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Optional
from urllib.parse import urlencode, urlsplit

from sonarlogin.exceptions import LoginCancelledError, LoginTimeoutError
from sonarlogin.loopback.extractor import TokenCallbackHandler
from sonarlogin.loopback.handshake import HandshakeCoordinator, Outcome
from sonarlogin.loopback.security import SecurityGate
from sonarlogin.loopback.server import FORCE_CLOSE_TIMEOUT, LoopbackServer
from sonarlogin.models import AUTH_PORT_RANGE, PortRange, SessionState

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_ID = "sonarqube-cli"
DEFAULT_AUTH_PATH = "sonarlint/auth"

_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.SEARCHING: frozenset({SessionState.LISTENING, SessionState.CLOSED}),
    SessionState.LISTENING: frozenset({SessionState.WAITING, SessionState.CLOSED}),
    SessionState.WAITING: frozenset(
        {
            SessionState.RESOLVED,
            SessionState.TIMED_OUT,
            SessionState.CANCELLED,
            SessionState.CLOSED,
        }
    ),
    SessionState.RESOLVED: frozenset({SessionState.CLOSED}),
    SessionState.TIMED_OUT: frozenset({SessionState.CLOSED}),
    SessionState.CANCELLED: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}

_OUTCOME_STATES = {
    Outcome.RESOLVED: SessionState.RESOLVED,
    Outcome.TIMED_OUT: SessionState.TIMED_OUT,
    Outcome.CANCELLED: SessionState.CANCELLED,
}


def build_authorization_url(
    server_url: str,
    port: int,
    client_id: str = DEFAULT_CLIENT_ID,
    auth_path: str = DEFAULT_AUTH_PATH,
) -> str:
    """Return ``<server>/<auth-path>?ideName=<client-id>&port=<port>``.

    A trailing slash on *server_url* is dropped before joining.
    """
    base = server_url.rstrip("/")
    query = urlencode({"ideName": client_id, "port": port})
    return f"{base}/{auth_path.strip('/')}?{query}"


def server_origin(server_url: str) -> str:
    """Return the browser origin (``scheme://host[:port]``) of *server_url*.

    Default ports are omitted, as browsers omit them in the ``Origin`` header.
    """
    parts = urlsplit(server_url)
    scheme = parts.scheme.lower()
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    port = parts.port
    if port is None or (scheme, port) in {("http", 80), ("https", 443)}:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


class LoopbackSession:
    """One login attempt: listener, gate, token handler and handshake.

    Args:
        allowed_origins: Non-loopback origins allowed to deliver the token,
            typically ``server_origin(server_url)``. Fixed for the session.
        port_range: Candidate callback ports; only tests change this.
        grace_period: Seconds :meth:`close` lets in-flight responses finish.
    """

    def __init__(
        self,
        allowed_origins: Iterable[str] = (),
        port_range: PortRange = AUTH_PORT_RANGE,
        grace_period: float = FORCE_CLOSE_TIMEOUT,
    ) -> None:
        self.allowed_origins = frozenset(allowed_origins)
        self._coordinator = HandshakeCoordinator()
        gate = SecurityGate(self.allowed_origins)
        app = gate.wrap(TokenCallbackHandler(self._coordinator.offer))
        self._server = LoopbackServer(app, port_range=port_range, grace_period=grace_period)
        self._state = SessionState.SEARCHING
        self._state_lock = threading.RLock()
        self._port: Optional[int] = None

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> SessionState:
        with self._state_lock:
            return self._state

    @property
    def port(self) -> int:
        if self._port is None:
            raise RuntimeError("LoopbackSession has not been started")
        return self._port

    @property
    def has_ipv6(self) -> bool:
        return self._server.has_ipv6

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> int:
        """Bind the callback port and start serving.

        Returns:
            The bound port.

        Raises:
            NoAvailablePortError: Every port of the range is in use.
            BindError: Unexpected OS failure while binding.
        """
        try:
            self._port = self._server.bind()
            self._transition(SessionState.LISTENING)
            self._server.serve()
            self._transition(SessionState.WAITING)
        except BaseException:
            self.close()
            raise
        logger.debug("Waiting for token on port %d", self._port)
        return self._port

    def await_token(self, timeout: Optional[float]) -> str:
        """Block until a token arrives, the timeout elapses, or :meth:`cancel` is called.

        A session that was already decided (e.g. cancelled by Ctrl-C just
        before the wait) reports that outcome immediately.

        Raises:
            LoginTimeoutError: Nothing arrived within *timeout* seconds.
            LoginCancelledError: The session was cancelled.
            RuntimeError: The session was never started or is closed.
        """
        if self.state in (SessionState.SEARCHING, SessionState.LISTENING, SessionState.CLOSED):
            raise RuntimeError(f"Cannot wait for a token in state {self.state.value}")
        try:
            token = self._coordinator.await_token(timeout)
        except (LoginTimeoutError, LoginCancelledError):
            self._settle()
            raise
        self._settle()
        return token

    def offer(self, token: str) -> bool:
        """Resolve the wait with a token obtained outside the listener.

        Returns:
            ``True`` if *token* decided the outcome; a callback token, a
            timeout or a cancel that came first makes this a no-op.
        """
        return self._coordinator.offer(token)

    def cancel(self) -> bool:
        """Abort the wait; the pending :meth:`await_token` raises ``LoginCancelledError``.

        Returns:
            ``True`` if the cancel decided the outcome.
        """
        cancelled = self._coordinator.cancel()
        if cancelled:
            self._settle()
        return cancelled

    def close(self) -> None:
        """Tear down both listeners and move to ``CLOSED``. Idempotent."""
        self._server.close()
        with self._state_lock:
            if self._state is not SessionState.CLOSED:
                self._transition(SessionState.CLOSED)

    def __enter__(self) -> LoopbackSession:
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _settle(self) -> None:
        outcome = self._coordinator.outcome
        if outcome is None:
            return
        with self._state_lock:
            if self._state is SessionState.WAITING:
                self._transition(_OUTCOME_STATES[outcome])

    def _transition(self, new_state: SessionState) -> None:
        with self._state_lock:
            if new_state not in _TRANSITIONS[self._state]:
                raise RuntimeError(
                    f"Invalid session transition {self._state.value} -> {new_state.value}"
                )
            logger.debug("Session state %s -> %s", self._state.value, new_state.value)
            self._state = new_state


@contextmanager
def cancel_on_interrupt(session: LoopbackSession) -> Iterator[None]:
    """Turn Ctrl-C into :meth:`LoopbackSession.cancel` for the duration of the block.

    Only installs the handler on the main thread, where Python delivers
    signals; elsewhere the block runs unchanged.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        session.cancel()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)
