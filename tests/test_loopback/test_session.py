"""Tests for sonarlogin.loopback.session -- end-to-end token exchange."""

from __future__ import annotations

import json
import signal
import socket
import threading
from http.client import HTTPConnection
from typing import Optional

import pytest

from sonarlogin.exceptions import LoginCancelledError, LoginTimeoutError, NoAvailablePortError
from sonarlogin.loopback.session import (
    LoopbackSession,
    build_authorization_url,
    cancel_on_interrupt,
    server_origin,
)
from sonarlogin.models import PortRange, SessionState


SERVER_ORIGIN = "https://sonarcloud.io"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _call(
    port: int,
    method: str,
    path: str = "/",
    body: Optional[bytes] = None,
    headers: Optional[dict[str, str]] = None,
) -> tuple[int, dict[str, str], bytes]:
    conn = HTTPConnection("127.0.0.1", port, timeout=5)
    try:
        conn.request(method, path, body=body, headers=headers or {})
        resp = conn.getresponse()
        return resp.status, dict(resp.getheaders()), resp.read()
    finally:
        conn.close()


def _post_token(port: int, token: str, origin: str = SERVER_ORIGIN) -> int:
    status, _, _ = _call(
        port,
        "POST",
        body=json.dumps({"token": token}).encode(),
        headers={"Origin": origin, "Content-Type": "application/json"},
    )
    return status


def _session(port_range: PortRange) -> LoopbackSession:
    return LoopbackSession(
        allowed_origins={SERVER_ORIGIN}, port_range=port_range, grace_period=0.2
    )


# ---------------------------------------------------------------------------
# URLs
# ---------------------------------------------------------------------------


class TestAuthorizationUrl:
    def test_default_client(self) -> None:
        url = build_authorization_url("https://sonarcloud.io", 64120)
        assert url == "https://sonarcloud.io/sonarlint/auth?ideName=sonarqube-cli&port=64120"

    def test_trailing_slash_and_context_path(self) -> None:
        url = build_authorization_url("https://sq.example.com/sonar/", 64125, client_id="my cli")
        assert url == "https://sq.example.com/sonar/sonarlint/auth?ideName=my+cli&port=64125"

    @pytest.mark.parametrize(
        "url,origin",
        [
            ("https://sonarcloud.io", "https://sonarcloud.io"),
            ("https://sonarcloud.io/", "https://sonarcloud.io"),
            ("https://SQ.Example.com:443/sonar", "https://sq.example.com"),
            ("http://sq.example.com:9000/", "http://sq.example.com:9000"),
            ("http://[::1]:9000", "http://[::1]:9000"),
        ],
    )
    def test_server_origin(self, url: str, origin: str) -> None:
        assert server_origin(url) == origin


# ---------------------------------------------------------------------------
# Token exchange over real sockets
# ---------------------------------------------------------------------------


class TestTokenExchange:
    def test_preflight_then_post(self, port_range: PortRange) -> None:
        with _session(port_range) as session:
            status, headers, _ = _call(
                session.port,
                "OPTIONS",
                headers={
                    "Origin": SERVER_ORIGIN,
                    "Access-Control-Request-Method": "POST",
                    "Access-Control-Request-Private-Network": "true",
                },
            )
            assert status == 200
            assert headers["Access-Control-Allow-Origin"] == SERVER_ORIGIN
            assert headers["Access-Control-Allow-Private-Network"] == "true"
            assert "POST" in headers["Access-Control-Allow-Methods"]

            assert _post_token(session.port, "squ_abc123") == 200
            assert session.await_token(timeout=5) == "squ_abc123"
            assert session.state is SessionState.RESOLVED

        assert session.state is SessionState.CLOSED

    def test_post_response_headers(self, port_range: PortRange) -> None:
        with _session(port_range) as session:
            status, headers, body = _call(
                session.port,
                "POST",
                body=b'{"token": "squ_abc123"}',
                headers={"Origin": SERVER_ORIGIN, "Content-Type": "application/json"},
            )
            assert status == 200
            assert headers["Access-Control-Allow-Origin"] == SERVER_ORIGIN
            assert headers["X-Frame-Options"] == "DENY"
            assert headers["X-Content-Type-Options"] == "nosniff"
            assert headers["Cache-Control"] == "no-store"
            assert "default-src 'none'" in headers["Content-Security-Policy"]
            assert b"Authentication Successful" in body

    def test_legacy_get(self, port_range: PortRange) -> None:
        with _session(port_range) as session:
            status, _, _ = _call(session.port, "GET", "/?token=squ_legacy")
            assert status == 200
            assert session.await_token(timeout=5) == "squ_legacy"

    def test_first_token_wins(self, port_range: PortRange) -> None:
        with _session(port_range) as session:
            assert _post_token(session.port, "first") == 200
            assert _post_token(session.port, "second") == 200
            assert session.await_token(timeout=5) == "first"

    def test_foreign_origin_rejected(self, port_range: PortRange) -> None:
        with _session(port_range) as session:
            assert _post_token(session.port, "stolen", origin="https://evil.example") == 403
            with pytest.raises(LoginTimeoutError):
                session.await_token(timeout=0.2)

    def test_dns_rebinding_rejected(self, port_range: PortRange) -> None:
        with _session(port_range) as session:
            status, _, _ = _call(
                session.port,
                "GET",
                "/?token=stolen",
                headers={"Host": f"evil.example:{session.port}"},
            )
            assert status == 403
            with pytest.raises(LoginTimeoutError):
                session.await_token(timeout=0.2)

    def test_empty_get_token_keeps_waiting(self, port_range: PortRange) -> None:
        with _session(port_range) as session:
            status, _, _ = _call(session.port, "GET", "/?token=")
            assert status == 200
            assert _post_token(session.port, "squ_real") == 200
            assert session.await_token(timeout=5) == "squ_real"

    def test_malformed_post_is_400(self, port_range: PortRange) -> None:
        with _session(port_range) as session:
            status, _, _ = _call(
                session.port,
                "POST",
                body=b"not json",
                headers={"Origin": SERVER_ORIGIN, "Content-Type": "application/json"},
            )
            assert status == 400
            assert session.state is SessionState.WAITING

    @pytest.mark.parametrize("method", ["TRACE", "PROPFIND", "post"])
    def test_other_methods_get_plain_ok(self, port_range: PortRange, method: str) -> None:
        with _session(port_range) as session:
            status, headers, _ = _call(session.port, method, "/?token=squ_x")
            assert status == 200
            assert headers["X-Frame-Options"] == "DENY"
            assert headers["X-Content-Type-Options"] == "nosniff"
            assert headers["Cache-Control"] == "no-store"
            assert "default-src 'none'" in headers["Content-Security-Policy"]
            with pytest.raises(LoginTimeoutError):
                session.await_token(timeout=0.2)

    def test_other_method_with_foreign_origin_is_403(self, port_range: PortRange) -> None:
        with _session(port_range) as session:
            status, headers, _ = _call(
                session.port, "TRACE", headers={"Origin": "https://evil.example"}
            )
            assert status == 403
            assert headers["X-Frame-Options"] == "DENY"
            assert "Access-Control-Allow-Origin" not in headers


# ---------------------------------------------------------------------------
# Outcomes and lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_initial_state(self, port_range: PortRange) -> None:
        session = _session(port_range)
        assert session.state is SessionState.SEARCHING
        with pytest.raises(RuntimeError):
            _ = session.port
        with pytest.raises(RuntimeError):
            session.await_token(timeout=0.1)
        session.close()
        assert session.state is SessionState.CLOSED

    def test_start_reaches_waiting(self, port_range: PortRange) -> None:
        session = _session(port_range)
        try:
            assert session.start() == port_range.start
            assert session.state is SessionState.WAITING
        finally:
            session.close()

    def test_timeout(self, port_range: PortRange) -> None:
        with _session(port_range) as session:
            with pytest.raises(LoginTimeoutError):
                session.await_token(timeout=0.1)
            assert session.state is SessionState.TIMED_OUT
            # Listener is still up until close, but late tokens are ignored.
            assert _post_token(session.port, "late") == 200
            assert session.state is SessionState.TIMED_OUT

    def test_cancel_from_other_thread(self, port_range: PortRange) -> None:
        with _session(port_range) as session:
            timer = threading.Timer(0.05, session.cancel)
            timer.start()
            try:
                with pytest.raises(LoginCancelledError):
                    session.await_token(timeout=5)
            finally:
                timer.cancel()
            assert session.state is SessionState.CANCELLED

    def test_cancel_after_resolution_is_noop(self, port_range: PortRange) -> None:
        with _session(port_range) as session:
            _post_token(session.port, "squ_abc")
            assert session.await_token(timeout=5) == "squ_abc"
            assert session.cancel() is False
            assert session.state is SessionState.RESOLVED

    def test_close_is_idempotent_and_releases_port(self, port_range: PortRange) -> None:
        session = _session(port_range)
        port = session.start()
        session.close()
        session.close()

        assert session.state is SessionState.CLOSED
        with pytest.raises(ConnectionRefusedError):
            socket.create_connection(("127.0.0.1", port), timeout=1)

    def test_no_port_closes_session(self, occupied_port: int) -> None:
        session = LoopbackSession(port_range=PortRange(start=occupied_port, count=1))
        with pytest.raises(NoAvailablePortError):
            session.start()
        assert session.state is SessionState.CLOSED

    def test_context_manager_closes_on_error(self, port_range: PortRange) -> None:
        with pytest.raises(LoginTimeoutError):
            with _session(port_range) as session:
                port = session.port
                session.await_token(timeout=0.05)
        assert session.state is SessionState.CLOSED
        with pytest.raises(ConnectionRefusedError):
            socket.create_connection(("127.0.0.1", port), timeout=1)


    def test_offer_resolves_and_later_callback_is_ignored(self, port_range: PortRange) -> None:
        with _session(port_range) as session:
            assert session.offer("squ_pasted") is True
            assert _post_token(session.port, "squ_callback") == 200
            assert session.await_token(timeout=5) == "squ_pasted"
            assert session.state is SessionState.RESOLVED

    def test_offer_after_callback_is_noop(self, port_range: PortRange) -> None:
        with _session(port_range) as session:
            assert _post_token(session.port, "squ_callback") == 200
            assert session.offer("squ_pasted") is False
            assert session.await_token(timeout=5) == "squ_callback"


class TestCancelOnInterrupt:
    def test_sigint_cancels_wait(self, port_range: PortRange) -> None:
        previous = signal.getsignal(signal.SIGINT)
        with _session(port_range) as session:
            with cancel_on_interrupt(session):
                signal.raise_signal(signal.SIGINT)
                with pytest.raises(LoginCancelledError):
                    session.await_token(timeout=5)
            assert session.state is SessionState.CANCELLED
        assert signal.getsignal(signal.SIGINT) is previous

    def test_off_main_thread_is_passthrough(self, port_range: PortRange) -> None:
        errors: list[BaseException] = []

        def _run() -> None:
            try:
                with _session(port_range) as session:
                    with cancel_on_interrupt(session):
                        session.cancel()
            except BaseException as exc:  # pragma: no cover
                errors.append(exc)

        t = threading.Thread(target=_run)
        t.start()
        t.join(timeout=10)
        assert errors == []
