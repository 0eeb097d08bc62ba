"""Tests for sonarlogin.loopback.security -- Origin/Host gate and headers."""

from __future__ import annotations

import pytest

from sonarlogin.exceptions import ForbiddenRequest
from sonarlogin.loopback.security import (
    PREFLIGHT_HEADERS,
    SECURITY_HEADERS,
    LoopbackRequest,
    LoopbackResponse,
    SecurityGate,
    is_loopback_host,
    is_loopback_origin,
)


SERVER_ORIGIN = "https://sonarcloud.io"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _RecordingHandler:
    """Inner handler that records calls and returns a fixed response."""

    def __init__(self, response: LoopbackResponse | None = None) -> None:
        self.calls: list[LoopbackRequest] = []
        self.response = response or LoopbackResponse.text(200, "inner")

    def __call__(self, request: LoopbackRequest) -> LoopbackResponse:
        self.calls.append(request)
        return self.response


def _request(method: str = "POST", **headers: str) -> LoopbackRequest:
    hdrs = {"Host": "127.0.0.1:64120"}
    hdrs.update({k.replace("_", "-"): v for k, v in headers.items()})
    return LoopbackRequest(method=method, path="/", headers=hdrs)


# ---------------------------------------------------------------------------
# Loopback classification
# ---------------------------------------------------------------------------


class TestLoopbackClassification:
    @pytest.mark.parametrize(
        "origin",
        ["http://localhost", "http://127.0.0.1:64120", "http://[::1]:8080", "https://localhost:3000"],
    )
    def test_loopback_origins(self, origin: str) -> None:
        assert is_loopback_origin(origin)

    @pytest.mark.parametrize(
        "origin",
        ["https://sonarcloud.io", "http://localhost.evil.com", "http://127.0.0.2", "null", ""],
    )
    def test_non_loopback_origins(self, origin: str) -> None:
        assert not is_loopback_origin(origin)

    def test_malformed_origin_is_not_loopback(self) -> None:
        assert not is_loopback_origin("http://[::1")

    @pytest.mark.parametrize("host", ["localhost", "127.0.0.1:64120", "[::1]:64120", "LOCALHOST"])
    def test_loopback_hosts(self, host: str) -> None:
        assert is_loopback_host(host)

    @pytest.mark.parametrize("host", ["evil.example", "evil.example:64120", "10.0.0.1"])
    def test_non_loopback_hosts(self, host: str) -> None:
        assert not is_loopback_host(host)


# ---------------------------------------------------------------------------
# Request headers
# ---------------------------------------------------------------------------


class TestLoopbackRequest:
    def test_header_lookup_ignores_case(self) -> None:
        req = LoopbackRequest("GET", "/", headers={"Content-Type": "application/json"})
        assert req.header("content-type") == "application/json"
        assert req.header("X-Missing") is None

    def test_content_length_defaults_to_zero(self) -> None:
        assert LoopbackRequest("POST", "/").content_length == 0
        bad = LoopbackRequest("POST", "/", headers={"Content-Length": "abc"})
        assert bad.content_length == 0

    def test_read_body_without_reader(self) -> None:
        assert LoopbackRequest("POST", "/").read_body() == b""


# ---------------------------------------------------------------------------
# Preflight
# ---------------------------------------------------------------------------


class TestPreflight:
    def test_allowed_origin_gets_cors_grant(self) -> None:
        gate = SecurityGate({SERVER_ORIGIN})
        inner = _RecordingHandler()
        resp = gate.handle(_request("OPTIONS", Origin=SERVER_ORIGIN), inner)

        assert resp.status == 200
        assert resp.headers["Access-Control-Allow-Origin"] == SERVER_ORIGIN
        for key, value in PREFLIGHT_HEADERS.items():
            assert resp.headers[key] == value
        assert inner.calls == []

    def test_loopback_origin_gets_cors_grant(self) -> None:
        gate = SecurityGate()
        resp = gate.handle(_request("OPTIONS", Origin="http://localhost:3000"), _RecordingHandler())
        assert resp.headers["Access-Control-Allow-Origin"] == "http://localhost:3000"

    def test_foreign_origin_gets_no_grant(self) -> None:
        gate = SecurityGate({SERVER_ORIGIN})
        resp = gate.handle(_request("OPTIONS", Origin="https://evil.example"), _RecordingHandler())

        assert resp.status == 200
        assert "Access-Control-Allow-Origin" not in resp.headers
        assert "Access-Control-Allow-Methods" not in resp.headers
        for key, value in SECURITY_HEADERS.items():
            assert resp.headers[key] == value

    def test_preflight_without_origin(self) -> None:
        resp = SecurityGate().handle(_request("OPTIONS"), _RecordingHandler())
        assert resp.status == 200
        assert "Access-Control-Allow-Origin" not in resp.headers


# ---------------------------------------------------------------------------
# Origin / Host validation
# ---------------------------------------------------------------------------


class TestValidation:
    def test_foreign_origin_rejected_before_handler(self) -> None:
        gate = SecurityGate({SERVER_ORIGIN})
        inner = _RecordingHandler()
        resp = gate.handle(_request("POST", Origin="https://evil.example"), inner)

        assert resp.status == 403
        assert inner.calls == []
        assert resp.headers["X-Frame-Options"] == "DENY"

    def test_origin_match_is_exact(self) -> None:
        gate = SecurityGate({SERVER_ORIGIN})
        with pytest.raises(ForbiddenRequest):
            gate.check(_request("POST", Origin="https://sonarcloud.io:8443"))

    def test_rebinding_host_rejected(self) -> None:
        gate = SecurityGate()
        inner = _RecordingHandler()
        req = LoopbackRequest("GET", "/?token=abc", headers={"Host": "evil.example:64120"})
        resp = gate.handle(req, inner)

        assert resp.status == 403
        assert inner.calls == []

    def test_missing_origin_and_host_pass(self) -> None:
        inner = _RecordingHandler()
        resp = SecurityGate().handle(LoopbackRequest("GET", "/"), inner)
        assert resp.status == 200
        assert len(inner.calls) == 1

    def test_allowed_origin_reaches_handler(self) -> None:
        inner = _RecordingHandler()
        resp = SecurityGate({SERVER_ORIGIN}).handle(_request("POST", Origin=SERVER_ORIGIN), inner)
        assert resp.status == 200
        assert len(inner.calls) == 1


# ---------------------------------------------------------------------------
# Response headers
# ---------------------------------------------------------------------------


class TestResponseHeaders:
    def test_baseline_headers_override_handler(self) -> None:
        inner = _RecordingHandler(
            LoopbackResponse(
                status=200,
                headers={"x-frame-options": "SAMEORIGIN", "Content-Type": "text/html"},
                body=b"<p>hi</p>",
            )
        )
        resp = SecurityGate().wrap(inner)(_request("GET"))

        assert resp.headers["X-Frame-Options"] == "DENY"
        assert "x-frame-options" not in resp.headers
        assert resp.headers["Content-Type"] == "text/html"
        assert resp.body == b"<p>hi</p>"
        for key, value in SECURITY_HEADERS.items():
            assert resp.headers[key] == value

    def test_allowed_server_origin_gets_acao(self) -> None:
        resp = SecurityGate({SERVER_ORIGIN}).wrap(_RecordingHandler())(
            _request("POST", Origin=SERVER_ORIGIN)
        )
        assert resp.headers["Access-Control-Allow-Origin"] == SERVER_ORIGIN

    def test_loopback_origin_gets_no_acao(self) -> None:
        resp = SecurityGate().wrap(_RecordingHandler())(
            _request("POST", Origin="http://localhost:3000")
        )
        assert resp.status == 200
        assert "Access-Control-Allow-Origin" not in resp.headers
