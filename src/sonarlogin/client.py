"""Minimal SonarQube / SonarCloud REST client.

:class:`SonarQubeClient` wraps :class:`httpx.Client` with bearer-token
auth and maps transport failures and HTTP error statuses onto the
:mod:`sonarlogin.exceptions` hierarchy. It is used by ``auth login`` to
check a freshly captured token before storing it.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from sonarlogin.exceptions import AuthError, ConnectionError_, SonarLoginError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class SonarQubeClient:
    """Blocking client for the handful of endpoints the CLI needs.

    Must be used as a context manager so the underlying transport is
    opened and closed.

    Args:
        server_url: Server base URL, e.g. ``https://sonarcloud.io``.
        token: User token sent as a bearer credential.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport; tests pass a
            :class:`httpx.MockTransport`.

    Example::

        with SonarQubeClient("https://sonarcloud.io", token) as client:
            if client.validate_token():
                orgs = client.list_organizations()
    """

    def __init__(
        self,
        server_url: str,
        token: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._server_url = server_url.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    # ------------------------------------------------------------------ #
    # Context manager
    # ------------------------------------------------------------------ #

    def __enter__(self) -> SonarQubeClient:
        self._client = httpx.Client(
            base_url=self._server_url,
            timeout=self._timeout,
            follow_redirects=True,
            headers={
                "Accept": "application/json",
                "Authorization": f"Bearer {self._token}",
            },
            transport=self._transport,
        )
        return self

    def __exit__(self, *args: object) -> None:
        if self._client:
            self._client.close()
            self._client = None

    # ------------------------------------------------------------------ #
    # Endpoints
    # ------------------------------------------------------------------ #

    def validate_token(self) -> bool:
        """Return whether the server accepts the token.

        A 401 is reported as ``False`` rather than raised; the endpoint
        answers ``{"valid": false}`` for anonymous callers on most servers.
        """
        try:
            payload = self._get_json("/api/authentication/validate")
        except AuthError:
            return False
        return bool(payload.get("valid", False))

    def list_organizations(self) -> list[dict[str, Any]]:
        """Return the organizations the token's user is a member of (SonarCloud)."""
        payload = self._get_json(
            "/api/organizations/search", params={"member": "true", "ps": 500}
        )
        organizations = payload.get("organizations", [])
        return organizations if isinstance(organizations, list) else []

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _get_json(self, path: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        assert self._client is not None, "Client not initialised -- use as context manager"
        logger.debug("GET %s%s", self._server_url, path)
        try:
            response = self._client.get(path, params=params)
        except (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError) as exc:
            raise ConnectionError_(f"Cannot reach {self._server_url}: {exc}") from exc

        self._map_response_error(response)
        try:
            data = response.json()
        except ValueError as exc:
            raise SonarLoginError(
                f"Unexpected non-JSON response from {self._server_url}{path}"
            ) from exc
        return data if isinstance(data, dict) else {}

    def _map_response_error(self, response: httpx.Response) -> None:
        """Raise a typed exception for error HTTP status codes."""
        status = response.status_code
        if status < 400:
            return

        msg = ""
        try:
            detail = response.json()
        except ValueError:
            msg = response.text[:200] if response.text else ""
        else:
            if isinstance(detail, dict):
                errors = detail.get("errors")
                if isinstance(errors, list) and errors and isinstance(errors[0], dict):
                    msg = str(errors[0].get("msg", ""))
                else:
                    msg = str(detail.get("message") or detail.get("error") or "")

        full_msg = f"HTTP {status}: {msg}" if msg else f"HTTP {status}"
        if status in (401, 403):
            raise AuthError(full_msg)
        if status >= 500:
            raise ConnectionError_(f"Server error from {self._server_url}: {full_msg}")
        raise SonarLoginError(full_msg)
