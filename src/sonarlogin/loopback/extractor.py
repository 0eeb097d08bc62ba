"""Token extraction from loopback callback requests.

The authorization page delivers the token in one of two shapes:

* ``POST`` with a JSON body ``{"token": "<value>", ...}`` (current servers).
* ``GET /?token=<value>`` (legacy fallback).

:class:`TokenCallbackHandler` turns a gated :class:`LoopbackRequest` into a
response and hands any token it finds to a callback. Requests that carry no
usable token are answered but never raise.
"""

from __future__ import annotations

import json
import logging
from typing import Callable, Optional
from urllib.parse import parse_qs, urlsplit

from sonarlogin.exceptions import MalformedPayload
from sonarlogin.loopback.security import (
    HTTP_BAD_REQUEST,
    HTTP_OK,
    HTTP_PAYLOAD_TOO_LARGE,
    LoopbackRequest,
    LoopbackResponse,
)

logger = logging.getLogger(__name__)

MAX_POST_BODY_BYTES = 4096

SUCCESS_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>SonarQube CLI Authentication</title>
</head>
<body>
  <h1>&#10003; Authentication Successful</h1>
  <p>You can close this window and return to the terminal.</p>
</body>
</html>
"""


def extract_token_from_body(body: bytes) -> Optional[str]:
    """Return the ``token`` property of a JSON object body, if it is a non-empty string."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    token = data.get("token")
    if isinstance(token, str) and token:
        return token
    return None


def extract_token_from_query(host: Optional[str], path: Optional[str]) -> Optional[str]:
    """Return the ``token`` query parameter of *path* resolved against *host*.

    Both values are required; an empty ``token`` counts as absent.
    """
    if not host or not path:
        return None
    try:
        query = urlsplit(f"http://{host}{path}").query
    except ValueError:
        return None
    values = parse_qs(query).get("token")
    if values and values[0]:
        return values[0]
    return None


def success_response() -> LoopbackResponse:
    return LoopbackResponse(
        status=HTTP_OK,
        headers={"Content-Type": "text/html; charset=utf-8"},
        body=SUCCESS_HTML.encode("utf-8"),
    )


class TokenCallbackHandler:
    """Application handler behind the security gate.

    Args:
        on_token: Called with every token found. The callback decides
            whether the token is the first one; this handler does not keep
            state of its own.
    """

    def __init__(self, on_token: Callable[[str], object]) -> None:
        self._on_token = on_token

    def __call__(self, request: LoopbackRequest) -> LoopbackResponse:
        if request.method == "POST":
            return self._handle_post(request)
        if request.method == "GET":
            return self._handle_get(request)
        return LoopbackResponse.text(HTTP_OK, "OK")

    def _handle_post(self, request: LoopbackRequest) -> LoopbackResponse:
        if request.content_length > MAX_POST_BODY_BYTES:
            logger.warning(
                "POST body exceeds %d bytes limit, rejecting", MAX_POST_BODY_BYTES
            )
            return LoopbackResponse.text(HTTP_PAYLOAD_TOO_LARGE, "Payload Too Large")

        try:
            token = self._token_from_body(request.read_body())
        except MalformedPayload as exc:
            logger.debug("Ignoring callback POST: %s", exc)
            return LoopbackResponse.text(HTTP_BAD_REQUEST, "Bad Request")

        response = success_response()
        self._on_token(token)
        return response

    def _handle_get(self, request: LoopbackRequest) -> LoopbackResponse:
        token = extract_token_from_query(request.header("Host"), request.path)
        if token is not None:
            self._on_token(token)
        return success_response()

    @staticmethod
    def _token_from_body(body: bytes) -> str:
        token = extract_token_from_body(body)
        if token is None:
            raise MalformedPayload("body is not JSON or has no non-empty 'token'")
        return token
