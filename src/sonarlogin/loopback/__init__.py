"""Loopback token exchange for browser-delegated login.

The authorization page of the server posts the user's token to a small HTTP
listener on ``127.0.0.1`` (mirrored on ``::1``), inside a port range fixed by
the server protocol. This package provides:

- :class:`LoopbackSession` -- the per-attempt state machine and facade.
- :class:`SecurityGate` -- Origin/Host validation and security headers.
- :class:`TokenCallbackHandler` -- token extraction from POST/GET callbacks.
- :class:`HandshakeCoordinator` -- the single-resolution token/timeout race.
- :func:`allocate_port` / :func:`bind_ipv6` -- port scan and IPv6 mirror.
"""

from sonarlogin.loopback.extractor import (
    TokenCallbackHandler,
    extract_token_from_body,
    extract_token_from_query,
)
from sonarlogin.loopback.handshake import HandshakeCoordinator
from sonarlogin.loopback.ports import allocate_port, bind_ipv6
from sonarlogin.loopback.security import LoopbackRequest, LoopbackResponse, SecurityGate
from sonarlogin.loopback.server import LoopbackServer
from sonarlogin.loopback.session import (
    LoopbackSession,
    build_authorization_url,
    cancel_on_interrupt,
    server_origin,
)

__all__ = [
    "HandshakeCoordinator",
    "LoopbackRequest",
    "LoopbackResponse",
    "LoopbackServer",
    "LoopbackSession",
    "SecurityGate",
    "TokenCallbackHandler",
    "allocate_port",
    "bind_ipv6",
    "build_authorization_url",
    "cancel_on_interrupt",
    "extract_token_from_body",
    "extract_token_from_query",
    "server_origin",
]
