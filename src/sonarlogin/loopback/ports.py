"""Port allocation for the loopback listener.

The authorization server only posts tokens to a port inside
:data:`~sonarlogin.models.AUTH_PORT_RANGE`, so the listener cannot take an
OS-assigned port. :func:`allocate_port` scans the range on ``127.0.0.1``;
:func:`bind_ipv6` then mirrors the chosen port on ``::1`` when it can,
because some systems resolve ``localhost`` to the IPv6 loopback first.
"""

from __future__ import annotations

import errno
import logging
import socket
from typing import Optional

from sonarlogin.exceptions import BindError, NoAvailablePortError
from sonarlogin.loopback.listener import LoopbackListener
from sonarlogin.loopback.security import Handler
from sonarlogin.models import AUTH_PORT_RANGE, PortRange

logger = logging.getLogger(__name__)

IPV4_LOOPBACK = "127.0.0.1"
IPV6_LOOPBACK = "::1"

_ADDRESS_IN_USE = frozenset(
    code
    for code in (errno.EADDRINUSE, getattr(errno, "WSAEADDRINUSE", None))
    if code is not None
)


def _is_address_in_use(exc: OSError) -> bool:
    return exc.errno in _ADDRESS_IN_USE


def allocate_port(app: Handler, port_range: PortRange = AUTH_PORT_RANGE) -> LoopbackListener:
    """Bind the first free port of *port_range* on the IPv4 loopback address.

    Args:
        app: Handler the listener will serve.
        port_range: Candidate ports, scanned in ascending order.

    Returns:
        A bound (not yet serving) :class:`LoopbackListener`.

    Raises:
        NoAvailablePortError: Every candidate port is in use.
        BindError: Binding failed for any reason other than "address in
            use"; the scan stops at the first such failure.
    """
    for port in port_range.ports:
        try:
            listener = LoopbackListener((IPV4_LOOPBACK, port), app)
        except OSError as exc:
            if _is_address_in_use(exc):
                logger.debug("Port %d is in use, trying next", port)
                continue
            raise BindError(
                f"Cannot bind login callback listener on {IPV4_LOOPBACK}:{port}: {exc}"
            ) from exc
        logger.debug("Login callback listener bound on %s:%d", IPV4_LOOPBACK, port)
        return listener
    raise NoAvailablePortError(port_range.start, port_range.stop)


def bind_ipv6(port: int, app: Handler) -> Optional[LoopbackListener]:
    """Best-effort bind of *port* on the IPv6 loopback address.

    Returns:
        The bound listener, or ``None`` when IPv6 is unavailable or the
        bind fails for any reason. Failures never abort the login.
    """
    if not socket.has_ipv6:
        logger.debug("IPv6 is not supported on this host; using IPv4 listener only")
        return None
    try:
        listener = LoopbackListener((IPV6_LOOPBACK, port), app, family=socket.AF_INET6)
    except OSError as exc:
        logger.debug(
            "IPv6 loopback listener unavailable on [%s]:%d (%s); using IPv4 listener only",
            IPV6_LOOPBACK,
            port,
            exc,
        )
        return None
    logger.debug("Login callback listener bound on [%s]:%d", IPV6_LOOPBACK, port)
    return listener
