"""The pair of loopback listeners owned by one login session.

:class:`LoopbackServer` binds an IPv4 listener inside the protocol port
range, mirrors it on IPv6 when possible, serves both with the same handler,
and closes both in parallel. Closing is idempotent and blocks until no
socket of either listener remains open.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from sonarlogin.loopback.listener import LoopbackListener
from sonarlogin.loopback.ports import allocate_port, bind_ipv6
from sonarlogin.loopback.security import Handler
from sonarlogin.models import AUTH_PORT_RANGE, PortRange

logger = logging.getLogger(__name__)

FORCE_CLOSE_TIMEOUT = 2.0
"""Seconds in-flight connections get to finish before being cut."""


class LoopbackServer:
    """IPv4 listener plus optional IPv6 listener on the same port.

    Args:
        app: Handler served on every listener (normally already gated).
        port_range: Candidate ports for the IPv4 bind.
        grace_period: Seconds :meth:`close` waits for open connections.

    Example::

        server = LoopbackServer(app)
        port = server.bind()
        server.serve()
        ...
        server.close()
    """

    def __init__(
        self,
        app: Handler,
        port_range: PortRange = AUTH_PORT_RANGE,
        grace_period: float = FORCE_CLOSE_TIMEOUT,
    ) -> None:
        self._app = app
        self._port_range = port_range
        self._grace_period = grace_period
        self._ipv4: Optional[LoopbackListener] = None
        self._ipv6: Optional[LoopbackListener] = None
        self._close_lock = threading.Lock()
        self._closed = threading.Event()

    @property
    def port(self) -> Optional[int]:
        return self._ipv4.port if self._ipv4 is not None else None

    @property
    def listeners(self) -> list[LoopbackListener]:
        return [lst for lst in (self._ipv4, self._ipv6) if lst is not None]

    @property
    def has_ipv6(self) -> bool:
        return self._ipv6 is not None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def bind(self) -> int:
        """Bind the IPv4 listener, then try the IPv6 mirror.

        Returns:
            The bound port.

        Raises:
            NoAvailablePortError: The whole port range is in use.
            BindError: Unexpected failure binding the IPv4 listener.
        """
        if self._ipv4 is not None:
            raise RuntimeError("LoopbackServer is already bound")
        if self.closed:
            raise RuntimeError("LoopbackServer is closed")
        self._ipv4 = allocate_port(self._app, self._port_range)
        self._ipv6 = bind_ipv6(self._ipv4.port, self._app)
        return self._ipv4.port

    def serve(self) -> None:
        """Start accepting connections on every bound listener."""
        for listener in self.listeners:
            listener.serve_in_background()

    def close(self) -> None:
        """Close both listeners in parallel; safe to call more than once.

        A second caller blocks until the first close has finished, so
        returning from this method always means no socket remains open.
        """
        with self._close_lock:
            if self._closed.is_set():
                return
            listeners = self.listeners
            threads = [
                threading.Thread(
                    target=listener.close,
                    args=(self._grace_period,),
                    name=f"loopback-close-{listener.host}",
                    daemon=True,
                )
                for listener in listeners
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()
            self._closed.set()
        logger.debug("Login callback listener(s) closed")
