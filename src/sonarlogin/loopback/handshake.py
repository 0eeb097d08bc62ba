"""Single-resolution handshake between the listener threads and the caller.

Listener threads :meth:`~HandshakeCoordinator.offer` tokens; the caller
blocks in :meth:`~HandshakeCoordinator.await_token`. The first of three
events wins and the other two become no-ops:

* a token is offered -> ``await_token`` returns it;
* the timeout elapses -> :class:`~sonarlogin.exceptions.LoginTimeoutError`;
* :meth:`~HandshakeCoordinator.cancel` is called ->
  :class:`~sonarlogin.exceptions.LoginCancelledError`.

The token lives in a :class:`concurrent.futures.Future`, which already
refuses a second assignment; the coordinator lock makes "who decided the
outcome" atomic as well, since a timed-out future is cancelled too.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from concurrent.futures import CancelledError, Future, InvalidStateError
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Optional

from sonarlogin.exceptions import LoginCancelledError, LoginTimeoutError

logger = logging.getLogger(__name__)


class Outcome(str, enum.Enum):
    RESOLVED = "resolved"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class HandshakeCoordinator:
    """Race a single token against a timeout and a manual cancel.

    Example::

        coordinator = HandshakeCoordinator()
        # on a listener thread:
        coordinator.offer("squ_abc123")
        # on the caller's thread:
        token = coordinator.await_token(timeout=50)
    """

    def __init__(self) -> None:
        self._future: Future[str] = Future()
        self._lock = threading.RLock()
        self._outcome: Optional[Outcome] = None
        self._waited = 0.0

    @property
    def outcome(self) -> Optional[Outcome]:
        """How the handshake ended, or ``None`` while it is still pending."""
        with self._lock:
            return self._outcome

    def offer(self, token: str) -> bool:
        """Resolve the handshake with *token* unless it is already decided.

        Returns:
            ``True`` if this call resolved the handshake.
        """
        with self._lock:
            if self._outcome is not None:
                logger.debug("Ignoring token received after the handshake ended")
                return False
            try:
                self._future.set_result(token)
            except InvalidStateError:
                return False
            self._outcome = Outcome.RESOLVED
        logger.debug("Token received")
        return True

    def cancel(self) -> bool:
        """Abort a pending handshake.

        Returns:
            ``True`` if this call decided the outcome; ``False`` if a token,
            a timeout or an earlier cancel got there first.
        """
        with self._lock:
            return self._abort(Outcome.CANCELLED)

    def await_token(self, timeout: Optional[float]) -> str:
        """Block until the handshake is decided.

        Calling it again after the handshake is decided repeats the same
        result.

        Args:
            timeout: Seconds to wait; ``None`` waits indefinitely.

        Returns:
            The first token offered.

        Raises:
            LoginTimeoutError: *timeout* elapsed first. Tokens offered later
                are discarded.
            LoginCancelledError: :meth:`cancel` was called first.
        """
        started = time.monotonic()
        try:
            return self._future.result(timeout=timeout)
        except FutureTimeoutError:
            with self._lock:
                if self._abort(Outcome.TIMED_OUT):
                    self._waited = time.monotonic() - started
            # A token may have landed between the wait expiring and the lock.
            return self._decided_result()
        except CancelledError:
            return self._decided_result()

    def _decided_result(self) -> str:
        with self._lock:
            outcome = self._outcome
        if outcome is Outcome.TIMED_OUT:
            raise LoginTimeoutError(self._waited) from None
        if outcome is Outcome.CANCELLED:
            raise LoginCancelledError() from None
        return self._future.result()

    def _abort(self, outcome: Outcome) -> bool:
        if self._outcome is not None:
            return False
        self._future.cancel()
        self._outcome = outcome
        return True
