"""Exception hierarchy for sonarlogin.

All exceptions inherit from :class:`SonarLoginError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`sonarlogin.exit_codes`.
The top-level error handler in :func:`sonarlogin.app.main` catches
``SonarLoginError`` and exits with the appropriate code.

Subclass hierarchy::

    SonarLoginError (exit 1)
    +-- ConfigError            (exit 1)
    +-- AuthError              (exit 3)
    +-- ConnectionError_       (exit 6)
    |   +-- NoAvailablePortError
    |   +-- BindError
    +-- LoginTimeoutError      (exit 8)
    +-- LoginCancelledError    (exit 130)

:class:`ForbiddenRequest` and :class:`MalformedPayload` are per-request
conditions of the loopback listener. They are raised and handled inside
the listener and never reach the caller of a login session.
"""

from __future__ import annotations

from sonarlogin.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_CANCELLED,
    EXIT_CONNECTION_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_TIMEOUT,
)


class SonarLoginError(Exception):
    """Base exception for all sonarlogin errors.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ConfigError(SonarLoginError):
    """Raised for configuration problems (invalid JSON, bad values)."""

    exit_code = EXIT_GENERIC_FAILURE


class AuthError(SonarLoginError):
    """Raised when the server rejects a token or refuses access."""

    exit_code = EXIT_AUTH_FAILURE


class ConnectionError_(SonarLoginError):
    """Raised on network-level failures (timeout, DNS resolution, connection refused).

    Named with a trailing underscore to avoid shadowing the built-in
    ``ConnectionError``.
    """

    exit_code = EXIT_CONNECTION_ERROR


class NoAvailablePortError(ConnectionError_):
    """Every candidate port of the loopback range is already in use."""

    def __init__(self, start: int, stop: int):
        super().__init__(
            f"No available port for the login callback: all ports in range "
            f"{start}-{stop} are in use"
        )
        self.start = start
        self.stop = stop


class BindError(ConnectionError_):
    """Unexpected OS failure while binding the loopback listener."""


class LoginTimeoutError(SonarLoginError):
    """No valid token arrived before the login timeout elapsed."""

    exit_code = EXIT_TIMEOUT

    def __init__(self, elapsed: float):
        super().__init__(f"Timeout waiting for token ({round(elapsed, 1):g} seconds)")
        self.elapsed = elapsed


class LoginCancelledError(SonarLoginError):
    """The login was aborted by the user before a token arrived."""

    exit_code = EXIT_CANCELLED

    def __init__(self, message: str = "Authentication cancelled"):
        super().__init__(message)


class ForbiddenRequest(Exception):
    """A loopback request failed Origin or Host validation."""


class MalformedPayload(Exception):
    """A loopback POST body was not JSON or carried no usable token."""
