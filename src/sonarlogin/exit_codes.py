"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~sonarlogin.exceptions.SonarLoginError` subclass.
Wrapper scripts can inspect the exit code to tell a timeout from a
cancellation without parsing stderr.

Example::

    $ sonarlogin auth login
    $ echo $?
    8   # EXIT_TIMEOUT -- no token arrived from the browser in time
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments."""

EXIT_AUTH_FAILURE = 3
"""The server rejected the token."""

EXIT_CONNECTION_ERROR = 6
"""A network-level error occurred (no loopback port, bind failure, server unreachable)."""

EXIT_TIMEOUT = 8
"""No token arrived from the browser before the login timeout."""

EXIT_CANCELLED = 130
"""The user aborted the login (Ctrl-C)."""
