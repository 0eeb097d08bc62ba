"""Browser login -- open the authorization page and capture the token.

:func:`generate_token_via_browser` is the session facade used by
``sonarlogin auth login``:

1. start a :class:`~sonarlogin.loopback.LoopbackSession` that accepts the
   server's own origin;
2. build the authorization URL embedding the bound port and show it;
3. open the browser (skipped under ``CI=true`` or with ``no_browser``);
4. wait for the token, a timeout or Ctrl-C; interactively the user may
   also paste the token, and whichever arrives first wins;
5. close the listeners whatever happened.
"""

from __future__ import annotations

import logging
import os
import threading
import webbrowser
from typing import Callable, Optional

from sonarlogin.loopback import (
    LoopbackSession,
    build_authorization_url,
    cancel_on_interrupt,
    server_origin,
)
from sonarlogin.models import AUTH_PORT_RANGE, GlobalConfig, PortRange
from sonarlogin.output import info, warning, waiting

logger = logging.getLogger(__name__)

PASTE_PROMPT = "Waiting for browser... or paste token and press Enter:"


def is_ci() -> bool:
    return os.environ.get("CI") == "true"


def open_browser_with_fallback(url: str) -> None:
    """Open *url* in the default browser, or tell the user to open it by hand.

    Does nothing under ``CI=true``: there the token is delivered straight
    to the loopback listener.
    """
    if is_ci():
        return
    try:
        opened = webbrowser.open(url)
    except webbrowser.Error as exc:
        warning(f"Failed to open browser automatically: {exc}")
        opened = False
    if not opened:
        info("Copy the URL above and open it manually")


def watch_pasted_token(session: LoopbackSession, readline: Callable[[], str]) -> threading.Thread:
    """Feed a token typed by the user into *session* from a daemon thread.

    Blank lines are ignored. End of input cancels the session. The thread
    stops after the first non-blank line; if the browser callback already
    decided the session, that line is dropped.
    """

    def _run() -> None:
        while True:
            try:
                line = readline()
            except (OSError, ValueError):
                logger.debug("Cannot read a pasted token", exc_info=True)
                return
            if not line:
                session.cancel()
                return
            token = line.strip()
            if token:
                if not session.offer(token):
                    logger.debug("Ignoring pasted token, the login is already decided")
                return

    thread = threading.Thread(target=_run, name="pasted-token", daemon=True)
    thread.start()
    return thread


def generate_token_via_browser(
    config: GlobalConfig,
    open_browser: Callable[[str], None] = open_browser_with_fallback,
    before_open: Optional[Callable[[], object]] = None,
    no_browser: bool = False,
    port_range: PortRange = AUTH_PORT_RANGE,
    read_pasted: Optional[Callable[[], str]] = None,
) -> str:
    """Run one browser login and return the token the server delivered.

    Args:
        config: Resolved settings (server URL, timeout, client id, extra
            allowed origins).
        open_browser: Opens the authorization URL.
        before_open: Called after the URL is shown and before the browser
            opens, e.g. a "Press Enter" prompt.
        no_browser: Only print the URL.
        port_range: Candidate callback ports; only tests change this.
        read_pasted: Reads one line typed by the user (``sys.stdin.readline``
            on a terminal). When given, and not under ``CI=true``, a pasted
            token races the browser callback.

    Raises:
        NoAvailablePortError: No callback port could be bound.
        BindError: Unexpected bind failure.
        LoginTimeoutError: No token within ``config.login_timeout`` seconds.
        LoginCancelledError: The user pressed Ctrl-C or closed the input.
    """
    origins = {server_origin(config.server_url), *config.allowed_origins}

    with LoopbackSession(allowed_origins=origins, port_range=port_range) as session:
        url = build_authorization_url(
            config.server_url, session.port, config.client_id, config.auth_path
        )
        info("Obtaining access token from SonarQube...")
        info(f"URL: {url}")

        if not no_browser:
            if before_open is not None:
                before_open()
            open_browser(url)

        with cancel_on_interrupt(session):
            if read_pasted is not None and not is_ci():
                info(PASTE_PROMPT)
                watch_pasted_token(session, read_pasted)
                return session.await_token(config.login_timeout)
            with waiting("Waiting for the browser to deliver the token..."):
                return session.await_token(config.login_timeout)
