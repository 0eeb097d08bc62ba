"""Auth commands -- obtain, inspect and remove SonarQube tokens.

Provides the ``sonarlogin auth`` sub-command group. ``login`` runs the
browser handshake (or accepts ``--with-token``), checks the token against
the server and stores it per account; the other commands manage what is
stored.

Typical workflow::

    sonarlogin auth login --org my-org   # browser opens, token captured
    sonarlogin auth status               # list stored accounts
    sonarlogin auth logout --org my-org
"""

from __future__ import annotations

import sys
from typing import Optional
from urllib.parse import urlsplit

import typer

from sonarlogin.exceptions import (
    LoginCancelledError,
    LoginTimeoutError,
    NoAvailablePortError,
    SonarLoginError,
)
from sonarlogin.exit_codes import EXIT_AUTH_FAILURE, EXIT_INVALID_USAGE
from sonarlogin.output import error, get_output, info, success, suggest, warning


auth_app = typer.Typer(no_args_is_help=True)


def _press_enter_to_open() -> None:
    typer.prompt(
        "Press Enter to open the browser",
        default="",
        show_default=False,
        prompt_suffix="",
    )


def _is_sonarcloud(server_url: str) -> bool:
    host = urlsplit(server_url).hostname or ""
    return host == "sonarcloud.io" or host.endswith(".sonarcloud.io")


@auth_app.command("login")
def auth_login(
    server: Optional[str] = typer.Option(
        None, "--server", "-s", help="SonarQube server URL (default: SonarCloud)."
    ),
    org: Optional[str] = typer.Option(
        None, "--org", "-o", help="SonarCloud organization key."
    ),
    with_token: Optional[str] = typer.Option(
        None, "--with-token", help="Store this token instead of opening the browser."
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", help="Seconds to wait for the browser to deliver the token."
    ),
    no_browser: bool = typer.Option(
        False, "--no-browser", help="Print the authorization URL without opening it."
    ),
) -> None:
    """Authenticate against a SonarQube server and store the token.

    If a token is already stored for the account it is reused. Otherwise
    the authorization page is opened in the browser and the token it
    delivers to the local callback listener is captured, validated with
    ``GET /api/authentication/validate`` and saved.

    Raises:
        typer.Exit: With the exit code of the failure (3 when the token is
            rejected, 6 when no callback port is free, 8 on timeout, 130
            when cancelled).

    Example::

        sonarlogin auth login --server https://sonar.example.com
    """
    from sonarlogin.auth import (
        CredentialEntry,
        CredentialStore,
        account_for,
        generate_token_via_browser,
    )
    from sonarlogin.client import SonarQubeClient
    from sonarlogin.config import resolve_config

    try:
        config = resolve_config(cli_server=server, cli_org=org, cli_timeout=timeout)
    except SonarLoginError as exc:
        error(str(exc))
        raise typer.Exit(code=EXIT_INVALID_USAGE) from None

    store = CredentialStore()
    account = account_for(config.server_url, config.organization)

    if with_token is None and store.get(account) is not None:
        success(f"Already authenticated to {account}.")
        suggest("Run 'sonarlogin auth logout' first to log in again.")
        return

    if with_token is not None:
        token = with_token
    else:
        interactive = sys.stdin.isatty()
        try:
            token = generate_token_via_browser(
                config,
                before_open=_press_enter_to_open if interactive else None,
                no_browser=no_browser,
                read_pasted=sys.stdin.readline if interactive else None,
            )
        except LoginTimeoutError as exc:
            error(str(exc))
            suggest("Run the command again, or pass a token with --with-token.")
            raise typer.Exit(code=exc.exit_code) from None
        except LoginCancelledError as exc:
            error(str(exc))
            raise typer.Exit(code=exc.exit_code) from None
        except NoAvailablePortError as exc:
            error(str(exc))
            suggest("Close other IDEs or tools waiting for a SonarQube login and retry.")
            raise typer.Exit(code=exc.exit_code) from None
        except SonarLoginError as exc:
            error(str(exc))
            raise typer.Exit(code=exc.exit_code) from None

    try:
        with SonarQubeClient(config.server_url, token) as client:
            if not client.validate_token():
                error(f"The token was rejected by {config.server_url}.")
                raise typer.Exit(code=EXIT_AUTH_FAILURE)
            if config.organization and _is_sonarcloud(config.server_url):
                keys = {o.get("key") for o in client.list_organizations()}
                if config.organization not in keys:
                    warning(
                        f'You are not a member of organization "{config.organization}".'
                    )
    except SonarLoginError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    store.set(
        CredentialEntry(
            account=account,
            server_url=config.server_url,
            organization=config.organization,
            token=token,
        )
    )
    success(f"Authenticated to {account}.")


@auth_app.command("logout")
def auth_logout(
    server: Optional[str] = typer.Option(None, "--server", "-s", help="SonarQube server URL."),
    org: Optional[str] = typer.Option(None, "--org", "-o", help="SonarCloud organization key."),
) -> None:
    """Delete the stored token for a server (and organization).

    Example::

        sonarlogin auth logout --org my-org
    """
    from sonarlogin.auth import CredentialStore, account_for
    from sonarlogin.config import resolve_config

    try:
        config = resolve_config(cli_server=server, cli_org=org)
    except SonarLoginError as exc:
        error(str(exc))
        raise typer.Exit(code=EXIT_INVALID_USAGE) from None

    account = account_for(config.server_url, config.organization)
    if CredentialStore().delete(account):
        success(f"Logged out of {account}.")
    else:
        info(f"No stored token for {account}.")


@auth_app.command("status")
def auth_status() -> None:
    """List the accounts with a stored token.

    Tokens themselves are never printed.

    Example::

        sonarlogin auth status
    """
    from sonarlogin.auth import CredentialStore

    entries = CredentialStore().list_entries()
    if not entries:
        info("Not logged in to any server.")
        suggest("Log in: sonarlogin auth login")
        return

    headers = ["Account", "Server", "Organization", "Created"]
    rows = [
        [
            e.account,
            e.server_url,
            e.organization or "-",
            e.created_at.strftime("%Y-%m-%d %H:%M"),
        ]
        for e in entries
    ]
    get_output().print_table(headers, rows, title="Stored Tokens")


@auth_app.command("purge")
def auth_purge(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation."),
) -> None:
    """Delete every stored token.

    Asks for confirmation unless ``--force`` is given.

    Example::

        sonarlogin auth purge --force
    """
    from sonarlogin.auth import CredentialStore

    store = CredentialStore()
    accounts = store.list_accounts()
    if not accounts:
        info("No stored tokens.")
        return

    force = force or (ctx.obj.get("force", False) if ctx.obj else False)
    if not force:
        confirmed = typer.confirm(f"Delete {len(accounts)} stored token(s)?")
        if not confirmed:
            info("Cancelled.")
            raise typer.Exit()

    removed = store.purge()
    success(f"Removed {removed} stored token(s).")
