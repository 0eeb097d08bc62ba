"""sonarlogin -- browser-delegated login for SonarQube and SonarCloud.

The package obtains a user token by sending the browser to the server's
authorization page and receiving the token back on a short-lived HTTP
listener bound to the loopback interface.

Typical workflow::

    sonarlogin auth login --server https://sonarcloud.io
    sonarlogin auth status

Modules:
    app: Typer application and CLI entry point.
    loopback: The loopback listener, security gate and login session.
    auth: Browser login flow and per-account token storage.
    client: Minimal SonarQube REST client used to validate tokens.
    config: XDG-aware configuration.
    exceptions: Exception hierarchy with exit-code mapping.
    output: stdout/stderr formatting and logging setup.
"""

__version__ = "0.1.0"
