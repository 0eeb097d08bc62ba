"""Built-in CLI sub-commands for sonarlogin.

* :mod:`~sonarlogin.commands.auth` -- log in through the browser, log out,
  list and purge stored tokens.

Each module exports a :class:`typer.Typer` sub-application that
:func:`sonarlogin.app.main` registers on the root app.
"""
