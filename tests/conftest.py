"""Shared test fixtures for sonarlogin.

Provides fixtures for isolating config and data directories, managing
output state, picking loopback ports that are free on this machine, and
running CLI commands. They are discovered by pytest and available to all
test modules without explicit imports.
"""

from __future__ import annotations

import socket
from pathlib import Path

import pytest

from sonarlogin.models import PortRange
from sonarlogin.output import OutputManager, reset_output, set_output


# ---------------------------------------------------------------------------
# Auto-reset global output state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    The OutputManager caches Rich consoles bound to sys.stdout/sys.stderr
    at creation time. When Typer's CliRunner redirects those streams and
    the test finishes, the cached references become stale. Resetting
    forces a fresh manager to be created on next use.
    """
    yield
    reset_output()


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration and stored tokens to a temporary directory.

    Forces XDG path resolution, points XDG_CONFIG_HOME and XDG_DATA_HOME
    at subdirectories of tmp_path, and clears SONARLOGIN_* and CI so the
    developer's environment never leaks into a test.

    Returns:
        The tmp_path root directory for additional file creation.
    """
    monkeypatch.setattr("sonarlogin.config._is_xdg_platform", lambda: True)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))

    for var in ["SONARLOGIN_SERVER", "SONARLOGIN_ORG", "CI"]:
        monkeypatch.delenv(var, raising=False)

    monkeypatch.chdir(tmp_path)
    return tmp_path


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_output() -> OutputManager:
    """Install a quiet, colourless OutputManager for tests that ignore output."""
    output = OutputManager(no_color=True, quiet=True)
    set_output(output)
    yield output
    reset_output()


# ---------------------------------------------------------------------------
# Loopback port fixtures
# ---------------------------------------------------------------------------


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def port_range() -> PortRange:
    """A single-port range that was free on 127.0.0.1 a moment ago.

    Tests never bind the real protocol range, so they can run next to an
    IDE that is waiting for a login.
    """
    return PortRange(start=_free_port(), count=1)


@pytest.fixture
def occupied_port():
    """A listening socket on 127.0.0.1; yields its port."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    try:
        yield sock.getsockname()[1]
    finally:
        sock.close()


# ---------------------------------------------------------------------------
# CLI runner fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()
