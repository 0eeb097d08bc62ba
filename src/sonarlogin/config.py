"""Configuration management with XDG paths, atomic writes, and precedence resolution.

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.sonarlogin/`` on macOS and Windows. See :func:`get_config_dir` and
  :func:`get_data_dir`.
* **Global config** -- A single :class:`~sonarlogin.models.GlobalConfig`
  JSON file storing the default server, organization and login timeout.
* **Precedence resolution** -- :func:`resolve_config` merges CLI flags,
  environment variables and the config file into the effective settings.

The loopback port range is deliberately absent: it is fixed by the server
protocol (see :data:`~sonarlogin.models.AUTH_PORT_RANGE`).
"""

from __future__ import annotations

import json
import os
import platform
import tempfile
from pathlib import Path
from typing import Optional

from sonarlogin.exceptions import ConfigError
from sonarlogin.models import GlobalConfig

_APP_NAME = "sonarlogin"
_CONFIG_FILENAME = "config.json"

ENV_SERVER = "SONARLOGIN_SERVER"
ENV_ORG = "SONARLOGIN_ORG"


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform supports XDG Base Directory spec (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _fallback_base_dir() -> Path:
    """Fallback base directory for non-XDG platforms (macOS, Windows)."""
    return Path.home() / f".{_APP_NAME}"


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    """Resolve an XDG base directory from an env var with fallback segments under $HOME."""
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    base = Path.home()
    for seg in default_segments:
        base = base / seg
    return base


def get_config_dir() -> Path:
    """Return the configuration directory, creating it if necessary.

    On Linux/BSD: ``$XDG_CONFIG_HOME/sonarlogin/`` (default ``~/.config/sonarlogin/``).
    On macOS/Windows: ``~/.sonarlogin/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_CONFIG_HOME", (".config",)) / _APP_NAME
    else:
        path = _fallback_base_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Return the data directory (stored tokens, crash logs), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/sonarlogin/`` (default ``~/.local/share/sonarlogin/``).
    On macOS/Windows: ``~/.sonarlogin/data/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_DATA_HOME", (".local", "share")) / _APP_NAME
    else:
        path = _fallback_base_dir() / "data"
    path.mkdir(parents=True, exist_ok=True)
    return path


# --- Atomic file writes ---


def _atomic_write(path: Path, data: str) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is an atomic rename on POSIX systems. On any failure the
    temp file is removed.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None  # prevent double-close in finally
        os.replace(tmp_path, path)
    except BaseException:
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- Global config ---


def _global_config_path() -> Path:
    return get_config_dir() / _CONFIG_FILENAME


def load_global_config() -> GlobalConfig:
    """Load the global configuration from the config directory.

    Returns:
        The deserialised :class:`~sonarlogin.models.GlobalConfig`, or a
        default instance when the file does not exist.

    Raises:
        ConfigError: If the file exists but contains invalid JSON or fails
            Pydantic validation.
    """
    path = _global_config_path()
    if not path.is_file():
        return GlobalConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return GlobalConfig.model_validate(data)
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Invalid global config at {path}: {exc}") from exc


def save_global_config(config: GlobalConfig) -> None:
    """Persist the global configuration atomically to disk."""
    data = config.model_dump(mode="json")
    _atomic_write(_global_config_path(), json.dumps(data, indent=2) + "\n")


# --- Precedence resolution ---


def resolve_config(
    cli_server: Optional[str] = None,
    cli_org: Optional[str] = None,
    cli_timeout: Optional[float] = None,
) -> GlobalConfig:
    """Resolve the effective settings for one command invocation.

    Precedence (high to low):
        1. CLI flags (``cli_server``, ``cli_org``, ``cli_timeout``)
        2. Environment variables (``SONARLOGIN_SERVER``, ``SONARLOGIN_ORG``)
        3. User config (``~/.config/sonarlogin/config.json``)
        4. Defaults

    Returns:
        A new :class:`~sonarlogin.models.GlobalConfig`; the file on disk is
        left untouched.
    """
    config = load_global_config()

    env_server = os.environ.get(ENV_SERVER)
    if cli_server is not None:
        config.server_url = cli_server
    elif env_server:
        config.server_url = env_server

    env_org = os.environ.get(ENV_ORG)
    if cli_org is not None:
        config.organization = cli_org
    elif env_org:
        config.organization = env_org

    if cli_timeout is not None:
        if cli_timeout <= 0:
            raise ConfigError(f"Login timeout must be positive, got {cli_timeout}")
        config.login_timeout = cli_timeout

    return config
