"""Pydantic models shared across sonarlogin modules.

**Configuration models** -- serialised as JSON in the user's config directory:
    :class:`GlobalConfig`.

**Loopback models** -- used by the login session:
    :class:`PortRange`, :data:`AUTH_PORT_RANGE`, and :class:`SessionState`.
"""

from __future__ import annotations

import enum

from pydantic import BaseModel, ConfigDict, Field


# --- Loopback ---


class PortRange(BaseModel):
    """Contiguous range of loopback ports the callback listener may bind.

    Immutable so a range handed to the port allocator cannot be altered
    behind its back. Tests substitute a narrow range of their own.

    Example::

        PortRange(start=64120, count=11).ports  # 64120 .. 64130
    """

    model_config = ConfigDict(frozen=True)

    start: int = Field(ge=1, le=65535, description="First candidate port")
    count: int = Field(ge=1, description="Number of candidate ports")

    @property
    def stop(self) -> int:
        """Last candidate port (inclusive)."""
        return self.start + self.count - 1

    @property
    def ports(self) -> range:
        return range(self.start, self.start + self.count)

    def __str__(self) -> str:
        return f"{self.start}-{self.stop}"


AUTH_PORT_RANGE = PortRange(start=64120, count=11)
"""Ports SonarQube and SonarCloud accept as a token callback target.

The server checks the callback port against this range before posting the
token, so it is a protocol constant rather than a setting.
"""


class SessionState(str, enum.Enum):
    """Lifecycle of a single loopback login attempt."""

    SEARCHING = "searching"
    LISTENING = "listening"
    WAITING = "waiting"
    RESOLVED = "resolved"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    CLOSED = "closed"


# --- Global config ---


class GlobalConfig(BaseModel):
    """User-level settings loaded from ``config.json``.

    Read by :func:`~sonarlogin.config.load_global_config` and written by
    :func:`~sonarlogin.config.save_global_config`. Every field has a default
    so a missing file behaves like an empty one.
    """

    server_url: str = Field(
        default="https://sonarcloud.io", description="SonarQube or SonarCloud base URL"
    )
    organization: str | None = Field(
        default=None, description="SonarCloud organization key"
    )
    login_timeout: float = Field(
        default=50.0, gt=0, description="Seconds to wait for the browser callback"
    )
    client_id: str = Field(
        default="sonarqube-cli", description="Client name sent as ideName"
    )
    auth_path: str = Field(
        default="sonarlint/auth", description="Path of the server authorization page"
    )
    allowed_origins: list[str] = Field(
        default_factory=list,
        description="Extra origins, besides the server's own, allowed to call back",
    )
