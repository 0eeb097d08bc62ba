"""Persistent token store, one JSON file per account.

Tokens live in ``~/.local/share/sonarlogin/credentials/<account>.json``
(XDG) or the platform-equivalent directory. Files are written atomically
via :func:`tempfile.NamedTemporaryFile` and ``os.replace`` with ``0o600``
permissions so that tokens are never world-readable, even momentarily.

An *account* is the server hostname, suffixed with ``:<organization>`` for
SonarCloud organizations (see :func:`account_for`).
"""

from __future__ import annotations

import json
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, Field

from sonarlogin.config import get_data_dir


class CredentialEntry(BaseModel):
    """A stored token and the server it belongs to."""

    account: str = Field(description="Store key: hostname or hostname:organization")
    server_url: str
    organization: Optional[str] = None
    token: str = Field(description="The user token")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def account_for(server_url: str, organization: Optional[str] = None) -> str:
    """Return the store key for a server and optional organization.

    Example::

        account_for("https://sonarcloud.io", "my-org")  # "sonarcloud.io:my-org"
        account_for("https://sq.example.com:9000/")     # "sq.example.com"
    """
    try:
        hostname = urlsplit(server_url).hostname or server_url
    except ValueError:
        hostname = server_url
    if organization:
        return f"{hostname}:{organization}"
    return hostname


def _credentials_dir() -> Path:
    path = get_data_dir() / "credentials"
    path.mkdir(parents=True, exist_ok=True)
    return path


_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class CredentialStore:
    """Get, set and delete tokens by account.

    Args:
        directory: Where to keep the files; defaults to the credentials
            directory under :func:`~sonarlogin.config.get_data_dir`.

    Example::

        store = CredentialStore()
        store.set(CredentialEntry(account="sonarcloud.io:acme",
                                  server_url="https://sonarcloud.io",
                                  organization="acme", token="squ_abc"))
        store.get("sonarcloud.io:acme").token  # "squ_abc"
    """

    def __init__(self, directory: Optional[Path] = None) -> None:
        self._dir = directory if directory is not None else _credentials_dir()

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, account: str) -> Path:
        return self._dir / f"{_UNSAFE_CHARS.sub('_', account)}.json"

    def get(self, account: str) -> Optional[CredentialEntry]:
        """Load the entry for *account*, or ``None`` if absent or unreadable."""
        path = self.path_for(account)
        entry = self._load(path)
        if entry is None or entry.account != account:
            return None
        return entry

    def set(self, entry: CredentialEntry) -> None:
        """Persist *entry* atomically with ``0o600`` permissions.

        Raises:
            OSError: If the file cannot be written.
        """
        path = self.path_for(entry.account)
        text = json.dumps(entry.model_dump(mode="json"), indent=2) + "\n"
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
            # Restrict permissions before the token is written
            os.chmod(tmp_path, 0o600)
            fd.write(text)
            fd.flush()
            os.fsync(fd.fileno())
            fd.close()
            fd = None
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

    def delete(self, account: str) -> bool:
        """Remove the entry for *account*.

        Returns:
            ``True`` if a stored token was removed.
        """
        if self.get(account) is None:
            return False
        self.path_for(account).unlink()
        return True

    def list_entries(self) -> list[CredentialEntry]:
        """Return every readable entry, sorted by account."""
        if not self._dir.is_dir():
            return []
        entries = [self._load(p) for p in self._dir.glob("*.json") if p.is_file()]
        return sorted((e for e in entries if e is not None), key=lambda e: e.account)

    def list_accounts(self) -> list[str]:
        return [entry.account for entry in self.list_entries()]

    def purge(self) -> int:
        """Delete every stored token and return how many were removed."""
        removed = 0
        for entry in self.list_entries():
            if self.delete(entry.account):
                removed += 1
        return removed

    @staticmethod
    def _load(path: Path) -> Optional[CredentialEntry]:
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return CredentialEntry.model_validate(data)
        except (json.JSONDecodeError, ValueError, OSError):
            return None
