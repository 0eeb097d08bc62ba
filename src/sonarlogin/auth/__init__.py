"""Token acquisition and storage.

- :func:`generate_token_via_browser` -- run the loopback browser login.
- :class:`CredentialStore` -- per-account token files on disk.
"""

from sonarlogin.auth.browser_login import generate_token_via_browser, open_browser_with_fallback
from sonarlogin.auth.credential_store import CredentialEntry, CredentialStore, account_for

__all__ = [
    "CredentialEntry",
    "CredentialStore",
    "account_for",
    "generate_token_via_browser",
    "open_browser_with_fallback",
]
