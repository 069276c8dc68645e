"""
Error types shared across bankusage.

Configuration errors are fatal at startup. Authentication errors are
recoverable: restore falls back to "no session", login asks the user to try
again. External-service errors cover transport failures talking to the
identity provider or launching the browser.
"""

from __future__ import annotations

__all__ = [
    "AuthError",
    "BankUsageError",
    "CallbackTimeoutError",
    "ConfigError",
    "CredentialStoreError",
    "ExternalServiceError",
    "NotLoggedInError",
    "UserStoreError",
]


class BankUsageError(Exception):
    """Base error for bankusage failures."""


class ConfigError(BankUsageError):
    """Raised when required configuration is missing or invalid."""


class AuthError(BankUsageError):
    """Raised when the provider rejects a request or a callback is invalid.

    ``status_code`` and ``body`` hold the provider response for diagnostics.
    They are kept out of ``str(error)`` so the raw body is never shown to
    the end user verbatim.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class CallbackTimeoutError(AuthError):
    """Raised when no matching OAuth callback arrives in time."""


class ExternalServiceError(BankUsageError):
    """Raised on transport failures (network, browser, local listener)."""


class CredentialStoreError(BankUsageError):
    """Raised when the credential vault cannot be read, written or decoded."""


class NotLoggedInError(BankUsageError):
    """Raised when an operation needs a logged-in user and there is none."""


class UserStoreError(BankUsageError):
    """Raised when the local user database cannot be read or written."""
