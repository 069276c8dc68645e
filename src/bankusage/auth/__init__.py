"""
bankusage authentication.

Browser login with OAuth2 Authorization Code + PKCE, token lifecycle, and a
single persisted session in the OS credential vault.
"""

from bankusage.auth.callback import CallbackListener
from bankusage.auth.provider import (
    AuthorizationRequest,
    IdentityInfo,
    ProviderClient,
    generate_pkce_pair,
)
from bankusage.auth.session import LoginState, SessionManager
from bankusage.auth.storage import (
    CredentialStore,
    EncryptedFileCredentialStore,
    KeyringCredentialStore,
    create_credential_store,
)
from bankusage.auth.tokens import StoredSession, TokenBundle, is_expired, needs_refresh

__all__ = [
    "AuthorizationRequest",
    "CallbackListener",
    "CredentialStore",
    "EncryptedFileCredentialStore",
    "IdentityInfo",
    "KeyringCredentialStore",
    "LoginState",
    "ProviderClient",
    "SessionManager",
    "StoredSession",
    "TokenBundle",
    "create_credential_store",
    "generate_pkce_pair",
    "is_expired",
    "needs_refresh",
]
