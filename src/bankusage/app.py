"""
bankusage — application composition root.

Builds the provider client, credential store, user repository and the
shared current-user handle once, and hands them to the session manager.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from bankusage.auth.provider import ProviderClient
from bankusage.auth.session import SessionManager
from bankusage.auth.storage import CredentialStore, create_credential_store
from bankusage.config import BankUsageConfig
from bankusage.models.user import User
from bankusage.state import CurrentUserHandle
from bankusage.users import SQLUserRepository, UserRepository

logger = logging.getLogger("bankusage")


@dataclass
class BankUsage:
    """Top-level entry point for bankusage.

    Usage::

        from bankusage import BankUsage

        app = BankUsage.from_config()
        user = await app.startup()       # silent restore, None if logged out
        if user is None:
            user = await app.login()     # browser login
        token = await app.get_access_token()
    """

    config: BankUsageConfig
    store: CredentialStore | None = None
    users: UserRepository | None = None
    current_user: CurrentUserHandle = field(default_factory=CurrentUserHandle)
    _provider: ProviderClient | None = field(default=None, init=False, repr=False)
    _sessions: SessionManager | None = field(default=None, init=False, repr=False)

    @classmethod
    def from_config(cls, config_path: str | None = None, **overrides: Any) -> BankUsage:
        """Create a BankUsage instance from a config file or keyword arguments.

        Raises:
            ConfigError: If the provider credentials are missing.
        """
        config = BankUsageConfig.load(config_path, **overrides)
        instance = cls(config=config)
        instance._setup()
        return instance

    def _setup(self) -> None:
        """Wire the collaborators together."""
        self.config.require_oauth_credentials()
        if self.store is None:
            self.store = create_credential_store(self.config.storage)
        if self.users is None:
            self.users = SQLUserRepository.from_url(self.config.database_url)
        self._provider = ProviderClient(self.config.oauth)
        self._sessions = SessionManager(
            self._provider,
            self.store,
            self.users,
            self.current_user,
        )
        logger.info("bankusage initialized with %s credential store", self.config.storage.backend)

    @property
    def sessions(self) -> SessionManager:
        if self._sessions is None:
            self._setup()
        return self._sessions  # type: ignore[return-value]

    async def startup(self) -> User | None:
        """Restore the previous session, if any."""
        user = await self.sessions.try_restore_session()
        if user is not None:
            logger.info("Session restored for user: %s", user.email)
        return user

    async def login(self, on_authorization_url: Callable[[str], None] | None = None) -> User:
        return await self.sessions.login(on_authorization_url)

    async def logout(self) -> None:
        await self.sessions.logout()

    async def get_current_user(self) -> User | None:
        return await self.current_user.get()

    async def get_access_token(self) -> str | None:
        return await self.sessions.get_access_token()

    def is_logged_in(self) -> bool:
        return self.sessions.is_logged_in()

    async def close(self) -> None:
        if self._provider is not None:
            await self._provider.close()
