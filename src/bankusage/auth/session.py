"""
Session manager — browser login, silent restore, logout, and access tokens.

Sequences the provider client, callback listener, user repository and
credential store. Every step of a login attempt runs strictly in order and
nothing is retried automatically: a failed attempt must be restarted with a
fresh authorization request, since codes and PKCE verifiers are single use.

Restore is fail-closed: any doubt about the stored session (refresh failure,
identity check failure, unknown local user) forgets it.
"""

from __future__ import annotations

import asyncio
import logging
import webbrowser
from collections.abc import Callable
from datetime import datetime
from enum import Enum

from bankusage.auth.callback import CallbackListener
from bankusage.auth.provider import ProviderClient
from bankusage.auth.storage import CredentialStore
from bankusage.auth.tokens import StoredSession, TokenBundle, is_expired, needs_refresh, utcnow
from bankusage.errors import (
    AuthError,
    BankUsageError,
    CredentialStoreError,
    ExternalServiceError,
    NotLoggedInError,
)
from bankusage.models.user import User
from bankusage.state import CurrentUserHandle
from bankusage.users import UserRepository

logger = logging.getLogger("bankusage.auth.session")


class LoginState(str, Enum):
    """Steps of a single login attempt."""

    IDLE = "idle"
    AWAITING_BROWSER_ACTION = "awaiting_browser_action"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING_CODE = "exchanging_code"
    FETCHING_IDENTITY = "fetching_identity"
    RECONCILING_LOCAL_USER = "reconciling_local_user"
    PERSISTING_SESSION = "persisting_session"
    COMPLETE = "complete"
    FAILED = "failed"


def open_system_browser(url: str) -> None:
    """Open ``url`` in the default browser.

    Raises:
        ExternalServiceError: If no browser could be launched. The message
            carries the URL so it can be opened by hand.
    """
    try:
        opened = webbrowser.open(url)
    except webbrowser.Error as e:
        raise ExternalServiceError(
            f"Failed to open browser: {e}. Please open this URL manually: {url}"
        ) from e
    if not opened:
        raise ExternalServiceError(f"Failed to open browser. Please open this URL manually: {url}")


class SessionManager:
    """Owns the login flow and the single stored session.

    Usage::

        manager = SessionManager(provider, store, users, current_user)
        user = await manager.try_restore_session()
        if user is None:
            user = await manager.login()
        token = await manager.get_access_token()
    """

    def __init__(
        self,
        provider: ProviderClient,
        store: CredentialStore,
        users: UserRepository,
        current_user: CurrentUserHandle,
        *,
        listener_factory: Callable[[], CallbackListener] | None = None,
        open_browser: Callable[[str], None] = open_system_browser,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.provider = provider
        self.store = store
        self.users = users
        self.current_user = current_user
        self._listener_factory = listener_factory or self._default_listener
        self._open_browser = open_browser
        self._clock = clock
        self._login_lock = asyncio.Lock()
        # Serializes read-modify-write cycles on the credential store.
        self._store_lock = asyncio.Lock()
        self.login_state = LoginState.IDLE

    def _default_listener(self) -> CallbackListener:
        config = self.provider.config
        return CallbackListener(port=config.callback_port, timeout=config.callback_timeout)

    # ------------------------------------------------------------------
    # Store access
    # ------------------------------------------------------------------

    async def _load(self) -> StoredSession | None:
        return await asyncio.to_thread(self.store.load)

    async def _save(self, session: StoredSession) -> None:
        await asyncio.to_thread(self.store.save, session)

    async def _forget(self, reason: str) -> None:
        """Drop the stored session and the published user."""
        logger.warning("%s, clearing session", reason)
        try:
            await asyncio.to_thread(self.store.clear)
        except CredentialStoreError as e:
            logger.error("Failed to clear stored session: %s", e)
        await self.current_user.clear()

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(self, on_authorization_url: Callable[[str], None] | None = None) -> User:
        """Run the full browser login.

        Args:
            on_authorization_url: Called with the authorization URL before
                the browser is opened, so it can be shown for manual use.

        Returns:
            The local user, also published to the current-user handle.

        Raises:
            CallbackTimeoutError: If the browser login is not completed in time.
            AuthError: If the provider rejects the code or identity request.
            ExternalServiceError: If the browser or provider is unreachable,
                or the callback port is in use.
            CredentialStoreError: If the session cannot be persisted.
        """
        async with self._login_lock:
            self.login_state = LoginState.IDLE
            try:
                user = await self._run_login(on_authorization_url)
            except BaseException:
                logger.info("Login failed during %s", self.login_state.value)
                self.login_state = LoginState.FAILED
                raise
            self.login_state = LoginState.COMPLETE
            return user

    async def _run_login(self, on_authorization_url: Callable[[str], None] | None) -> User:
        request = self.provider.build_authorization_request()
        listener = self._listener_factory()
        listener.start(request.csrf_state)

        try:
            self.login_state = LoginState.AWAITING_BROWSER_ACTION
            logger.info("Opening browser for login")
            logger.debug("Authorization URL: %s", request.authorization_url)
            if on_authorization_url is not None:
                on_authorization_url(request.authorization_url)
            self._open_browser(request.authorization_url)

            self.login_state = LoginState.AWAITING_CALLBACK
            logger.info("Waiting for OAuth callback...")
            code = await listener.await_callback(request.csrf_state)
        finally:
            await asyncio.to_thread(listener.stop)

        self.login_state = LoginState.EXCHANGING_CODE
        verifier, request.pkce_verifier = request.pkce_verifier, ""
        tokens = await self.provider.exchange_code(code, verifier)

        self.login_state = LoginState.FETCHING_IDENTITY
        identity = await self.provider.fetch_identity(tokens.access_token)
        logger.info("Provider identity confirmed for %s", identity.email)

        self.login_state = LoginState.RECONCILING_LOCAL_USER
        user = await self.users.find_or_create_by_provider_id(identity.to_create_user())

        self.login_state = LoginState.PERSISTING_SESSION
        session = StoredSession(
            tokens=tokens,
            local_user_id=user.id,
            provider_user_id=identity.provider_user_id,
            email=identity.email,
        )
        async with self._store_lock:
            await self._save(session)

        await self.current_user.set(user)
        logger.info("Authentication complete for user %s", user.id)
        return user

    # ------------------------------------------------------------------
    # Restore / logout
    # ------------------------------------------------------------------

    async def try_restore_session(self) -> User | None:
        """Restore the stored session, or return None.

        Never raises: whatever cannot be verified is cleared and the caller
        simply sees "no session". A failing local user lookup also yields
        None but keeps the stored session.
        """
        async with self._store_lock:
            try:
                session = await self._load()
            except CredentialStoreError as e:
                await self._forget(f"Stored session unreadable ({e})")
                return None

            if session is None:
                logger.debug("No stored authentication found")
                return None

            logger.info("Found stored session for local user %s", session.local_user_id)
            tokens = session.tokens

            now = self._clock()
            if is_expired(tokens, now):
                if not needs_refresh(tokens, now):
                    await self._forget("Token expired with no refresh token")
                    return None
                try:
                    tokens = await self.provider.refresh(tokens.refresh_token)  # type: ignore[arg-type]
                    session = session.with_tokens(tokens)
                    await self._save(session)
                except BankUsageError as e:
                    await self._forget(f"Token refresh failed ({e})")
                    return None
                logger.info("Tokens refreshed")

            try:
                identity = await self.provider.fetch_identity(tokens.access_token)
            except BankUsageError as e:
                await self._forget(f"Token validation failed ({e})")
                return None
            if identity.provider_user_id != session.provider_user_id:
                await self._forget("Stored session belongs to a different provider account")
                return None

            try:
                user = await self.users.find_by_provider_id(session.provider_user_id)
            except BankUsageError as e:
                logger.error("Local user lookup failed, session kept: %s", e)
                return None
            if user is None:
                await self._forget("User not found in local database")
                return None

            await self.current_user.set(user)
            logger.info("Session restored for local user %s", user.id)
            return user

    async def logout(self) -> None:
        """Clear the stored session and the current user. Always succeeds."""
        async with self._store_lock:
            try:
                await asyncio.to_thread(self.store.clear)
            except CredentialStoreError as e:
                logger.error("Failed to clear stored session on logout: %s", e)
            await self.current_user.clear()
        logger.info("User logged out")

    # ------------------------------------------------------------------
    # Per-request access
    # ------------------------------------------------------------------

    async def get_access_token(self) -> str | None:
        """Return a usable access token, refreshing it when needed.

        Returns None when there is no session or it cannot be refreshed.
        Unlike restore, the identity is not re-verified.

        Raises:
            ExternalServiceError: If the provider is unreachable during a
                refresh; the stored session is kept for a later retry.
        """
        async with self._store_lock:
            try:
                session = await self._load()
            except CredentialStoreError as e:
                logger.warning("Stored session unreadable: %s", e)
                return None
            if session is None:
                return None

            now = self._clock()
            if not is_expired(session.tokens, now):
                return session.tokens.access_token
            if not needs_refresh(session.tokens, now):
                logger.info("Access token expired and no refresh token is stored")
                return None

            try:
                tokens: TokenBundle = await self.provider.refresh(session.tokens.refresh_token)  # type: ignore[arg-type]
            except AuthError as e:
                await self._forget(f"Token refresh rejected ({e})")
                return None
            except ExternalServiceError:
                logger.warning("Token refresh failed: provider unreachable")
                raise

            try:
                await self._save(session.with_tokens(tokens))
            except CredentialStoreError as e:
                logger.error("Refreshed token could not be persisted: %s", e)
            return tokens.access_token

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_logged_in(self) -> bool:
        """Whether a session is stored (not verified)."""
        return self.store.exists()

    async def get_current_user(self) -> User | None:
        return await self.current_user.get()

    async def require_user(self) -> User:
        """Return the current user.

        Raises:
            NotLoggedInError: If nobody is logged in.
        """
        user = await self.current_user.get()
        if user is None:
            raise NotLoggedInError("No user logged in")
        return user
