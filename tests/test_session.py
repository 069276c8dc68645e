"""Tests for the session manager: login, restore, logout, access tokens."""

from __future__ import annotations

import threading
from datetime import timedelta
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from bankusage.auth.callback import CallbackListener
from bankusage.auth.provider import ProviderClient
from bankusage.auth.session import LoginState, SessionManager, open_system_browser
from bankusage.auth.tokens import StoredSession, TokenBundle
from bankusage.errors import (
    AuthError,
    CallbackTimeoutError,
    ExternalServiceError,
    CredentialStoreError,
    NotLoggedInError,
    UserStoreError,
)
from bankusage.models.user import CreateUser, User
from bankusage.state import CurrentUserHandle
from conftest import NOW, USERINFO, FakeIdentityProvider, InMemoryCredentialStore, InMemoryUserRepository

TOKEN_RESPONSE = {
    "access_token": "access-1",
    "refresh_token": "refresh-1",
    "expires_in": 3600,
    "token_type": "Bearer",
}


class FakeBrowser:
    """Plays the user: follows the authorization URL back to the listener."""

    def __init__(self, listeners: list[CallbackListener], *, code: str = "auth-code", state: str | None = None):
        self.listeners = listeners
        self.code = code
        self.state = state
        self.opened: list[str] = []
        self.responses: list[httpx.Response] = []

    def __call__(self, url: str) -> None:
        self.opened.append(url)
        state = self.state or parse_qs(urlparse(url).query)["state"][0]
        callback = f"{self.listeners[-1].redirect_uri}?code={self.code}&state={state}"

        def follow() -> None:
            self.responses.append(httpx.get(callback, timeout=5))

        threading.Thread(target=follow, daemon=True).start()


@pytest.fixture
def current_user() -> CurrentUserHandle:
    return CurrentUserHandle()


@pytest.fixture
def listeners() -> list[CallbackListener]:
    return []


def _manager(
    provider: ProviderClient,
    store: InMemoryCredentialStore,
    users: InMemoryUserRepository,
    current_user: CurrentUserHandle,
    listeners: list[CallbackListener],
    *,
    open_browser=None,
    timeout: float = 5.0,
    now=NOW,
) -> SessionManager:
    def listener_factory() -> CallbackListener:
        listener = CallbackListener(port=0, timeout=timeout)
        listeners.append(listener)
        return listener

    return SessionManager(
        provider,
        store,
        users,
        current_user,
        listener_factory=listener_factory,
        open_browser=open_browser or FakeBrowser(listeners),
        clock=lambda: now,
    )


@pytest.fixture
def manager(provider, store, users, current_user, listeners) -> SessionManager:
    return _manager(provider, store, users, current_user, listeners)


async def _seed(
    store: InMemoryCredentialStore,
    users: InMemoryUserRepository,
    *,
    expires_at=NOW + timedelta(hours=1),
    refresh_token: str | None = "refresh-1",
) -> User:
    user = await users.find_or_create_by_provider_id(CreateUser(
        provider_user_id="google-123",
        email="maria@example.com",
        first_name="Maria",
        last_name="Papadopoulou",
    ))
    store.save(StoredSession(
        tokens=TokenBundle(access_token="stored-access", refresh_token=refresh_token, expires_at=expires_at),
        local_user_id=user.id,
        provider_user_id="google-123",
        email="maria@example.com",
    ))
    store.saves = 0
    return user


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


@pytest.mark.integration
class TestLogin:
    @pytest.mark.asyncio
    async def test_full_login(self, manager, idp: FakeIdentityProvider, store, users, current_user, listeners) -> None:
        idp.token_responses.append((200, TOKEN_RESPONSE))
        idp.userinfo_responses.append((200, USERINFO))

        user = await manager.login()

        assert user.provider_user_id == "google-123"
        assert user.first_name == "Maria"
        assert manager.login_state is LoginState.COMPLETE
        assert (await current_user.get()).id == user.id
        assert "google-123" in users.users

        session = store.load()
        assert session.local_user_id == user.id
        assert session.provider_user_id == "google-123"
        assert session.email == "maria@example.com"
        assert session.tokens.access_token == "access-1"
        assert session.tokens.expires_at == NOW + timedelta(seconds=3600)

        assert parse_qs(idp.token_requests[0].content.decode())["code"] == ["auth-code"]
        assert idp.userinfo_requests[0].headers["Authorization"] == "Bearer access-1"
        assert not listeners[0].is_running

    @pytest.mark.asyncio
    async def test_second_login_reuses_local_user(self, manager, idp, users) -> None:
        for _ in range(2):
            idp.token_responses.append((200, TOKEN_RESPONSE))
            idp.userinfo_responses.append((200, USERINFO))

        first = await manager.login()
        second = await manager.login()

        assert first.id == second.id
        assert len(users.users) == 1

    @pytest.mark.asyncio
    async def test_missing_given_name(self, manager, idp) -> None:
        idp.token_responses.append((200, TOKEN_RESPONSE))
        idp.userinfo_responses.append((200, {"sub": "google-9", "email": "anon@example.com"}))

        user = await manager.login()

        assert user.first_name == "Unknown"
        assert user.last_name == ""

    @pytest.mark.asyncio
    async def test_forged_state_times_out(self, provider, store, users, current_user, listeners, idp) -> None:
        browser = FakeBrowser(listeners, state="forged")
        manager = _manager(provider, store, users, current_user, listeners, open_browser=browser, timeout=0.5)

        with pytest.raises(CallbackTimeoutError):
            await manager.login()

        assert manager.login_state is LoginState.FAILED
        assert idp.requests == []
        assert store.raw is None
        assert "Invalid state parameter" in browser.responses[0].text

    @pytest.mark.asyncio
    async def test_rejected_code(self, manager, idp, store, current_user) -> None:
        idp.token_responses.append((400, {"error": "invalid_grant"}))

        with pytest.raises(AuthError):
            await manager.login()

        assert manager.login_state is LoginState.FAILED
        assert idp.userinfo_requests == []
        assert store.raw is None
        assert await current_user.get() is None

    @pytest.mark.asyncio
    async def test_identity_failure_persists_nothing(self, manager, idp, store, users) -> None:
        idp.token_responses.append((200, TOKEN_RESPONSE))
        idp.userinfo_responses.append((500, "boom"))

        with pytest.raises(AuthError):
            await manager.login()

        assert store.raw is None
        assert users.users == {}

    @pytest.mark.asyncio
    async def test_browser_failure_stops_listener(self, provider, store, users, current_user, listeners) -> None:
        def broken_browser(url: str) -> None:
            raise ExternalServiceError(f"Failed to open browser. Please open this URL manually: {url}")

        manager = _manager(provider, store, users, current_user, listeners, open_browser=broken_browser)

        with pytest.raises(ExternalServiceError, match="https://idp.example.com/authorize"):
            await manager.login()

        assert not listeners[0].is_running
        assert manager.login_state is LoginState.FAILED

    @pytest.mark.asyncio
    async def test_authorization_url_is_shown_before_browser(
        self, provider, store, users, current_user, listeners, idp
    ) -> None:
        idp.token_responses.append((200, TOKEN_RESPONSE))
        idp.userinfo_responses.append((200, USERINFO))
        events: list[tuple[str, str]] = []
        browser = FakeBrowser(listeners)

        def open_browser(url: str) -> None:
            events.append(("browser", url))
            browser(url)

        manager = _manager(provider, store, users, current_user, listeners, open_browser=open_browser)

        await manager.login(on_authorization_url=lambda url: events.append(("shown", url)))

        assert [kind for kind, _ in events] == ["shown", "browser"]
        assert events[0][1] == events[1][1]
        assert events[0][1].startswith("https://idp.example.com/authorize?")


class TestOpenSystemBrowser:
    def test_failure_message_carries_url(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("webbrowser.open", lambda url: False)

        with pytest.raises(ExternalServiceError, match="https://idp.example.com/authorize\\?x=1"):
            open_system_browser("https://idp.example.com/authorize?x=1")


# ---------------------------------------------------------------------------
# Restore
# ---------------------------------------------------------------------------


class TestRestore:
    @pytest.mark.asyncio
    async def test_no_session(self, manager, idp) -> None:
        assert await manager.try_restore_session() is None
        assert idp.requests == []

    @pytest.mark.asyncio
    async def test_valid_session(self, manager, idp, store, users, current_user) -> None:
        seeded = await _seed(store, users)
        idp.userinfo_responses.append((200, USERINFO))

        user = await manager.try_restore_session()

        assert user.id == seeded.id
        assert (await current_user.get()).id == seeded.id
        assert idp.token_requests == []
        assert idp.userinfo_requests[0].headers["Authorization"] == "Bearer stored-access"

    @pytest.mark.asyncio
    async def test_expired_session_is_refreshed(self, manager, idp, store, users) -> None:
        await _seed(store, users, expires_at=NOW - timedelta(minutes=1))
        idp.token_responses.append((200, {"access_token": "fresh", "expires_in": 3600}))
        idp.userinfo_responses.append((200, USERINFO))

        user = await manager.try_restore_session()

        assert user is not None
        session = store.load()
        assert session.tokens.access_token == "fresh"
        assert session.tokens.refresh_token == "refresh-1"
        assert idp.userinfo_requests[0].headers["Authorization"] == "Bearer fresh"

    @pytest.mark.asyncio
    async def test_failed_refresh_clears_session(self, manager, idp, store, users, current_user) -> None:
        await _seed(store, users, expires_at=NOW - timedelta(minutes=1))
        idp.token_responses.append((400, {"error": "invalid_grant"}))

        assert await manager.try_restore_session() is None
        assert store.raw is None
        assert await current_user.get() is None
        assert idp.userinfo_requests == []

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token_makes_no_request(self, manager, idp, store, users) -> None:
        await _seed(store, users, expires_at=NOW - timedelta(minutes=1), refresh_token=None)

        assert await manager.try_restore_session() is None
        assert store.raw is None
        assert idp.requests == []

    @pytest.mark.asyncio
    async def test_revoked_token_clears_session(self, manager, idp, store, users) -> None:
        await _seed(store, users)
        idp.userinfo_responses.append((401, "invalid credentials"))

        assert await manager.try_restore_session() is None
        assert store.raw is None

    @pytest.mark.asyncio
    async def test_unreachable_provider_clears_session(self, oauth_config, store, users, current_user, listeners) -> None:
        await _seed(store, users)
        mock_client = AsyncMock()
        mock_client.is_closed = False
        mock_client.get.side_effect = httpx.ConnectError("offline")
        provider = ProviderClient(oauth_config, http_client=mock_client, clock=lambda: NOW)
        manager = _manager(provider, store, users, current_user, listeners)

        assert await manager.try_restore_session() is None
        assert store.raw is None

    @pytest.mark.asyncio
    async def test_other_account_clears_session(self, manager, idp, store, users) -> None:
        await _seed(store, users)
        idp.userinfo_responses.append((200, {**USERINFO, "sub": "google-other"}))

        assert await manager.try_restore_session() is None
        assert store.raw is None

    @pytest.mark.asyncio
    async def test_missing_local_user_clears_session(self, manager, idp, store, users) -> None:
        await _seed(store, users)
        users.users.clear()
        idp.userinfo_responses.append((200, USERINFO))

        assert await manager.try_restore_session() is None
        assert store.raw is None

    @pytest.mark.asyncio
    async def test_corrupt_record_clears_session(self, manager, idp, store) -> None:
        store.raw = "{broken"

        assert await manager.try_restore_session() is None
        assert store.raw is None
        assert idp.requests == []

    @pytest.mark.asyncio
    async def test_malformed_refresh_response_clears_session(self, manager, idp, store, users) -> None:
        await _seed(store, users, expires_at=NOW - timedelta(minutes=1))
        idp.token_responses.append((200, {"access_token": "x", "expires_in": "soon"}))

        assert await manager.try_restore_session() is None
        assert store.raw is None
        assert idp.userinfo_requests == []

    @pytest.mark.asyncio
    async def test_user_lookup_failure_keeps_session(self, manager, idp, store, users, current_user) -> None:
        await _seed(store, users)
        idp.userinfo_responses.append((200, USERINFO))
        users.find_by_provider_id = AsyncMock(side_effect=UserStoreError("database is locked"))

        assert await manager.try_restore_session() is None
        assert store.raw is not None
        assert await current_user.get() is None


# ---------------------------------------------------------------------------
# Logout / access tokens / queries
# ---------------------------------------------------------------------------


class TestLogout:
    @pytest.mark.asyncio
    async def test_logout_clears_everything(self, manager, store, users, current_user) -> None:
        user = await _seed(store, users)
        await current_user.set(user)

        await manager.logout()

        assert store.raw is None
        assert await current_user.get() is None
        assert not manager.is_logged_in()

    @pytest.mark.asyncio
    async def test_logout_is_idempotent(self, manager, store) -> None:
        await manager.logout()
        await manager.logout()
        assert store.clears == 2


class TestGetAccessToken:
    @pytest.mark.asyncio
    async def test_no_session(self, manager) -> None:
        assert await manager.get_access_token() is None

    @pytest.mark.asyncio
    async def test_valid_token_makes_no_request(self, manager, idp, store, users) -> None:
        await _seed(store, users)

        assert await manager.get_access_token() == "stored-access"
        assert idp.requests == []

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token(self, manager, idp, store, users) -> None:
        await _seed(store, users, expires_at=NOW - timedelta(minutes=1), refresh_token=None)

        assert await manager.get_access_token() is None
        assert idp.requests == []

    @pytest.mark.asyncio
    async def test_refresh_is_persisted(self, manager, idp, store, users) -> None:
        await _seed(store, users, expires_at=NOW + timedelta(minutes=2))
        idp.token_responses.append((200, {"access_token": "fresh", "expires_in": 3600}))

        assert await manager.get_access_token() == "fresh"
        assert store.saves == 1
        assert store.load().tokens.access_token == "fresh"
        assert idp.userinfo_requests == []

    @pytest.mark.asyncio
    async def test_refreshed_token_returned_when_save_fails(self, manager, idp, store, users) -> None:
        await _seed(store, users, expires_at=NOW - timedelta(minutes=1))
        idp.token_responses.append((200, {"access_token": "fresh", "expires_in": 3600}))

        def failing_save(session: StoredSession) -> None:
            raise CredentialStoreError("vault locked")

        store.save = failing_save

        assert await manager.get_access_token() == "fresh"
        assert store.load().tokens.access_token == "stored-access"

    @pytest.mark.asyncio
    async def test_rejected_refresh_clears_session(self, manager, idp, store, users) -> None:
        await _seed(store, users, expires_at=NOW - timedelta(minutes=1))
        idp.token_responses.append((400, {"error": "invalid_grant"}))

        assert await manager.get_access_token() is None
        assert store.raw is None

    @pytest.mark.asyncio
    async def test_unreachable_provider_keeps_session(self, oauth_config, store, users, current_user, listeners) -> None:
        await _seed(store, users, expires_at=NOW - timedelta(minutes=1))
        mock_client = AsyncMock()
        mock_client.is_closed = False
        mock_client.post.side_effect = httpx.ConnectError("offline")
        provider = ProviderClient(oauth_config, http_client=mock_client, clock=lambda: NOW)
        manager = _manager(provider, store, users, current_user, listeners)

        with pytest.raises(ExternalServiceError):
            await manager.get_access_token()
        assert store.raw is not None


class TestCurrentUser:
    @pytest.mark.asyncio
    async def test_require_user_when_logged_out(self, manager) -> None:
        with pytest.raises(NotLoggedInError, match="No user logged in"):
            await manager.require_user()

    @pytest.mark.asyncio
    async def test_current_user_is_a_copy(self, manager, store, users, current_user) -> None:
        user = await _seed(store, users)
        await current_user.set(user)

        fetched = await manager.require_user()
        fetched.email = "changed@example.com"

        assert (await manager.get_current_user()).email == "maria@example.com"
