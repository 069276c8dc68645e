"""Shared fixtures: in-memory collaborators and a scripted identity provider."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import httpx
import pytest

from bankusage.auth.provider import ProviderClient
from bankusage.auth.tokens import StoredSession
from bankusage.config import OAuthConfig
from bankusage.errors import CredentialStoreError
from bankusage.models.user import CreateUser, User

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------


class InMemoryCredentialStore:
    """CredentialStore fake keeping the serialized session in memory."""

    def __init__(self) -> None:
        self.raw: str | None = None
        self.saves = 0
        self.clears = 0

    def save(self, session: StoredSession) -> None:
        self.raw = session.to_json()
        self.saves += 1

    def load(self) -> StoredSession | None:
        if self.raw is None:
            return None
        try:
            return StoredSession.from_json(self.raw)
        except ValueError as e:
            raise CredentialStoreError(str(e)) from e

    def clear(self) -> None:
        self.raw = None
        self.clears += 1

    def exists(self) -> bool:
        return self.raw is not None


class InMemoryUserRepository:
    """UserRepository fake keyed by provider user id."""

    def __init__(self) -> None:
        self.users: dict[str, User] = {}

    async def find_or_create_by_provider_id(self, request: CreateUser) -> User:
        existing = self.users.get(request.provider_user_id)
        if existing is not None:
            return existing
        user = User(**request.model_dump())
        self.users[user.provider_user_id] = user
        return user

    async def find_by_provider_id(self, provider_user_id: str) -> User | None:
        return self.users.get(provider_user_id)


# ---------------------------------------------------------------------------
# Scripted identity provider (httpx.MockTransport)
# ---------------------------------------------------------------------------


class FakeIdentityProvider:
    """Answers token and userinfo requests from queued responses."""

    def __init__(self) -> None:
        self.token_responses: list[tuple[int, Any]] = []
        self.userinfo_responses: list[tuple[int, Any]] = []
        self.requests: list[httpx.Request] = []

    @property
    def token_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/token"]

    @property
    def userinfo_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/userinfo"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/token":
            status, body = self.token_responses.pop(0)
        elif request.url.path == "/userinfo":
            status, body = self.userinfo_responses.pop(0)
        else:
            return httpx.Response(404)
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)


USERINFO = {
    "sub": "google-123",
    "email": "maria@example.com",
    "email_verified": True,
    "name": "Maria Papadopoulou",
    "given_name": "Maria",
    "family_name": "Papadopoulou",
    "picture": "https://example.com/maria.png",
}


@pytest.fixture
def oauth_config() -> OAuthConfig:
    return OAuthConfig(
        client_id="test-client",
        client_secret="test-secret",
        callback_port=0,
        authorize_url="https://idp.example.com/authorize",
        token_url="https://idp.example.com/token",
        userinfo_url="https://idp.example.com/userinfo",
        callback_timeout=5.0,
    )


@pytest.fixture
def idp() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def provider(oauth_config: OAuthConfig, idp: FakeIdentityProvider) -> ProviderClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(idp.handler))
    return ProviderClient(oauth_config, http_client=http_client, clock=lambda: NOW)


@pytest.fixture
def store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def users() -> InMemoryUserRepository:
    return InMemoryUserRepository()
