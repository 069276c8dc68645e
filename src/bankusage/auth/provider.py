"""
Identity provider client — authorization URL, code exchange, refresh, userinfo.

Talks to a single OAuth2 + OIDC provider (Google by default):

- PKCE (S256) and a random CSRF state on every authorization request
- ``access_type=offline`` and ``prompt=consent`` so a refresh token is issued
  even on repeat logins
- One network call per operation, each bounded by the request timeout
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from urllib.parse import urlencode

import httpx

from bankusage.auth.tokens import TokenBundle, utcnow
from bankusage.config import OAuthConfig
from bankusage.errors import AuthError, ExternalServiceError
from bankusage.models.user import CreateUser

logger = logging.getLogger("bankusage.auth.provider")

# Random bytes behind the PKCE verifier (RFC 7636 asks for at least 32).
_PKCE_VERIFIER_BYTES = 64


# ---------------------------------------------------------------------------
# PKCE helpers
# ---------------------------------------------------------------------------

def generate_pkce_pair() -> tuple[str, str]:
    """Generate a PKCE code_verifier and code_challenge pair.

    Returns:
        Tuple of (code_verifier, code_challenge) for OAuth2 PKCE flow.
    """
    # 64 random bytes encode to an 86 character verifier
    code_verifier = base64.urlsafe_b64encode(
        secrets.token_bytes(_PKCE_VERIFIER_BYTES)
    ).decode().rstrip("=")

    digest = hashlib.sha256(code_verifier.encode()).digest()
    code_challenge = base64.urlsafe_b64encode(digest).decode().rstrip("=")

    return code_verifier, code_challenge


@dataclass
class AuthorizationRequest:
    """Everything one login attempt needs to complete the code exchange."""

    authorization_url: str
    csrf_state: str
    pkce_verifier: str

    def __repr__(self) -> str:
        return f"AuthorizationRequest(authorization_url={self.authorization_url!r}, csrf_state='***')"


@dataclass
class IdentityInfo:
    """User identity as reported by the provider's userinfo endpoint."""

    provider_user_id: str
    email: str
    email_verified: bool | None = None
    display_name: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    avatar_url: str | None = None

    @classmethod
    def from_userinfo(cls, data: dict[str, Any]) -> IdentityInfo:
        """Parse an OIDC userinfo response.

        Raises:
            KeyError: If ``sub`` or ``email`` is missing.
        """
        return cls(
            provider_user_id=data["sub"],
            email=data["email"],
            email_verified=data.get("email_verified"),
            display_name=data.get("name"),
            given_name=data.get("given_name"),
            family_name=data.get("family_name"),
            avatar_url=data.get("picture"),
        )

    def to_create_user(self) -> CreateUser:
        return CreateUser(
            provider_user_id=self.provider_user_id,
            email=self.email,
            first_name=self.given_name or "Unknown",
            last_name=self.family_name or "",
            photo_url=self.avatar_url,
        )


class ProviderClient:
    """OAuth2 client for the configured identity provider.

    Usage::

        client = ProviderClient(config.oauth)
        request = client.build_authorization_request()
        # ... user authorizes in the browser, callback yields ``code`` ...
        tokens = await client.exchange_code(code, request.pkce_verifier)
        identity = await client.fetch_identity(tokens.access_token)
    """

    def __init__(
        self,
        config: OAuthConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self._http_client = http_client
        self._clock = clock

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create a reusable httpx client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.config.request_timeout)
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # Authorization request
    # ------------------------------------------------------------------

    def build_authorization_request(self) -> AuthorizationRequest:
        """Build the authorization URL with fresh PKCE and CSRF values.

        Pure construction: no network call is made.
        """
        code_verifier, code_challenge = generate_pkce_pair()
        state = secrets.token_urlsafe(32)

        params: dict[str, str] = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "scope": " ".join(self.config.scopes),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "access_type": "offline",
            "prompt": "consent",
        }

        return AuthorizationRequest(
            authorization_url=f"{self.config.authorize_url}?{urlencode(params)}",
            csrf_state=state,
            pkce_verifier=code_verifier,
        )

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    async def _post_token(self, payload: dict[str, str], action: str) -> dict[str, Any]:
        client = await self._get_client()
        try:
            resp = await client.post(self.config.token_url, data=payload)
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"{action} failed: could not reach provider ({e})") from e

        if not resp.is_success:
            logger.warning("%s rejected by provider: HTTP %d", action, resp.status_code)
            raise AuthError(
                f"{action} failed: provider returned HTTP {resp.status_code}",
                status_code=resp.status_code,
                body=resp.text,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise AuthError(
                f"{action} failed: unreadable provider response",
                status_code=resp.status_code,
                body=resp.text,
            ) from e
        if not isinstance(data, dict) or not data.get("access_token"):
            raise AuthError(
                f"{action} failed: provider response has no access token",
                status_code=resp.status_code,
                body=resp.text,
            )
        return data

    def _to_bundle(self, data: dict[str, Any], action: str) -> TokenBundle:
        try:
            return TokenBundle.from_token_response(data, self._clock())
        except (ValueError, TypeError) as e:
            raise AuthError(f"{action} failed: malformed token response ({e})") from e

    async def exchange_code(self, code: str, pkce_verifier: str) -> TokenBundle:
        """Exchange an authorization code for tokens.

        Args:
            code: The authorization code from the callback.
            pkce_verifier: The verifier generated with the authorization request.

        Raises:
            AuthError: If the provider rejects the code or verifier.
            ExternalServiceError: If the provider cannot be reached.
        """
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.redirect_uri,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "code_verifier": pkce_verifier,
        }
        data = await self._post_token(payload, "Token exchange")
        tokens = self._to_bundle(data, "Token exchange")
        logger.info("Exchanged authorization code for tokens")
        return tokens

    async def refresh(self, refresh_token: str) -> TokenBundle:
        """Refresh the access token.

        Providers often omit the refresh token on refresh; the previous one
        is carried over in that case.

        Raises:
            AuthError: If the provider rejects the refresh token.
            ExternalServiceError: If the provider cannot be reached.
        """
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        logger.debug("Refreshing access token")
        data = await self._post_token(payload, "Token refresh")
        tokens = self._to_bundle(data, "Token refresh")

        if not tokens.refresh_token:
            tokens = TokenBundle(
                access_token=tokens.access_token,
                refresh_token=refresh_token,
                expires_at=tokens.expires_at,
                token_type=tokens.token_type,
            )

        logger.info("Refreshed access token (expires at %s)", tokens.expires_at)
        return tokens

    # ------------------------------------------------------------------
    # Userinfo endpoint
    # ------------------------------------------------------------------

    async def fetch_identity(self, access_token: str) -> IdentityInfo:
        """Fetch the user's identity with a bearer token.

        Raises:
            AuthError: On a non-2xx response (status and body attached).
            ExternalServiceError: If the provider cannot be reached.
        """
        client = await self._get_client()
        try:
            resp = await client.get(
                self.config.userinfo_url,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"Failed to fetch user info: {e}") from e

        if not resp.is_success:
            logger.warning("Userinfo request failed: HTTP %d", resp.status_code)
            raise AuthError(
                f"Provider rejected the identity request (HTTP {resp.status_code})",
                status_code=resp.status_code,
                body=resp.text,
            )

        try:
            return IdentityInfo.from_userinfo(resp.json())
        except (ValueError, KeyError, TypeError) as e:
            raise AuthError(
                "Failed to parse user info",
                status_code=resp.status_code,
                body=resp.text,
            ) from e
