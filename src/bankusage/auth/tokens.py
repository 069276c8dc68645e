"""
Token bundle, stored session, and the expiry/refresh policy.

A TokenBundle is never updated in place: exchanging a code or refreshing
produces a new bundle. The policy functions take ``now`` explicitly so the
decision is a pure function of the bundle and the clock.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

# Refresh slightly before the provider would reject the token.
EXPIRY_BUFFER = timedelta(minutes=5)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class TokenBundle:
    """OAuth2 tokens issued by the provider.

    ``expires_at`` of ``None`` means the access token never expires.
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"

    def __repr__(self) -> str:
        return (
            f"TokenBundle(access_token='***', refresh_token={'***' if self.refresh_token else None}, "
            f"expires_at={self.expires_at!r}, token_type={self.token_type!r})"
        )

    @classmethod
    def from_token_response(cls, data: dict[str, Any], now: datetime) -> TokenBundle:
        """Parse a standard OAuth2 token endpoint response.

        Raises:
            KeyError: If the response carries no access token.
        """
        expires_in = data.get("expires_in")
        expires_at = now + timedelta(seconds=int(expires_in)) if expires_in is not None else None
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or None,
            expires_at=expires_at,
            token_type=data.get("token_type") or "Bearer",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "token_type": self.token_type,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenBundle:
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=_parse_timestamp(data.get("expires_at")),
            token_type=data.get("token_type", "Bearer"),
        )


@dataclass(frozen=True)
class StoredSession:
    """The single persisted record meaning "a user is logged in"."""

    tokens: TokenBundle
    local_user_id: str
    provider_user_id: str
    email: str

    def with_tokens(self, tokens: TokenBundle) -> StoredSession:
        return StoredSession(
            tokens=tokens,
            local_user_id=self.local_user_id,
            provider_user_id=self.provider_user_id,
            email=self.email,
        )

    def to_json(self) -> str:
        return json.dumps({
            "tokens": self.tokens.to_dict(),
            "local_user_id": self.local_user_id,
            "provider_user_id": self.provider_user_id,
            "email": self.email,
        })

    @classmethod
    def from_json(cls, raw: str) -> StoredSession:
        """Decode a stored session.

        Raises:
            ValueError: If ``raw`` is not a complete session record.
        """
        try:
            data = json.loads(raw)
            return cls(
                tokens=TokenBundle.from_dict(data["tokens"]),
                local_user_id=data["local_user_id"],
                provider_user_id=data["provider_user_id"],
                email=data["email"],
            )
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise ValueError(f"Malformed stored session: {e}") from e


# ---------------------------------------------------------------------------
# Lifecycle policy
# ---------------------------------------------------------------------------

def is_expired(bundle: TokenBundle, now: datetime) -> bool:
    """True once ``now`` is within the buffer of ``expires_at``."""
    if bundle.expires_at is None:
        return False
    return now >= bundle.expires_at - EXPIRY_BUFFER


def needs_refresh(bundle: TokenBundle, now: datetime) -> bool:
    """True if the token is expired and can be repaired with a refresh token.

    An expired bundle without a refresh token returns False; callers treat
    that as a lost session.
    """
    return is_expired(bundle, now) and bool(bundle.refresh_token)
