"""
User models — the local account linked to a provider identity.
"""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(BaseModel):
    """A local user record, keyed by the identity provider's user id."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    provider_user_id: str = Field(description="Stable user id at the provider (OIDC 'sub')")
    email: str
    first_name: str
    last_name: str = ""
    photo_url: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class CreateUser(BaseModel):
    """Request to create (or refresh) a local user from provider identity."""

    provider_user_id: str
    email: str
    first_name: str
    last_name: str = ""
    photo_url: str | None = None
