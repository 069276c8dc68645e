"""
bankusage configuration management.

Supports loading from YAML files, environment variables, and keyword overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from bankusage.errors import ConfigError

DEFAULT_CALLBACK_PORT = 8085
DEFAULT_DATA_DIR = Path.home() / ".bankusage"

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"

DEFAULT_SCOPES = [
    "openid",
    "email",
    "profile",
    "https://www.googleapis.com/auth/gmail.readonly",
]


class OAuthConfig(BaseModel):
    """Identity provider (OAuth2 + OIDC) configuration."""

    client_id: str = Field(default="", description="OAuth client id (GOOGLE_CLIENT_ID)")
    client_secret: str = Field(default="", description="OAuth client secret (GOOGLE_CLIENT_SECRET)")
    callback_port: int = Field(default=DEFAULT_CALLBACK_PORT, ge=0, le=65535)
    authorize_url: str = GOOGLE_AUTH_URL
    token_url: str = GOOGLE_TOKEN_URL
    userinfo_url: str = GOOGLE_USERINFO_URL
    scopes: list[str] = Field(default_factory=lambda: list(DEFAULT_SCOPES))
    request_timeout: float = Field(default=30.0, gt=0, description="Per-request timeout in seconds")
    callback_timeout: float = Field(default=300.0, gt=0, description="Browser login timeout in seconds")

    @field_validator("authorize_url", "token_url", "userinfo_url")
    @classmethod
    def validate_endpoint_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"must be an http(s) URL, got {value!r}")
        return value

    @property
    def redirect_uri(self) -> str:
        return f"http://127.0.0.1:{self.callback_port}/callback"


class StorageConfig(BaseModel):
    """Where the single login session is kept."""

    backend: Literal["keyring", "file"] = Field(
        default="keyring",
        description="keyring = OS credential vault, file = encrypted file fallback",
    )
    service_name: str = "bankusage"
    account_key: str = "google_oauth_tokens"
    token_dir: Path = Field(default=DEFAULT_DATA_DIR / "tokens")


class BankUsageConfig(BaseModel):
    """Root configuration for bankusage."""

    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    database_url: str = Field(default=f"sqlite:///{DEFAULT_DATA_DIR / 'bankusage.db'}")
    log_level: str = Field(default="INFO")

    @classmethod
    def load(cls, config_path: str | None = None, **overrides: Any) -> BankUsageConfig:
        """Load configuration from file, env vars, and overrides.

        Priority: overrides > env vars > config file > defaults.

        Raises:
            ConfigError: If a value cannot be parsed.
        """
        data: dict[str, Any] = {}

        # 1. Load from YAML file if provided
        if config_path:
            path = Path(config_path)
            if path.exists():
                with open(path) as f:
                    data = yaml.safe_load(f) or {}

        # 2. Override from environment variables
        env_client_id = os.environ.get("GOOGLE_CLIENT_ID")
        env_client_secret = os.environ.get("GOOGLE_CLIENT_SECRET")
        env_port = os.environ.get("OAUTH_CALLBACK_PORT")

        if env_client_id or env_client_secret or env_port:
            oauth = data.get("oauth", {})
            if env_client_id:
                oauth["client_id"] = env_client_id
            if env_client_secret:
                oauth["client_secret"] = env_client_secret
            if env_port:
                try:
                    oauth["callback_port"] = int(env_port)
                except ValueError:
                    raise ConfigError(
                        f"OAUTH_CALLBACK_PORT must be an integer, got {env_port!r}"
                    ) from None
            data["oauth"] = oauth

        env_backend = os.environ.get("BANKUSAGE_CREDENTIAL_BACKEND")
        if env_backend:
            storage = data.get("storage", {})
            storage["backend"] = env_backend.lower()
            data["storage"] = storage

        env_db = os.environ.get("BANKUSAGE_DATABASE_URL")
        if env_db:
            data["database_url"] = env_db

        env_level = os.environ.get("BANKUSAGE_LOG_LEVEL")
        if env_level:
            data["log_level"] = env_level.upper()

        # 3. Apply keyword overrides
        data.update(overrides)

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def require_oauth_credentials(self) -> None:
        """Fail fast when the provider credentials are not configured.

        Raises:
            ConfigError: If the client id or secret is empty.
        """
        if not self.oauth.client_id or not self.oauth.client_secret:
            raise ConfigError(
                "Google OAuth credentials not configured. "
                "Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET."
            )
