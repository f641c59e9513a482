# Configuration for the mcpauth authorization server.
# Created: 2026-10-18
#
# Loads settings from environment variables with the MCPAUTH_ prefix
# (or a .env file in the working directory).

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Authorization server settings."""

    # Public base URL of this server (issuer in the discovery document)
    server_url: str = "http://localhost:8888"

    # Protected MCP resource identifier (RFC 8707 audience), e.g. "http://localhost:8888/mcp"
    resource: str = "http://localhost:8888/mcp"

    # Key used to bind OAuth sessions to the IdP "state" parameter
    hmac_secret: str = ""

    # Lifetimes in seconds
    access_token_ttl: int = 60
    refresh_token_ttl: int = 30 * 24 * 60 * 60
    oauth_session_ttl: int = 10 * 60
    auth_code_ttl: int = 10 * 60

    # Discovery metadata
    scopes_supported: list[str] = Field(default_factory=lambda: ["offline_access"])
    bearer_methods_supported: list[str] = Field(default_factory=lambda: ["header"])
    resource_name: str = "MCP Server"

    # Legacy switch: accept code_challenge_method=plain when verifying codes
    allow_plain_pkce: bool = False

    # Client-initiated revocation of a refresh token removes its whole family
    revoke_refresh_family: bool = False

    # Client-held session cookies
    cookie_secure: bool = True

    # Fernet key for provider tokens at rest (urlsafe base64, 32 bytes)
    encryption_key: str | None = None

    # Upstream identity provider (OpenID Connect)
    provider_name: str = "oidc"
    provider_client_id: str = ""
    provider_client_secret: str = ""
    provider_authorize_url: str = ""
    provider_token_url: str = ""
    provider_userinfo_url: str = ""
    provider_scopes: list[str] = Field(default_factory=lambda: ["openid", "profile", "email"])

    # Local state (audit log, optional store file)
    config_dir: Path | None = None

    # Persist clients, profiles and token metadata of the in-memory store to
    # <config_dir>/oauth_store.json
    persist_store: bool = False

    # Logging / server
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8888

    model_config = SettingsConfigDict(
        env_prefix="MCPAUTH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def issuer(self) -> str:
        return self.server_url.rstrip("/")

    def validate_security_config(self) -> None:
        """Fail fast on settings the engine cannot run safely without."""
        if not self.hmac_secret:
            raise ValueError(
                "MCPAUTH_HMAC_SECRET is required. It binds OAuth sessions to the "
                "identity provider redirect and must be a long random value."
            )
        if len(self.hmac_secret) < 32:
            raise ValueError("MCPAUTH_HMAC_SECRET must be at least 32 characters long.")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def reset_settings() -> None:
    get_settings.cache_clear()


def get_config_dir() -> Path:
    """Return (and create) the directory for local state such as the audit log."""
    settings = get_settings()
    path = settings.config_dir or Path.home() / ".mcpauth"
    path.mkdir(parents=True, exist_ok=True)
    return path
