# OAuth 2.1 data models.
# Created: 2026-10-18

from __future__ import annotations

import base64
import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

AUTH_METHOD_NONE = "none"
AUTH_METHODS = frozenset({"none", "client_secret_basic", "client_secret_post"})


def utcnow() -> datetime:
    return datetime.now(UTC)


def b64url(data: bytes) -> str:
    """Base64url without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def random_token(nbytes: int) -> str:
    return b64url(secrets.token_bytes(nbytes))


@dataclass
class ClientRegistration:
    """Client metadata submitted for dynamic registration (RFC 7591)."""

    client_name: str
    redirect_uris: list[str]
    grant_types: list[str] = field(default_factory=lambda: ["authorization_code", "refresh_token"])
    response_types: list[str] = field(default_factory=lambda: ["code"])
    token_endpoint_auth_method: str = AUTH_METHOD_NONE
    client_description: str | None = None
    logo_uri: str | None = None
    client_uri: str | None = None
    developer_name: str | None = None
    developer_email: str | None = None


@dataclass
class OAuthClient:
    """Registered OAuth client.

    ``client_secret`` holds the bcrypt hash when stored. Only the object returned
    from registration carries the plaintext secret.
    """

    client_id: str
    client_name: str
    redirect_uris: list[str] = field(default_factory=list)
    grant_types: list[str] = field(default_factory=lambda: ["authorization_code", "refresh_token"])
    response_types: list[str] = field(default_factory=lambda: ["code"])
    token_endpoint_auth_method: str = AUTH_METHOD_NONE
    client_secret: str | None = None
    client_description: str | None = None
    logo_uri: str | None = None
    client_uri: str | None = None
    developer_name: str | None = None
    developer_email: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_confidential(self) -> bool:
        return self.client_secret is not None


@dataclass
class OAuthSession:
    """In-flight authorization, alive between /authorize and the IdP callback."""

    session_id: str
    state: str  # HMAC binding, also sent to the IdP as "state"
    expires_at: datetime
    client_id: str | None = None
    redirect_uri: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    oauth_state: str | None = None  # MCP client's own state, forwarded verbatim
    scope: str | None = None
    resource: str | None = None

    @property
    def is_expired(self) -> bool:
        return self.expires_at <= utcnow()


@dataclass
class AuthorizationCode:
    """Single-use authorization code bound to a PKCE challenge."""

    code: str
    user_id: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str  # "S256" (or legacy "plain")
    expires_at: datetime
    user_profile_id: str
    resource: str | None = None
    scope: str = ""

    @property
    def is_expired(self) -> bool:
        return self.expires_at <= utcnow()


@dataclass
class AccessTokenMetadata:
    user_id: str
    client_id: str
    scope: str
    resource: str
    expires_at: datetime
    user_profile_id: str
    family_id: str | None = None

    @property
    def is_expired(self) -> bool:
        return self.expires_at <= utcnow()


@dataclass
class RefreshTokenMetadata:
    user_id: str
    client_id: str
    scope: str
    resource: str
    expires_at: datetime
    user_profile_id: str
    family_id: str
    generation: int = 0

    @property
    def is_expired(self) -> bool:
        return self.expires_at <= utcnow()


@dataclass
class TokenPair:
    """Token endpoint response. Never persisted."""

    access_token: str
    refresh_token: str
    expires_in: int
    scope: str = ""
    token_type: str = "bearer"

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "scope": self.scope,
        }


@dataclass
class UserProfile:
    """End-user profile as reported by the identity provider."""

    id: str
    username: str
    email: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class StoredUserProfile:
    """User profile record, stable per (provider, provider user id)."""

    profile_id: str
    provider: str
    profile: UserProfile
    encrypted_access_token: str | None = None
    encrypted_refresh_token: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class TokenRequest:
    """Token endpoint parameters after transport decoding (form, JSON, Basic auth)."""

    grant_type: str
    code: str | None = None
    redirect_uri: str | None = None
    code_verifier: str | None = None
    refresh_token: str | None = None
    scope: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    resource: str | None = None
    audience: str | None = None


@dataclass
class TokenLookupRequest:
    """Introspection (RFC 7662) and revocation (RFC 7009) parameters."""

    token: str
    token_type_hint: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
