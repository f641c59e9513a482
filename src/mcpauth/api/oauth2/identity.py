# Upstream identity provider adapter.
# Created: 2026-10-18
#
# The authorization server never authenticates users itself: it sends them to
# an identity provider and turns the provider's answer into an Identity.

from __future__ import annotations

import logging
import urllib.parse
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import httpx

from mcpauth.api.oauth2.models import UserProfile

if TYPE_CHECKING:
    from mcpauth.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class Identity:
    """Authenticated end user as returned by an identity provider."""

    provider: str
    profile: UserProfile
    access_token: str
    refresh_token: str | None = None


@runtime_checkable
class IdentityProviderProtocol(Protocol):
    name: str

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        """URL the end user is sent to. *state* must come back unchanged."""
        ...

    async def authenticate(self, code: str, redirect_uri: str) -> Identity:
        """Exchange the provider's code and fetch the user profile."""
        ...


class OIDCIdentityProvider:
    """Generic OpenID Connect provider (authorize, token, userinfo endpoints).

    Args:
        name: Provider name recorded on user profiles.
        client_id: Client ID registered with the provider.
        client_secret: Client secret registered with the provider.
        authorize_url: Provider authorization endpoint.
        token_url: Provider token endpoint.
        userinfo_url: Provider userinfo endpoint.
        scopes: Scopes requested from the provider.
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        name: str,
        client_id: str,
        client_secret: str,
        authorize_url: str,
        token_url: str,
        userinfo_url: str,
        scopes: list[str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.name = name
        self.client_id = client_id
        self.client_secret = client_secret
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.userinfo_url = userinfo_url
        self.scopes = scopes or ["openid", "profile", "email"]
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> OIDCIdentityProvider:
        missing = [
            name
            for name in (
                "provider_client_id",
                "provider_authorize_url",
                "provider_token_url",
                "provider_userinfo_url",
            )
            if not getattr(settings, name)
        ]
        if missing:
            raise RuntimeError(
                "Identity provider is not configured. Missing: "
                + ", ".join(f"MCPAUTH_{m.upper()}" for m in missing)
            )
        return cls(
            name=settings.provider_name,
            client_id=settings.provider_client_id,
            client_secret=settings.provider_client_secret,
            authorize_url=settings.provider_authorize_url,
            token_url=settings.provider_token_url,
            userinfo_url=settings.provider_userinfo_url,
            scopes=settings.provider_scopes,
        )

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
        }
        sep = "&" if "?" in self.authorize_url else "?"
        return f"{self.authorize_url}{sep}{urllib.parse.urlencode(params)}"

    async def authenticate(self, code: str, redirect_uri: str) -> Identity:
        async with httpx.AsyncClient(timeout=15, transport=self._transport) as client:
            resp = await client.post(
                self.token_url,
                data={
                    "code": code,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "redirect_uri": redirect_uri,
                    "grant_type": "authorization_code",
                },
                headers={"Accept": "application/json"},
            )
            resp.raise_for_status()
            tokens = resp.json()

            resp = await client.get(
                self.userinfo_url,
                headers={"Authorization": f"Bearer {tokens['access_token']}"},
            )
            resp.raise_for_status()
            claims = resp.json()

        profile = profile_from_claims(claims)
        logger.info("Authenticated %s via %s", profile.username, self.name)
        return Identity(
            provider=self.name,
            profile=profile,
            access_token=tokens["access_token"],
            refresh_token=tokens.get("refresh_token"),
        )


def profile_from_claims(claims: dict) -> UserProfile:
    """Map standard OIDC claims onto a UserProfile."""
    sub = str(claims["sub"])
    return UserProfile(
        id=sub,
        username=claims.get("preferred_username") or claims.get("email") or sub,
        email=claims.get("email"),
        display_name=claims.get("name"),
        avatar_url=claims.get("picture"),
        raw=claims,
    )


# Singleton
_provider: IdentityProviderProtocol | None = None


def get_identity_provider() -> IdentityProviderProtocol:
    global _provider
    if _provider is None:
        from mcpauth.config import get_settings

        _provider = OIDCIdentityProvider.from_settings(get_settings())
    return _provider


def set_identity_provider(provider: IdentityProviderProtocol) -> None:
    global _provider
    _provider = provider


def reset_identity_provider() -> None:
    global _provider
    _provider = None
