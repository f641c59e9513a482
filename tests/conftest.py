# Shared fixtures for the mcpauth test suite.
# Created: 2026-10-18

from urllib.parse import urlencode

import pytest

from mcpauth.api.oauth2.identity import Identity
from mcpauth.api.oauth2.models import UserProfile

HMAC_SECRET = "test-hmac-secret-0123456789abcdef0123456789"
SERVER_URL = "http://localhost:8888"
RESOURCE = "http://localhost:8888/mcp"


class FakeIdentityProvider:
    """Identity provider that accepts any code and returns a fixed user."""

    name = "test-idp"

    def __init__(self, user_id: str = "idp-user-1", username: str = "alice"):
        self.user_id = user_id
        self.username = username
        self.calls: list[tuple[str, str]] = []

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        return "https://idp.example/authorize?" + urlencode(
            {"state": state, "redirect_uri": redirect_uri}
        )

    async def authenticate(self, code: str, redirect_uri: str) -> Identity:
        self.calls.append((code, redirect_uri))
        return Identity(
            provider=self.name,
            profile=UserProfile(id=self.user_id, username=self.username, email="alice@example.com"),
            access_token=f"idp-access-{code}",
            refresh_token="idp-refresh",
        )


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    """Point every singleton at a temp dir and reset them around each test."""
    from mcpauth.api.oauth2.identity import reset_identity_provider
    from mcpauth.api.oauth2.server import reset_oauth_server
    from mcpauth.config import reset_settings
    from mcpauth.security.audit import reset_audit_logger
    from mcpauth.security.rate_limiter import authorize_limiter, callback_limiter, token_limiter

    monkeypatch.setenv("MCPAUTH_CONFIG_DIR", str(tmp_path))
    monkeypatch.setenv("MCPAUTH_HMAC_SECRET", HMAC_SECRET)
    monkeypatch.setenv("MCPAUTH_SERVER_URL", SERVER_URL)
    monkeypatch.setenv("MCPAUTH_RESOURCE", RESOURCE)
    monkeypatch.setenv("MCPAUTH_COOKIE_SECURE", "false")

    def _reset():
        reset_settings()
        reset_audit_logger()
        reset_oauth_server()
        reset_identity_provider()
        for limiter in (authorize_limiter, callback_limiter, token_limiter):
            limiter.reset()

    _reset()
    yield
    _reset()


@pytest.fixture
def settings(tmp_path):
    from mcpauth.config import Settings

    return Settings(
        _env_file=None,
        hmac_secret=HMAC_SECRET,
        server_url=SERVER_URL,
        resource=RESOURCE,
        cookie_secure=False,
        config_dir=tmp_path,
    )


@pytest.fixture
def store():
    from mcpauth.api.oauth2.store import InMemoryOAuthStore

    return InMemoryOAuthStore()


@pytest.fixture
def server(settings, store):
    from mcpauth.api.oauth2.server import AuthorizationServer

    return AuthorizationServer(settings=settings, store=store)


@pytest.fixture
def fake_idp():
    from mcpauth.api.oauth2.identity import set_identity_provider

    provider = FakeIdentityProvider()
    set_identity_provider(provider)
    return provider
