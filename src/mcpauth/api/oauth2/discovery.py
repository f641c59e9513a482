# Discovery metadata documents.
# Created: 2026-10-18
#
# RFC 8414 (authorization server metadata) and RFC 9728 (protected resource
# metadata). Endpoints live under the /api/v1 prefix of the server URL.

from __future__ import annotations

from typing import Any

from mcpauth.api.oauth2.models import AUTH_METHODS
from mcpauth.config import Settings

API_PREFIX = "/api/v1"


def _compact(doc: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in doc.items() if v is not None}


def endpoint_url(settings: Settings, path: str) -> str:
    return f"{settings.issuer}{API_PREFIX}{path}"


def resource_metadata_url(settings: Settings) -> str:
    return f"{settings.issuer}/.well-known/oauth-protected-resource/mcp"


def authorization_server_metadata(settings: Settings) -> dict[str, Any]:
    methods = ["S256"]
    if settings.allow_plain_pkce:
        methods.append("plain")
    return _compact(
        {
            "issuer": settings.issuer,
            "authorization_endpoint": endpoint_url(settings, "/oauth/authorize"),
            "token_endpoint": endpoint_url(settings, "/oauth/token"),
            "registration_endpoint": endpoint_url(settings, "/oauth/register"),
            "revocation_endpoint": endpoint_url(settings, "/oauth/revoke"),
            "introspection_endpoint": endpoint_url(settings, "/oauth/introspect"),
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "code_challenge_methods_supported": methods,
            "token_endpoint_auth_methods_supported": sorted(AUTH_METHODS),
            "revocation_endpoint_auth_methods_supported": sorted(AUTH_METHODS),
            "introspection_endpoint_auth_methods_supported": sorted(AUTH_METHODS),
            "scopes_supported": settings.scopes_supported or None,
        }
    )


def protected_resource_metadata(settings: Settings) -> dict[str, Any]:
    return _compact(
        {
            "resource": settings.resource,
            "authorization_servers": [settings.issuer],
            "scopes_supported": settings.scopes_supported or None,
            "bearer_methods_supported": settings.bearer_methods_supported or None,
            "resource_name": settings.resource_name or None,
        }
    )
