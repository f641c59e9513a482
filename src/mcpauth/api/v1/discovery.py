# Discovery router: RFC 8414 / RFC 9728 well-known documents.
# Created: 2026-10-18
#
# Served at the server root, not under /api/v1.

from __future__ import annotations

from fastapi import APIRouter

router = APIRouter(tags=["Discovery"])


def _settings():
    from mcpauth.api.oauth2.server import get_oauth_server

    return get_oauth_server().settings


@router.get("/.well-known/oauth-authorization-server")
async def authorization_server_metadata():
    from mcpauth.api.oauth2.discovery import authorization_server_metadata

    return authorization_server_metadata(_settings())


@router.get("/.well-known/oauth-protected-resource")
@router.get("/.well-known/oauth-protected-resource/mcp")
async def protected_resource_metadata():
    from mcpauth.api.oauth2.discovery import protected_resource_metadata

    return protected_resource_metadata(_settings())
