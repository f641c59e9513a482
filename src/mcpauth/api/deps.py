# Shared FastAPI dependencies for the API layer.
# Created: 2026-10-18

from __future__ import annotations

from fastapi import HTTPException, Request

from mcpauth.api.oauth2.models import AccessTokenMetadata


def _challenge(error: str, description: str) -> str:
    from mcpauth.api.oauth2.discovery import resource_metadata_url
    from mcpauth.api.oauth2.server import get_oauth_server

    metadata_url = resource_metadata_url(get_oauth_server().settings)
    return (
        f'Bearer resource_metadata="{metadata_url}", '
        f'error="{error}", error_description="{description}"'
    )


async def require_access_token(request: Request) -> AccessTokenMetadata:
    """FastAPI dependency that admits requests carrying a valid access token.

    Usage::

        @router.post("/mcp")
        async def mcp(token: AccessTokenMetadata = Depends(require_access_token)): ...

    The token must be live and issued for this server's resource. On success
    the metadata is also stored on ``request.state.oauth_token``.
    """
    from mcpauth.api.oauth2.server import get_oauth_server

    auth = request.headers.get("authorization", "")
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=401,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": _challenge("invalid_token", "Missing bearer token")},
        )

    metadata = get_oauth_server().verify_access_token(token.strip())
    if metadata is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid or expired access token",
            headers={
                "WWW-Authenticate": _challenge("invalid_token", "Invalid or expired access token")
            },
        )

    request.state.oauth_token = metadata
    return metadata
