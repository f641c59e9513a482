# OAuth2 router: authorize, callback, register, token, introspect, revoke.
# Created: 2026-10-18

from __future__ import annotations

import base64
import binascii
import json
import logging
from urllib.parse import unquote

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException

from mcpauth.api.oauth2.sessions import (
    SESSION_ID_COOKIE,
    SESSION_STATE_COOKIE,
    AuthorizationRequest,
    ClientHeldState,
)
from mcpauth.api.v1.schemas.oauth2 import (
    ClientRegistrationRequest,
    ClientRegistrationResponse,
    OAuthErrorResponse,
    TokenLookupBody,
    TokenRequestBody,
    TokenResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["OAuth2"])

NO_STORE_HEADERS = {
    "Cache-Control": "no-store",
    "Pragma": "no-cache",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
}


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _too_many_requests(info) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"error": "too_many_requests", "error_description": "Too many requests"},
        headers=info.headers(),
    )


def _oauth_error(error: str, status_code: int = 400, headers: dict | None = None) -> JSONResponse:
    from mcpauth.api.oauth2.server import ERROR_DESCRIPTIONS

    return JSONResponse(
        status_code=status_code,
        content={"error": error, "error_description": ERROR_DESCRIPTIONS.get(error, error)},
        headers=headers,
    )


def _callback_url() -> str:
    from mcpauth.api.oauth2.discovery import endpoint_url
    from mcpauth.api.oauth2.server import get_oauth_server

    return endpoint_url(get_oauth_server().settings, "/oauth/callback")


class MalformedClientCredentials(ValueError):
    """The HTTP Basic Authorization header could not be decoded."""


async def _read_params(request: Request) -> dict[str, str]:
    """Decode a form or JSON body, folding in HTTP Basic client credentials.

    Raises:
        MalformedClientCredentials: malformed Authorization header.
        ValueError: malformed body.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except json.JSONDecodeError as e:
            raise ValueError("Malformed JSON body") from e
        if not isinstance(data, dict):
            raise ValueError("JSON body must be an object")
        params = {k: v for k, v in data.items() if v is not None}
    else:
        try:
            form = await request.form()
        except (StarletteHTTPException, MultiPartException) as e:
            raise ValueError(f"Malformed form body: {getattr(e, 'detail', e)}") from e
        params = {k: str(v) for k, v in form.items()}

    auth = request.headers.get("authorization", "")
    if auth[:6].lower() == "basic ":
        try:
            decoded = base64.b64decode(auth[6:].strip(), validate=True).decode()
        except (binascii.Error, UnicodeDecodeError) as e:
            raise MalformedClientCredentials("Malformed Basic credentials") from e
        client_id, sep, client_secret = decoded.partition(":")
        if not sep:
            raise MalformedClientCredentials("Malformed Basic credentials")
        client_id, client_secret = unquote(client_id), unquote(client_secret)
        if params.get("client_id") and params["client_id"] != client_id:
            raise MalformedClientCredentials("client_id does not match Basic credentials")
        params["client_id"] = client_id
        params["client_secret"] = client_secret
    return params


def _set_session_cookies(response: Response, session_id: str, session_state: str) -> None:
    from mcpauth.api.oauth2.server import get_oauth_server

    settings = get_oauth_server().settings
    for name, value in ((SESSION_ID_COOKIE, session_id), (SESSION_STATE_COOKIE, session_state)):
        response.set_cookie(
            name,
            value,
            max_age=settings.oauth_session_ttl,
            httponly=True,
            secure=settings.cookie_secure,
            samesite="lax",
        )


def _clear_session_cookies(response: Response) -> None:
    for name in (SESSION_ID_COOKIE, SESSION_STATE_COOKIE):
        response.delete_cookie(name)


@router.get("/oauth/authorize")
async def authorize(
    request: Request,
    response_type: str | None = None,
    client_id: str | None = None,
    redirect_uri: str | None = None,
    code_challenge: str | None = None,
    code_challenge_method: str | None = None,
    state: str | None = None,
    scope: str | None = None,
    resource: str | None = None,
):
    """Start an authorization: open a session and send the user to the identity provider."""
    from mcpauth.security.rate_limiter import authorize_limiter

    info = authorize_limiter.check(_client_ip(request))
    if not info.allowed:
        return _too_many_requests(info)

    from mcpauth.api.oauth2.identity import get_identity_provider
    from mcpauth.api.oauth2.server import get_oauth_server

    server = get_oauth_server()
    try:
        start, error = server.sessions.begin(
            AuthorizationRequest(
                response_type=response_type,
                client_id=client_id,
                redirect_uri=redirect_uri,
                code_challenge=code_challenge,
                code_challenge_method=code_challenge_method,
                state=state,
                scope=scope,
                resource=resource,
            )
        )
        if error:
            # Never redirect: the redirect_uri may not have been validated
            return _oauth_error(error)

        provider = get_identity_provider()
        location = provider.authorization_url(start.idp_state, _callback_url())
    except Exception:
        logger.exception("Authorization request failed")
        return _oauth_error("server_error", status_code=500)

    response = RedirectResponse(location, status_code=302)
    _set_session_cookies(
        response, start.client_held.session_id, start.client_held.session_state
    )
    return response


@router.get("/oauth/callback")
async def oauth_callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
):
    """Identity provider redirect target. Sends the user back to the MCP client."""
    from mcpauth.security.rate_limiter import callback_limiter

    info = callback_limiter.check(_client_ip(request))
    if not info.allowed:
        return _too_many_requests(info)

    from mcpauth.api.oauth2.identity import get_identity_provider
    from mcpauth.api.oauth2.server import get_oauth_server

    server = get_oauth_server()
    session_id = request.cookies.get(SESSION_ID_COOKIE)
    session_state = request.cookies.get(SESSION_STATE_COOKIE)
    client_held = (
        ClientHeldState(session_id=session_id, session_state=session_state)
        if session_id and session_state
        else None
    )

    try:
        session, recover_error = server.sessions.recover(client_held, state)
        if recover_error:
            response = _oauth_error(recover_error, status_code=401)
            _clear_session_cookies(response)
            return response

        location = None
        if error or not code:
            logger.info("Identity provider returned no code (error=%s)", error)
            location = server.fail_authentication(session.session_id, "access_denied")
        else:
            try:
                identity = await get_identity_provider().authenticate(code, _callback_url())
            except (httpx.HTTPError, KeyError, ValueError) as e:
                logger.warning("Identity provider authentication failed: %s", e)
                location = server.fail_authentication(session.session_id, "access_denied")
            else:
                location, complete_error = server.complete_authentication(
                    identity, client_held.session_id, client_held.session_state
                )
                if complete_error:
                    location = None
    except Exception:
        logger.exception("OAuth callback failed")
        return _oauth_error("server_error", status_code=500)

    if location is None:
        response = _oauth_error("access_denied", status_code=401)
    else:
        response = RedirectResponse(location, status_code=302)
    _clear_session_cookies(response)
    return response


@router.post(
    "/oauth/register",
    status_code=201,
    response_model=ClientRegistrationResponse,
    responses={400: {"model": OAuthErrorResponse}},
)
async def register_client(request: Request, body: ClientRegistrationRequest):
    """Dynamic client registration (RFC 7591)."""
    from mcpauth.security.rate_limiter import token_limiter

    info = token_limiter.check(_client_ip(request))
    if not info.allowed:
        return _too_many_requests(info)

    from mcpauth.api.oauth2.server import get_oauth_server

    try:
        client = get_oauth_server().clients.register(body.to_registration())
    except ValueError as e:
        return JSONResponse(
            status_code=400,
            content={"error": "invalid_client_metadata", "error_description": str(e)},
        )

    payload = ClientRegistrationResponse(
        client_id=client.client_id,
        client_name=client.client_name,
        redirect_uris=client.redirect_uris,
        grant_types=client.grant_types,
        response_types=client.response_types,
        token_endpoint_auth_method=client.token_endpoint_auth_method,
        client_secret=client.client_secret,
        client_id_issued_at=int(client.created_at.timestamp()),
        client_secret_expires_at=0 if client.client_secret else None,
        client_description=client.client_description,
        logo_uri=client.logo_uri,
        client_uri=client.client_uri,
        developer_name=client.developer_name,
        developer_email=client.developer_email,
    )
    return JSONResponse(
        status_code=201,
        content=payload.model_dump(exclude_none=True),
        headers=NO_STORE_HEADERS,
    )


@router.post(
    "/oauth/token",
    response_model=TokenResponse,
    responses={400: {"model": OAuthErrorResponse}, 401: {"model": OAuthErrorResponse}},
)
async def token_exchange(request: Request):
    """Exchange an authorization code or refresh token for tokens."""
    from mcpauth.security.rate_limiter import token_limiter

    info = token_limiter.check(_client_ip(request))
    if not info.allowed:
        return _too_many_requests(info)

    from mcpauth.api.oauth2.server import get_oauth_server

    try:
        params = await _read_params(request)
    except MalformedClientCredentials as e:
        logger.info("Rejected token request: %s", e)
        return _oauth_error("invalid_client", status_code=401, headers=NO_STORE_HEADERS)
    except ValueError as e:
        logger.info("Rejected token request: %s", e)
        return _oauth_error("invalid_request", headers=NO_STORE_HEADERS)

    try:
        body = TokenRequestBody.model_validate(params)
    except ValidationError:
        return _oauth_error("invalid_request", headers=NO_STORE_HEADERS)

    try:
        pair, error = get_oauth_server().token(body.to_request())
    except Exception:
        logger.exception("Token request failed")
        return _oauth_error("server_error", status_code=500, headers=NO_STORE_HEADERS)

    if error:
        status_code = 401 if error == "invalid_client" else 400
        return _oauth_error(error, status_code=status_code, headers=NO_STORE_HEADERS)

    return JSONResponse(content=pair.to_dict(), headers=NO_STORE_HEADERS)


async def _read_lookup(request: Request):
    try:
        params = await _read_params(request)
        return TokenLookupBody.model_validate(params).to_request()
    except (ValueError, ValidationError) as e:
        logger.debug("Malformed token lookup request: %s", e)
        return None


@router.post("/oauth/introspect")
async def introspect_token(request: Request):
    """Token introspection (RFC 7662). Always 200."""
    from mcpauth.security.rate_limiter import token_limiter

    info = token_limiter.check(_client_ip(request))
    if not info.allowed:
        return _too_many_requests(info)

    from mcpauth.api.oauth2.server import get_oauth_server

    lookup = await _read_lookup(request)
    if lookup is None:
        return JSONResponse(content={"active": False}, headers=NO_STORE_HEADERS)
    return JSONResponse(content=get_oauth_server().introspect(lookup), headers=NO_STORE_HEADERS)


@router.post("/oauth/revoke")
async def revoke_token(request: Request):
    """Token revocation (RFC 7009). Always 200, whatever happened."""
    from mcpauth.security.rate_limiter import token_limiter

    info = token_limiter.check(_client_ip(request))
    if not info.allowed:
        return _too_many_requests(info)

    from mcpauth.api.oauth2.server import get_oauth_server

    lookup = await _read_lookup(request)
    if lookup is not None:
        get_oauth_server().revoke(lookup)
    return Response(status_code=200, headers=NO_STORE_HEADERS)
