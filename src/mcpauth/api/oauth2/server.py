# OAuth 2.1 authorization server for MCP backends.
# Created: 2026-10-18
#
# Authorization code flow with PKCE (RFC 7636), resource indicators
# (RFC 8707), introspection (RFC 7662) and revocation (RFC 7009). End users
# authenticate at an upstream identity provider; MCP clients receive this
# server's own opaque tokens.

from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import timedelta
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from mcpauth.api.oauth2.clients import ClientRegistry
from mcpauth.api.oauth2.identity import Identity
from mcpauth.api.oauth2.models import (
    AccessTokenMetadata,
    AuthorizationCode,
    RefreshTokenMetadata,
    TokenLookupRequest,
    TokenPair,
    TokenRequest,
    b64url,
    random_token,
    utcnow,
)
from mcpauth.api.oauth2.sessions import AuthorizationSessionCoordinator
from mcpauth.api.oauth2.store import InMemoryOAuthStore, OAuthStoreProtocol
from mcpauth.api.oauth2.tokens import OpaqueTokenManager
from mcpauth.config import Settings, get_config_dir, get_settings
from mcpauth.security.audit import get_audit_logger

logger = logging.getLogger(__name__)

CODE_BYTES = 32

# Short, non-sensitive descriptions. They never say which check failed.
ERROR_DESCRIPTIONS: dict[str, str] = {
    "invalid_request": "The request is missing a required parameter or is malformed",
    "invalid_client": "Client authentication failed",
    "invalid_grant": "The provided authorization grant is invalid or expired",
    "unauthorized_client": "The client is not authorized to use this grant type",
    "unsupported_grant_type": "The authorization grant type is not supported",
    "unsupported_response_type": "The response type is not supported",
    "invalid_scope": "The requested scope is invalid or exceeds the granted scope",
    "invalid_target": "The requested resource is invalid or not served by this server",
    "access_denied": "The authorization request was denied",
    "server_error": "The authorization server encountered an unexpected error",
}

_INACTIVE: dict[str, Any] = {"active": False}


def verify_pkce(
    code_verifier: str, code_challenge: str, method: str, allow_plain: bool = False
) -> bool:
    """Check a PKCE verifier against the stored challenge.

    S256: BASE64URL(SHA256(code_verifier)) == code_challenge.
    """
    if not code_verifier or not code_challenge:
        return False
    if method == "S256":
        computed = b64url(hashlib.sha256(code_verifier.encode()).digest())
        return hmac.compare_digest(computed.encode(), code_challenge.encode())
    if method == "plain" and allow_plain:
        return hmac.compare_digest(code_verifier.encode(), code_challenge.encode())
    return False


def _append_query(url: str, params: dict[str, str]) -> str:
    """Add *params* to *url*, keeping its existing query string."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


def _default_store(settings: Settings) -> InMemoryOAuthStore:
    encryption = None
    if settings.encryption_key:
        from mcpauth.api.oauth2.encryption import FernetEncryptionService

        encryption = FernetEncryptionService(settings.encryption_key)
    else:
        logger.warning(
            "MCPAUTH_ENCRYPTION_KEY is not set; identity provider tokens will not be stored"
        )
    persist_path = get_config_dir() / "oauth_store.json" if settings.persist_store else None
    return InMemoryOAuthStore(encryption=encryption, persist_path=persist_path)


class AuthorizationServer:
    """Authorization code exchange engine.

    Methods return (result, error) where error is an OAuth error code. Store
    exceptions are not caught here (except by introspection and revocation)
    and reach the HTTP layer.
    """

    def __init__(self, settings: Settings | None = None, store: OAuthStoreProtocol | None = None):
        self.settings = settings or get_settings()
        self.settings.validate_security_config()
        self.store = store if store is not None else _default_store(self.settings)
        self.clients = ClientRegistry(self.store)
        self.sessions = AuthorizationSessionCoordinator(self.settings, self.store, self.clients)
        self.tokens = OpaqueTokenManager(self.settings, self.store)

    # -- identity provider callback --------------------------------------

    def complete_authentication(
        self, identity: Identity | None, session_id: str | None, session_state: str | None
    ) -> tuple[str | None, str | None]:
        """Mint an authorization code for an authenticated user.

        Returns (redirect_url, error). The redirect URL points at the client's
        redirect_uri with ``code`` and ``state`` appended.
        """
        if identity is None or not session_id or not session_state:
            return None, "access_denied"

        session, error = self.sessions.verify_binding(session_id, session_state)
        if error:
            return None, error

        if not (
            session.client_id
            and session.redirect_uri
            and session.code_challenge
            and session.code_challenge_method
        ):
            logger.warning("Session %s… is missing authorization parameters", session_id[:8])
            self.sessions.discard(session_id)
            return None, "access_denied"

        user_profile_id = self.store.upsert_user_profile(identity)

        code = random_token(CODE_BYTES)
        self.store.store_auth_code(
            AuthorizationCode(
                code=code,
                user_id=identity.profile.username,
                client_id=session.client_id,
                redirect_uri=session.redirect_uri,
                code_challenge=session.code_challenge,
                code_challenge_method=session.code_challenge_method,
                expires_at=utcnow() + timedelta(seconds=self.settings.auth_code_ttl),
                user_profile_id=user_profile_id,
                resource=session.resource,
                scope=session.scope or "",
            )
        )
        self.sessions.discard(session_id)
        logger.info(
            "Issued authorization code %s… to client %s for %s",
            code[:8],
            session.client_id,
            identity.profile.username,
        )

        params = {"code": code}
        if session.oauth_state:
            params["state"] = session.oauth_state
        return _append_query(session.redirect_uri, params), None

    def fail_authentication(self, session_id: str | None, error: str = "access_denied") -> str | None:
        """Abort a session after an identity provider error.

        Returns the client redirect carrying ``error``, or None when the
        session is unknown (the caller must not redirect anywhere).
        """
        if not session_id:
            return None
        session = self.store.get_session(session_id)
        if session is None:
            return None
        self.sessions.discard(session_id)
        if not session.redirect_uri:
            return None
        params = {"error": error}
        if session.oauth_state:
            params["state"] = session.oauth_state
        return _append_query(session.redirect_uri, params)

    # -- token endpoint --------------------------------------------------

    def authenticate_client(self, client_id: str | None, client_secret: str | None) -> bool:
        if not client_id:
            return False
        return self.clients.validate_client_credentials(client_id, client_secret)

    def _grant_allowed(self, client_id: str, grant_type: str) -> bool:
        client = self.clients.get_client(client_id)
        return client is not None and grant_type in client.grant_types

    def token(self, request: TokenRequest) -> tuple[TokenPair | None, str | None]:
        """Dispatch a token request on its grant type."""
        if request.grant_type == "authorization_code":
            return self.exchange_code(request)
        if request.grant_type == "refresh_token":
            return self.exchange_refresh_token(request)
        return None, "unsupported_grant_type"

    def exchange_code(self, request: TokenRequest) -> tuple[TokenPair | None, str | None]:
        """Redeem an authorization code. The code is consumed whatever the outcome."""
        if not request.code or not request.client_id:
            return None, "invalid_request"

        auth_code = self.store.pop_auth_code(request.code)
        if auth_code is None:
            logger.info("Unknown or already redeemed authorization code %s…", request.code[:8])
            return None, "invalid_grant"
        if auth_code.is_expired:
            return None, "invalid_grant"
        if auth_code.client_id != request.client_id:
            return None, "invalid_grant"
        if request.redirect_uri and auth_code.redirect_uri != request.redirect_uri:
            return None, "invalid_grant"
        if not auth_code.resource:
            return None, "invalid_grant"

        requested_resource = request.resource or request.audience
        if requested_resource and requested_resource != auth_code.resource:
            return None, "invalid_target"

        if not self.authenticate_client(request.client_id, request.client_secret):
            return None, "invalid_client"
        if not self._grant_allowed(request.client_id, "authorization_code"):
            return None, "unauthorized_client"

        if not request.code_verifier or not verify_pkce(
            request.code_verifier,
            auth_code.code_challenge,
            auth_code.code_challenge_method,
            allow_plain=self.settings.allow_plain_pkce,
        ):
            return None, "invalid_request"

        pair = self.tokens.issue(
            user_id=auth_code.user_id,
            client_id=auth_code.client_id,
            scope=auth_code.scope,
            resource=auth_code.resource,
            user_profile_id=auth_code.user_profile_id,
        )
        get_audit_logger().log_oauth_event(
            action="token_issued",
            target=f"client:{auth_code.client_id}",
            actor=auth_code.client_id,
            grant_type="authorization_code",
            scope=auth_code.scope,
        )
        return pair, None

    def exchange_refresh_token(self, request: TokenRequest) -> tuple[TokenPair | None, str | None]:
        if not request.refresh_token or not request.client_id:
            return None, "invalid_request"
        if not self.authenticate_client(request.client_id, request.client_secret):
            return None, "invalid_client"
        if not self._grant_allowed(request.client_id, "refresh_token"):
            return None, "unauthorized_client"

        pair, error = self.tokens.rotate(request.refresh_token, request.client_id, request.scope)
        if error:
            return None, error

        get_audit_logger().log_oauth_event(
            action="token_refreshed",
            target=f"client:{request.client_id}",
            actor=request.client_id,
            grant_type="refresh_token",
            scope=pair.scope,
        )
        return pair, None

    # -- introspection / revocation --------------------------------------

    def _lookup(
        self, token: str, hint: str | None
    ) -> tuple[str, AccessTokenMetadata | RefreshTokenMetadata] | None:
        """Find a token, trying the hinted kind first."""
        order = ("refresh", "access") if hint == "refresh_token" else ("access", "refresh")
        for kind in order:
            if kind == "access":
                metadata = self.tokens.validate_access(token)
            else:
                metadata = self.tokens.validate_refresh(token)
            if metadata is not None:
                return kind, metadata
        return None

    def introspect(self, request: TokenLookupRequest) -> dict[str, Any]:
        """RFC 7662 introspection. Any failure yields exactly ``{"active": False}``."""
        try:
            if not request.token:
                return dict(_INACTIVE)
            if not self.authenticate_client(request.client_id, request.client_secret):
                return dict(_INACTIVE)
            found = self._lookup(request.token, request.token_type_hint)
            if found is None:
                return dict(_INACTIVE)
            kind, metadata = found
            if metadata.client_id != request.client_id:
                return dict(_INACTIVE)
            return {
                "active": True,
                "scope": metadata.scope,
                "client_id": metadata.client_id,
                "username": metadata.user_id,
                "token_type": "Bearer" if kind == "access" else "refresh_token",
                "exp": int(metadata.expires_at.timestamp()),
                "resource": metadata.resource,
                "user_profile_id": metadata.user_profile_id,
            }
        except Exception:
            logger.exception("Token introspection failed")
            return dict(_INACTIVE)

    def revoke(self, request: TokenLookupRequest) -> None:
        """RFC 7009 revocation. Never reports whether anything was revoked."""
        try:
            if not request.token:
                return
            if not self.authenticate_client(request.client_id, request.client_secret):
                return
            found = self._lookup(request.token, request.token_type_hint)
            if found is None:
                return
            kind, metadata = found
            if metadata.client_id != request.client_id:
                return

            if kind == "refresh" and self.settings.revoke_refresh_family:
                removed = self.store.revoke_token_family(metadata.family_id)
                logger.info("Revoked token family %s (%d tokens)", metadata.family_id, removed)
            else:
                self.tokens.revoke(request.token, kind)

            get_audit_logger().log_oauth_event(
                action="token_revoked",
                target=f"client:{metadata.client_id}",
                actor=metadata.client_id,
                token_kind=kind,
                token_prefix=request.token[:8],
            )
        except Exception:
            logger.exception("Token revocation failed")

    # -- resource server -------------------------------------------------

    def verify_access_token(self, access_token: str) -> AccessTokenMetadata | None:
        """Return token metadata if the token is live and issued for this resource."""
        metadata = self.tokens.validate_access(access_token)
        if metadata is None:
            return None
        if metadata.resource != self.settings.resource:
            logger.warning("Access token %s… presented to the wrong audience", access_token[:8])
            return None
        return metadata


# Singleton
_server: AuthorizationServer | None = None


def get_oauth_server() -> AuthorizationServer:
    global _server
    if _server is None:
        _server = AuthorizationServer()
    return _server


def set_oauth_server(server: AuthorizationServer) -> None:
    global _server
    _server = server


def reset_oauth_server() -> None:
    global _server
    _server = None
