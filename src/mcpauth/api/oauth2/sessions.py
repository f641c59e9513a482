# Authorization session coordinator.
# Created: 2026-10-18
#
# Carries an authorization request across the round trip to the identity
# provider. The session is bound to the browser by an HMAC over
# "{session_id}:{nonce}": the digest is kept by the client (cookies) and sent
# to the provider as "state", and must match on the way back.

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import timedelta

from mcpauth.api.oauth2.clients import ClientRegistry
from mcpauth.api.oauth2.models import OAuthSession, b64url, random_token, utcnow
from mcpauth.api.oauth2.store import OAuthStoreProtocol
from mcpauth.config import Settings

logger = logging.getLogger(__name__)

SESSION_ID_COOKIE = "mcpauth_session_id"
SESSION_STATE_COOKIE = "mcpauth_session_state"


@dataclass
class ClientHeldState:
    """What the client must bring back from the identity provider."""

    session_id: str
    session_state: str


@dataclass
class AuthorizationRequest:
    """Parameters of an /authorize call."""

    response_type: str | None = None
    client_id: str | None = None
    redirect_uri: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    state: str | None = None
    scope: str | None = None
    resource: str | None = None


@dataclass
class SessionStart:
    client_held: ClientHeldState
    idp_state: str
    session: OAuthSession


class AuthorizationSessionCoordinator:
    def __init__(self, settings: Settings, store: OAuthStoreProtocol, clients: ClientRegistry):
        self.settings = settings
        self.store = store
        self.clients = clients

    def _sign(self, session_id: str, nonce: str) -> str:
        digest = hmac.new(
            self.settings.hmac_secret.encode(),
            f"{session_id}:{nonce}".encode(),
            hashlib.sha256,
        ).digest()
        return b64url(digest)

    def begin(self, request: AuthorizationRequest) -> tuple[SessionStart | None, str | None]:
        """Validate an authorization request and open a session.

        Returns (start, error). Client and redirect URI errors must be shown
        to the user, never redirected.
        """
        if request.response_type != "code":
            return None, "unsupported_response_type"

        if not request.client_id or not request.redirect_uri:
            return None, "invalid_request"
        if self.clients.get_client(request.client_id) is None:
            return None, "invalid_client"
        if not self.clients.validate_redirect_uri(request.client_id, request.redirect_uri):
            return None, "invalid_request"

        resource = request.resource or self.settings.resource
        if resource != self.settings.resource:
            return None, "invalid_target"

        if not request.code_challenge:
            return None, "invalid_request"
        if request.code_challenge_method != "S256":
            return None, "invalid_request"

        session_id = random_token(32)
        nonce = random_token(32)
        session_state = self._sign(session_id, nonce)

        session = OAuthSession(
            session_id=session_id,
            state=session_state,
            expires_at=utcnow() + timedelta(seconds=self.settings.oauth_session_ttl),
            client_id=request.client_id,
            redirect_uri=request.redirect_uri,
            code_challenge=request.code_challenge,
            code_challenge_method=request.code_challenge_method,
            oauth_state=request.state,
            scope=request.scope,
            resource=resource,
        )
        self.store.store_session(session)
        logger.debug("Started authorization session %s… for %s", session_id[:8], request.client_id)

        from mcpauth.security.audit import get_audit_logger

        get_audit_logger().log_oauth_event(
            action="authorization_started",
            target=f"client:{request.client_id}",
            actor=request.client_id,
            resource=resource,
        )

        return (
            SessionStart(
                client_held=ClientHeldState(session_id=session_id, session_state=session_state),
                idp_state=session_state,
                session=session,
            ),
            None,
        )

    def verify_binding(
        self, session_id: str, session_state: str
    ) -> tuple[OAuthSession | None, str | None]:
        """Load a live session whose stored state matches *session_state*."""
        session = self.store.get_session(session_id)
        if session is None:
            return None, "access_denied"
        if session.is_expired:
            self.store.remove_session(session_id)
            return None, "access_denied"
        if not hmac.compare_digest(session.state.encode(), session_state.encode()):
            return None, "access_denied"
        return session, None

    def recover(
        self, client_held: ClientHeldState | None, returned_state: str | None
    ) -> tuple[OAuthSession | None, str | None]:
        """Recover the session on the identity provider callback."""
        if client_held is None or not client_held.session_id or not client_held.session_state:
            return None, "access_denied"
        if not returned_state or not hmac.compare_digest(
            returned_state.encode(), client_held.session_state.encode()
        ):
            logger.warning("OAuth callback state mismatch for session %s…", client_held.session_id[:8])
            return None, "access_denied"
        return self.verify_binding(client_held.session_id, client_held.session_state)

    def discard(self, session_id: str) -> None:
        self.store.remove_session(session_id)
