# OAuth client registry: dynamic registration and client authentication.
# Created: 2026-10-18

from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import replace
from urllib.parse import urlsplit

import bcrypt

from mcpauth.api.oauth2.models import (
    AUTH_METHOD_NONE,
    AUTH_METHODS,
    ClientRegistration,
    OAuthClient,
)
from mcpauth.api.oauth2.store import OAuthStoreProtocol

logger = logging.getLogger(__name__)

BCRYPT_ROUNDS = 10
LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1"})


def _is_loopback_match(registered: str, requested: str) -> bool:
    """Loopback redirects may differ in port only (RFC 8252 §7.3)."""
    try:
        reg = urlsplit(registered)
        req = urlsplit(requested)
        # .port raises ValueError for a malformed authority
        _ = reg.port, req.port
    except ValueError:
        return False
    if reg.hostname not in LOOPBACK_HOSTS or req.hostname not in LOOPBACK_HOSTS:
        return False
    return reg.scheme == req.scheme and reg.path == req.path and reg.query == req.query


class ClientRegistry:
    """Registers OAuth clients and checks their redirect URIs and credentials."""

    def __init__(self, store: OAuthStoreProtocol):
        self.store = store

    def register(self, registration: ClientRegistration) -> OAuthClient:
        """Register a client.

        For confidential clients the returned object carries the plaintext
        secret. It is shown once and cannot be retrieved again.

        Raises:
            ValueError: unsupported auth method or no redirect URIs.
        """
        method = registration.token_endpoint_auth_method
        if method not in AUTH_METHODS:
            raise ValueError(f"Unsupported token_endpoint_auth_method: {method}")
        if not registration.redirect_uris:
            raise ValueError("At least one redirect_uri is required")

        plain_secret = None
        secret_hash = None
        if method != AUTH_METHOD_NONE:
            plain_secret = secrets.token_hex(32)
            secret_hash = bcrypt.hashpw(
                plain_secret.encode(), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
            ).decode()

        client = OAuthClient(
            client_id=str(uuid.uuid4()),
            client_name=registration.client_name,
            redirect_uris=list(registration.redirect_uris),
            grant_types=list(registration.grant_types),
            response_types=list(registration.response_types),
            token_endpoint_auth_method=method,
            client_secret=secret_hash,
            client_description=registration.client_description,
            logo_uri=registration.logo_uri,
            client_uri=registration.client_uri,
            developer_name=registration.developer_name,
            developer_email=registration.developer_email,
        )
        stored = self.store.store_client(client)
        logger.info("Registered OAuth client %s (%s)", stored.client_id, method)

        from mcpauth.security.audit import get_audit_logger

        get_audit_logger().log_oauth_event(
            action="client_registered",
            target=f"client:{stored.client_id}",
            auth_method=method,
        )

        if plain_secret is None:
            return stored
        return replace(stored, client_secret=plain_secret)

    def get_client(self, client_id: str) -> OAuthClient | None:
        return self.store.get_client(client_id)

    def validate_redirect_uri(self, client_id: str, redirect_uri: str) -> bool:
        client = self.store.get_client(client_id)
        if client is None or not redirect_uri:
            return False
        for registered in client.redirect_uris:
            if registered == redirect_uri:
                return True
            if _is_loopback_match(registered, redirect_uri):
                return True
        return False

    def validate_client_credentials(self, client_id: str, client_secret: str | None) -> bool:
        client = self.store.get_client(client_id)
        if client is None:
            return False
        if not client.is_confidential:
            # Public client: presenting a secret is an error
            return not client_secret
        if not client_secret:
            return False
        try:
            return bcrypt.checkpw(client_secret.encode(), client.client_secret.encode())
        except (ValueError, TypeError) as e:
            logger.warning("Client secret check failed for %s: %s", client_id, e)
            return False
