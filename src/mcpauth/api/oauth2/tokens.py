# Opaque access/refresh token lifecycle.
# Created: 2026-10-18
#
# Tokens are random strings with no embedded meaning; everything about them
# lives in the store. Refresh tokens rotate on every use and belong to a
# family: presenting an already-rotated token revokes the whole family.

from __future__ import annotations

import logging
import uuid
from datetime import timedelta

from mcpauth.api.oauth2.models import (
    AccessTokenMetadata,
    RefreshTokenMetadata,
    TokenPair,
    random_token,
    utcnow,
)
from mcpauth.api.oauth2.store import OAuthStoreProtocol, RefreshTokenReuseProtocol
from mcpauth.config import Settings
from mcpauth.security.audit import AuditSeverity, get_audit_logger

logger = logging.getLogger(__name__)

TOKEN_BYTES = 64


class OpaqueTokenManager:
    def __init__(self, settings: Settings, store: OAuthStoreProtocol):
        self.settings = settings
        self.store = store

    @property
    def supports_reuse_detection(self) -> bool:
        return isinstance(self.store, RefreshTokenReuseProtocol)

    def issue(
        self,
        user_id: str,
        client_id: str,
        scope: str,
        resource: str,
        user_profile_id: str,
        family_id: str | None = None,
        generation: int = 0,
    ) -> TokenPair:
        """Mint and store a new access/refresh token pair."""
        now = utcnow()
        family_id = family_id or str(uuid.uuid4())
        access_token = random_token(TOKEN_BYTES)
        refresh_token = random_token(TOKEN_BYTES)

        self.store.store_access_token(
            access_token,
            AccessTokenMetadata(
                user_id=user_id,
                client_id=client_id,
                scope=scope,
                resource=resource,
                expires_at=now + timedelta(seconds=self.settings.access_token_ttl),
                user_profile_id=user_profile_id,
                family_id=family_id,
            ),
        )
        self.store.store_refresh_token(
            refresh_token,
            RefreshTokenMetadata(
                user_id=user_id,
                client_id=client_id,
                scope=scope,
                resource=resource,
                expires_at=now + timedelta(seconds=self.settings.refresh_token_ttl),
                user_profile_id=user_profile_id,
                family_id=family_id,
                generation=generation,
            ),
        )
        logger.debug(
            "Issued tokens %s… / %s… for client %s (family %s, generation %d)",
            access_token[:8],
            refresh_token[:8],
            client_id,
            family_id,
            generation,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.settings.access_token_ttl,
            scope=scope,
        )

    def validate_access(self, token: str) -> AccessTokenMetadata | None:
        metadata = self.store.get_access_token(token)
        if metadata is None:
            return None
        if metadata.is_expired:
            self.store.remove_access_token(token)
            return None
        return metadata

    def validate_refresh(self, token: str) -> RefreshTokenMetadata | None:
        metadata = self.store.get_refresh_token(token)
        if metadata is None:
            return None
        if metadata.is_expired:
            self.store.remove_refresh_token(token)
            return None
        return metadata

    def rotate(
        self, refresh_token: str, client_id: str, scope: str | None = None
    ) -> tuple[TokenPair | None, str | None]:
        """Exchange a refresh token for a new pair in the same family.

        Returns (pair, error). *scope*, when given, must not exceed the scope
        originally granted.
        """
        if self.supports_reuse_detection:
            family_id = self.store.get_used_refresh_token_family(refresh_token)
            if family_id is not None:
                removed = self.store.revoke_token_family(family_id)
                logger.warning(
                    "Refresh token reuse detected (%s…, family %s); revoked %d tokens",
                    refresh_token[:8],
                    family_id,
                    removed,
                )
                get_audit_logger().log_oauth_event(
                    action="refresh_token_reuse_detected",
                    target=f"family:{family_id}",
                    actor=client_id,
                    severity=AuditSeverity.ALERT,
                    status="block",
                    revoked=removed,
                )
                return None, "invalid_grant"

        metadata = self.validate_refresh(refresh_token)
        if metadata is None:
            return None, "invalid_grant"
        if metadata.client_id != client_id:
            return None, "invalid_grant"

        granted = metadata.scope.split()
        requested = scope.split() if scope else []
        if requested:
            if not set(requested).issubset(granted):
                return None, "invalid_scope"
            new_scope = " ".join(requested)
        else:
            new_scope = metadata.scope

        if self.supports_reuse_detection:
            self.store.mark_refresh_token_used(refresh_token, metadata)
        if not self.store.remove_refresh_token(refresh_token):
            # Another request rotated this token first
            logger.info("Concurrent rotation lost for refresh token %s…", refresh_token[:8])
            return None, "invalid_grant"

        pair = self.issue(
            user_id=metadata.user_id,
            client_id=metadata.client_id,
            scope=new_scope,
            resource=metadata.resource,
            user_profile_id=metadata.user_profile_id,
            family_id=metadata.family_id,
            generation=metadata.generation + 1,
        )
        return pair, None

    def revoke(self, token: str, kind: str) -> bool:
        """Best-effort removal. Never raises."""
        try:
            if kind == "access":
                self.store.remove_access_token(token)
                return True
            if kind == "refresh":
                self.store.remove_refresh_token(token)
                return True
            logger.warning("Unknown token kind for revocation: %s", kind)
            return False
        except Exception:
            logger.exception("Failed to revoke %s token %s…", kind, token[:8])
            return False
