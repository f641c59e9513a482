# OAuth persistence interfaces and the reference in-memory store.
# Created: 2026-10-18
#
# The engine only talks to OAuthStoreProtocol. Refresh-token reuse detection is
# an optional capability (RefreshTokenReuseProtocol); stores without it skip
# that defence. Sessions and auth codes stay in memory (short-lived); clients,
# profiles and token metadata can be persisted to a JSON file.

from __future__ import annotations

import hashlib
import json
import logging
import threading
import uuid
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from mcpauth.api.oauth2.models import (
    AccessTokenMetadata,
    AuthorizationCode,
    OAuthClient,
    OAuthSession,
    RefreshTokenMetadata,
    StoredUserProfile,
    UserProfile,
    utcnow,
)

if TYPE_CHECKING:
    from mcpauth.api.oauth2.encryption import EncryptionServiceProtocol
    from mcpauth.api.oauth2.identity import Identity

logger = logging.getLogger(__name__)


@runtime_checkable
class OAuthStoreProtocol(Protocol):
    """Persistence backend for the authorization server.

    ``pop_auth_code`` and ``remove_refresh_token`` must be atomic per key: of two
    concurrent callers for the same key, only one may observe the record.
    """

    # =========================================================================
    # Clients
    # =========================================================================

    def store_client(self, client: OAuthClient) -> OAuthClient: ...

    def get_client(self, client_id: str) -> OAuthClient | None: ...

    # =========================================================================
    # Authorization sessions
    # =========================================================================

    def store_session(self, session: OAuthSession) -> None: ...

    def get_session(self, session_id: str) -> OAuthSession | None: ...

    def remove_session(self, session_id: str) -> None: ...

    # =========================================================================
    # Authorization codes
    # =========================================================================

    def store_auth_code(self, code: AuthorizationCode) -> None: ...

    def get_auth_code(self, code: str) -> AuthorizationCode | None: ...

    def pop_auth_code(self, code: str) -> AuthorizationCode | None:
        """Fetch and delete a code in one step."""
        ...

    def remove_auth_code(self, code: str) -> None: ...

    # =========================================================================
    # Opaque tokens
    # =========================================================================

    def store_access_token(self, token: str, metadata: AccessTokenMetadata) -> None: ...

    def get_access_token(self, token: str) -> AccessTokenMetadata | None: ...

    def remove_access_token(self, token: str) -> None: ...

    def store_refresh_token(self, token: str, metadata: RefreshTokenMetadata) -> None: ...

    def get_refresh_token(self, token: str) -> RefreshTokenMetadata | None: ...

    def remove_refresh_token(self, token: str) -> bool:
        """Delete a refresh token. Returns False if it was already gone."""
        ...

    def revoke_token_family(self, family_id: str) -> int:
        """Delete every access and refresh token of a family. Returns count removed."""
        ...

    # =========================================================================
    # User profiles
    # =========================================================================

    def upsert_user_profile(self, identity: Identity) -> str:
        """Create or update the profile for (provider, provider user id).

        Returns a profile id that is stable across logins.
        """
        ...

    def get_user_profile(self, profile_id: str) -> StoredUserProfile | None: ...


@runtime_checkable
class RefreshTokenReuseProtocol(Protocol):
    """Optional capability: remember rotated-away refresh tokens."""

    def mark_refresh_token_used(self, token: str, metadata: RefreshTokenMetadata) -> None: ...

    def get_used_refresh_token_family(self, token: str) -> str | None:
        """Return the family id if *token* was already rotated, else None."""
        ...


def hash_token(token: str) -> str:
    """SHA-256 lookup key, so the store never holds usable token values."""
    return hashlib.sha256(token.encode()).hexdigest()


_DATETIME_FIELDS = ("created_at", "updated_at", "expires_at")


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _parse_dates(data: dict[str, Any]) -> dict[str, Any]:
    for key in _DATETIME_FIELDS:
        if isinstance(data.get(key), str):
            data[key] = datetime.fromisoformat(data[key])
    return data


class InMemoryOAuthStore:
    """Thread-safe in-memory store, optionally persisted to a JSON file.

    Tokens are keyed by their SHA-256 digest. Provider tokens are kept only
    when an encryption service is configured, and only as ciphertext.
    """

    def __init__(
        self,
        encryption: EncryptionServiceProtocol | None = None,
        persist_path: Path | None = None,
    ):
        self._encryption = encryption
        self._persist_path = persist_path
        self._lock = threading.RLock()

        self._clients: dict[str, OAuthClient] = {}
        self._sessions: dict[str, OAuthSession] = {}
        self._codes: dict[str, AuthorizationCode] = {}
        self._access_tokens: dict[str, AccessTokenMetadata] = {}
        self._refresh_tokens: dict[str, RefreshTokenMetadata] = {}
        self._used_refresh_tokens: dict[str, tuple[str, datetime]] = {}
        self._profiles: dict[str, StoredUserProfile] = {}
        self._profile_index: dict[tuple[str, str], str] = {}  # (provider, user id) → profile_id

        self._load()

    # -- persistence -----------------------------------------------------

    def _load(self) -> None:
        path = self._persist_path
        if path is None or not path.exists():
            return
        try:
            data = json.loads(path.read_text())
            for entry in data.get("clients", []):
                client = OAuthClient(**_parse_dates(entry))
                self._clients[client.client_id] = client
            for entry in data.get("profiles", []):
                entry = _parse_dates(entry)
                entry["profile"] = UserProfile(**entry["profile"])
                profile = StoredUserProfile(**entry)
                self._profiles[profile.profile_id] = profile
                self._profile_index[(profile.provider, profile.profile.id)] = profile.profile_id
            for key, entry in data.get("access_tokens", {}).items():
                self._access_tokens[key] = AccessTokenMetadata(**_parse_dates(entry))
            for key, entry in data.get("refresh_tokens", {}).items():
                self._refresh_tokens[key] = RefreshTokenMetadata(**_parse_dates(entry))
            for key, entry in data.get("used_refresh_tokens", {}).items():
                self._used_refresh_tokens[key] = (
                    entry["family_id"],
                    datetime.fromisoformat(entry["expires_at"]),
                )
            logger.debug(
                "Loaded %d clients and %d refresh tokens from %s",
                len(self._clients),
                len(self._refresh_tokens),
                path,
            )
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Failed to load OAuth store from %s: %s", path, exc)

    def _save(self) -> None:
        path = self._persist_path
        if path is None:
            return
        data = {
            "clients": [asdict(c) for c in self._clients.values()],
            "profiles": [asdict(p) for p in self._profiles.values()],
            "access_tokens": {k: asdict(v) for k, v in self._access_tokens.items()},
            "refresh_tokens": {k: asdict(v) for k, v in self._refresh_tokens.items()},
            "used_refresh_tokens": {
                k: {"family_id": family_id, "expires_at": expires_at}
                for k, (family_id, expires_at) in self._used_refresh_tokens.items()
            },
        }
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2, default=_json_default))
        try:
            path.chmod(0o600)
        except OSError:
            pass

    # -- clients ---------------------------------------------------------

    def store_client(self, client: OAuthClient) -> OAuthClient:
        with self._lock:
            self._clients[client.client_id] = client
            self._save()
        return client

    def get_client(self, client_id: str) -> OAuthClient | None:
        return self._clients.get(client_id)

    # -- sessions --------------------------------------------------------

    def store_session(self, session: OAuthSession) -> None:
        self._sessions[session.session_id] = session

    def get_session(self, session_id: str) -> OAuthSession | None:
        return self._sessions.get(session_id)

    def remove_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    # -- authorization codes ---------------------------------------------

    def store_auth_code(self, code: AuthorizationCode) -> None:
        self._codes[code.code] = code

    def get_auth_code(self, code: str) -> AuthorizationCode | None:
        return self._codes.get(code)

    def pop_auth_code(self, code: str) -> AuthorizationCode | None:
        with self._lock:
            return self._codes.pop(code, None)

    def remove_auth_code(self, code: str) -> None:
        self._codes.pop(code, None)

    # -- tokens ----------------------------------------------------------

    def store_access_token(self, token: str, metadata: AccessTokenMetadata) -> None:
        with self._lock:
            self._access_tokens[hash_token(token)] = metadata
            self._save()

    def get_access_token(self, token: str) -> AccessTokenMetadata | None:
        return self._access_tokens.get(hash_token(token))

    def remove_access_token(self, token: str) -> None:
        with self._lock:
            if self._access_tokens.pop(hash_token(token), None) is not None:
                self._save()

    def store_refresh_token(self, token: str, metadata: RefreshTokenMetadata) -> None:
        with self._lock:
            self._refresh_tokens[hash_token(token)] = metadata
            self._save()

    def get_refresh_token(self, token: str) -> RefreshTokenMetadata | None:
        return self._refresh_tokens.get(hash_token(token))

    def remove_refresh_token(self, token: str) -> bool:
        with self._lock:
            removed = self._refresh_tokens.pop(hash_token(token), None) is not None
            if removed:
                self._save()
        return removed

    def revoke_token_family(self, family_id: str) -> int:
        with self._lock:
            refresh = [k for k, v in self._refresh_tokens.items() if v.family_id == family_id]
            access = [k for k, v in self._access_tokens.items() if v.family_id == family_id]
            for k in refresh:
                del self._refresh_tokens[k]
            for k in access:
                del self._access_tokens[k]
            self._save()
        return len(refresh) + len(access)

    # -- reuse detection ---------------------------------------------------

    def mark_refresh_token_used(self, token: str, metadata: RefreshTokenMetadata) -> None:
        with self._lock:
            self._used_refresh_tokens[hash_token(token)] = (metadata.family_id, metadata.expires_at)
            self._save()

    def get_used_refresh_token_family(self, token: str) -> str | None:
        entry = self._used_refresh_tokens.get(hash_token(token))
        if entry is None:
            return None
        family_id, expires_at = entry
        if expires_at <= utcnow():
            # The token would be dead anyway; forget it.
            with self._lock:
                self._used_refresh_tokens.pop(hash_token(token), None)
            return None
        return family_id

    # -- user profiles ---------------------------------------------------

    def upsert_user_profile(self, identity: Identity) -> str:
        key = (identity.provider, identity.profile.id)
        encrypted_access = encrypted_refresh = None
        if self._encryption is not None:
            encrypted_access = self._encryption.encrypt_to_string(identity.access_token)
            if identity.refresh_token:
                encrypted_refresh = self._encryption.encrypt_to_string(identity.refresh_token)

        with self._lock:
            profile_id = self._profile_index.get(key)
            if profile_id is None:
                profile_id = uuid.uuid4().hex
                self._profile_index[key] = profile_id
                self._profiles[profile_id] = StoredUserProfile(
                    profile_id=profile_id,
                    provider=identity.provider,
                    profile=identity.profile,
                    encrypted_access_token=encrypted_access,
                    encrypted_refresh_token=encrypted_refresh,
                )
            else:
                self._profiles[profile_id] = replace(
                    self._profiles[profile_id],
                    profile=identity.profile,
                    encrypted_access_token=encrypted_access,
                    encrypted_refresh_token=encrypted_refresh,
                    updated_at=utcnow(),
                )
            self._save()
        return profile_id

    def get_user_profile(self, profile_id: str) -> StoredUserProfile | None:
        return self._profiles.get(profile_id)

    def get_provider_access_token(self, profile_id: str) -> str | None:
        """Decrypt the stored provider access token for a profile (transient use only)."""
        profile = self._profiles.get(profile_id)
        if profile is None or profile.encrypted_access_token is None or self._encryption is None:
            return None
        return self._encryption.decrypt_from_string(profile.encrypted_access_token).decode()

    # -- housekeeping ----------------------------------------------------

    def cleanup_expired(self) -> int:
        """Remove expired sessions, codes, tokens and reuse markers. Returns count removed."""
        now = utcnow()
        with self._lock:
            buckets: list[dict[str, Any]] = [
                self._sessions,
                self._codes,
                self._access_tokens,
                self._refresh_tokens,
            ]
            removed = 0
            for bucket in buckets:
                expired = [k for k, v in bucket.items() if v.expires_at <= now]
                for k in expired:
                    del bucket[k]
                removed += len(expired)

            used = [k for k, (_, exp) in self._used_refresh_tokens.items() if exp <= now]
            for k in used:
                del self._used_refresh_tokens[k]
            removed += len(used)

            if removed:
                self._save()
        return removed
