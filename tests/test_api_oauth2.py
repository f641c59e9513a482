# Tests for the OAuth2 HTTP endpoints.
# Created: 2026-10-18

import base64
import hashlib
import secrets
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient

from mcpauth.api.deps import require_access_token
from mcpauth.api.oauth2.models import AccessTokenMetadata
from mcpauth.api.serve import create_api_app

REDIRECT_URI = "http://localhost:3000/callback"


def _make_pkce_pair():
    """Generate a PKCE code_verifier and code_challenge pair."""
    verifier = secrets.token_urlsafe(32)
    challenge = (
        base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
        .rstrip(b"=")
        .decode()
    )
    return verifier, challenge


def _query(url):
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


@pytest.fixture
def test_app(server, monkeypatch):
    import mcpauth.api.oauth2.server as mod

    monkeypatch.setattr(mod, "_server", server)
    app = create_api_app()

    @app.get("/mcp")
    async def mcp_endpoint(token: AccessTokenMetadata = Depends(require_access_token)):
        return {"user": token.user_id, "scope": token.scope}

    return app


@pytest.fixture
def client(test_app):
    return TestClient(test_app)


def _register(client, method="none", redirect_uris=None):
    resp = client.post(
        "/api/v1/oauth/register",
        json={
            "client_name": "Test MCP Client",
            "redirect_uris": redirect_uris or [REDIRECT_URI],
            "token_endpoint_auth_method": method,
        },
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def _authorize(client, client_id, challenge, state="client-state", **extra):
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": REDIRECT_URI,
        "code_challenge": challenge,
        "code_challenge_method": "S256",
        "state": state,
        **extra,
    }
    return client.get("/api/v1/oauth/authorize", params=params, follow_redirects=False)


def _login(client, client_id, scope="offline_access read"):
    """Authorize + identity provider callback. Returns (code, verifier)."""
    verifier, challenge = _make_pkce_pair()
    resp = _authorize(client, client_id, challenge, scope=scope)
    assert resp.status_code == 302, resp.text
    idp_state = _query(resp.headers["location"])["state"]

    resp = client.get(
        "/api/v1/oauth/callback",
        params={"code": "idp-code", "state": idp_state},
        follow_redirects=False,
    )
    assert resp.status_code == 302, resp.text
    return _query(resp.headers["location"])["code"], verifier


def _token(client, **data):
    return client.post(
        "/api/v1/oauth/token", data={k: v for k, v in data.items() if v is not None}
    )


# ===================== Registration =====================


class TestRegisterEndpoint:
    def test_public_client(self, client):
        body = _register(client)
        assert body["client_id"]
        assert "client_secret" not in body
        assert body["redirect_uris"] == [REDIRECT_URI]
        assert body["grant_types"] == ["authorization_code", "refresh_token"]

    def test_confidential_client_secret_once(self, client, server):
        body = _register(client, method="client_secret_basic")
        assert len(body["client_secret"]) == 64
        assert body["client_secret_expires_at"] == 0
        stored = server.store.get_client(body["client_id"])
        assert stored.client_secret != body["client_secret"]

    def test_invalid_auth_method(self, client):
        resp = client.post(
            "/api/v1/oauth/register",
            json={
                "client_name": "x",
                "redirect_uris": [REDIRECT_URI],
                "token_endpoint_auth_method": "private_key_jwt",
            },
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_client_metadata"

    def test_missing_redirect_uris(self, client):
        resp = client.post("/api/v1/oauth/register", json={"client_name": "x"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_client_metadata"


# ===================== Authorize / callback =====================


class TestAuthorizeEndpoint:
    def test_redirects_to_identity_provider(self, client, fake_idp):
        registered = _register(client)
        _, challenge = _make_pkce_pair()
        resp = _authorize(client, registered["client_id"], challenge)
        assert resp.status_code == 302
        location = resp.headers["location"]
        assert location.startswith("https://idp.example/authorize?")
        query = _query(location)
        assert query["redirect_uri"] == "http://localhost:8888/api/v1/oauth/callback"
        assert query["state"] == client.cookies.get("mcpauth_session_state")
        assert client.cookies.get("mcpauth_session_id")

    def test_cookies_are_http_only(self, client, fake_idp):
        registered = _register(client)
        _, challenge = _make_pkce_pair()
        resp = _authorize(client, registered["client_id"], challenge)
        cookies = resp.headers.get_list("set-cookie")
        assert len(cookies) == 2
        for cookie in cookies:
            assert "HttpOnly" in cookie
            assert "SameSite=lax" in cookie or "samesite=lax" in cookie.lower()

    def test_bad_redirect_uri_is_not_redirected(self, client, fake_idp):
        registered = _register(client)
        _, challenge = _make_pkce_pair()
        resp = client.get(
            "/api/v1/oauth/authorize",
            params={
                "response_type": "code",
                "client_id": registered["client_id"],
                "redirect_uri": "https://evil.example/cb",
                "code_challenge": challenge,
                "code_challenge_method": "S256",
            },
            follow_redirects=False,
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"
        assert "location" not in resp.headers

    def test_unknown_client(self, client, fake_idp):
        _, challenge = _make_pkce_pair()
        resp = _authorize(client, "unknown", challenge)
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_client"

    def test_plain_pkce_rejected(self, client, fake_idp):
        registered = _register(client)
        resp = _authorize(
            client, registered["client_id"], "c" * 43, code_challenge_method="plain"
        )
        assert resp.status_code == 400

    def test_wrong_resource(self, client, fake_idp):
        registered = _register(client)
        _, challenge = _make_pkce_pair()
        resp = _authorize(
            client, registered["client_id"], challenge, resource="https://other.example/mcp"
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_target"

    def test_loopback_port_may_differ(self, client, fake_idp):
        registered = _register(client)
        _, challenge = _make_pkce_pair()
        resp = client.get(
            "/api/v1/oauth/authorize",
            params={
                "response_type": "code",
                "client_id": registered["client_id"],
                "redirect_uri": "http://127.0.0.1:51234/callback",
                "code_challenge": challenge,
                "code_challenge_method": "S256",
            },
            follow_redirects=False,
        )
        assert resp.status_code == 302

    def test_rate_limited(self, client, fake_idp):
        registered = _register(client)
        _, challenge = _make_pkce_pair()
        statuses = [
            _authorize(client, registered["client_id"], challenge).status_code for _ in range(4)
        ]
        assert statuses[:3] == [302, 302, 302]
        assert statuses[3] == 429

    def test_identity_provider_not_configured(self, client):
        registered = _register(client)
        _, challenge = _make_pkce_pair()
        resp = _authorize(client, registered["client_id"], challenge)
        assert resp.status_code == 500
        assert resp.json()["error"] == "server_error"


class TestCallbackEndpoint:
    def test_success_redirects_with_code_and_state(self, client, fake_idp):
        registered = _register(client)
        _, challenge = _make_pkce_pair()
        resp = _authorize(client, registered["client_id"], challenge, state="abc")
        idp_state = _query(resp.headers["location"])["state"]

        resp = client.get(
            "/api/v1/oauth/callback",
            params={"code": "idp-code", "state": idp_state},
            follow_redirects=False,
        )
        assert resp.status_code == 302
        location = resp.headers["location"]
        assert location.startswith(REDIRECT_URI + "?")
        query = _query(location)
        assert query["state"] == "abc"
        assert query["code"]
        assert fake_idp.calls == [("idp-code", "http://localhost:8888/api/v1/oauth/callback")]
        # Client-held state is cleared
        assert client.cookies.get("mcpauth_session_id") is None

    def test_without_cookies(self, client, fake_idp):
        resp = client.get(
            "/api/v1/oauth/callback",
            params={"code": "idp-code", "state": "whatever"},
            follow_redirects=False,
        )
        assert resp.status_code == 401
        assert resp.json()["error"] == "access_denied"

    def test_state_mismatch(self, client, fake_idp):
        registered = _register(client)
        _, challenge = _make_pkce_pair()
        _authorize(client, registered["client_id"], challenge)
        resp = client.get(
            "/api/v1/oauth/callback",
            params={"code": "idp-code", "state": "forged"},
            follow_redirects=False,
        )
        assert resp.status_code == 401
        assert fake_idp.calls == []

    def test_identity_provider_error(self, client, fake_idp):
        registered = _register(client)
        _, challenge = _make_pkce_pair()
        resp = _authorize(client, registered["client_id"], challenge, state="abc")
        idp_state = _query(resp.headers["location"])["state"]

        resp = client.get(
            "/api/v1/oauth/callback",
            params={"error": "access_denied", "state": idp_state},
            follow_redirects=False,
        )
        assert resp.status_code == 302
        query = _query(resp.headers["location"])
        assert query == {"error": "access_denied", "state": "abc"}


# ===================== Token endpoint =====================


class TestTokenEndpoint:
    def test_code_exchange(self, client, fake_idp):
        registered = _register(client)
        code, verifier = _login(client, registered["client_id"])
        resp = _token(
            client,
            grant_type="authorization_code",
            code=code,
            redirect_uri=REDIRECT_URI,
            code_verifier=verifier,
            client_id=registered["client_id"],
        )
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["token_type"] == "bearer"
        assert body["expires_in"] == 60
        assert body["scope"] == "offline_access read"
        assert resp.headers["cache-control"] == "no-store"
        assert resp.headers["pragma"] == "no-cache"

    def test_json_body(self, client, fake_idp):
        registered = _register(client)
        code, verifier = _login(client, registered["client_id"])
        resp = client.post(
            "/api/v1/oauth/token",
            json={
                "grant_type": "authorization_code",
                "code": code,
                "code_verifier": verifier,
                "client_id": registered["client_id"],
                "resource": "undefined",
            },
        )
        assert resp.status_code == 200, resp.text

    def test_basic_auth(self, client, fake_idp):
        registered = _register(client, method="client_secret_basic")
        code, verifier = _login(client, registered["client_id"])
        resp = client.post(
            "/api/v1/oauth/token",
            data={"grant_type": "authorization_code", "code": code, "code_verifier": verifier},
            auth=(registered["client_id"], registered["client_secret"]),
        )
        assert resp.status_code == 200, resp.text

    def test_wrong_secret_is_401(self, client, fake_idp):
        registered = _register(client, method="client_secret_post")
        code, verifier = _login(client, registered["client_id"])
        resp = _token(
            client,
            grant_type="authorization_code",
            code=code,
            code_verifier=verifier,
            client_id=registered["client_id"],
            client_secret="wrong",
        )
        assert resp.status_code == 401
        assert resp.json()["error"] == "invalid_client"

    def test_malformed_basic_header(self, client):
        resp = client.post(
            "/api/v1/oauth/token",
            data={"grant_type": "refresh_token", "refresh_token": "x"},
            headers={"Authorization": "Basic !!!"},
        )
        assert resp.status_code == 401

    def test_openapi_documents_token_responses(self, client):
        schema = client.get("/api/v1/openapi.json").json()
        responses = schema["paths"]["/api/v1/oauth/token"]["post"]["responses"]
        ok = responses["200"]["content"]["application/json"]["schema"]
        assert ok["$ref"].endswith("/TokenResponse")
        for status in ("400", "401"):
            error = responses[status]["content"]["application/json"]["schema"]
            assert error["$ref"].endswith("/OAuthErrorResponse")

    def test_malformed_json_body_is_invalid_request(self, client):
        resp = client.post(
            "/api/v1/oauth/token",
            content=b"{broken",
            headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"
        assert resp.headers["cache-control"] == "no-store"

    def test_malformed_multipart_body_is_invalid_request(self, client):
        resp = client.post(
            "/api/v1/oauth/token",
            content=b"garbage",
            headers={"Content-Type": "multipart/form-data"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"
        assert resp.headers["cache-control"] == "no-store"
        assert resp.headers["pragma"] == "no-cache"

    def test_code_replay(self, client, fake_idp):
        registered = _register(client)
        code, verifier = _login(client, registered["client_id"])
        params = dict(
            grant_type="authorization_code",
            code=code,
            code_verifier=verifier,
            client_id=registered["client_id"],
        )
        assert _token(client, **params).status_code == 200
        resp = _token(client, **params)
        assert resp.status_code == 400
        assert resp.json() == {
            "error": "invalid_grant",
            "error_description": "The provided authorization grant is invalid or expired",
        }

    def test_short_verifier_is_invalid_request(self, client):
        resp = _token(client, grant_type="authorization_code", code="x", code_verifier="short")
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    def test_unsupported_grant_type(self, client):
        resp = _token(client, grant_type="password", client_id="x")
        assert resp.status_code == 400
        assert resp.json()["error"] == "unsupported_grant_type"

    def test_storage_error_is_500(self, client, server, fake_idp, monkeypatch):
        registered = _register(client)
        code, verifier = _login(client, registered["client_id"])

        def _boom(code):
            raise RuntimeError("store down")

        monkeypatch.setattr(server.store, "pop_auth_code", _boom)
        resp = _token(
            client,
            grant_type="authorization_code",
            code=code,
            code_verifier=verifier,
            client_id=registered["client_id"],
        )
        assert resp.status_code == 500
        assert resp.json()["error"] == "server_error"
        assert "store down" not in resp.text


# ===================== Introspection / revocation =====================


class TestIntrospectRevokeEndpoints:
    def test_introspect_unknown_is_inactive(self, client):
        resp = client.post("/api/v1/oauth/introspect", data={"token": "nope", "client_id": "x"})
        assert resp.status_code == 200
        assert resp.json() == {"active": False}
        assert resp.headers["cache-control"] == "no-store"

    def test_introspect_empty_body(self, client):
        resp = client.post("/api/v1/oauth/introspect")
        assert resp.status_code == 200
        assert resp.json() == {"active": False}

    def test_revoke_always_200(self, client):
        resp = client.post("/api/v1/oauth/revoke", data={"token": "nope", "client_id": "x"})
        assert resp.status_code == 200
        resp = client.post("/api/v1/oauth/revoke", content=b"{broken", headers={
            "Content-Type": "application/json"
        })
        assert resp.status_code == 200

    @pytest.mark.parametrize("path", ["/api/v1/oauth/introspect", "/api/v1/oauth/revoke"])
    def test_malformed_multipart_body_is_200(self, client, path):
        resp = client.post(
            path, content=b"garbage", headers={"Content-Type": "multipart/form-data"}
        )
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"


# ===================== Protected resource =====================


class TestBearerDependency:
    def test_missing_token(self, client):
        resp = client.get("/mcp")
        assert resp.status_code == 401
        challenge = resp.headers["www-authenticate"]
        assert challenge.startswith("Bearer ")
        assert (
            'resource_metadata="http://localhost:8888/.well-known/oauth-protected-resource/mcp"'
            in challenge
        )
        assert 'error="invalid_token"' in challenge

    def test_invalid_token(self, client):
        resp = client.get("/mcp", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_valid_token(self, client, fake_idp):
        registered = _register(client)
        code, verifier = _login(client, registered["client_id"])
        tokens = _token(
            client,
            grant_type="authorization_code",
            code=code,
            code_verifier=verifier,
            client_id=registered["client_id"],
        ).json()
        resp = client.get("/mcp", headers={"Authorization": f"Bearer {tokens['access_token']}"})
        assert resp.status_code == 200
        assert resp.json()["user"] == "alice"


# ===================== End to end =====================


class TestEndToEnd:
    def test_full_flow(self, client, fake_idp):
        registered = _register(client)
        client_id = registered["client_id"]

        code, verifier = _login(client, client_id, scope="offline_access read write")
        resp = _token(
            client,
            grant_type="authorization_code",
            code=code,
            redirect_uri=REDIRECT_URI,
            code_verifier=verifier,
            client_id=client_id,
        )
        first = resp.json()

        resp = client.post(
            "/api/v1/oauth/introspect",
            data={"token": first["access_token"], "client_id": client_id},
        )
        assert resp.json()["active"] is True
        assert resp.json()["scope"] == "offline_access read write"

        # Refresh with a narrower scope
        resp = _token(
            client,
            grant_type="refresh_token",
            refresh_token=first["refresh_token"],
            scope="read",
            client_id=client_id,
        )
        assert resp.status_code == 200, resp.text
        second = resp.json()
        assert second["scope"] == "read"

        # Revoke the new access token; it is no longer active
        resp = client.post(
            "/api/v1/oauth/revoke",
            data={"token": second["access_token"], "client_id": client_id},
        )
        assert resp.status_code == 200
        resp = client.post(
            "/api/v1/oauth/introspect",
            data={"token": second["access_token"], "client_id": client_id},
        )
        assert resp.json() == {"active": False}

    def test_refresh_replay_revokes_family(self, client, fake_idp):
        registered = _register(client)
        client_id = registered["client_id"]
        code, verifier = _login(client, client_id)
        first = _token(
            client,
            grant_type="authorization_code",
            code=code,
            code_verifier=verifier,
            client_id=client_id,
        ).json()
        second = _token(
            client,
            grant_type="refresh_token",
            refresh_token=first["refresh_token"],
            client_id=client_id,
        ).json()

        replay = _token(
            client,
            grant_type="refresh_token",
            refresh_token=first["refresh_token"],
            client_id=client_id,
        )
        assert replay.status_code == 400
        assert replay.json()["error"] == "invalid_grant"

        resp = _token(
            client,
            grant_type="refresh_token",
            refresh_token=second["refresh_token"],
            client_id=client_id,
        )
        assert resp.json()["error"] == "invalid_grant"
        resp = client.get("/mcp", headers={"Authorization": f"Bearer {second['access_token']}"})
        assert resp.status_code == 401
