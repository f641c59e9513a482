# OAuth2 schemas.
# Created: 2026-10-18

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from mcpauth.api.oauth2.models import ClientRegistration, TokenLookupRequest, TokenRequest


class TokenRequestBody(BaseModel):
    """Token exchange or refresh request (form or JSON body)."""

    grant_type: str
    code: str | None = None
    redirect_uri: str | None = None
    code_verifier: str | None = Field(
        default=None, min_length=43, max_length=128, pattern=r"^[A-Za-z0-9\-._~]+$"
    )
    refresh_token: str | None = None
    scope: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    resource: str | None = None
    audience: str | None = None

    @field_validator("resource", "audience", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        # Some clients serialize a missing value as a literal string
        if v in ("", "undefined", "null"):
            return None
        return v

    def to_request(self) -> TokenRequest:
        return TokenRequest(**self.model_dump())


class TokenResponse(BaseModel):
    """OAuth2 token response."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    scope: str


class OAuthErrorResponse(BaseModel):
    error: str
    error_description: str | None = None


class TokenLookupBody(BaseModel):
    """Introspection or revocation request."""

    token: str = ""
    token_type_hint: str | None = None
    client_id: str | None = None
    client_secret: str | None = None

    def to_request(self) -> TokenLookupRequest:
        return TokenLookupRequest(**self.model_dump())


class ClientRegistrationRequest(BaseModel):
    """Dynamic client registration request (RFC 7591)."""

    client_name: str = Field(..., min_length=1, max_length=200)
    redirect_uris: list[str] = Field(default_factory=list)
    grant_types: list[str] = Field(default_factory=lambda: ["authorization_code", "refresh_token"])
    response_types: list[str] = Field(default_factory=lambda: ["code"])
    token_endpoint_auth_method: str = "none"
    client_description: str | None = None
    logo_uri: str | None = None
    client_uri: str | None = None
    developer_name: str | None = None
    developer_email: str | None = None

    def to_registration(self) -> ClientRegistration:
        return ClientRegistration(**self.model_dump())


class ClientRegistrationResponse(BaseModel):
    """Registered client. ``client_secret`` is present once, at registration."""

    client_id: str
    client_name: str
    redirect_uris: list[str]
    grant_types: list[str]
    response_types: list[str]
    token_endpoint_auth_method: str
    client_secret: str | None = None
    client_id_issued_at: int
    client_secret_expires_at: int | None = None
    client_description: str | None = None
    logo_uri: str | None = None
    client_uri: str | None = None
    developer_name: str | None = None
    developer_email: str | None = None
