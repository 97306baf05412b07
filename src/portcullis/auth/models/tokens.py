"""Token models for the authentication gateway.

Contains the session tokens the gateway issues, the upstream credentials it
holds on the client's behalf, and the upstream token endpoint wire models.
"""

from __future__ import annotations

import enum
import hashlib
import time
from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict


def token_digest(value: str) -> str:
    """SHA-256 hex digest of a raw token value, used as the storage key."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def token_fingerprint(value: str) -> str:
    """Short, non-reversible label for a token that is safe to log."""
    return token_digest(value)[:12]


@dataclass(frozen=True)
class UpstreamCredentials:
    """Access and refresh tokens obtained from the upstream OAuth server.

    Held by the gateway only. Never sent to the client.
    """

    access_token: str = field(repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    token_type: str = "Bearer"
    expires_at: float | None = None  # Unix timestamp
    scope: str | None = None

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False  # No expiry means token doesn't expire
        return (time.time() if now is None else now) >= self.expires_at

    def can_refresh(self) -> bool:
        return bool(self.refresh_token)


@dataclass(frozen=True)
class SessionToken:
    """An opaque bearer token issued by the gateway.

    Records are immutable. Revocation and rotation remove the stored record
    rather than flagging it; only its digest is remembered until expiry.
    """

    value: str = field(repr=False)
    subject: str
    issued_at: float
    expires_at: float
    scopes: frozenset[str] = frozenset()
    upstream: UpstreamCredentials | None = field(default=None, repr=False)
    rotated_from: str | None = None  # fingerprint of the predecessor

    @property
    def fingerprint(self) -> str:
        return token_fingerprint(self.value)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def expires_in(self, now: float) -> int:
        return max(0, int(self.expires_at - now))


class TokenStatus(enum.Enum):
    VALID = "valid"
    INVALID = "invalid"
    EXPIRED = "expired"


@dataclass(frozen=True)
class TokenValidation:
    """Outcome of a session token lookup.

    Distinguishes expired from unknown tokens for internal logging. Callers
    facing the network must treat both the same way.
    """

    status: TokenStatus
    token: SessionToken | None = None

    @property
    def is_valid(self) -> bool:
        return self.status is TokenStatus.VALID

    @property
    def subject(self) -> str | None:
        return self.token.subject if self.token else None


@dataclass(frozen=True)
class TokenRequest:
    """Upstream authorization code exchange (RFC 6749 Section 4.1.3).

    ``code_verifier`` is omitted from the form when PKCE is disabled.
    """

    # Required fields first
    token_endpoint: str
    code: str
    redirect_uri: str
    client_id: str

    # Optional fields with defaults last
    code_verifier: str | None = field(default=None, repr=False)  # RFC 7636 PKCE
    client_secret: str | None = field(default=None, repr=False)
    grant_type: str = "authorization_code"

    def to_form_data(self) -> dict[str, str]:
        """Convert to form data for application/x-www-form-urlencoded request."""
        data = {
            "grant_type": self.grant_type,
            "code": self.code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
        }

        if self.code_verifier:
            data["code_verifier"] = self.code_verifier
        if self.client_secret:
            data["client_secret"] = self.client_secret

        return data


@dataclass(frozen=True)
class RefreshTokenRequest:
    """Upstream refresh token request (RFC 6749 Section 6)."""

    token_endpoint: str
    refresh_token: str = field(repr=False)
    client_id: str
    client_secret: str | None = field(default=None, repr=False)
    grant_type: str = "refresh_token"
    scope: str | None = None

    def to_form_data(self) -> dict[str, str]:
        data = {
            "grant_type": self.grant_type,
            "refresh_token": self.refresh_token,
            "client_id": self.client_id,
        }

        if self.client_secret:
            data["client_secret"] = self.client_secret
        if self.scope:
            data["scope"] = self.scope

        return data


class TokenResponse(BaseModel):
    """Upstream token endpoint response (RFC 6749 Section 5).

    Covers both successful responses (Section 5.1) and error responses
    (Section 5.2). Unknown fields are kept so providers that return the
    subject inline (``sub`` or ``user_id``) can be used without a userinfo
    call.
    """

    model_config = ConfigDict(extra="allow")

    # Success response fields (RFC 6749 Section 5.1)
    access_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None  # Seconds until expiry
    refresh_token: str | None = None
    scope: str | None = None

    # Error response fields (RFC 6749 Section 5.2)
    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None

    def is_success(self) -> bool:
        return self.error is None and self.access_token is not None

    def is_error(self) -> bool:
        return self.error is not None

    def subject(self) -> str | None:
        """Subject identity returned inline by the upstream server, if any."""
        extra = self.model_extra or {}
        for key in ("sub", "user_id"):
            value = extra.get(key)
            if value not in (None, ""):
                return str(value)
        return None

    def to_credentials(
        self,
        now: float | None = None,
        previous: UpstreamCredentials | None = None,
    ) -> UpstreamCredentials:
        """Convert a successful response to upstream credentials.

        A refresh response that omits ``refresh_token`` keeps the previous one.

        Raises:
            ValueError: If response is not successful
        """
        if not self.is_success():
            raise ValueError("Cannot convert error response to credentials")

        now = time.time() if now is None else now
        refresh_token = self.refresh_token
        if refresh_token is None and previous is not None:
            refresh_token = previous.refresh_token

        return UpstreamCredentials(
            access_token=self.access_token,
            refresh_token=refresh_token,
            token_type=self.token_type,
            expires_at=None if self.expires_in is None else now + self.expires_in,
            scope=self.scope,
        )


class UserInfo(BaseModel):
    """Subset of an upstream userinfo response used to resolve the subject."""

    model_config = ConfigDict(extra="allow")

    sub: str | None = None
    id: str | int | None = None
    login: str | None = None

    def subject(self) -> str | None:
        for value in (self.sub, self.id, self.login):
            if value not in (None, ""):
                return str(value)
        return None
