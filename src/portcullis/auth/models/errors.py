"""Exception hierarchy for the authentication gateway.

Every error carries the OAuth-style error code and the HTTP status it maps
to, so the HTTP layer can translate any failure with a single handler.
Failures are scoped to one request or one authorization flow.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    error_code: str = "server_error"
    status_code: int = 500

    def __init__(self, description: str = "") -> None:
        super().__init__(description)
        self.description = description


# ================================
# Validation failures (400)
# ================================


class InvalidRedirect(GatewayError):
    """Raised when a redirect URI violates the redirect allow policy."""

    error_code = "invalid_redirect"
    status_code = 400


class PKCEMismatch(GatewayError):
    """Raised when a code verifier does not match its stored challenge."""

    error_code = "pkce_mismatch"
    status_code = 400


class TokenMalformedRequest(GatewayError):
    """Raised when a bearer credential is presented in an unacceptable way.

    Covers malformed Authorization headers and tokens sent in the query
    string or request body.
    """

    error_code = "invalid_request"
    status_code = 400


class InvalidFlowState(GatewayError):
    """Raised when a callback references no pending authorization flow."""

    error_code = "invalid_state"
    status_code = 400


class FlowTimeout(GatewayError):
    """Raised when a pending authorization flow outlived its TTL."""

    error_code = "flow_timeout"
    status_code = 400


# ================================
# Upstream failures
# ================================


class UpstreamError(GatewayError):
    """Base for failures talking to the upstream OAuth server."""

    pass


class UpstreamDenied(UpstreamError):
    """Raised when the upstream server refuses authorization or the exchange."""

    error_code = "upstream_denied"
    status_code = 400


class UpstreamUnavailable(UpstreamError):
    """Raised when the upstream server cannot be reached or answers garbage."""

    error_code = "upstream_unavailable"
    status_code = 502


# ================================
# Authentication failures (401)
# ================================


class AuthenticationError(GatewayError):
    """Base for bearer authentication failures.

    Subclasses exist for internal logging only. Externally every
    authentication failure renders identically.
    """

    error_code = "unauthorized"
    status_code = 401


class TokenInvalid(AuthenticationError):
    """Raised when a token is missing, unknown, revoked or rotated away."""

    pass


class TokenExpired(AuthenticationError):
    """Raised when a token was valid once but is past its expiry."""

    pass


# ================================
# Authorization failures (403)
# ================================


class InsufficientScope(GatewayError):
    """Raised when a valid token lacks a scope the endpoint requires."""

    error_code = "insufficient_scope"
    status_code = 403


# ================================
# Request limits (413)
# ================================


class RequestTooLarge(GatewayError):
    """Raised when a body that must be inspected exceeds the buffering limit."""

    error_code = "request_too_large"
    status_code = 413
