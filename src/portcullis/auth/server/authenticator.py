"""Bearer authentication for protected requests.

``Authenticator`` is the transport-neutral capability: anything that can
produce an Authorization header value (HTTP requests, or an upgraded stdio
session) calls it the same way. ``RequestAuthenticator`` is the ASGI
middleware that applies it to every HTTP and WebSocket request in front of
the protocol endpoints.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Iterable
from dataclasses import dataclass

from starlette import status
from starlette.datastructures import Headers, QueryParams
from starlette.formparsers import FormParser, MultiPartException, MultiPartParser
from starlette.types import ASGIApp, Message, Receive, Scope, Send
from starlette.websockets import WebSocketClose

from portcullis.auth.models.errors import (
    GatewayError,
    InsufficientScope,
    RequestTooLarge,
    TokenExpired,
    TokenInvalid,
    TokenMalformedRequest,
)
from portcullis.auth.models.tokens import TokenStatus
from portcullis.auth.server.responses import error_response
from portcullis.auth.server.services.sessions import SessionTokenStore

logger = logging.getLogger(__name__)

# RFC 6750 Section 2.1 b64token
_TOKEN68 = re.compile(r"[A-Za-z0-9\-._~+/]+=*")

# Parameter names under which clients might try to smuggle a bearer token
CREDENTIAL_PARAMS = frozenset({"access_token", "session_token"})

DEFAULT_PUBLIC_PATHS = frozenset({"/authorize", "/callback", "/token", "/healthz"})

# Largest body buffered for credential inspection
DEFAULT_MAX_BODY_SIZE = 1024 * 1024

FORM_CONTENT_TYPES = frozenset({"application/x-www-form-urlencoded", "multipart/form-data"})


@dataclass(frozen=True)
class AuthenticatedPrincipal:
    """The identity attached to an authenticated request."""

    subject: str
    scopes: frozenset[str]
    token_fingerprint: str
    expires_at: float

    def has_scopes(self, required: Iterable[str]) -> bool:
        return set(required) <= self.scopes


def parse_bearer(authorization: str | None) -> str:
    """Extract the token from an ``Authorization: Bearer <token>`` value.

    The scheme and token may be separated by one or more spaces (RFC 7235).

    Raises:
        TokenInvalid: If no header was sent
        TokenMalformedRequest: If the header is not a well-formed bearer header
    """
    if authorization is None:
        raise TokenInvalid("Missing Authorization header")

    scheme, _, token = authorization.partition(" ")
    token = token.lstrip(" ")
    if scheme.lower() != "bearer" or not token:
        raise TokenMalformedRequest("Authorization header must be 'Bearer <token>'")
    if not _TOKEN68.fullmatch(token):
        raise TokenMalformedRequest("Malformed bearer token")
    return token


class Authenticator(ABC):
    """Resolves an Authorization header value to a principal."""

    @abstractmethod
    def authenticate(self, authorization: str | None) -> AuthenticatedPrincipal:
        """Authenticate a request.

        Raises:
            TokenMalformedRequest: If the credential is malformed
            TokenInvalid: If the credential is missing or unknown
            TokenExpired: If the credential has expired
        """
        ...


class BearerAuthenticator(Authenticator):
    """Authenticates opaque session tokens against a ``SessionTokenStore``."""

    def __init__(self, sessions: SessionTokenStore) -> None:
        self._sessions = sessions

    def authenticate(self, authorization: str | None) -> AuthenticatedPrincipal:
        token_value = parse_bearer(authorization)
        validation = self._sessions.validate(token_value)

        if validation.status is TokenStatus.EXPIRED:
            raise TokenExpired("Session token expired")
        if not validation.is_valid:
            raise TokenInvalid("Unknown session token")

        token = validation.token
        return AuthenticatedPrincipal(
            subject=token.subject,
            scopes=token.scopes,
            token_fingerprint=token.fingerprint,
            expires_at=token.expires_at,
        )


class RequestAuthenticator:
    """ASGI middleware enforcing bearer authentication.

    For every HTTP or WebSocket request outside ``public_paths``:
    - tokens in the query string are refused (400)
    - the Authorization header is authenticated (401 on any failure)
    - ``required_scopes`` must all be granted (403)
    - tokens in a form, multipart or JSON body are refused (400); such
      bodies are buffered up to ``max_body_size`` bytes (413 beyond)

    The body is only read once the header has been authenticated. A
    refused WebSocket handshake is closed with 1008 (policy violation).

    On success the principal is stored as ``request.state.principal`` and
    the wrapped app is called. On failure the wrapped app never runs.
    Lifespan events pass straight through.
    """

    def __init__(
        self,
        app: ASGIApp,
        authenticator: Authenticator,
        public_paths: Iterable[str] = DEFAULT_PUBLIC_PATHS,
        required_scopes: Iterable[str] = (),
        max_body_size: int = DEFAULT_MAX_BODY_SIZE,
    ) -> None:
        self.app = app
        self.authenticator = authenticator
        self.public_paths = frozenset(public_paths)
        self.required_scopes = frozenset(required_scopes)
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket") or scope["path"] in self.public_paths:
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        try:
            self._reject_query_credentials(scope)
            principal = self.authenticator.authenticate(headers.get("authorization"))
            if not principal.has_scopes(self.required_scopes):
                raise InsufficientScope(
                    f"Requires scope: {' '.join(sorted(self.required_scopes))}"
                )
            if scope["type"] == "http":
                receive = await self._reject_body_credentials(headers, receive)
        except GatewayError as e:
            logger.debug(
                f"Rejected {scope.get('method', 'WEBSOCKET')} {scope['path']}: "
                f"{type(e).__name__} ({e.description})"
            )
            if scope["type"] == "websocket":
                await WebSocketClose(code=status.WS_1008_POLICY_VIOLATION)(scope, receive, send)
            else:
                await error_response(e)(scope, receive, send)
            return

        scope.setdefault("state", {})["principal"] = principal
        await self.app(scope, receive, send)

    def _reject_query_credentials(self, scope: Scope) -> None:
        query_params = QueryParams(scope.get("query_string", b""))
        if CREDENTIAL_PARAMS & set(query_params.keys()):
            raise TokenMalformedRequest(
                "Bearer tokens are only accepted in the Authorization header"
            )

    async def _reject_body_credentials(self, headers: Headers, receive: Receive) -> Receive:
        """Inspect form, multipart and JSON bodies for credentials.

        The body is buffered and replayed to the wrapped app. Other content
        types are passed through untouched.
        """
        content_type = headers.get("content-type", "").split(";")[0].strip().lower()
        if not _is_inspected(content_type):
            return receive

        content_length = headers.get("content-length", "")
        if content_length.isdigit() and int(content_length) > self.max_body_size:
            raise RequestTooLarge(f"Request body exceeds {self.max_body_size} bytes")

        chunks: list[bytes] = []
        size = 0
        more_body = True
        while more_body:
            message = await receive()
            if message["type"] != "http.request":
                # Client went away; let the app observe the disconnect
                return _replay(message, receive)
            chunk = message.get("body", b"")
            size += len(chunk)
            if size > self.max_body_size:
                raise RequestTooLarge(f"Request body exceeds {self.max_body_size} bytes")
            chunks.append(chunk)
            more_body = message.get("more_body", False)

        body = b"".join(chunks)
        if CREDENTIAL_PARAMS & await _body_keys(headers, content_type, body):
            raise TokenMalformedRequest(
                "Bearer tokens are only accepted in the Authorization header"
            )
        return _replay(
            {"type": "http.request", "body": body, "more_body": False}, receive
        )


def _is_inspected(content_type: str) -> bool:
    return (
        content_type in FORM_CONTENT_TYPES
        or content_type == "application/json"
        or content_type.endswith("+json")
    )


async def _body_keys(headers: Headers, content_type: str, body: bytes) -> set[str]:
    if content_type in FORM_CONTENT_TYPES:
        return await _form_keys(headers, content_type, body)
    try:
        payload = json.loads(body) if body else None
    except ValueError:
        return set()  # Malformed JSON is the app's problem
    return set(payload) if isinstance(payload, dict) else set()


async def _form_keys(headers: Headers, content_type: str, body: bytes) -> set[str]:
    async def stream() -> AsyncGenerator[bytes, None]:
        yield body

    parser_class = MultiPartParser if content_type == "multipart/form-data" else FormParser
    try:
        form = await parser_class(headers, stream()).parse()
    except MultiPartException:
        return set()  # Malformed multipart is the app's problem
    try:
        return set(form.keys())
    finally:
        await form.close()


def _replay(first: Message, receive: Receive) -> Receive:
    """Return a receive callable that yields ``first`` once, then defers."""
    pending = [first]

    async def replay_receive() -> Message:
        if pending:
            return pending.pop()
        return await receive()

    return replay_receive
