import base64
import hashlib
import secrets
from urllib.parse import parse_qs

import httpx
import pytest

from portcullis.auth.server.services.contexts import FlowContextStore
from portcullis.auth.server.services.flow import AuthorizationFlowCoordinator
from portcullis.auth.server.services.sessions import SessionTokenStore
from portcullis.auth.server.services.upstream import UpstreamTokenClient
from portcullis.config import Settings


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SimulatedUpstream:
    """In-process upstream OAuth server driven through httpx.MockTransport."""

    def __init__(self):
        self.codes: dict[str, str | None] = {}  # code -> code_challenge
        self.requests: list[httpx.Request] = []
        self.transport_failures = 0
        self.subject = "user-42"
        self.include_subject = True
        self.expires_in = 3600
        self.scope = "read write"

    def issue_code(self, code_challenge: str | None) -> str:
        """What the upstream does when the user approves the request."""
        code = secrets.token_urlsafe(16)
        self.codes[code] = code_challenge
        return code

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.transport_failures:
            self.transport_failures -= 1
            raise httpx.ConnectError("connection refused", request=request)

        if request.url.path == "/token":
            return self._token(request)
        if request.url.path == "/userinfo":
            if request.headers.get("authorization", "").startswith("Bearer upstream-"):
                return httpx.Response(200, json={"sub": self.subject})
            return httpx.Response(401, json={"error": "invalid_token"})
        return httpx.Response(404)

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}

        if form["grant_type"] == "refresh_token":
            return httpx.Response(
                200,
                json={
                    "access_token": f"upstream-{secrets.token_hex(8)}",
                    "token_type": "Bearer",
                    "expires_in": self.expires_in,
                },
            )

        if form.get("code") not in self.codes:
            return httpx.Response(
                400,
                json={"error": "invalid_grant", "error_description": "bad code"},
            )
        challenge = self.codes.pop(form["code"])
        if challenge is not None:
            verifier = form.get("code_verifier", "")
            digest = hashlib.sha256(verifier.encode("ascii")).digest()
            computed = base64.urlsafe_b64encode(digest).decode().rstrip("=")
            if computed != challenge:
                return httpx.Response(
                    400,
                    json={"error": "invalid_grant", "error_description": "pkce"},
                )

        body = {
            "access_token": f"upstream-{secrets.token_hex(8)}",
            "refresh_token": f"upstream-refresh-{secrets.token_hex(8)}",
            "token_type": "Bearer",
            "expires_in": self.expires_in,
            "scope": self.scope,
        }
        if self.include_subject:
            body["sub"] = self.subject
        return httpx.Response(200, json=body)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        authorization_endpoint="https://idp.example.com/authorize",
        token_endpoint="https://idp.example.com/token",
        userinfo_endpoint="https://idp.example.com/userinfo",
        client_id="gateway-client",
        callback_url="http://localhost:8000/callback",
        session_ttl=3600,
        flow_ttl=600,
        retry_backoff=0,
        _env_file=None,
    )


@pytest.fixture
def upstream():
    return SimulatedUpstream()


@pytest.fixture
def upstream_client(upstream, settings):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))
    return UpstreamTokenClient(
        timeout=settings.upstream_timeout,
        retry_backoff=settings.retry_backoff,
        http_client=http_client,
    )


@pytest.fixture
def sessions(clock):
    return SessionTokenStore(default_ttl=3600, clock=clock)


@pytest.fixture
def coordinator(settings, sessions, upstream_client, clock):
    return AuthorizationFlowCoordinator(
        settings,
        sessions,
        contexts=FlowContextStore(ttl=settings.flow_ttl, clock=clock),
        upstream=upstream_client,
        clock=clock,
    )
