"""Tests for the authorization flow coordinator.

Drives complete handshakes against a simulated upstream server.
"""

from urllib.parse import parse_qs, urlsplit

import pytest

from portcullis.auth.models.errors import (
    FlowTimeout,
    InvalidFlowState,
    InvalidRedirect,
    PKCEMismatch,
    TokenExpired,
    TokenInvalid,
    UpstreamDenied,
    UpstreamUnavailable,
)
from portcullis.auth.models.flow import FlowState
from portcullis.auth.models.security import PKCEParameters
from portcullis.auth.server.primitives.pkce import PKCEManager
from portcullis.auth.server.services.contexts import FlowContextStore
from portcullis.auth.server.services.flow import (
    AuthorizationFlowCoordinator,
    append_query_param,
)


def query_of(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


async def approve(coordinator, upstream, redirect_uri="http://localhost:1234/cb"):
    """Start a flow and have the simulated upstream approve it."""
    authorization_url, context = await coordinator.start_authorization(redirect_uri)
    params = query_of(authorization_url)
    code = upstream.issue_code(params.get("code_challenge"))
    return params, code, context


class TestStartAuthorization:
    async def test_builds_upstream_url_with_pkce(self, coordinator, settings):
        # Act
        authorization_url, context = await coordinator.start_authorization(
            "http://localhost:1234/cb"
        )

        # Assert
        assert authorization_url.startswith("https://idp.example.com/authorize?")
        params = query_of(authorization_url)
        assert params["response_type"] == "code"
        assert params["client_id"] == "gateway-client"
        assert params["redirect_uri"] == settings.callback_url
        assert params["state"] == context.correlation_id
        assert params["code_challenge"] == context.pkce.code_challenge
        assert params["code_challenge_method"] == "S256"
        assert "code_verifier" not in params
        assert context.pkce.code_verifier not in authorization_url
        assert context.state is FlowState.REDIRECT_ISSUED

    async def test_without_pkce(self, settings, sessions, upstream_client, clock):
        # Arrange
        coordinator = AuthorizationFlowCoordinator(
            settings.model_copy(update={"pkce_enabled": False}),
            sessions,
            upstream=upstream_client,
            clock=clock,
        )

        # Act
        authorization_url, context = await coordinator.start_authorization(
            "http://localhost:1234/cb"
        )

        # Assert
        assert "code_challenge" not in query_of(authorization_url)
        assert context.pkce is None

    async def test_invalid_redirect_creates_no_context(self, coordinator):
        with pytest.raises(InvalidRedirect):
            await coordinator.start_authorization("http://evil.example.com/cb")

        assert len(coordinator.contexts) == 0


class TestCompleteAuthorization:
    async def test_happy_path(self, coordinator, upstream, sessions):
        # Arrange
        params, code, context = await approve(coordinator, upstream)

        # Act
        redirect_url, session = await coordinator.complete_authorization(
            code=code, state=params["state"]
        )

        # Assert
        assert redirect_url.startswith("http://localhost:1234/cb?")
        assert query_of(redirect_url) == {"session_token": session.value}
        assert session.subject == "user-42"
        assert session.scopes == frozenset({"read", "write"})
        assert session.upstream.access_token.startswith("upstream-")
        assert context.state is FlowState.SESSION_ISSUED
        assert sessions.validate(session.value).is_valid

        # Upstream received the verifier matching the challenge
        assert not upstream.codes

    async def test_existing_query_preserved(self, coordinator, upstream):
        params, code, _ = await approve(
            coordinator, upstream, "https://app.example.com/cb?tab=1&session_token=old"
        )

        redirect_url, session = await coordinator.complete_authorization(
            code=code, state=params["state"]
        )

        assert query_of(redirect_url) == {"tab": "1", "session_token": session.value}

    async def test_subject_from_userinfo(self, coordinator, upstream):
        # Arrange
        upstream.include_subject = False
        params, code, _ = await approve(coordinator, upstream)

        # Act
        _, session = await coordinator.complete_authorization(code=code, state=params["state"])

        # Assert
        assert session.subject == "user-42"
        assert upstream.requests[-1].url.path == "/userinfo"

    async def test_missing_subject_is_denied(self, settings, sessions, upstream_client, upstream, clock):
        # Arrange
        upstream.include_subject = False
        coordinator = AuthorizationFlowCoordinator(
            settings.model_copy(update={"userinfo_endpoint": None}),
            sessions,
            upstream=upstream_client,
            clock=clock,
        )
        params, code, context = await approve(coordinator, upstream)

        # Act & Assert
        with pytest.raises(UpstreamDenied):
            await coordinator.complete_authorization(code=code, state=params["state"])
        assert context.state is FlowState.FAILED
        assert len(sessions) == 0

    async def test_upstream_error_parameter(self, coordinator, upstream):
        # Arrange
        params, _, context = await approve(coordinator, upstream)

        # Act & Assert
        with pytest.raises(UpstreamDenied, match="access_denied"):
            await coordinator.complete_authorization(
                code=None, state=params["state"], error="access_denied"
            )
        assert context.state is FlowState.FAILED
        assert context.failure_reason == "upstream_denied"

    async def test_unknown_state(self, coordinator):
        with pytest.raises(InvalidFlowState):
            await coordinator.complete_authorization(code="c", state="forged")

    async def test_replayed_callback_rejected(self, coordinator, upstream):
        params, code, _ = await approve(coordinator, upstream)
        await coordinator.complete_authorization(code=code, state=params["state"])

        with pytest.raises(InvalidFlowState):
            await coordinator.complete_authorization(code=code, state=params["state"])

    async def test_expired_context_times_out(self, coordinator, upstream, clock, sessions):
        # Arrange
        params, code, context = await approve(coordinator, upstream)
        clock.advance(601)

        # Act & Assert
        with pytest.raises(FlowTimeout):
            await coordinator.complete_authorization(code=code, state=params["state"])
        assert context.state is FlowState.FAILED
        assert context.failure_reason == "timeout"
        assert len(sessions) == 0

    async def test_upstream_rejects_code(self, coordinator, upstream):
        params, _, _ = await approve(coordinator, upstream)

        with pytest.raises(UpstreamDenied):
            await coordinator.complete_authorization(code="bogus", state=params["state"])

    async def test_upstream_unavailable_after_retry(self, coordinator, upstream):
        # Arrange
        params, code, context = await approve(coordinator, upstream)
        upstream.transport_failures = 2

        # Act & Assert
        with pytest.raises(UpstreamUnavailable):
            await coordinator.complete_authorization(code=code, state=params["state"])
        assert context.failure_reason == "upstream_unavailable"

    async def test_transient_failure_recovered_by_retry(self, coordinator, upstream):
        params, code, _ = await approve(coordinator, upstream)
        upstream.transport_failures = 1

        _, session = await coordinator.complete_authorization(code=code, state=params["state"])

        assert session.subject == "user-42"

    async def test_tampered_pkce_context(self, coordinator, upstream):
        # Arrange
        params, code, context = await approve(coordinator, upstream)
        context.pkce = PKCEParameters(
            code_verifier=PKCEManager().generate_parameters().code_verifier,
            code_challenge=context.pkce.code_challenge,
        )

        # Act & Assert
        with pytest.raises(PKCEMismatch):
            await coordinator.complete_authorization(code=code, state=params["state"])
        assert context.failure_reason == "pkce_mismatch"

    async def test_redirect_revalidated_before_final_redirect(
        self, coordinator, upstream, sessions
    ):
        # Arrange
        params, code, context = await approve(coordinator, upstream)
        context.redirect_uri = "https://evil.example.com@attacker.test/steal"

        # Act & Assert
        with pytest.raises(InvalidRedirect):
            await coordinator.complete_authorization(code=code, state=params["state"])
        assert len(sessions) == 0

    async def test_concurrent_flows_are_independent(self, coordinator, upstream):
        # Arrange
        first = await approve(coordinator, upstream, "http://localhost:1111/cb")
        second = await approve(coordinator, upstream, "http://localhost:2222/cb")

        # Act
        url_two, _ = await coordinator.complete_authorization(
            code=second[1], state=second[0]["state"]
        )
        url_one, _ = await coordinator.complete_authorization(
            code=first[1], state=first[0]["state"]
        )

        # Assert
        assert url_one.startswith("http://localhost:1111/cb")
        assert url_two.startswith("http://localhost:2222/cb")


class TestSessionLifecycle:
    async def test_refresh_rotates_token(self, coordinator, upstream, sessions):
        # Arrange
        params, code, _ = await approve(coordinator, upstream)
        _, session = await coordinator.complete_authorization(code=code, state=params["state"])

        # Act
        successor = await coordinator.refresh_session(session.value)

        # Assert
        assert successor.subject == session.subject
        assert successor.upstream is session.upstream
        assert not sessions.validate(session.value).is_valid
        assert sessions.validate(successor.value).is_valid

    async def test_refresh_renews_stale_upstream_credentials(
        self, coordinator, upstream, clock
    ):
        # Arrange
        upstream.expires_in = 60
        params, code, _ = await approve(coordinator, upstream)
        _, session = await coordinator.complete_authorization(code=code, state=params["state"])
        clock.advance(120)

        # Act
        successor = await coordinator.refresh_session(session.value)

        # Assert
        assert successor.upstream.access_token != session.upstream.access_token
        assert successor.upstream.refresh_token == session.upstream.refresh_token
        assert not successor.upstream.is_expired(clock.now)

    async def test_refresh_unknown_and_expired(self, coordinator, sessions, clock):
        token = sessions.issue("alice", ttl=10)
        clock.advance(11)

        with pytest.raises(TokenExpired):
            await coordinator.refresh_session(token.value)
        with pytest.raises(TokenInvalid):
            await coordinator.refresh_session("unknown")

    async def test_revoke(self, coordinator, sessions):
        token = sessions.issue("alice")

        assert coordinator.revoke_session(token.value) is True
        assert not sessions.validate(token.value).is_valid


class TestAppendQueryParam:
    def test_append_to_bare_uri(self):
        assert (
            append_query_param("http://localhost:1234/cb", "session_token", "abc")
            == "http://localhost:1234/cb?session_token=abc"
        )

    def test_replaces_existing(self):
        assert (
            append_query_param("https://a.example/cb?x=1&session_token=old", "session_token", "new")
            == "https://a.example/cb?x=1&session_token=new"
        )


def test_default_context_store_uses_settings(settings, sessions, upstream_client):
    coordinator = AuthorizationFlowCoordinator(settings, sessions, upstream=upstream_client)

    assert isinstance(coordinator.contexts, FlowContextStore)
    assert coordinator.contexts.ttl == settings.flow_ttl
    assert coordinator.contexts.max_pending == settings.max_pending_flows


def test_injected_empty_context_store_is_kept(settings, sessions, upstream_client, clock):
    # Arrange
    contexts = FlowContextStore(ttl=30, clock=clock)
    assert len(contexts) == 0

    # Act
    coordinator = AuthorizationFlowCoordinator(
        settings, sessions, contexts=contexts, upstream=upstream_client, clock=clock
    )

    # Assert
    assert coordinator.contexts is contexts


async def test_started_flow_lands_in_injected_store(settings, sessions, upstream_client, clock):
    contexts = FlowContextStore(ttl=30, clock=clock)
    coordinator = AuthorizationFlowCoordinator(
        settings, sessions, contexts=contexts, upstream=upstream_client, clock=clock
    )

    _, context = await coordinator.start_authorization("http://localhost:1234/cb")

    assert contexts.peek(context.correlation_id) is context
