"""Authorization flow orchestration service.

Drives one handshake from ``/authorize`` through the upstream authorization
server and back, ending with a session token delivered to the client's
redirect URI:

    STARTED -> REDIRECT_ISSUED -> CODE_RECEIVED -> TOKEN_EXCHANGED -> SESSION_ISSUED

Any failure moves the flow to FAILED and is raised to the caller.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from portcullis.auth.models.errors import (
    GatewayError,
    TokenExpired,
    TokenInvalid,
    UpstreamDenied,
)
from portcullis.auth.models.flow import (
    AuthorizationContext,
    AuthorizationRequest,
    FlowState,
)
from portcullis.auth.models.tokens import (
    RefreshTokenRequest,
    SessionToken,
    TokenRequest,
    TokenResponse,
    TokenStatus,
)
from portcullis.auth.server.primitives.pkce import PKCEManager
from portcullis.auth.server.primitives.redirects import RedirectValidator
from portcullis.auth.server.services.contexts import FlowContextStore
from portcullis.auth.server.services.sessions import SessionTokenStore
from portcullis.auth.server.services.upstream import UpstreamTokenClient
from portcullis.config import Settings

logger = logging.getLogger(__name__)

SESSION_TOKEN_PARAM = "session_token"


def append_query_param(uri: str, name: str, value: str) -> str:
    """Add ``name=value`` to a URI's query, replacing any existing ``name``."""
    parts = urlsplit(uri)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != name]
    query.append((name, value))
    return urlunsplit(parts._replace(query=urlencode(query)))


class AuthorizationFlowCoordinator:
    """Orchestrates authorization code flows against the upstream server.

    Handles:
    - Redirect URI validation, at entry and again before the final redirect
    - PKCE parameter generation and verification
    - Upstream code exchange and subject resolution
    - Session token issuance, refresh and revocation

    No store lock is held while waiting on the upstream server.
    """

    def __init__(
        self,
        settings: Settings,
        sessions: SessionTokenStore,
        contexts: FlowContextStore | None = None,
        upstream: UpstreamTokenClient | None = None,
        redirect_validator: RedirectValidator | None = None,
        pkce_manager: PKCEManager | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self._sessions = sessions
        if contexts is None:
            contexts = FlowContextStore(
                ttl=settings.flow_ttl, max_pending=settings.max_pending_flows, clock=clock
            )
        self._contexts = contexts
        if upstream is None:
            upstream = UpstreamTokenClient(
                timeout=settings.upstream_timeout, retry_backoff=settings.retry_backoff
            )
        self._upstream = upstream
        if redirect_validator is None:
            redirect_validator = RedirectValidator(settings.redirect_policy())
        self._validator = redirect_validator
        self._pkce_manager = pkce_manager if pkce_manager is not None else PKCEManager()
        self._clock = clock

    @property
    def contexts(self) -> FlowContextStore:
        return self._contexts

    # ================================
    # Authorization
    # ================================

    async def start_authorization(
        self, redirect_uri: str | None
    ) -> tuple[str, AuthorizationContext]:
        """Start a flow for a client that wants to be sent to ``redirect_uri``.

        Returns:
            Tuple of (authorization_url, context)
            - authorization_url: upstream URL to redirect the user agent to
            - context: the stored pending flow

        Raises:
            InvalidRedirect: If the redirect URI is not acceptable
        """
        redirect_uri = self._validator.require(redirect_uri)

        pkce_params = None
        if self.settings.pkce_enabled:
            pkce_params = self._pkce_manager.generate_parameters()

        context = self._contexts.create(redirect_uri, pkce_params)
        auth_request = AuthorizationRequest(
            authorization_endpoint=self.settings.authorization_endpoint,
            client_id=self.settings.client_id,
            redirect_uri=self.settings.callback_url,
            state=context.correlation_id,
            code_challenge=pkce_params.code_challenge if pkce_params else None,
            code_challenge_method=(
                pkce_params.code_challenge_method if pkce_params else None
            ),
            scope=self.settings.scope,
        )
        authorization_url = auth_request.build_authorization_url()
        context.advance(FlowState.REDIRECT_ISSUED)

        logger.info(
            f"Started authorization flow {context.correlation_id[:8]} "
            f"(pkce={pkce_params is not None})"
        )
        return authorization_url, context

    async def complete_authorization(
        self,
        code: str | None,
        state: str | None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> tuple[str, SessionToken]:
        """Finish a flow from the upstream callback parameters.

        Returns:
            Tuple of (redirect_url, session_token)

        Raises:
            InvalidFlowState: If ``state`` matches no pending flow
            FlowTimeout: If the flow expired
            UpstreamDenied: If upstream refused authorization or the exchange
            UpstreamUnavailable: If upstream could not be reached
            PKCEMismatch: If the stored PKCE parameters are inconsistent
            InvalidRedirect: If the stored redirect URI no longer validates
        """
        context = self._contexts.take(state)
        try:
            return await self._complete(context, code, error, error_description)
        except GatewayError as e:
            context.fail(e.error_code)
            logger.warning(
                f"Authorization flow {context.correlation_id[:8]} failed: "
                f"{e.error_code} ({e.description})"
            )
            raise

    async def _complete(
        self,
        context: AuthorizationContext,
        code: str | None,
        error: str | None,
        error_description: str | None,
    ) -> tuple[str, SessionToken]:
        if error:
            raise UpstreamDenied(f"{error}: {error_description or 'authorization denied'}")
        if not code:
            raise UpstreamDenied("Callback is missing the authorization code")
        context.advance(FlowState.CODE_RECEIVED)

        code_verifier = None
        if context.pkce is not None:
            self._pkce_manager.require(context.pkce)
            code_verifier = context.pkce.code_verifier

        token_response = await self._upstream.exchange_code_for_token(
            TokenRequest(
                token_endpoint=self.settings.token_endpoint,
                code=code,
                redirect_uri=self.settings.callback_url,
                client_id=self.settings.client_id,
                code_verifier=code_verifier,
                client_secret=self.settings.client_secret,
            )
        )
        context.advance(FlowState.TOKEN_EXCHANGED)

        credentials = token_response.to_credentials(now=self._clock())
        subject = await self._resolve_subject(token_response)
        scope = token_response.scope or self.settings.scope or ""

        # Checked again here so a tampered context cannot redirect elsewhere
        redirect_uri = self._validator.require(context.redirect_uri)

        session = self._sessions.issue(
            subject,
            credentials,
            ttl=self.settings.session_ttl,
            scopes=scope.split(),
        )
        context.advance(FlowState.SESSION_ISSUED)

        logger.info(
            f"Authorization flow {context.correlation_id[:8]} issued session "
            f"{session.fingerprint} for {subject}"
        )
        return append_query_param(redirect_uri, SESSION_TOKEN_PARAM, session.value), session

    async def _resolve_subject(self, token_response: TokenResponse) -> str:
        subject = token_response.subject()
        if subject:
            return subject

        if self.settings.userinfo_endpoint:
            userinfo = await self._upstream.fetch_userinfo(
                self.settings.userinfo_endpoint, token_response.access_token
            )
            subject = userinfo.subject()
            if subject:
                return subject

        raise UpstreamDenied("Upstream server did not identify the user")

    # ================================
    # Session lifecycle
    # ================================

    async def refresh_session(self, value: str) -> SessionToken:
        """Rotate a session token, refreshing upstream credentials if stale.

        Raises:
            TokenInvalid: If the token is unknown or already rotated
            TokenExpired: If the token has expired
            UpstreamDenied: If upstream refused the refresh
            UpstreamUnavailable: If upstream could not be reached
        """
        validation = self._sessions.validate(value)
        if validation.status is TokenStatus.EXPIRED:
            raise TokenExpired("Session token expired")
        if not validation.is_valid:
            raise TokenInvalid("Unknown session token")

        current = validation.token
        refreshed = None
        upstream = current.upstream
        if upstream and upstream.is_expired(self._clock()) and upstream.can_refresh():
            logger.debug(f"Refreshing upstream credentials for {current.fingerprint}")
            response = await self._upstream.refresh_access_token(
                RefreshTokenRequest(
                    token_endpoint=self.settings.token_endpoint,
                    refresh_token=upstream.refresh_token,
                    client_id=self.settings.client_id,
                    client_secret=self.settings.client_secret,
                )
            )
            refreshed = response.to_credentials(now=self._clock(), previous=upstream)

        return self._sessions.rotate(
            value, ttl=self.settings.session_ttl, upstream=refreshed
        )

    def revoke_session(self, value: str) -> bool:
        return self._sessions.revoke(value)

    async def close(self) -> None:
        await self._upstream.close()
