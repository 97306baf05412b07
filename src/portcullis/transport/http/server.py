"""HTTP surface of the authentication gateway.

Routes:
- ``GET /authorize``: start a flow, 302 to the upstream server
- ``GET /callback`` (alias ``GET /token``): finish a flow, 302 back to the client
- ``POST /session/refresh``: rotate the presented session token
- ``POST /session/revoke``: revoke the presented session token
- ``GET /healthz``: liveness
- anything else: the protected application, behind bearer authentication
"""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Iterable

import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.routing import Mount, Route
from starlette.types import ASGIApp

from portcullis.auth.models.errors import GatewayError
from portcullis.auth.server.authenticator import (
    DEFAULT_PUBLIC_PATHS,
    BearerAuthenticator,
    RequestAuthenticator,
    parse_bearer,
)
from portcullis.auth.server.responses import error_response
from portcullis.auth.server.services.flow import AuthorizationFlowCoordinator
from portcullis.auth.server.services.sessions import SessionTokenStore
from portcullis.auth.server.services.sweeper import ExpirySweeper
from portcullis.config import Settings

logger = logging.getLogger(__name__)

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


class GatewayServer:
    """Authentication gateway in front of a protected ASGI application.

    Stores and services are created from ``settings`` unless injected. The
    expiry sweeper runs for the lifetime of the ASGI app.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        protected_app: ASGIApp | None = None,
        sessions: SessionTokenStore | None = None,
        coordinator: AuthorizationFlowCoordinator | None = None,
        required_scopes: Iterable[str] = (),
    ) -> None:
        self.settings = settings if settings is not None else Settings()
        if sessions is None:
            sessions = SessionTokenStore(default_ttl=self.settings.session_ttl)
        self.sessions = sessions
        if coordinator is None:
            coordinator = AuthorizationFlowCoordinator(self.settings, self.sessions)
        self.coordinator = coordinator
        self.authenticator = BearerAuthenticator(self.sessions)
        self.sweeper = ExpirySweeper(
            self.sessions, self.coordinator.contexts, self.settings.sweep_interval
        )
        self.required_scopes = frozenset(required_scopes)
        if protected_app is None:
            protected_app = self._default_protected_app()
        self._protected_app = protected_app
        self.app = self._create_app()
        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task | None = None

    def _create_app(self) -> Starlette:
        routes = [
            Route("/authorize", self._handle_authorize, methods=["GET"]),
            Route("/callback", self._handle_callback, methods=["GET"]),
            Route("/token", self._handle_callback, methods=["GET"]),
            Route("/healthz", self._handle_health, methods=["GET"]),
            Route("/session/refresh", self._handle_refresh, methods=["POST"]),
            Route("/session/revoke", self._handle_revoke, methods=["POST"]),
            Mount("/", app=self._protected_app),
        ]
        middleware = [
            Middleware(
                RequestAuthenticator,
                authenticator=self.authenticator,
                public_paths=DEFAULT_PUBLIC_PATHS,
                required_scopes=self.required_scopes,
                max_body_size=self.settings.max_body_size,
            )
        ]
        return Starlette(
            routes=routes,
            middleware=middleware,
            exception_handlers={GatewayError: self._handle_gateway_error},
            lifespan=self._lifespan,
        )

    def _default_protected_app(self) -> Starlette:
        return Starlette(
            routes=[Route("/mcp", self._handle_whoami, methods=["GET", "POST"])]
        )

    @contextlib.asynccontextmanager
    async def _lifespan(self, app: Starlette) -> AsyncIterator[None]:
        self.sweeper.start()
        try:
            yield
        finally:
            await self.sweeper.stop()
            await self.coordinator.close()

    # ================================
    # Server lifecycle
    # ================================

    async def start(self) -> None:
        """Start the HTTP server in a background task."""
        config = uvicorn.Config(
            app=self.app,
            host=self.settings.host,
            port=self.settings.port,
            log_level=self.settings.log_level.lower(),
        )
        self._server = uvicorn.Server(config)
        self._server_task = asyncio.create_task(self._server.serve())
        logger.info(f"Gateway started on {self.settings.host}:{self.settings.port}")

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._server:
            self._server.should_exit = True
        if self._server_task:
            await self._server_task
            self._server_task = None
        self.sessions.clear()
        self.coordinator.contexts.clear()

    def run(self) -> None:
        """Serve until interrupted."""
        uvicorn.run(
            self.app,
            host=self.settings.host,
            port=self.settings.port,
            log_level=self.settings.log_level.lower(),
        )

    # ================================
    # Handlers
    # ================================

    async def _handle_authorize(self, request: Request) -> Response:
        redirect_uri = request.query_params.get("redirect_uri")
        authorization_url, _ = await self.coordinator.start_authorization(redirect_uri)
        return RedirectResponse(authorization_url, status_code=302, headers=NO_STORE)

    async def _handle_callback(self, request: Request) -> Response:
        params = request.query_params
        redirect_url, _ = await self.coordinator.complete_authorization(
            code=params.get("code"),
            state=params.get("state"),
            error=params.get("error"),
            error_description=params.get("error_description"),
        )
        return RedirectResponse(redirect_url, status_code=302, headers=NO_STORE)

    async def _handle_refresh(self, request: Request) -> Response:
        token_value = parse_bearer(request.headers.get("authorization"))
        successor = await self.coordinator.refresh_session(token_value)
        return JSONResponse(
            {
                "session_token": successor.value,
                "token_type": "Bearer",
                "expires_in": successor.expires_in(successor.issued_at),
            },
            headers=NO_STORE,
        )

    async def _handle_revoke(self, request: Request) -> Response:
        token_value = parse_bearer(request.headers.get("authorization"))
        self.coordinator.revoke_session(token_value)
        return Response(status_code=204)

    async def _handle_health(self, request: Request) -> Response:
        return JSONResponse({"status": "ok"})

    async def _handle_whoami(self, request: Request) -> Response:
        principal = request.state.principal
        return JSONResponse(
            {"subject": principal.subject, "scopes": sorted(principal.scopes)}
        )

    async def _handle_gateway_error(self, request: Request, exc: Exception) -> Response:
        return error_response(exc)
