"""Upstream OAuth server client.

Performs the back-channel calls the gateway makes to the upstream
authorization server: authorization code exchange (RFC 6749 Section 4.1.3),
token refresh (Section 6), and an optional userinfo lookup to resolve the
subject. Every call has an explicit timeout. Transport failures are retried
once after a short backoff. HTTP error responses are never retried.
"""

from __future__ import annotations

import asyncio
import logging

import httpx
from pydantic import ValidationError

from portcullis.auth.models.errors import UpstreamDenied, UpstreamUnavailable
from portcullis.auth.models.tokens import (
    RefreshTokenRequest,
    TokenRequest,
    TokenResponse,
    UserInfo,
)

logger = logging.getLogger(__name__)

_FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}


class UpstreamTokenClient:
    """Talks to the upstream token and userinfo endpoints.

    Uses application/x-www-form-urlencoded encoding as required by OAuth 2.1.
    """

    def __init__(
        self,
        timeout: float = 10.0,
        retry_backoff: float = 0.5,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the upstream client.

        Args:
            timeout: HTTP request timeout in seconds
            retry_backoff: Delay before the single retry of a transport failure
            http_client: Preconfigured client, mainly for tests
        """
        self.timeout = timeout
        self.retry_backoff = retry_backoff
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def exchange_code_for_token(
        self, token_request: TokenRequest
    ) -> TokenResponse:
        """Exchange an authorization code for upstream tokens.

        Returns:
            TokenResponse: A successful token response

        Raises:
            UpstreamDenied: If the upstream server rejects the exchange
            UpstreamUnavailable: If the upstream server cannot be reached
        """
        logger.debug(f"Exchanging authorization code at {token_request.token_endpoint}")
        form_data = token_request.to_form_data()
        logger.debug(
            f"Token request: grant_type={form_data['grant_type']}, "
            f"client_id={form_data['client_id']}, "
            f"pkce={'code_verifier' in form_data}"
        )

        response = await self._post_form(token_request.token_endpoint, form_data)
        return self._parse_token_response(response, "token exchange")

    async def refresh_access_token(
        self, refresh_request: RefreshTokenRequest
    ) -> TokenResponse:
        """Refresh upstream tokens with a refresh token.

        Raises:
            UpstreamDenied: If the upstream server rejects the refresh
            UpstreamUnavailable: If the upstream server cannot be reached
        """
        logger.debug(f"Refreshing upstream token at {refresh_request.token_endpoint}")
        response = await self._post_form(
            refresh_request.token_endpoint, refresh_request.to_form_data()
        )
        return self._parse_token_response(response, "token refresh")

    async def fetch_userinfo(self, userinfo_endpoint: str, access_token: str) -> UserInfo:
        """Fetch the upstream user profile to learn the subject identity.

        Raises:
            UpstreamDenied: If the upstream server rejects the access token
            UpstreamUnavailable: If the upstream server cannot be reached
        """
        response = await self._send(
            "GET",
            userinfo_endpoint,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            },
        )
        if response.status_code in (401, 403):
            raise UpstreamDenied(f"Userinfo request rejected ({response.status_code})")
        if response.status_code != 200:
            raise UpstreamUnavailable(
                f"Userinfo endpoint returned {response.status_code}"
            )
        try:
            return UserInfo.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise UpstreamUnavailable(f"Invalid userinfo response format: {e}") from e

    async def _post_form(self, url: str, form_data: dict[str, str]) -> httpx.Response:
        return await self._send("POST", url, data=form_data, headers=_FORM_HEADERS)

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send a request, retrying once on transport failure."""
        try:
            return await self._http_client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            logger.warning(
                f"Upstream {method} {url} failed ({e!r}), "
                f"retrying in {self.retry_backoff}s"
            )

        await asyncio.sleep(self.retry_backoff)
        try:
            return await self._http_client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Upstream {method} {url} failed: {e}") from e

    def _parse_token_response(
        self, response: httpx.Response, operation: str
    ) -> TokenResponse:
        """Parse a token endpoint response according to RFC 6749 Section 5.

        Raises:
            UpstreamDenied: For OAuth error responses
            UpstreamUnavailable: For server errors and unparseable bodies
        """
        if response.status_code >= 500:
            raise UpstreamUnavailable(
                f"Upstream {operation} failed with {response.status_code}"
            )

        try:
            token_response = TokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise UpstreamUnavailable(f"Invalid token response format: {e}") from e

        if response.status_code == 200 and token_response.is_success():
            logger.info(f"Upstream {operation} successful")
            return token_response

        error_code = token_response.error or "unknown_error"
        error_description = token_response.error_description or "No description provided"
        logger.warning(
            f"Upstream {operation} failed with {response.status_code}: "
            f"{error_code} - {error_description}"
        )
        raise UpstreamDenied(f"{error_code}: {error_description}")

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        await self._http_client.aclose()
