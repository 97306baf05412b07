"""Authorization flow models for the gateway.

Contains the upstream authorization request and the per-attempt context
that tracks one handshake.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from urllib.parse import urlencode

from portcullis.auth.models.security import PKCEParameters

logger = logging.getLogger(__name__)


class FlowState(enum.Enum):
    STARTED = "started"
    REDIRECT_ISSUED = "redirect_issued"
    CODE_RECEIVED = "code_received"
    TOKEN_EXCHANGED = "token_exchanged"
    SESSION_ISSUED = "session_issued"
    FAILED = "failed"


# Allowed forward transitions. FAILED is reachable from any non-terminal state.
_TRANSITIONS: dict[FlowState, FlowState] = {
    FlowState.STARTED: FlowState.REDIRECT_ISSUED,
    FlowState.REDIRECT_ISSUED: FlowState.CODE_RECEIVED,
    FlowState.CODE_RECEIVED: FlowState.TOKEN_EXCHANGED,
    FlowState.TOKEN_EXCHANGED: FlowState.SESSION_ISSUED,
}

TERMINAL_STATES = frozenset({FlowState.SESSION_ISSUED, FlowState.FAILED})


@dataclass
class AuthorizationContext:
    """Server-side record of one in-progress authorization attempt.

    The correlation id doubles as the OAuth ``state`` parameter sent
    upstream. The PKCE verifier never leaves this record except in the
    back-channel token request.
    """

    correlation_id: str
    redirect_uri: str
    created_at: float
    pkce: PKCEParameters | None = field(default=None, repr=False)
    state: FlowState = FlowState.STARTED
    failure_reason: str | None = None

    def advance(self, new_state: FlowState) -> None:
        """Move to the next state in the happy path.

        Raises:
            ValueError: If the transition is not allowed
        """
        if _TRANSITIONS.get(self.state) is not new_state:
            raise ValueError(
                f"Illegal flow transition {self.state.value} -> {new_state.value}"
            )
        logger.debug(
            f"Flow {self.correlation_id[:8]}: {self.state.value} -> {new_state.value}"
        )
        self.state = new_state

    def fail(self, reason: str) -> None:
        if self.state in TERMINAL_STATES:
            return
        logger.debug(f"Flow {self.correlation_id[:8]}: {self.state.value} -> failed")
        self.state = FlowState.FAILED
        self.failure_reason = reason

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def age(self, now: float) -> float:
        return now - self.created_at


@dataclass(frozen=True)
class AuthorizationRequest:
    """Authorization request sent to the upstream OAuth server."""

    authorization_endpoint: str
    client_id: str
    redirect_uri: str
    state: str
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    scope: str | None = None

    def build_authorization_url(self) -> str:
        """Build the complete authorization URL."""
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "state": self.state,
        }

        if self.code_challenge:
            params["code_challenge"] = self.code_challenge
            params["code_challenge_method"] = self.code_challenge_method or "S256"
        if self.scope:
            params["scope"] = self.scope

        separator = "&" if "?" in self.authorization_endpoint else "?"
        return f"{self.authorization_endpoint}{separator}{urlencode(params)}"
