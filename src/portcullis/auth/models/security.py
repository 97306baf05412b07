"""Security-related models for the authentication gateway.

Contains PKCE parameters and the redirect allow policy.
"""

from __future__ import annotations

from dataclasses import dataclass, field

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1"})


@dataclass(frozen=True)
class PKCEParameters:
    """PKCE (Proof Key for Code Exchange) parameters for one authorization flow.

    The code verifier stays on the server. Only the challenge is sent to the
    upstream authorization endpoint (RFC 7636).
    """

    code_verifier: str = field(repr=False)
    code_challenge: str = field()
    code_challenge_method: str = field(default="S256")

    def __post_init__(self) -> None:
        """Validate PKCE parameters meet RFC 7636 requirements."""
        if not (43 <= len(self.code_verifier) <= 128):
            raise ValueError("code_verifier must be 43-128 characters")
        if not (43 <= len(self.code_challenge) <= 128):
            raise ValueError("code_challenge must be 43-128 characters")
        if self.code_challenge_method != "S256":
            raise ValueError("Only S256 code challenge method is supported")


@dataclass(frozen=True)
class RedirectPolicy:
    """Which client redirect URIs the gateway will send users back to.

    HTTPS redirects are accepted for any host unless ``allowed_hosts`` is
    non-empty, in which case the host must be listed. Plain HTTP is only
    ever accepted for loopback hosts.
    """

    allowed_hosts: frozenset[str] = frozenset()
    allow_loopback_http: bool = True

    def __post_init__(self) -> None:
        # Host matching is case-insensitive
        object.__setattr__(
            self, "allowed_hosts", frozenset(h.lower() for h in self.allowed_hosts)
        )

    @property
    def restricts_hosts(self) -> bool:
        return bool(self.allowed_hosts)

    def host_allowed(self, host: str) -> bool:
        if not self.restricts_hosts:
            return True
        return host.lower() in self.allowed_hosts
