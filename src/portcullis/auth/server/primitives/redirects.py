"""Redirect URI validation.

Decides whether a client-supplied redirect URI is an acceptable place to
send a user (and their session token). Validation is a pure function of the
policy and the input, and is repeated right before every redirect.
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlsplit

from portcullis.auth.models.errors import InvalidRedirect
from portcullis.auth.models.security import LOOPBACK_HOSTS, RedirectPolicy


@dataclass(frozen=True)
class RedirectDecision:
    accepted: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.accepted


ACCEPTED = RedirectDecision(accepted=True)


def _rejected(reason: str) -> RedirectDecision:
    return RedirectDecision(accepted=False, reason=reason)


class RedirectValidator:
    """Validates redirect URIs against a ``RedirectPolicy``.

    Accepts absolute ``https`` URIs (host allow-listed when the policy
    restricts hosts) and ``http`` URIs on ``localhost``/``127.0.0.1``.
    """

    def __init__(self, policy: RedirectPolicy | None = None) -> None:
        self.policy = policy if policy is not None else RedirectPolicy()

    def validate(self, uri: str | None) -> RedirectDecision:
        if not uri:
            return _rejected("redirect URI is required")

        # Browsers normalise backslashes and strip control characters, which
        # lets a URI parse differently here than where it is followed.
        if any(ord(c) <= 0x20 or ord(c) == 0x7F or c == "\\" for c in uri):
            return _rejected("redirect URI contains whitespace or control characters")
        if "#" in uri:
            return _rejected("redirect URI must not contain a fragment")

        try:
            parsed = urlsplit(uri)
            host = parsed.hostname
            _ = parsed.port  # raises ValueError on a malformed port
        except ValueError:
            return _rejected("redirect URI is not a valid URI")

        if not parsed.scheme or not parsed.netloc:
            return _rejected("redirect URI must be absolute")
        if "@" in parsed.netloc:
            return _rejected("redirect URI must not contain credentials")
        if not host:
            return _rejected("redirect URI has no host")

        if parsed.scheme == "https":
            if not self.policy.host_allowed(host):
                return _rejected(f"host {host} is not allowed")
            return ACCEPTED

        if parsed.scheme == "http":
            if self.policy.allow_loopback_http and host in LOOPBACK_HOSTS:
                return ACCEPTED
            return _rejected("plain http is only allowed for localhost")

        return _rejected(f"scheme {parsed.scheme} is not allowed")

    def require(self, uri: str | None) -> str:
        """Return ``uri`` if acceptable.

        Raises:
            InvalidRedirect: If the URI is rejected
        """
        decision = self.validate(uri)
        if not decision.accepted:
            raise InvalidRedirect(decision.reason or "redirect URI rejected")
        return uri
