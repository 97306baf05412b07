"""Session token store.

Issues, validates, rotates, revokes and expires the opaque bearer tokens the
gateway hands to clients. Records are keyed by the SHA-256 digest of the
token so raw values are never used as map keys or written to logs.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import replace

from portcullis.auth.models.errors import TokenExpired, TokenInvalid
from portcullis.auth.models.tokens import (
    SessionToken,
    TokenStatus,
    TokenValidation,
    UpstreamCredentials,
    token_digest,
    token_fingerprint,
)

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
_MAX_ISSUE_ATTEMPTS = 8


def generate_token_value() -> str:
    """32 bytes from the OS CSPRNG, base64url encoded (43 characters)."""
    return secrets.token_urlsafe(TOKEN_BYTES)


class SessionTokenStore:
    """Thread-safe store of issued session tokens.

    A single lock guards the token map. It is only ever held for dictionary
    operations, never across I/O, so validation stays cheap under load.
    Rotation swaps the old record for the new one inside one critical
    section: a concurrent validator sees exactly one of them as valid.
    """

    def __init__(
        self,
        default_ttl: float = 3600.0,
        clock: Callable[[], float] = time.time,
        token_factory: Callable[[], str] = generate_token_value,
    ) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._token_factory = token_factory
        self._lock = threading.Lock()
        self._records: dict[str, SessionToken] = {}  # digest -> token
        # digest -> original expiry, for revoked and rotated tokens. Candidate
        # values matching a retired digest are never handed out again.
        self._retired: dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._records)

    # ================================
    # Issuance
    # ================================

    def issue(
        self,
        subject: str,
        upstream: UpstreamCredentials | None = None,
        ttl: float | None = None,
        scopes: Iterable[str] = (),
    ) -> SessionToken:
        """Mint a new session token for ``subject``.

        Raises:
            ValueError: If subject is empty or ttl is not positive
        """
        if not subject:
            raise ValueError("subject is required")
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be positive")

        now = self._clock()
        with self._lock:
            value, digest = self._new_value_locked()
            token = SessionToken(
                value=value,
                subject=subject,
                issued_at=now,
                expires_at=now + ttl,
                scopes=frozenset(scopes),
                upstream=upstream,
            )
            self._records[digest] = token

        logger.debug(f"Issued session token {token.fingerprint} for {subject}")
        return token

    def _new_value_locked(self) -> tuple[str, str]:
        for _ in range(_MAX_ISSUE_ATTEMPTS):
            value = self._token_factory()
            digest = token_digest(value)
            if digest not in self._records and digest not in self._retired:
                return value, digest
            logger.warning("Discarded colliding session token candidate")
        raise RuntimeError("Could not generate a unique session token")

    # ================================
    # Validation
    # ================================

    def validate(self, value: str | None) -> TokenValidation:
        """Look up a presented token.

        Expired tokens are purged as a side effect.
        """
        if not value:
            return TokenValidation(TokenStatus.INVALID)

        digest = token_digest(value)
        now = self._clock()
        with self._lock:
            token = self._records.get(digest)
            if token is None:
                status = TokenStatus.INVALID
            elif token.is_expired(now):
                del self._records[digest]
                status = TokenStatus.EXPIRED
            else:
                return TokenValidation(TokenStatus.VALID, token)

        logger.debug(
            f"Rejected session token {token_fingerprint(value)}: {status.value}"
        )
        return TokenValidation(status)

    # ================================
    # Revocation & rotation
    # ================================

    def revoke(self, value: str) -> bool:
        """Invalidate a token immediately.

        Returns True if the token existed and was revoked, False otherwise.
        """
        digest = token_digest(value)
        with self._lock:
            token = self._records.pop(digest, None)
            if token is None:
                return False
            self._retired[digest] = token.expires_at

        logger.debug(f"Revoked session token {token.fingerprint}")
        return True

    def rotate(
        self,
        value: str,
        ttl: float | None = None,
        upstream: UpstreamCredentials | None = None,
    ) -> SessionToken:
        """Replace a valid token with a fresh successor.

        The successor keeps subject and scopes. Upstream credentials are
        carried over unless replacements are given.

        Raises:
            TokenInvalid: If the token is unknown, revoked or already rotated
            TokenExpired: If the token has expired
        """
        ttl = self.default_ttl if ttl is None else ttl
        digest = token_digest(value)
        now = self._clock()
        with self._lock:
            current = self._records.get(digest)
            if current is None:
                raise TokenInvalid("Unknown session token")
            if current.is_expired(now):
                del self._records[digest]
                raise TokenExpired("Session token expired")

            new_value, new_digest = self._new_value_locked()
            successor = replace(
                current,
                value=new_value,
                issued_at=now,
                expires_at=now + ttl,
                upstream=upstream if upstream is not None else current.upstream,
                rotated_from=current.fingerprint,
            )
            del self._records[digest]
            self._retired[digest] = current.expires_at
            self._records[new_digest] = successor

        logger.debug(
            f"Rotated session token {current.fingerprint} -> {successor.fingerprint}"
        )
        return successor

    # ================================
    # Eviction
    # ================================

    def purge_expired(self, batch_size: int = 500) -> int:
        """Remove expired records and stale retired digests.

        The map is snapshotted under the lock and expired entries are
        removed in small batches, re-checked under the lock, so live
        validation is never stalled for long.

        Returns the number of expired tokens removed.
        """
        now = self._clock()
        with self._lock:
            records = list(self._records.items())
            retired = list(self._retired.items())

        expired = [d for d, token in records if token.is_expired(now)]
        stale = [d for d, expires_at in retired if now >= expires_at]

        removed = 0
        for start in range(0, len(expired), batch_size):
            with self._lock:
                for digest in expired[start : start + batch_size]:
                    token = self._records.get(digest)
                    if token is not None and token.is_expired(now):
                        del self._records[digest]
                        removed += 1

        for start in range(0, len(stale), batch_size):
            with self._lock:
                for digest in stale[start : start + batch_size]:
                    self._retired.pop(digest, None)

        if removed or stale:
            logger.debug(
                f"Purged {removed} expired session tokens, "
                f"{len(stale)} retired digests"
            )
        return removed

    def clear(self) -> None:
        """Drop every token. Used on shutdown."""
        with self._lock:
            self._records.clear()
            self._retired.clear()
