"""Pending authorization flow storage.

Holds one ``AuthorizationContext`` per in-progress handshake between
``/authorize`` and the upstream callback. Contexts are single use, expire
after a TTL, and the store is bounded so abandoned flows cannot pile up.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from collections import OrderedDict
from collections.abc import Callable

from portcullis.auth.models.errors import FlowTimeout, InvalidFlowState
from portcullis.auth.models.flow import AuthorizationContext
from portcullis.auth.models.security import PKCEParameters

logger = logging.getLogger(__name__)


class FlowContextStore:
    """Thread-safe, TTL-bounded map of correlation id to flow context.

    Insertion order equals creation order, so when the store is full the
    oldest pending flow is evicted first.
    """

    def __init__(
        self,
        ttl: float = 600.0,
        max_pending: int = 10_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_pending < 1:
            raise ValueError("max_pending must be at least 1")
        self.ttl = ttl
        self.max_pending = max_pending
        self._clock = clock
        self._lock = threading.Lock()
        self._contexts: OrderedDict[str, AuthorizationContext] = OrderedDict()

    def __len__(self) -> int:
        return len(self._contexts)

    # ================================
    # Creation
    # ================================

    def create(
        self, redirect_uri: str, pkce: PKCEParameters | None = None
    ) -> AuthorizationContext:
        """Register a new pending flow and return its context."""
        context = AuthorizationContext(
            correlation_id=secrets.token_urlsafe(32),
            redirect_uri=redirect_uri,
            created_at=self._clock(),
            pkce=pkce,
        )
        with self._lock:
            while len(self._contexts) >= self.max_pending:
                _, evicted = self._contexts.popitem(last=False)
                evicted.fail("evicted")
                logger.warning(
                    f"Pending flow limit reached, evicted flow "
                    f"{evicted.correlation_id[:8]}"
                )
            self._contexts[context.correlation_id] = context

        logger.debug(f"Created flow {context.correlation_id[:8]}")
        return context

    # ================================
    # Consumption
    # ================================

    def take(self, correlation_id: str | None) -> AuthorizationContext:
        """Remove and return the context for ``correlation_id``.

        A context can be taken at most once, so a replayed callback finds
        nothing.

        Raises:
            InvalidFlowState: If no pending flow has this id
            FlowTimeout: If the flow outlived the TTL
        """
        if not correlation_id:
            raise InvalidFlowState("Missing state parameter")

        with self._lock:
            context = self._contexts.pop(correlation_id, None)

        if context is None:
            raise InvalidFlowState("Unknown or already completed authorization flow")
        if context.age(self._clock()) > self.ttl:
            context.fail("timeout")
            raise FlowTimeout("Authorization flow timed out")
        return context

    def peek(self, correlation_id: str) -> AuthorizationContext | None:
        with self._lock:
            return self._contexts.get(correlation_id)

    # ================================
    # Eviction
    # ================================

    def purge_expired(self) -> int:
        """Drop every context older than the TTL.

        Returns the number of contexts removed.
        """
        now = self._clock()
        removed = 0
        with self._lock:
            # Oldest first: stop at the first context still inside the TTL
            while self._contexts:
                correlation_id, context = next(iter(self._contexts.items()))
                if context.age(now) <= self.ttl:
                    break
                del self._contexts[correlation_id]
                context.fail("timeout")
                removed += 1

        if removed:
            logger.debug(f"Purged {removed} timed out authorization flows")
        return removed

    def clear(self) -> None:
        with self._lock:
            self._contexts.clear()
