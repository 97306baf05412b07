"""Background expiry sweep for session tokens and pending flows."""

from __future__ import annotations

import asyncio
import logging

from portcullis.auth.server.services.contexts import FlowContextStore
from portcullis.auth.server.services.sessions import SessionTokenStore

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Periodically purges expired tokens and timed out flows.

    Purges run in a worker thread so the event loop keeps serving requests.
    The stores only take their locks briefly per batch.
    """

    def __init__(
        self,
        sessions: SessionTokenStore,
        contexts: FlowContextStore,
        interval: float = 60.0,
    ) -> None:
        self._sessions = sessions
        self._contexts = contexts
        self.interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.debug(f"Expiry sweeper started (interval={self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.debug("Expiry sweeper stopped")

    async def sweep_once(self) -> tuple[int, int]:
        """Run one sweep.

        Returns:
            Tuple of (expired_tokens_removed, timed_out_flows_removed)
        """
        tokens = await asyncio.to_thread(self._sessions.purge_expired)
        flows = await asyncio.to_thread(self._contexts.purge_expired)
        return tokens, flows

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Expiry sweep failed")
