"""Run-scoped cancellation signal."""

import asyncio
import logging

from flowrun.errors import RunCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Set once to cancel a run. Executors may poll ``cancelled`` or call
    ``raise_if_cancelled()``; the scheduler awaits ``wait()`` alongside
    in-flight node tasks and cancels them when it fires.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> bool:
        """Request cancellation. Returns False if it was already requested."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        logger.info("⏹ Cancellation requested: %s", reason)
        return True

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        """Raise RunCancelled if cancellation was requested."""
        if self._event.is_set():
            raise RunCancelled(self.reason or "cancelled")
