"""Cooperative cancellation for long running syncs."""

import asyncio
from typing import Optional

from shopify_sync.core.exceptions import SyncCancelledError


class CancellationToken:
    """Cancellation signal shared between the orchestrator and the fetcher.

    Tokens are checked between pages, between bulk polls and between streamed
    lines. ``sleep`` returns early when the token fires so waits do not delay
    an abort.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason or "Sync cancelled by user"
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SyncCancelledError(self.reason)

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` or until cancelled, whichever comes first."""
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
