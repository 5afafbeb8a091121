"""
Cooperative cancellation for the package scan loop.

A token is handed to a running scan loop. Pausing or cancelling a task
triggers the token; the loop notices at its next safe point (before a
lookup or before/while sleeping) and stops without abandoning an in-flight
request.
"""

import asyncio


class ScanCancelledError(Exception):
    """Raised at a safe point when the scan loop has been asked to stop"""
    pass


class CancellationToken:
    """
    One-shot stop signal shared between the orchestrator and a scan loop.

    Example:
        >>> token = CancellationToken()
        >>> if await token.sleep(12):
        ...     return  # stopped while waiting
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ScanCancelledError(self.reason or "cancelled")

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep for up to `seconds`, waking early if the token is cancelled.

        Returns:
            True if the token was cancelled before or during the sleep
        """
        if self._event.is_set():
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True
