"""Cooperative cancellation shared by the orchestrator and reconciler."""

from __future__ import annotations

import asyncio
import time


class CancellationToken:
    """Stop signal checked between reconciliation steps.

    The token trips when ``cancel()`` is called or when its optional deadline
    (seconds from creation) passes.
    """

    def __init__(self, timeout: float | None = None) -> None:
        self._event = asyncio.Event()
        self._deadline = time.monotonic() + timeout if timeout else None
        self.reason: str | None = None

    def cancel(self, reason: str = "stop requested") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if not self._event.is_set() and self._deadline is not None:
            if time.monotonic() >= self._deadline:
                self.cancel("deadline exceeded")
        return self._event.is_set()

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(self._deadline - time.monotonic(), 0.0)

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; wake early on cancellation. Returns ``cancelled``."""

        if self.cancelled:
            return True
        remaining = self.remaining()
        delay = seconds if remaining is None else min(seconds, remaining)
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        return self.cancelled
