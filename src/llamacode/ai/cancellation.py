"""Cooperative cancellation for a single turn.

One :class:`CancellationToken` is created per turn and threaded through every
suspend point: stream reads, approval waits, and tool executions. Code checks
the token instead of relying on thrown interrupts, so cancellation is
inspectable and idempotent.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

__all__ = ["CancellationToken", "CANCELLED"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class _Cancelled:
    """Sentinel returned by :meth:`CancellationToken.race` when the token wins."""

    _instance: _Cancelled | None = None

    def __new__(cls) -> _Cancelled:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "CANCELLED"

    def __bool__(self) -> bool:
        return False


CANCELLED = _Cancelled()


class CancellationToken:
    """Per-turn cancellation signal.

    Example:
        token = CancellationToken()
        result = await token.race(stream.__anext__())
        if result is CANCELLED:
            ...
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[], Any]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> bool:
        """Signal cancellation.

        Returns:
            True on the first call, False when the token was already cancelled.
        """
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        LOGGER.debug("Cancellation requested (%s)", reason or "no reason")
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:  # pragma: no cover - callbacks belong to collaborators
                LOGGER.exception("Cancellation callback failed")
        return True

    def add_callback(self, callback: Callable[[], Any]) -> None:
        """Run ``callback`` once on cancellation (immediately if already cancelled)."""
        if self._event.is_set():
            callback()
            return
        self._callbacks.append(callback)

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T]) -> T | _Cancelled:
        """Await ``awaitable`` unless the token is cancelled first.

        The losing side is cancelled. Exceptions raised by ``awaitable``
        propagate unchanged.

        Returns:
            The awaited result, or :data:`CANCELLED`.
        """
        if self._event.is_set():
            _close_awaitable(awaitable)
            return CANCELLED
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise
        if work in done:
            waiter.cancel()
            return work.result()
        work.cancel()
        try:
            await work
        except (asyncio.CancelledError, Exception):
            LOGGER.debug("Abandoned awaitable finished after cancellation", exc_info=True)
        return CANCELLED


def _close_awaitable(awaitable: Awaitable[Any]) -> None:
    close = getattr(awaitable, "close", None)
    if callable(close):
        close()
