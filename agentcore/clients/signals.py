"""Cooperative cancellation shared between callers, backends and tools."""

import asyncio


class AbortSignal:
    """Cancellation flag observed by long-running operations.

    Backends and tools poll ``aborted`` or await ``wait()``; setting the flag
    does not interrupt anything by itself. A signal created with a parent also
    reports the parent's abort, while aborting the child leaves the parent alone.
    """

    def __init__(self, parent: "AbortSignal | None" = None) -> None:
        self._event = asyncio.Event()
        self._parent = parent
        self._reason: str | None = None

    @property
    def aborted(self) -> bool:
        """Whether abort has been requested here or on an ancestor."""
        return self._event.is_set() or (self._parent is not None and self._parent.aborted)

    @property
    def reason(self) -> str | None:
        """Why the signal was aborted."""
        if self._event.is_set():
            return self._reason
        return self._parent.reason if self._parent is not None else None

    def abort(self, reason: str = "aborted") -> None:
        """Request cancellation; the first reason wins."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    async def wait(self) -> None:
        """Wait until abort is requested here or on an ancestor."""
        if self._parent is None:
            await self._event.wait()
            return
        waiters = [asyncio.ensure_future(self._event.wait()), asyncio.ensure_future(self._parent.wait())]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    def child(self) -> "AbortSignal":
        """Create a signal linked to this one."""
        return AbortSignal(parent=self)
