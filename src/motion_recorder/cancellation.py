"""Hierarchical cooperative cancellation for recorder loops."""
from __future__ import annotations

import asyncio
import weakref


class CancelSignal:
    """Cancellation context that may be linked to a parent context.

    A child fires when it is cancelled directly or when any ancestor fires.
    Cancelling a child never affects its parent, which lets a session rotate
    short-lived capture scopes underneath one long-lived stop signal.
    """

    def __init__(self, *, parent: "CancelSignal | None" = None, name: str | None = None) -> None:
        self._event = asyncio.Event()
        self._children: weakref.WeakSet[CancelSignal] = weakref.WeakSet()
        self._parent = parent
        self._reason: str | None = None
        self.name = name
        if parent is not None:
            parent._children.add(self)
            if parent.cancelled:
                self.cancel(parent.reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def parent(self) -> "CancelSignal | None":
        return self._parent

    def cancel(self, reason: str | None = None) -> bool:
        """Fire the signal. Returns ``False`` when it had already fired."""

        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        for child in list(self._children):
            child.cancel(reason)
        return True

    def child(self, name: str | None = None) -> "CancelSignal":
        return CancelSignal(parent=self, name=name)

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """Sleep for *delay* seconds; return ``True`` if cancelled meanwhile."""

        if self._event.is_set():
            return True
        if delay <= 0:
            await asyncio.sleep(0)
            return self._event.is_set()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "active"
        return f"<CancelSignal {self.name or 'unnamed'} {state}>"


__all__ = ["CancelSignal"]
