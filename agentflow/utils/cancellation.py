"""Cooperative cancellation shared by an instance and its subworkflows."""

from __future__ import annotations

import asyncio
from typing import Optional


class CancellationToken:
    """Signals cancellation to everything running on behalf of an instance.

    A child token is cancelled whenever its parent is; cancelling a child
    leaves the parent untouched.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None) -> None:
        self._event = asyncio.Event()
        self._children: list[CancellationToken] = []
        self.parent = parent
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """Cancel this token and its children; ``False`` if already cancelled."""
        if self._event.is_set():
            return False
        self._event.set()
        for child in self._children:
            child.cancel()
        return True

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    def detach(self) -> None:
        """Stop following the parent once the owner of this token is done."""
        if self.parent is not None:
            if self in self.parent._children:
                self.parent._children.remove(self)
            self.parent = None

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait until cancelled; returns whether cancellation happened."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True
