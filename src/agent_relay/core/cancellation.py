from __future__ import annotations

import asyncio
from typing import Optional

from .exceptions import QueueCancelled


class CancelToken:
    """Cooperative cancellation flag shared by one turn's suspension points."""

    def __init__(self) -> None:
        self._event: Optional[asyncio.Event] = None
        self._cancelled = False
        self.reason: Optional[str] = None

    def _ensure_event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        return self._event

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: Optional[str] = None) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        if self._event is not None:
            self._event.set()

    async def wait(self) -> None:
        await self._ensure_event().wait()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise QueueCancelled(self.reason or "Canceled")


class CancelScope:
    """Holds the current token; ``abort`` replaces it so a spent token never leaks."""

    def __init__(self) -> None:
        self._token = CancelToken()

    @property
    def token(self) -> CancelToken:
        return self._token

    def abort(self, reason: Optional[str] = None) -> CancelToken:
        spent = self._token
        self._token = CancelToken()
        spent.cancel(reason)
        return spent


__all__ = ["CancelScope", "CancelToken"]
