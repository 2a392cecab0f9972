from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from .logging_utils import log_event

logger = logging.getLogger(__name__)

DEFAULT_ACTIVITY_DEBOUNCE_SECONDS = 0.5


class ActivityTracker:
    """Boolean "agent is working" flag derived from begin/end pairs.

    ``begin`` takes effect immediately. ``end`` is committed after
    ``debounce_seconds`` unless another ``begin`` arrives first, so a burst
    of begin/end pairs reports a single active span.
    """

    def __init__(
        self,
        on_change: Callable[[bool], None],
        *,
        debounce_seconds: float = DEFAULT_ACTIVITY_DEBOUNCE_SECONDS,
    ) -> None:
        self._on_change = on_change
        self._debounce_seconds = max(0.0, float(debounce_seconds))
        self._active = False
        self._pending_end: Optional[asyncio.TimerHandle] = None

    @property
    def active(self) -> bool:
        return self._active

    @property
    def end_pending(self) -> bool:
        return self._pending_end is not None

    def _cancel_pending_end(self) -> None:
        if self._pending_end is not None:
            self._pending_end.cancel()
            self._pending_end = None

    def begin(self) -> None:
        self._cancel_pending_end()
        if self._active:
            return
        self._active = True
        self._on_change(True)

    def end(self) -> None:
        if not self._active or self._pending_end is not None:
            return
        if self._debounce_seconds <= 0:
            self._commit_end()
            return
        loop = asyncio.get_running_loop()
        self._pending_end = loop.call_later(self._debounce_seconds, self._commit_end)

    def _commit_end(self) -> None:
        self._pending_end = None
        if not self._active:
            return
        self._active = False
        log_event(logger, logging.DEBUG, "activity.idle")
        self._on_change(False)

    def settle(self) -> None:
        """Commit any state now; used at turn boundaries."""
        self._cancel_pending_end()
        if self._active:
            self._commit_end()

    def discard(self) -> None:
        self._cancel_pending_end()
        self._active = False


__all__ = ["ActivityTracker", "DEFAULT_ACTIVITY_DEBOUNCE_SECONDS"]
