"""Configuration-aware queue of pending user turns.

Messages sharing a configuration fingerprint are merged into one batch in
arrival order; a differing fingerprint or an isolated message always starts
a new batch.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional

from .agent_configuration import AgentConfiguration, fingerprint
from .cancellation import CancelToken
from .logging_utils import log_event

logger = logging.getLogger(__name__)

DEFAULT_SEPARATOR = "\n"


@dataclass(frozen=True)
class QueuedMessage:
    text: str
    configuration: AgentConfiguration
    fingerprint: str
    arrival_order: int
    isolated: bool = False


@dataclass(frozen=True)
class Batch:
    combined_text: str
    configuration: AgentConfiguration
    fingerprint: str
    isolated: bool = False
    message_count: int = 1


class MessageQueue:
    """Single consumer, many producers, all on one event loop."""

    def __init__(
        self,
        *,
        separator: str = DEFAULT_SEPARATOR,
        fingerprint_fn: Callable[[AgentConfiguration], str] = fingerprint,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._separator = separator
        self._fingerprint = fingerprint_fn
        self._log = log or logger
        self._messages: Deque[QueuedMessage] = deque()
        self._arrivals = itertools.count()
        self._wakeup: Optional[asyncio.Event] = None
        self._closed = False

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_wakeup(self) -> asyncio.Event:
        if self._wakeup is None:
            self._wakeup = asyncio.Event()
        return self._wakeup

    def _notify(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    def _enqueue(
        self, text: str, configuration: AgentConfiguration, *, isolated: bool
    ) -> QueuedMessage:
        if self._closed:
            raise RuntimeError("MessageQueue is closed")
        message = QueuedMessage(
            text=text,
            configuration=configuration,
            fingerprint=self._fingerprint(configuration),
            arrival_order=next(self._arrivals),
            isolated=isolated,
        )
        self._messages.append(message)
        self._notify()
        return message

    def push(self, text: str, configuration: AgentConfiguration) -> QueuedMessage:
        message = self._enqueue(text, configuration, isolated=False)
        log_event(
            self._log,
            logging.DEBUG,
            "queue.push",
            arrival_order=message.arrival_order,
            fingerprint=message.fingerprint[:12],
            queued=len(self._messages),
        )
        return message

    def push_isolate_and_clear(
        self, text: str, configuration: AgentConfiguration
    ) -> QueuedMessage:
        discarded = len(self._messages)
        self._messages.clear()
        message = self._enqueue(text, configuration, isolated=True)
        log_event(
            self._log,
            logging.INFO,
            "queue.isolate_and_clear",
            arrival_order=message.arrival_order,
            discarded=discarded,
        )
        return message

    def reset(self) -> int:
        discarded = len(self._messages)
        self._messages.clear()
        if discarded:
            log_event(self._log, logging.INFO, "queue.reset", discarded=discarded)
        return discarded

    def close(self) -> None:
        self._closed = True
        self._notify()

    def peek_fingerprint(self) -> Optional[str]:
        if not self._messages:
            return None
        return self._messages[0].fingerprint

    async def wait_for_messages(self, cancel_token: CancelToken) -> bool:
        """Suspend until a message is queued; False on cancellation or end-of-stream."""
        while not self._messages:
            if cancel_token.cancelled or self._closed:
                return False
            wakeup = self._ensure_wakeup()
            wakeup.clear()
            waiter = asyncio.ensure_future(wakeup.wait())
            canceler = asyncio.ensure_future(cancel_token.wait())
            try:
                await asyncio.wait(
                    {waiter, canceler}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                for task in (waiter, canceler):
                    if not task.done():
                        task.cancel()
        return not cancel_token.cancelled

    async def drain_next_batch(self, cancel_token: CancelToken) -> Optional[Batch]:
        if not await self.wait_for_messages(cancel_token):
            return None
        head = self._messages.popleft()
        texts = [head.text]
        if not head.isolated:
            while self._messages:
                candidate = self._messages[0]
                if candidate.isolated or candidate.fingerprint != head.fingerprint:
                    break
                texts.append(self._messages.popleft().text)
        batch = Batch(
            combined_text=self._separator.join(texts),
            configuration=head.configuration,
            fingerprint=head.fingerprint,
            isolated=head.isolated,
            message_count=len(texts),
        )
        log_event(
            self._log,
            logging.DEBUG,
            "queue.drain",
            message_count=batch.message_count,
            fingerprint=batch.fingerprint[:12],
            isolated=batch.isolated,
            remaining=len(self._messages),
        )
        return batch


__all__ = ["Batch", "DEFAULT_SEPARATOR", "MessageQueue", "QueuedMessage"]
