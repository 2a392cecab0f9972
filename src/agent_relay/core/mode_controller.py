"""Local/remote control handover for backends that support both.

The handover is a finite-state machine: ``next_state`` is pure, and each
non-terminal state is served by one ``ControlSurface`` that owns the adapter
session for its whole run and releases it before the controller moves on.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Mapping, Optional

from .cancellation import CancelToken
from .exceptions import AdapterError
from .logging_utils import log_event
from .message_queue import MessageQueue
from .ports.agent_adapter import AgentAdapter

if TYPE_CHECKING:
    from .session_lifecycle import SessionLifecycle

logger = logging.getLogger(__name__)


class ControlMode(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    DONE = "done"


class SurfaceOutcome(str, Enum):
    EXIT = "exit"
    HANDOVER = "handover"


def next_state(state: ControlMode, outcome: SurfaceOutcome) -> ControlMode:
    if state is ControlMode.DONE or outcome is SurfaceOutcome.EXIT:
        return ControlMode.DONE
    if state is ControlMode.LOCAL:
        return ControlMode.REMOTE
    return ControlMode.LOCAL


class ControlSurface:
    """Capability interface shared by the local and remote surfaces."""

    mode: ControlMode

    async def run_until_handover_or_exit(self) -> SurfaceOutcome:
        raise NotImplementedError

    def request_handover(self) -> None:
        raise NotImplementedError

    async def release(self) -> None:
        raise NotImplementedError


async def _cancel_and_wait(task: "asyncio.Future[object]") -> None:
    if task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


class LocalControlSurface(ControlSurface):
    """Runs the backend with the local terminal attached.

    Remote input arriving on the queue yields ``handover``; the interactive
    process exiting (or the queue closing) yields ``exit``.
    """

    mode = ControlMode.LOCAL

    def __init__(self, adapter: AgentAdapter, queue: MessageQueue) -> None:
        self._adapter = adapter
        self._queue = queue
        self._token = CancelToken()
        self._handover = asyncio.Event()
        self._interactive: Optional["asyncio.Task[Optional[int]]"] = None

    async def run_until_handover_or_exit(self) -> SurfaceOutcome:
        self._token = CancelToken()
        self._handover = asyncio.Event()
        self._interactive = asyncio.create_task(
            self._adapter.run_interactive(self._token)
        )
        remote_input = asyncio.create_task(self._queue.wait_for_messages(self._token))
        handover = asyncio.create_task(self._handover.wait())
        try:
            done, _ = await asyncio.wait(
                {self._interactive, remote_input, handover},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            await _cancel_and_wait(remote_input)
            await _cancel_and_wait(handover)
        if self._interactive in done:
            try:
                exit_code = self._interactive.result()
            except AdapterError as exc:
                log_event(logger, logging.WARNING, "mode.local.failed", exc=exc)
                return SurfaceOutcome.HANDOVER
            log_event(logger, logging.INFO, "mode.local.exited", exit_code=exit_code)
            return SurfaceOutcome.EXIT
        if remote_input in done and not remote_input.result() and self._queue.closed:
            return SurfaceOutcome.EXIT
        log_event(logger, logging.INFO, "mode.local.handover", queued=len(self._queue))
        return SurfaceOutcome.HANDOVER

    def request_handover(self) -> None:
        self._handover.set()

    async def release(self) -> None:
        self._token.cancel("released")
        await self._adapter.stop()
        if self._interactive is not None:
            await _cancel_and_wait(self._interactive)
            self._interactive = None


class RemoteControlSurface(ControlSurface):
    """Serves the session lifecycle until a local interrupt or session end."""

    mode = ControlMode.REMOTE

    def __init__(self, lifecycle: "SessionLifecycle") -> None:
        self._lifecycle = lifecycle
        self._handover = asyncio.Event()

    async def run_until_handover_or_exit(self) -> SurfaceOutcome:
        self._handover = asyncio.Event()
        serve = asyncio.create_task(self._lifecycle.serve())
        handover = asyncio.create_task(self._handover.wait())
        try:
            done, _ = await asyncio.wait(
                {serve, handover}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            await _cancel_and_wait(handover)
        if serve not in done:
            self._lifecycle.interrupt("handover")
            reason = await serve
        else:
            reason = serve.result()
        log_event(logger, logging.INFO, "mode.remote.returned", reason=reason)
        if reason == "handover":
            return SurfaceOutcome.HANDOVER
        return SurfaceOutcome.EXIT

    def request_handover(self) -> None:
        self._handover.set()

    async def release(self) -> None:
        await self._lifecycle.release_session("handover")


TransitionHook = Callable[[ControlMode], Awaitable[None]]


class ModeController:
    def __init__(
        self,
        surfaces: Mapping[ControlMode, ControlSurface],
        *,
        initial: ControlMode = ControlMode.REMOTE,
        on_transition: Optional[TransitionHook] = None,
    ) -> None:
        if initial not in surfaces:
            raise ValueError(f"No control surface for initial mode {initial.value}")
        self._surfaces = dict(surfaces)
        self._state = initial
        self._on_transition = on_transition

    @property
    def state(self) -> ControlMode:
        return self._state

    def request_handover(self) -> None:
        surface = self._surfaces.get(self._state)
        if surface is not None:
            surface.request_handover()

    async def run(self) -> ControlMode:
        if self._on_transition is not None:
            await self._on_transition(self._state)
        while self._state is not ControlMode.DONE:
            surface = self._surfaces[self._state]
            try:
                outcome = await surface.run_until_handover_or_exit()
            finally:
                await surface.release()
            target = next_state(self._state, outcome)
            if target is not ControlMode.DONE and target not in self._surfaces:
                log_event(
                    logger,
                    logging.WARNING,
                    "mode.handover_unsupported",
                    current=self._state.value,
                    target=target.value,
                )
                continue
            log_event(
                logger,
                logging.INFO,
                "mode.transition",
                previous=self._state.value,
                outcome=outcome.value,
                current=target.value,
            )
            self._state = target
            if target is not ControlMode.DONE and self._on_transition is not None:
                await self._on_transition(target)
        return self._state


__all__ = [
    "ControlMode",
    "ControlSurface",
    "LocalControlSurface",
    "ModeController",
    "RemoteControlSurface",
    "SurfaceOutcome",
    "next_state",
]
