from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from agent_relay.core.agent_configuration import AgentConfiguration
from agent_relay.core.cancellation import CancelToken
from agent_relay.core.exceptions import AdapterStartFailed
from agent_relay.core.message_queue import MessageQueue
from agent_relay.core.mode_controller import (
    ControlMode,
    ControlSurface,
    LocalControlSurface,
    ModeController,
    SurfaceOutcome,
    next_state,
)
from agent_relay.core.ports.agent_adapter import AgentAdapter


@pytest.mark.parametrize(
    ("state", "outcome", "expected"),
    [
        (ControlMode.LOCAL, SurfaceOutcome.HANDOVER, ControlMode.REMOTE),
        (ControlMode.REMOTE, SurfaceOutcome.HANDOVER, ControlMode.LOCAL),
        (ControlMode.LOCAL, SurfaceOutcome.EXIT, ControlMode.DONE),
        (ControlMode.REMOTE, SurfaceOutcome.EXIT, ControlMode.DONE),
        (ControlMode.DONE, SurfaceOutcome.HANDOVER, ControlMode.DONE),
    ],
)
def test_next_state(state: ControlMode, outcome: SurfaceOutcome, expected: ControlMode) -> None:
    assert next_state(state, outcome) is expected


class ScriptedSurface(ControlSurface):
    def __init__(self, mode: ControlMode, outcomes: list[SurfaceOutcome], log: list[str]) -> None:
        self.mode = mode
        self._outcomes = outcomes
        self._log = log

    async def run_until_handover_or_exit(self) -> SurfaceOutcome:
        self._log.append(f"run:{self.mode.value}")
        return self._outcomes.pop(0)

    def request_handover(self) -> None:
        self._log.append(f"handover:{self.mode.value}")

    async def release(self) -> None:
        self._log.append(f"release:{self.mode.value}")


@pytest.mark.anyio
async def test_controller_releases_before_each_transition() -> None:
    log: list[str] = []
    transitions: list[ControlMode] = []

    async def on_transition(mode: ControlMode) -> None:
        transitions.append(mode)
        log.append(f"enter:{mode.value}")

    controller = ModeController(
        {
            ControlMode.REMOTE: ScriptedSurface(
                ControlMode.REMOTE, [SurfaceOutcome.HANDOVER, SurfaceOutcome.EXIT], log
            ),
            ControlMode.LOCAL: ScriptedSurface(
                ControlMode.LOCAL, [SurfaceOutcome.HANDOVER], log
            ),
        },
        on_transition=on_transition,
    )

    final = await controller.run()

    assert final is ControlMode.DONE
    assert transitions == [ControlMode.REMOTE, ControlMode.LOCAL, ControlMode.REMOTE]
    assert log == [
        "enter:remote",
        "run:remote",
        "release:remote",
        "enter:local",
        "run:local",
        "release:local",
        "enter:remote",
        "run:remote",
        "release:remote",
    ]


@pytest.mark.anyio
async def test_missing_surface_keeps_current_mode() -> None:
    log: list[str] = []
    controller = ModeController(
        {
            ControlMode.REMOTE: ScriptedSurface(
                ControlMode.REMOTE, [SurfaceOutcome.HANDOVER, SurfaceOutcome.EXIT], log
            )
        }
    )

    assert await controller.run() is ControlMode.DONE
    assert log.count("run:remote") == 2


def test_initial_surface_required() -> None:
    with pytest.raises(ValueError):
        ModeController({}, initial=ControlMode.LOCAL)


def test_request_handover_targets_current_surface() -> None:
    log: list[str] = []
    controller = ModeController(
        {ControlMode.REMOTE: ScriptedSurface(ControlMode.REMOTE, [], log)}
    )
    controller.request_handover()
    assert log == ["handover:remote"]


class InteractiveAdapter(AgentAdapter):
    flavor = "fake"

    def __init__(self, *, exit_code: Optional[int] = 0, wait: bool = False, fail: bool = False) -> None:
        self.exit_code = exit_code
        self.wait = wait
        self.fail = fail
        self.stopped = 0

    async def run_interactive(self, cancel_token: CancelToken) -> Optional[int]:
        if self.fail:
            raise AdapterStartFailed("fake not found on PATH")
        if self.wait:
            await cancel_token.wait()
            return None
        return self.exit_code

    async def stop(self) -> None:
        self.stopped += 1

    def has_active_session(self) -> bool:
        return False


@pytest.mark.anyio
async def test_local_surface_exits_when_interactive_process_exits() -> None:
    adapter = InteractiveAdapter(exit_code=0)
    surface = LocalControlSurface(adapter, MessageQueue())

    assert await surface.run_until_handover_or_exit() is SurfaceOutcome.EXIT
    await surface.release()
    assert adapter.stopped == 1


@pytest.mark.anyio
async def test_local_surface_hands_over_on_remote_input() -> None:
    adapter = InteractiveAdapter(wait=True)
    queue = MessageQueue()
    surface = LocalControlSurface(adapter, queue)
    running = asyncio.create_task(surface.run_until_handover_or_exit())
    await asyncio.sleep(0.01)

    queue.push("from remote", AgentConfiguration())

    assert await asyncio.wait_for(running, timeout=1.0) is SurfaceOutcome.HANDOVER
    await surface.release()
    assert len(queue) == 1


@pytest.mark.anyio
async def test_local_surface_hands_over_on_request() -> None:
    surface = LocalControlSurface(InteractiveAdapter(wait=True), MessageQueue())
    running = asyncio.create_task(surface.run_until_handover_or_exit())
    await asyncio.sleep(0.01)

    surface.request_handover()

    assert await asyncio.wait_for(running, timeout=1.0) is SurfaceOutcome.HANDOVER
    await surface.release()


@pytest.mark.anyio
async def test_local_surface_exits_when_queue_closes() -> None:
    queue = MessageQueue()
    surface = LocalControlSurface(InteractiveAdapter(wait=True), queue)
    running = asyncio.create_task(surface.run_until_handover_or_exit())
    await asyncio.sleep(0.01)

    queue.close()

    assert await asyncio.wait_for(running, timeout=1.0) is SurfaceOutcome.EXIT
    await surface.release()


@pytest.mark.anyio
async def test_local_surface_failure_hands_back_to_remote() -> None:
    surface = LocalControlSurface(InteractiveAdapter(fail=True), MessageQueue())
    assert await surface.run_until_handover_or_exit() is SurfaceOutcome.HANDOVER
    await surface.release()
