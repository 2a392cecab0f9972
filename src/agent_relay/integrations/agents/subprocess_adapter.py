from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import signal
from pathlib import Path
from typing import Any, AsyncIterator, Mapping, Optional, Sequence

from ...core.agent_configuration import AgentConfiguration
from ...core.cancellation import CancelToken
from ...core.config import AgentBinaryConfig
from ...core.exceptions import AdapterStartFailed, AdapterStreamError
from ...core.logging_utils import log_event
from ...core.ports.agent_adapter import AgentAdapter, RawEvent

logger = logging.getLogger(__name__)

_EOF = object()
STREAM_LIMIT_BYTES = 8 * 1024 * 1024
_SESSION_ID_KEYS = ("session_id", "sessionId", "thread_id")


class SubprocessAgentAdapter(AgentAdapter):
    """Runs one CLI invocation per turn and streams its stdout lines.

    The logical backend session outlives the individual processes: follow-up
    turns respawn the CLI with the session id it reported, when the backend
    supports resuming. stderr lines are forwarded as error events.
    """

    flavor = "agent"
    supports_resume = False

    def __init__(
        self,
        binary_config: AgentBinaryConfig,
        *,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        terminate_grace_seconds: float = 3.0,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._binary_config = binary_config
        self._cwd = cwd
        self._env = dict(env) if env is not None else None
        self._terminate_grace_seconds = max(0.0, float(terminate_grace_seconds))
        self._log = log or logger
        self._process: Optional[asyncio.subprocess.Process] = None
        self._own_group = False
        self._configuration: Optional[AgentConfiguration] = None
        self._session_open = False
        self.session_id: Optional[str] = None

    # ------------------------------------------------------------------
    # Per-backend hooks

    def build_args(
        self,
        prompt: str,
        configuration: AgentConfiguration,
        *,
        resume_token: Optional[str] = None,
    ) -> list[str]:
        raise NotImplementedError

    def build_interactive_args(self, configuration: AgentConfiguration) -> list[str]:
        return []

    def decode_line(self, line: str) -> list[RawEvent]:
        """Split one stdout line into backend-native events."""
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            return [line]
        if isinstance(payload, dict):
            return [payload]
        return [line]

    def decode_stderr_line(self, line: str) -> list[RawEvent]:
        return [{"type": "error", "message": line}]

    # ------------------------------------------------------------------

    def resolve_binary(self) -> str:
        binary = self._binary_config.binary
        resolved = shutil.which(binary)
        if resolved:
            return resolved
        candidate = Path(binary).expanduser()
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
        raise AdapterStartFailed(f"{binary} not found on PATH")

    def command(self, args: Sequence[str]) -> list[str]:
        return [self.resolve_binary(), *self._binary_config.extra_args, *args]

    def has_active_session(self) -> bool:
        return self._session_open

    async def start(
        self,
        prompt: str,
        configuration: AgentConfiguration,
        cancel_token: CancelToken,
        *,
        resume_token: Optional[str] = None,
    ) -> AsyncIterator[RawEvent]:
        await self.stop()
        self._configuration = configuration
        if resume_token and self.supports_resume:
            self.session_id = resume_token
        process = await self._spawn(
            self.build_args(
                prompt,
                configuration,
                resume_token=resume_token if self.supports_resume else None,
            )
        )
        self._session_open = True
        return self._read_events(process, cancel_token)

    async def continue_turn(
        self, prompt: str, cancel_token: CancelToken
    ) -> AsyncIterator[RawEvent]:
        if not self._session_open or self._configuration is None:
            raise AdapterStreamError(f"{self.flavor} has no active session")
        await self._terminate_process()
        resume_token = self.session_id if self.supports_resume else None
        process = await self._spawn(
            self.build_args(prompt, self._configuration, resume_token=resume_token)
        )
        return self._read_events(process, cancel_token)

    async def stop(self) -> None:
        await self._terminate_process()
        if self._session_open:
            log_event(self._log, logging.INFO, "agent.session.stopped", flavor=self.flavor)
        self._session_open = False
        self.session_id = None

    async def run_interactive(self, cancel_token: CancelToken) -> Optional[int]:
        configuration = self._configuration or AgentConfiguration()
        process = await self._spawn(
            self.build_interactive_args(configuration), interactive=True
        )
        waiter = asyncio.ensure_future(process.wait())
        canceled = asyncio.ensure_future(cancel_token.wait())
        try:
            await asyncio.wait({waiter, canceled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            canceled.cancel()
        if not waiter.done():
            waiter.cancel()
            await self._terminate_process()
            return None
        self._process = None
        return waiter.result()

    # ------------------------------------------------------------------
    # Process plumbing

    async def _spawn(
        self, args: Sequence[str], *, interactive: bool = False
    ) -> asyncio.subprocess.Process:
        command = self.command(args)
        popen_kwargs: dict[str, Any] = {"cwd": self._cwd, "env": self._env}
        if not interactive:
            popen_kwargs.update(
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT_BYTES,
            )
        own_group = os.name != "nt" and not interactive
        if own_group:
            popen_kwargs["start_new_session"] = True
        try:
            process = await asyncio.create_subprocess_exec(*command, **popen_kwargs)
        except OSError as exc:
            log_event(
                self._log,
                logging.ERROR,
                "agent.spawn.failed",
                flavor=self.flavor,
                command=command[0],
                exc=exc,
            )
            raise AdapterStartFailed(str(exc)) from exc
        self._process = process
        self._own_group = own_group
        log_event(
            self._log,
            logging.INFO,
            "agent.spawned",
            flavor=self.flavor,
            pid=process.pid,
            interactive=interactive,
            args=len(command) - 1,
        )
        return process

    def _remember_session_id(self, event: RawEvent) -> None:
        if self.session_id is not None or not isinstance(event, dict):
            return
        for key in _SESSION_ID_KEYS:
            value = event.get(key)
            if isinstance(value, str) and value:
                self.session_id = value
                return

    async def _pump(
        self,
        stream: Optional[asyncio.StreamReader],
        queue: "asyncio.Queue[Any]",
        *,
        stderr: bool,
    ) -> None:
        try:
            if stream is None:
                return
            async for raw_line in stream:
                line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
                if not line.strip():
                    continue
                decoded = self.decode_stderr_line(line) if stderr else self.decode_line(line)
                for event in decoded:
                    await queue.put(event)
        finally:
            await queue.put(_EOF)

    async def _read_events(
        self, process: asyncio.subprocess.Process, cancel_token: CancelToken
    ) -> AsyncIterator[RawEvent]:
        queue: asyncio.Queue[Any] = asyncio.Queue()
        pumps = [
            asyncio.create_task(self._pump(process.stdout, queue, stderr=False)),
            asyncio.create_task(self._pump(process.stderr, queue, stderr=True)),
        ]
        open_streams = len(pumps)
        try:
            while open_streams:
                item = await queue.get()
                if item is _EOF:
                    open_streams -= 1
                    continue
                self._remember_session_id(item)
                yield item
            returncode = await process.wait()
        finally:
            for pump in pumps:
                if not pump.done():
                    pump.cancel()
                    try:
                        await pump
                    except asyncio.CancelledError:
                        pass
        if process is self._process:
            self._process = None
        log_event(
            self._log,
            logging.DEBUG,
            "agent.process.exited",
            flavor=self.flavor,
            pid=process.pid,
            returncode=returncode,
        )
        if returncode != 0 and not cancel_token.cancelled:
            raise AdapterStreamError(
                f"{self.flavor} exited with code {returncode}", exit_code=returncode
            )

    async def _terminate_process(self) -> None:
        process = self._process
        self._process = None
        if process is None or process.returncode is not None:
            return
        try:
            if self._own_group and hasattr(os, "killpg"):
                try:
                    # Spawned as a session leader on POSIX.
                    os.killpg(process.pid, signal.SIGTERM)
                except ProcessLookupError:
                    return
                except PermissionError:
                    process.terminate()
            else:
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self._terminate_grace_seconds)
                return
            except asyncio.TimeoutError:
                pass
            log_event(
                self._log,
                logging.WARNING,
                "agent.process.kill",
                flavor=self.flavor,
                pid=process.pid,
            )
            process.kill()
            await process.wait()
        except ProcessLookupError:
            return


__all__ = ["SubprocessAgentAdapter"]
