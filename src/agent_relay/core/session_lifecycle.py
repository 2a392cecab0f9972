"""Top-level session state machine.

``SessionLifecycle`` drains the message queue, starts or continues the
backend through its ``AgentAdapter``, normalizes the backend's events and
routes tool calls through the permission broker. Canonical events and
observer notifications leave through a single delivery task so the sink
sees them in emission order.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from .agent_configuration import AgentConfiguration
from .agent_state import AgentState
from .cancellation import CancelScope, CancelToken
from .config import SessionSettings
from .event_normalizer import EventNormalizer
from .exceptions import (
    AdapterError,
    AdapterStartFailed,
    AdapterStreamError,
    DuplicateCallId,
    QueueCancelled,
)
from .identifiers import Identifiers
from .logging_utils import log_event
from .message_queue import Batch, MessageQueue, QueuedMessage
from .mode_controller import ControlMode
from .permissions import (
    PermissionBroker,
    PermissionDecision,
    PermissionResult,
    evaluate_policy,
)
from .ports.agent_adapter import AgentAdapter, RawEvent
from .ports.run_event import (
    Activity,
    CanonicalEvent,
    Error,
    SystemNotice,
    ToolCall,
)
from .ports.sink import EventSink, SessionObserver
from .prompts import is_clear_command, is_reset_command, with_title_instruction
from .retry import retry_transient
from .session_metadata import SessionMetadata

logger = logging.getLogger(__name__)

ABORTED_NOTICE = "Aborted by user"
CONTEXT_RESET_NOTICE = "Context was reset"

OutboundItem = Callable[[], Awaitable[None]]


class SessionPhase(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    RESTARTING = "restarting"
    TERMINATING = "terminating"


class SessionLifecycle:
    def __init__(
        self,
        adapter: AgentAdapter,
        sink: EventSink,
        *,
        observer: Optional[SessionObserver] = None,
        settings: Optional[SessionSettings] = None,
        metadata: Optional[SessionMetadata] = None,
        queue: Optional[MessageQueue] = None,
        attach_broker: bool = True,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.adapter = adapter
        self._sink = sink
        self.observer = observer or SessionObserver()
        self._settings = settings or SessionSettings()
        self.metadata = metadata
        self._log = log or logger
        self.queue = queue or MessageQueue(separator=self._settings.message_separator)
        self.identifiers = Identifiers()
        self.agent_state = AgentState()
        self.broker: Optional[PermissionBroker] = (
            PermissionBroker(
                state=self.agent_state,
                on_state_change=self._publish_agent_state,
            )
            if attach_broker
            else None
        )
        self.normalizer = EventNormalizer(
            self._on_canonical_event,
            identifiers=self.identifiers,
            on_identifiers=self._on_identifiers,
            activity_debounce_seconds=self._settings.activity_debounce_seconds,
            unknown_event_policy=self._settings.unknown_event_policy,
        )
        self.phase = SessionPhase.IDLE
        self.mode = ControlMode.REMOTE
        self._scope = CancelScope()
        self._active_fingerprint: Optional[str] = None
        self._turn_configuration: Optional[AgentConfiguration] = None
        self._resume_token: Optional[str] = None
        self._first_prompt = True
        self._thinking = False
        self._killed = False
        self._terminated = False
        self._interrupt_reason: Optional[str] = None
        self._outbound: asyncio.Queue[Optional[OutboundItem]] = asyncio.Queue()
        self._delivery_task: Optional[asyncio.Task[None]] = None
        self._keepalive_task: Optional[asyncio.Task[None]] = None
        self._background: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Producers

    @property
    def cancel_token(self) -> CancelToken:
        return self._scope.token

    @property
    def thinking(self) -> bool:
        return self._thinking

    @property
    def killed(self) -> bool:
        return self._killed

    def submit(self, text: str, configuration: AgentConfiguration) -> QueuedMessage:
        if is_reset_command(text):
            return self.queue.push_isolate_and_clear(text.strip(), configuration)
        return self.queue.push(text, configuration)

    def on_permission_decision(self, call_id: str, result: PermissionResult) -> bool:
        if self.broker is None:
            log_event(
                self._log,
                logging.WARNING,
                "permission.no_broker",
                call_id=call_id,
            )
            return False
        return self.broker.settle(call_id, result)

    def abort(self, reason: str = ABORTED_NOTICE) -> None:
        """Cancel the current turn and pending work; the session stays usable."""
        discarded = self.queue.reset()
        if self.broker is not None:
            self.broker.reset("aborted")
        self._scope.abort(reason)
        log_event(
            self._log,
            logging.INFO,
            "session.abort",
            reason=reason,
            discarded=discarded,
            phase=self.phase.value,
        )

    def kill(self) -> None:
        log_event(self._log, logging.INFO, "session.kill", phase=self.phase.value)
        self._killed = True
        self.abort()
        self.queue.close()

    def interrupt(self, reason: str) -> None:
        """Make ``serve`` return ``reason`` once the in-flight turn is cancelled."""
        self._interrupt_reason = reason
        self._scope.abort(reason)

    # ------------------------------------------------------------------
    # Auxiliary services

    def _ensure_delivery(self) -> None:
        if self._delivery_task is None or self._delivery_task.done():
            self._delivery_task = asyncio.create_task(self._delivery_loop())

    async def start_services(self) -> None:
        self._ensure_delivery()
        interval = self._settings.keepalive_interval_seconds
        if interval > 0 and (self._keepalive_task is None or self._keepalive_task.done()):
            self._keepalive_task = asyncio.create_task(self._keepalive_loop(interval))
        if self.metadata is not None:
            self._publish_metadata(self.metadata)
        self._publish_agent_state(self.agent_state)

    async def stop_services(self) -> None:
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._keepalive_task
            self._keepalive_task = None
        if self._delivery_task is not None and not self._delivery_task.done():
            self._outbound.put_nowait(None)
            await self._delivery_task
        self._delivery_task = None

    async def flush_outbound(self) -> None:
        self._ensure_delivery()
        await self._outbound.join()

    async def _keepalive_loop(self, interval: float) -> None:
        while True:
            try:
                await self.observer.on_keep_alive(self._thinking, self.mode)
            except Exception as exc:
                log_event(self._log, logging.WARNING, "session.keepalive_failed", exc=exc)
            await asyncio.sleep(interval)

    async def _delivery_loop(self) -> None:
        while True:
            item = await self._outbound.get()
            try:
                if item is None:
                    return
                await self._deliver(item)
            except Exception as exc:
                log_event(self._log, logging.ERROR, "session.delivery_failed", exc=exc)
            finally:
                self._outbound.task_done()

    @retry_transient()
    async def _deliver(self, item: OutboundItem) -> None:
        await item()

    def _enqueue(self, item: OutboundItem) -> None:
        self._outbound.put_nowait(item)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Outbound fan-out

    def _on_canonical_event(self, event: CanonicalEvent) -> None:
        sink = self._sink
        self._enqueue(lambda: sink.emit(event))
        if isinstance(event, Activity):
            self._thinking = event.active
        elif isinstance(event, ToolCall):
            self._route_tool_call(event)

    def _emit(self, event: CanonicalEvent) -> None:
        self._on_canonical_event(event)

    def _on_identifiers(self, identifiers: Identifiers) -> None:
        snapshot = identifiers.snapshot()
        observer = self.observer
        self._enqueue(lambda: observer.on_session_found(snapshot))

    def _publish_agent_state(self, state: AgentState) -> None:
        snapshot = state.to_dict()
        observer = self.observer
        self._enqueue(lambda: observer.on_agent_state(snapshot))

    def _publish_metadata(self, metadata: SessionMetadata) -> None:
        observer = self.observer
        self._enqueue(lambda: observer.on_metadata(metadata))

    def _publish_ready(self) -> None:
        observer = self.observer
        self._enqueue(observer.on_ready)

    async def set_control_mode(self, mode: ControlMode) -> None:
        """Record a handover; the agent state reflects who holds control."""
        self.mode = mode
        self.agent_state.controlled_by_user = mode is ControlMode.LOCAL
        self._publish_agent_state(self.agent_state)
        await self.flush_outbound()
        await self.observer.on_mode_change(mode)

    # ------------------------------------------------------------------
    # Permissions

    def _route_tool_call(self, event: ToolCall) -> None:
        configuration = self._turn_configuration or AgentConfiguration()
        decided = evaluate_policy(configuration, event.name, self.broker)
        if decided is not None:
            log_event(
                self._log,
                logging.INFO,
                "permission.auto_decided",
                call_id=event.call_id,
                tool=event.name,
                decision=decided.decision.value,
                reason=decided.reason,
            )
            self._spawn(self._forward_decision(event.call_id, decided))
            return
        if self.broker is None:
            return
        try:
            future = self.broker.request_approval(event.call_id, event.name, event.input)
        except DuplicateCallId:
            return
        self._spawn(self._await_decision(event.call_id, future, self._scope.token))

    async def _await_decision(
        self,
        call_id: str,
        future: "asyncio.Future[PermissionResult]",
        turn_token: CancelToken,
    ) -> None:
        if self.broker is None:
            return
        result = await self.broker.wait_for_decision(
            call_id, future, timeout=self._settings.approval_timeout_seconds
        )
        if result.synthetic and result.decision is PermissionDecision.ABORT:
            return
        await self._forward_decision(call_id, result)
        if result.decision is PermissionDecision.ABORT and turn_token is self._scope.token:
            log_event(self._log, logging.INFO, "permission.abort_turn", call_id=call_id)
            self._scope.abort(ABORTED_NOTICE)

    async def _forward_decision(self, call_id: str, result: PermissionResult) -> None:
        try:
            await self.adapter.resolve_permission(call_id, result)
        except AdapterError as exc:
            log_event(
                self._log,
                logging.WARNING,
                "permission.forward_failed",
                call_id=call_id,
                exc=exc,
            )

    # ------------------------------------------------------------------
    # Main loop

    def _set_phase(self, phase: SessionPhase) -> None:
        if phase is self.phase:
            return
        log_event(
            self._log,
            logging.DEBUG,
            "session.phase",
            previous=self.phase.value,
            current=phase.value,
        )
        self.phase = phase

    def _session_live(self) -> bool:
        return self._active_fingerprint is not None and self.adapter.has_active_session()

    def _take_interrupt(self) -> Optional[str]:
        reason = self._interrupt_reason
        self._interrupt_reason = None
        return reason

    async def serve(self) -> str:
        """Drain and run batches until end-of-stream, kill or interrupt.

        Returns ``"closed"``, ``"killed"`` or the interrupt reason.
        """
        self._ensure_delivery()
        while True:
            if self._killed:
                return "killed"
            if self._interrupt_reason is not None:
                return self._take_interrupt() or "interrupted"
            batch = await self.queue.drain_next_batch(self._scope.token)
            if batch is None:
                if self._killed:
                    return "killed"
                if self._interrupt_reason is not None:
                    continue
                if self.queue.closed and not len(self.queue):
                    return "closed"
                continue
            await self._run_batch(batch)

    async def _run_batch(self, batch: Batch) -> None:
        if batch.isolated and is_clear_command(batch.combined_text):
            await self._reset_context()
            return
        if self._active_fingerprint is not None:
            if batch.fingerprint != self._active_fingerprint:
                await self._restart("mode-changed")
            elif not self.adapter.has_active_session():
                await self._restart("session-lost")
        prompt = batch.combined_text
        if self._first_prompt and self._settings.title_prompt:
            prompt = with_title_instruction(prompt)
        token = self._scope.token
        self._turn_configuration = batch.configuration
        log_event(
            self._log,
            logging.INFO,
            "session.turn.started",
            fingerprint=batch.fingerprint[:12],
            message_count=batch.message_count,
            continued=self._session_live(),
        )
        try:
            if self._session_live():
                stream = await self.adapter.continue_turn(prompt, token)
            else:
                stream = await self._start_session(batch, prompt, token)
            self._first_prompt = False
            await self._consume(stream, token)
        except QueueCancelled:
            self.normalizer.flush()
            if self._interrupt_reason is None:
                self._emit(SystemNotice(ABORTED_NOTICE))
            log_event(self._log, logging.INFO, "session.turn.aborted", reason=token.reason)
            await self._release_session("aborted")
            return
        except AdapterStartFailed as exc:
            log_event(self._log, logging.ERROR, "session.start_failed", exc=exc)
            self._emit(Error(exc.user_message or str(exc)))
            await self._release_session("start-failed")
            return
        except AdapterStreamError as exc:
            log_event(
                self._log,
                logging.WARNING,
                "session.stream_failed",
                exit_code=exc.exit_code,
                exc=exc,
            )
            self.normalizer.flush()
            self._emit(Error(exc.user_message or str(exc)))
            await self._release_session("stream-error")
            return
        self.normalizer.flush()
        if self.broker is not None:
            self.broker.reset("turn-complete")
        log_event(self._log, logging.INFO, "session.turn.completed")
        self._publish_ready()

    async def _start_session(
        self, batch: Batch, prompt: str, token: CancelToken
    ) -> AsyncIterator[RawEvent]:
        self._set_phase(SessionPhase.STARTING)
        resume_token, self._resume_token = self._resume_token, None
        stream = await self.adapter.start(
            prompt, batch.configuration, token, resume_token=resume_token
        )
        self._active_fingerprint = batch.fingerprint
        self._set_phase(SessionPhase.ACTIVE)
        queued = self.queue.peek_fingerprint()
        if queued is not None and queued != batch.fingerprint:
            # Start completes first; the restart happens on the next drain.
            log_event(
                self._log,
                logging.INFO,
                "session.mode_change_race",
                active=batch.fingerprint[:12],
                queued=queued[:12],
            )
        return stream

    async def _consume(self, stream: AsyncIterator[RawEvent], token: CancelToken) -> None:
        self.normalizer.activity.begin()
        iterator = stream.__aiter__()
        while True:
            token.raise_if_cancelled()
            next_event = asyncio.ensure_future(iterator.__anext__())
            cancelled = asyncio.ensure_future(token.wait())
            try:
                await asyncio.wait(
                    {next_event, cancelled}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                cancelled.cancel()
            if not next_event.done():
                next_event.cancel()
                with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                    await next_event
                token.raise_if_cancelled()
            try:
                raw = next_event.result()
            except StopAsyncIteration:
                break
            self.normalizer.feed(raw)
        token.raise_if_cancelled()

    async def _restart(self, reason: str) -> None:
        self._set_phase(SessionPhase.RESTARTING)
        if self._settings.resume_on_restart:
            self._resume_token = self.identifiers.session_id
        log_event(
            self._log,
            logging.INFO,
            "session.restart",
            reason=reason,
            resume=bool(self._resume_token),
        )
        await self._teardown(reason)

    async def _teardown(self, reason: str) -> None:
        self.normalizer.reset()
        await self._stop_adapter()
        if self.broker is not None:
            self.broker.reset(reason)
            self.broker.clear_scope()
        self.identifiers.clear()
        self._active_fingerprint = None
        self._thinking = False

    async def release_session(self, reason: str) -> None:
        """Fully release the backend session; the next batch starts fresh."""
        await self._release_session(reason)

    async def _release_session(self, reason: str) -> None:
        await self._teardown(reason)
        if self.phase is not SessionPhase.TERMINATING:
            self._set_phase(SessionPhase.IDLE)

    async def _reset_context(self) -> None:
        log_event(self._log, logging.INFO, "session.context_reset")
        self._resume_token = None
        await self._release_session("context-reset")
        self._emit(SystemNotice(CONTEXT_RESET_NOTICE))
        self._publish_ready()

    async def _stop_adapter(self) -> None:
        try:
            await self.adapter.stop()
        except AdapterError as exc:
            log_event(self._log, logging.WARNING, "session.adapter_stop_failed", exc=exc)

    # ------------------------------------------------------------------
    # Shutdown

    async def terminate(
        self,
        *,
        archived_by: str = "cli",
        archive_reason: str = "User terminated",
    ) -> None:
        if self._terminated:
            return
        self._terminated = True
        self._set_phase(SessionPhase.TERMINATING)
        log_event(
            self._log,
            logging.INFO,
            "session.terminate",
            archived_by=archived_by,
            reason=archive_reason,
        )
        self._scope.abort("terminating")
        if self.broker is not None:
            self.broker.reset("terminated")
        self.normalizer.flush()
        await self.flush_outbound()
        if self.metadata is not None:
            self.metadata = self.metadata.archived(
                archived_by=archived_by, reason=archive_reason
            )
            self._publish_metadata(self.metadata)
        await self._stop_adapter()
        self._active_fingerprint = None
        for task in list(self._background):
            task.cancel()
        await self.stop_services()

    async def run(self) -> str:
        """Serve until end-of-stream or kill, then terminate."""
        await self.start_services()
        reason = "error"
        try:
            reason = await self.serve()
        finally:
            await self.terminate(
                archive_reason="User terminated" if reason == "killed" else "Session ended"
            )
        return reason


__all__ = [
    "ABORTED_NOTICE",
    "CONTEXT_RESET_NOTICE",
    "SessionLifecycle",
    "SessionPhase",
]
