"""Core session orchestration primitives."""

from .agent_configuration import AgentConfiguration, ConfigurationTracker, fingerprint
from .message_queue import Batch, MessageQueue, QueuedMessage
from .mode_controller import ControlMode, ModeController, SurfaceOutcome, next_state
from .permissions import PermissionBroker, PermissionDecision, PermissionResult
from .session_lifecycle import SessionLifecycle, SessionPhase

__all__ = [
    "AgentConfiguration",
    "Batch",
    "ConfigurationTracker",
    "ControlMode",
    "MessageQueue",
    "ModeController",
    "PermissionBroker",
    "PermissionDecision",
    "PermissionResult",
    "QueuedMessage",
    "SessionLifecycle",
    "SessionPhase",
    "SurfaceOutcome",
    "fingerprint",
    "next_state",
]
