from __future__ import annotations

import os
import platform
import socket
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Optional

from .. import __version__
from .time_utils import now_ms

LIFECYCLE_RUNNING = "running"
LIFECYCLE_ARCHIVED = "archived"
STARTED_BY_CHOICES = ("terminal", "daemon")


@dataclass(frozen=True)
class SessionMetadata:
    path: str
    host: str
    version: str
    os: str
    home_dir: str
    relay_home_dir: str
    host_pid: int
    flavor: str
    started_by: str = "terminal"
    lifecycle_state: str = LIFECYCLE_RUNNING
    lifecycle_state_since: int = 0
    archived_by: Optional[str] = None
    archive_reason: Optional[str] = None

    @property
    def started_from_daemon(self) -> bool:
        return self.started_by == "daemon"

    def archived(self, *, archived_by: str, reason: str) -> "SessionMetadata":
        return replace(
            self,
            lifecycle_state=LIFECYCLE_ARCHIVED,
            lifecycle_state_since=now_ms(),
            archived_by=archived_by,
            archive_reason=reason,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = {
            key: value for key, value in asdict(self).items() if value is not None
        }
        payload["started_from_daemon"] = self.started_from_daemon
        return payload


def build_session_metadata(
    *,
    flavor: str,
    relay_home_dir: Path,
    cwd: Optional[Path] = None,
    started_by: str = "terminal",
) -> SessionMetadata:
    if started_by not in STARTED_BY_CHOICES:
        started_by = "terminal"
    return SessionMetadata(
        path=str(cwd or Path.cwd()),
        host=socket.gethostname(),
        version=__version__,
        os=platform.system().lower(),
        home_dir=str(Path.home()),
        relay_home_dir=str(relay_home_dir),
        host_pid=os.getpid(),
        flavor=flavor,
        started_by=started_by,
        lifecycle_state_since=now_ms(),
    )


__all__ = [
    "LIFECYCLE_ARCHIVED",
    "LIFECYCLE_RUNNING",
    "STARTED_BY_CHOICES",
    "SessionMetadata",
    "build_session_metadata",
]
