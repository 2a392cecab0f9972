import time
from datetime import datetime, timezone


def now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def now_ms() -> int:
    """Wall clock in epoch milliseconds, the unit used in agent state records."""
    return int(time.time() * 1000)


__all__ = ["now_iso", "now_ms"]
