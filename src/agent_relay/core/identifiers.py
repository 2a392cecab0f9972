from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .logging_utils import log_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentifierSnapshot:
    session_id: Optional[str]
    conversation_id: Optional[str]


class Identifiers:
    """First-write-wins latch for backend session/conversation ids.

    Each field is set at most once per adapter session; ``clear`` is only
    called when the adapter session itself is torn down.
    """

    def __init__(self) -> None:
        self._session_id: Optional[str] = None
        self._conversation_id: Optional[str] = None

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    def latch_session_id(self, value: Optional[str]) -> bool:
        if not value or self._session_id is not None:
            if value and value != self._session_id:
                log_event(
                    logger,
                    logging.DEBUG,
                    "identifiers.session_id.ignored",
                    latched=self._session_id,
                    ignored=value,
                )
            return False
        self._session_id = value
        log_event(logger, logging.INFO, "identifiers.session_id.latched", value=value)
        return True

    def latch_conversation_id(self, value: Optional[str]) -> bool:
        if not value or self._conversation_id is not None:
            return False
        self._conversation_id = value
        log_event(
            logger, logging.INFO, "identifiers.conversation_id.latched", value=value
        )
        return True

    def clear(self) -> None:
        self._session_id = None
        self._conversation_id = None

    def snapshot(self) -> IdentifierSnapshot:
        return IdentifierSnapshot(
            session_id=self._session_id, conversation_id=self._conversation_id
        )

    def is_empty(self) -> bool:
        return self._session_id is None and self._conversation_id is None


__all__ = ["IdentifierSnapshot", "Identifiers"]
