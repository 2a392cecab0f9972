"""Prompt fragments and inbound command names."""

from __future__ import annotations

TITLE_INSTRUCTION = (
    "Based on this message, call functions.change_title to change the chat "
    "session title so it represents the current task. If the chat idea "
    "changes dramatically, call this function again to update the title."
)

CLEAR_COMMAND = "/clear"
COMPACT_COMMAND = "/compact"
# Never merged with neighbouring messages.
RESET_COMMANDS = (CLEAR_COMMAND, COMPACT_COMMAND)


def with_title_instruction(prompt: str, *, instruction: str = TITLE_INSTRUCTION) -> str:
    return f"{prompt}\n\n{instruction}"


def is_reset_command(text: str) -> bool:
    return text.strip() in RESET_COMMANDS


def is_clear_command(text: str) -> bool:
    return text.strip() == CLEAR_COMMAND


__all__ = [
    "CLEAR_COMMAND",
    "COMPACT_COMMAND",
    "RESET_COMMANDS",
    "TITLE_INSTRUCTION",
    "is_clear_command",
    "is_reset_command",
    "with_title_instruction",
]
