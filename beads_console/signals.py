"""Completion-signal detection in agent output.

Agents report the outcome of a task in free text with one of three markers::

    TASK_COMPLETED: <summary>
    AWAITING_INPUT: <what is needed>
    TASK_BLOCKED: <reason>
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum


class SignalType(StrEnum):
    COMPLETED = "completed"
    AWAITING_INPUT = "awaiting_input"
    BLOCKED = "blocked"


# Scan order doubles as precedence when several markers match
SIGNAL_PATTERNS: list[tuple[SignalType, re.Pattern[str]]] = [
    (SignalType.COMPLETED, re.compile(r"TASK_COMPLETED:\s*(.+)", re.IGNORECASE)),
    (SignalType.AWAITING_INPUT, re.compile(r"AWAITING_INPUT:\s*(.+)", re.IGNORECASE)),
    (SignalType.BLOCKED, re.compile(r"TASK_BLOCKED:\s*(.+)", re.IGNORECASE)),
]


@dataclass(frozen=True)
class CompletionSignal:
    type: SignalType
    message: str


def detect_completion_signal(text: str) -> CompletionSignal | None:
    for signal_type, pattern in SIGNAL_PATTERNS:
        match = pattern.search(text)
        if match:
            return CompletionSignal(type=signal_type, message=match.group(1).strip())
    return None


class SignalScanner:
    """Scans one agent response as it streams in.

    Text is accumulated so a marker split across chunks is still found. Only
    finished lines are scanned while the response streams, since a marker's
    message runs to the end of its line; ``finish`` scans whatever is left
    once the response ends. At most one signal is reported per response;
    call ``reset`` before the next response.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self.signal: CompletionSignal | None = None

    def feed(self, chunk: str) -> CompletionSignal | None:
        if self.signal is not None:
            return None
        self._buffer += chunk
        complete, newline, _ = self._buffer.rpartition("\n")
        if not newline:
            return None
        self.signal = detect_completion_signal(complete)
        return self.signal

    def finish(self) -> CompletionSignal | None:
        if self.signal is not None:
            return None
        self.signal = detect_completion_signal(self._buffer)
        return self.signal

    def reset(self) -> None:
        self._buffer = ""
        self.signal = None
