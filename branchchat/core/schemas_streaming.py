"""Streaming types: generation lifecycle, provider events and subscriber events."""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from branchchat.core.schemas_conversation import TokenUsage


class StreamStatus(str, Enum):
    """Lifecycle of one generation. COMPLETE and ERROR are terminal."""

    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (StreamStatus.COMPLETE, StreamStatus.ERROR)


# =======================
# Provider events
# =======================
# Completion providers are adapted into these at the boundary (see completion.py).


@dataclass(frozen=True)
class Started:
    response_id: str | None = None


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True)
class ToolProgress:
    tool: str
    status: str
    call_id: str | None = None


@dataclass(frozen=True)
class Completed:
    text: str
    usage: TokenUsage | None = None
    reasoning_summary: str = ""


@dataclass(frozen=True)
class Failed:
    reason: str


ProviderEvent = Union[Started, TextDelta, ReasoningDelta, ToolProgress, Completed, Failed]


# =======================
# Subscriber events
# =======================

EVENT_START = "start"
EVENT_DELTA = "delta"
EVENT_REASONING_SUMMARY = "reasoning_summary"
EVENT_TOOL_PROGRESS = "tool_progress"
EVENT_COMPLETE = "complete"
EVENT_ERROR = "error"
EVENT_PING = "ping"

TERMINAL_EVENTS = frozenset({EVENT_COMPLETE, EVENT_ERROR})


@dataclass(frozen=True)
class StreamEvent:
    """A named event delivered to every subscriber of a stream."""

    name: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.name in TERMINAL_EVENTS

    def to_sse(self) -> str:
        """Format as a Server-Sent Events frame. Pings are comments."""
        if self.name == EVENT_PING:
            return ": ping\n\n"
        return f"event: {self.name}\ndata: {json.dumps(self.data)}\n\n"
