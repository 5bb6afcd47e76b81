"""Events emitted while a conversation turn streams.

Turn and step payloads are snapshots: mutating them has no effect on
the conversation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from marginalia.turn import ConversationTurn, ToolCall, TurnStep


@dataclass
class ConversationEvent:
    """Base for all conversation events."""

    turn_id: str = ""


@dataclass
class TurnStartEvent(ConversationEvent):
    turn: ConversationTurn | None = None


@dataclass
class StepStartEvent(ConversationEvent):
    step_index: int = 0


@dataclass
class ThinkingEvent(ConversationEvent):
    """Reasoning delta for the active step."""

    content: str = ""


@dataclass
class ContentEvent(ConversationEvent):
    """Reply delta for the active step."""

    content: str = ""


@dataclass
class ToolCallEvent(ConversationEvent):
    """A tool call was first seen (``is_complete=False``) or fully parsed."""

    tool_call: ToolCall | None = None
    is_complete: bool = False


@dataclass
class ToolCallResultEvent(ConversationEvent):
    tool_call_id: str = ""
    result: Any = None
    is_error: bool = False


@dataclass
class StepCompleteEvent(ConversationEvent):
    step: TurnStep | None = None


@dataclass
class TurnCompleteEvent(ConversationEvent):
    """Final event of a turn that finished without error."""

    turn: ConversationTurn | None = None


@dataclass
class ErrorEvent(ConversationEvent):
    """Final event of a turn that errored or was cancelled.

    ``turn`` is ``None`` when the cancelled turn was discarded because
    it never produced anything.
    """

    error: str = ""
    cancelled: bool = False
    turn: ConversationTurn | None = None
