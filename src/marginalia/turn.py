import uuid
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


class LLMFile(BaseModel):
    """A document attached to a user input.

    ``content`` holds plain text for ``text`` files and base64 data for
    ``image`` and ``pdf`` files.
    """

    type: Literal["text", "image", "pdf"]
    path: str
    content: str | None = None
    mime_type: str | None = None
    name: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.path


class ChatMessage(BaseModel):
    type: Literal["chat_message"] = "chat_message"
    message: str
    prompt: str
    files: list[LLMFile] | None = None


class FileChange(BaseModel):
    type: Literal["file_change"] = "file_change"
    filename: str
    diff: str
    prompt: str
    files: list[LLMFile] | None = None


class ManualFeedback(BaseModel):
    type: Literal["manual_feedback"] = "manual_feedback"
    filename: str
    content: str
    prompt: str
    files: list[LLMFile] | None = None


UserInput = Annotated[
    Union[ChatMessage, FileChange, ManualFeedback],
    Field(discriminator="type"),
]


class ToolCall(BaseModel):
    id: str
    name: str
    input: Any = None
    is_server_call: bool = False
    server_name: str | None = None
    result: Any = None


class TurnStep(BaseModel):
    """One round of model inference within a turn."""

    thinking: str | None = None
    content: str | None = None
    signature: str | None = None
    tool_calls: dict[str, ToolCall] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.content and not self.thinking and not self.tool_calls

    def local_tool_calls(self) -> list[ToolCall]:
        return [tc for tc in self.tool_calls.values() if not tc.is_server_call]


def _new_turn_id() -> str:
    return uuid.uuid4().hex


class ConversationTurn(BaseModel):
    """One user-initiated exchange, possibly spanning multiple steps.

    While ``is_complete`` is false the last entry of ``steps`` is the
    active step being streamed into; earlier steps are frozen.
    """

    id: str = Field(default_factory=_new_turn_id)
    timestamp: datetime = Field(default_factory=datetime.now)
    user_input: UserInput
    steps: list[TurnStep] = Field(default_factory=list)
    is_complete: bool = False
    error: str | None = None

    @property
    def active_step(self) -> TurnStep | None:
        return self.steps[-1] if self.steps else None

    def snapshot(self) -> "ConversationTurn":
        return self.model_copy(deep=True)
