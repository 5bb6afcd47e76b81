import copy
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterable, Sequence
from typing import Any

import httpx

from marginalia.exceptions import ConfigurationError, MarginaliaError
from marginalia.streaming import (
    ChunkType,
    StreamChunk,
    StreamParseResult,
    stream_response,
)
from marginalia.transport import RequestConfig
from marginalia.turn import ChatMessage, ConversationTurn, LLMFile

logger = logging.getLogger(__name__)

TITLE_SYSTEM_PROMPT = "You're an expert at coming up with titles for conversations"

TITLE_PROMPT = """Please come up with a title for the following conversation in up to 30 characters.
The title should be a single sentence that captures the essence of the whole conversation.
The title should be in the same language as the conversation.

Please return only the title, no other text.
It's very important that the title is no more than 30 characters - any more will be truncated

{history}"""


class BackendProvider(ABC):
    """Request builder and wire parser for one LLM backend.

    Subclasses translate the turn history into their backend's payload
    shape and parse each raw stream event into a
    :class:`~marginalia.streaming.StreamParseResult`. Nothing outside a
    provider knows what a backend's events look like.

    Args:
        model: Backend model name, without the ``"<backend>/"`` prefix.
        api_key: API key; falls back to the ``api_key_env`` variable.
        max_tokens: Output token cap sent with each request.
        thinking_budget_tokens: Reasoning budget for backends that
            support one.
        base_url: Override for the backend's API root.
    """

    name: str = ""
    api_key_env: str = ""
    default_base_url: str = ""

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        max_tokens: int = 2000,
        thinking_budget_tokens: int = 0,
        base_url: str | None = None,
    ):
        if not api_key and self.api_key_env:
            api_key = os.getenv(self.api_key_env)
        self.model = model
        self.api_key = api_key
        self.max_tokens = max_tokens
        self.thinking_budget_tokens = thinking_budget_tokens
        self.base_url = (base_url or self.default_base_url).rstrip("/")

    def with_limits(self, max_tokens: int, thinking_budget_tokens: int) -> "BackendProvider":
        """Copy of this provider with a turn's token settings applied."""
        provider = copy.copy(self)
        provider.max_tokens = max_tokens
        provider.thinking_budget_tokens = thinking_budget_tokens
        return provider

    @abstractmethod
    def build_request(
        self,
        turns: Sequence[ConversationTurn],
        system_prompt: str,
        thinking: bool,
        enabled_tools: Iterable[str],
        tool_definitions: Sequence[dict] = (),
    ) -> RequestConfig:
        """Build the request for the next step of the last turn.

        ``tool_definitions`` are the backend-neutral definitions of the
        locally executable tools, already filtered to ``enabled_tools``.
        """

    @abstractmethod
    def parse_event(self, obj: dict) -> StreamParseResult:
        """Map one decoded stream event to canonical signals."""

    @abstractmethod
    def format_file(self, file: LLMFile) -> dict | None:
        ...

    @abstractmethod
    def format_turn(self, turn: ConversationTurn) -> list[dict]:
        ...

    def format_messages(self, turns: Sequence[ConversationTurn]) -> list[dict]:
        return [message for turn in turns for message in self.format_turn(turn)]

    def format_files(self, files: list[LLMFile] | None) -> list[dict]:
        formatted = [self.format_file(f) for f in files or []]
        return [f for f in formatted if f]

    def validate_api_key(self) -> None:
        if not self.api_key:
            raise ConfigurationError(f"{self.name} API key not configured")

    async def stream(
        self,
        turns: Sequence[ConversationTurn],
        system_prompt: str,
        thinking: bool = False,
        enabled_tools: Iterable[str] = (),
        tool_definitions: Sequence[dict] = (),
        client: httpx.AsyncClient | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Invoke the backend and yield canonical chunks.

        Request-building failures are reported as a single ``error``
        chunk, like transport failures.
        """
        try:
            config = self.build_request(
                turns, system_prompt, thinking, enabled_tools, tool_definitions,
            )
        except MarginaliaError as e:
            logger.warning(f"Could not build {self.name} request: {e}")
            yield StreamChunk(type=ChunkType.ERROR, content=str(e))
            return

        async for chunk in stream_response(config, client):
            yield chunk

    async def make_title(
        self,
        turns: Sequence[ConversationTurn],
        client: httpx.AsyncClient | None = None,
    ) -> str:
        """Ask the backend for a short title summarising ``turns``."""
        history = "\n\n".join(
            "User: {}\nAssistant: {}".format(
                turn.user_input.prompt,
                "\n".join(step.content or "" for step in turn.steps),
            )
            for turn in turns
        )
        prompt = TITLE_PROMPT.format(history=history)
        title_turn = ConversationTurn(
            id="summary",
            user_input=ChatMessage(message="", prompt=prompt),
        )
        async for chunk in self.stream(
            [title_turn], TITLE_SYSTEM_PROMPT, client=client,
        ):
            if chunk.type is ChunkType.CONTENT and chunk.is_complete:
                return chunk.content.strip()[:60]
            if chunk.type is ChunkType.ERROR:
                logger.warning(f"Title generation failed: {chunk.content}")
                break
        return ""


def error_message(error: Any) -> str:
    """Render an error envelope, which may be a string or an object."""
    if isinstance(error, dict):
        message = error.get("message") or ""
        kind = error.get("code") or error.get("type") or ""
        if kind and message:
            return f"{kind}: {message}"
        return message or kind or str(error)
    return str(error)
