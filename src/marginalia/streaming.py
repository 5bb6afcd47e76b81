"""Streaming primitives for backend responses.

Each backend's wire parser turns one raw event into a
:class:`StreamParseResult`. The :class:`BlockAssembler` turns those
results into canonical :class:`StreamChunk` objects, reassembling tool
call arguments that arrive as fragments across many events.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx
from httpx_sse import SSEError

from marginalia.exceptions import MarginaliaError
from marginalia.transport import iter_events
from marginalia.turn import ToolCall

if TYPE_CHECKING:
    from marginalia.transport import RequestConfig

logger = logging.getLogger(__name__)


class ChunkType(str, Enum):
    THINKING = "thinking"
    CONTENT = "content"
    SIGNATURE = "signature"
    TOOL_CALL = "tool_call"
    TOOL_CALL_RESULT = "tool_call_result"
    ERROR = "error"
    DONE = "done"


class BlockType(str, Enum):
    CONTENT = "content"
    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    TOOL_CALL_RESULT = "tool_call_result"


@dataclass
class ToolCallDelta:
    """A fragment of tool-call argument text for the block at ``index``."""

    index: int
    text: str


@dataclass
class BlockStart:
    index: int
    type: BlockType


@dataclass
class BlockComplete:
    index: int


@dataclass
class ToolCallResult:
    """The outcome of a tool call, local or server-executed."""

    id: str
    result: Any = None
    is_server_call: bool = False
    is_error: bool = False


@dataclass
class StreamParseResult:
    """Signals extracted from one raw backend event.

    ``index`` optionally pins a content delta to a block; without it the
    delta belongs to the most recently started block.
    """

    content: str | None = None
    is_thinking: bool = False
    index: int | None = None
    tool_call: ToolCall | None = None
    tool_call_delta: ToolCallDelta | None = None
    tool_call_result: ToolCallResult | None = None
    signature: str | None = None
    block_start: BlockStart | None = None
    block_complete: BlockComplete | None = None
    error: str | None = None
    is_complete: bool = False


@dataclass
class StreamChunk:
    """Normalised chunk emitted to every downstream consumer."""

    type: ChunkType
    index: int | None = None
    content: str = ""
    is_complete: bool = False
    tool_call: ToolCall | None = None
    tool_call_result: ToolCallResult | None = None


@dataclass
class PendingInput:
    """Tool-call arguments still arriving as text. Never executable."""

    text: str = ""

    def append(self, fragment: str) -> None:
        self.text += fragment


@dataclass
class ParsedInput:
    """Tool-call arguments after the block completed and parsed."""

    value: Any = None


@dataclass
class _Block:
    type: BlockType
    text: str = ""
    tool_call: ToolCall | None = None
    pending: PendingInput | None = None
    parsed: ParsedInput | None = field(default=None, repr=False)


class BlockAssembler:
    """Turns parse results into canonical chunks.

    One buffer is kept per open block index. Content and thinking deltas
    are emitted immediately and also accumulated, so a consumer can use
    either the deltas or the finished block. Tool-call argument text is
    only parsed once the block completes.
    """

    def __init__(self) -> None:
        self._blocks: dict[int, _Block] = {}
        self._current: int | None = None

    def feed(self, result: StreamParseResult) -> list[StreamChunk]:
        if result.error:
            return [StreamChunk(
                type=ChunkType.ERROR, index=self._current, content=result.error,
            )]

        chunks: list[StreamChunk] = []
        if result.block_start is not None:
            self._open(result.block_start.index, result.block_start.type)

        if result.signature:
            chunks.append(StreamChunk(
                type=ChunkType.SIGNATURE, index=self._current,
                content=result.signature,
            ))

        if result.tool_call is not None:
            chunks.append(self._start_tool_call(result.tool_call))

        if result.tool_call_result is not None:
            chunks.append(StreamChunk(
                type=ChunkType.TOOL_CALL_RESULT, index=self._current,
                tool_call_result=result.tool_call_result,
            ))

        if result.tool_call_delta is not None:
            self._append_arguments(result.tool_call_delta)

        if result.block_complete is not None:
            chunk = self._complete(result.block_complete.index)
            if chunk is not None:
                chunks.append(chunk)
                if chunk.type is ChunkType.ERROR:
                    return chunks

        if result.content:
            chunks.append(self._append_text(result))

        if result.is_complete:
            chunks.append(self.finish())
        return chunks

    def finish(self) -> StreamChunk:
        return StreamChunk(type=ChunkType.DONE, index=self._current)

    def _open(self, index: int, block_type: BlockType) -> _Block:
        block = _Block(type=block_type)
        if block_type is BlockType.TOOL_CALL:
            block.pending = PendingInput()
        self._blocks[index] = block
        self._current = index
        return block

    def _start_tool_call(self, tool_call: ToolCall) -> StreamChunk:
        index = self._current if self._current is not None else 0
        block = self._blocks.get(index)
        if block is None or block.type is not BlockType.TOOL_CALL:
            block = self._open(index, BlockType.TOOL_CALL)
        block.tool_call = tool_call
        # arguments are not executable until the block completes
        initial = tool_call.input if isinstance(tool_call.input, str) else ""
        return StreamChunk(
            type=ChunkType.TOOL_CALL, index=index,
            tool_call=tool_call.model_copy(update={"input": PendingInput(initial)}),
        )

    def _append_arguments(self, delta: ToolCallDelta) -> None:
        block = self._blocks.get(delta.index)
        if block is None or block.pending is None:
            logger.warning(
                f"Dropping argument delta for unopened tool call block {delta.index}"
            )
            return
        block.pending.append(delta.text)

    def _append_text(self, result: StreamParseResult) -> StreamChunk:
        chunk_type = ChunkType.THINKING if result.is_thinking else ChunkType.CONTENT
        index = result.index if result.index is not None else self._current
        block = self._blocks.get(index) if index is not None else None
        if block is not None and block.type.value == chunk_type.value:
            block.text += result.content
        return StreamChunk(type=chunk_type, index=index, content=result.content)

    def _complete(self, index: int) -> StreamChunk | None:
        block = self._blocks.pop(index, None)
        if index == self._current:
            self._current = None
        if block is None:
            return None

        if block.type is BlockType.TOOL_CALL and block.tool_call is not None:
            initial = block.tool_call.input
            text = block.pending.text if block.pending else ""
            if not text.strip() and isinstance(initial, str):
                text = initial
            if text.strip():
                try:
                    block.parsed = ParsedInput(json.loads(text))
                except json.JSONDecodeError as e:
                    logger.warning(f"Invalid tool call JSON at block {index}: {e}")
                    return StreamChunk(
                        type=ChunkType.ERROR, index=index,
                        content=f"Failed to parse tool call at block {index}: {e}",
                    )
            else:
                block.parsed = ParsedInput(initial if initial not in (None, "") else {})
            return StreamChunk(
                type=ChunkType.TOOL_CALL, index=index, content=text,
                is_complete=True,
                tool_call=block.tool_call.model_copy(
                    update={"input": block.parsed.value},
                ),
            )

        if block.type is BlockType.TOOL_CALL:
            return None
        return StreamChunk(
            type=ChunkType(block.type.value), index=index,
            content=block.text, is_complete=True,
        )


async def stream_response(
    config: RequestConfig,
    client: httpx.AsyncClient | None = None,
) -> AsyncIterator[StreamChunk]:
    """Stream canonical chunks for one backend invocation.

    Ends after the first ``error`` or ``done`` chunk. Transport failures
    become a single ``error`` chunk.
    """
    assembler = BlockAssembler()
    try:
        async for obj in iter_events(config, client):
            for chunk in assembler.feed(config.parse_event(obj)):
                yield chunk
                if chunk.type in (ChunkType.ERROR, ChunkType.DONE):
                    return
    except (MarginaliaError, httpx.HTTPError, SSEError) as e:
        logger.warning(f"Backend request to {config.url} failed: {e}")
        yield StreamChunk(type=ChunkType.ERROR, content=f"Request failed: {e}")
        return
    yield assembler.finish()
