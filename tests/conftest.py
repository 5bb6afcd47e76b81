import asyncio
import json

import pytest

from marginalia.providers.anthropic import AnthropicProvider
from marginalia.settings import TurnSettings
from marginalia.streaming import BlockAssembler, ChunkType
from marginalia.tools import ToolDispatcher, tool


# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------

class ScriptedProvider(AnthropicProvider):
    """Provider that replays queued wire events. No network calls.

    Each step pops one script: a list of raw Anthropic stream events. A
    script entry may also be a float, which sleeps that many seconds
    before the next event, or an ``asyncio.Event`` to wait on.

    Events go through the real parser and assembler, so only the
    transport is faked.
    """

    def __init__(self, model: str = "scripted-model"):
        super().__init__(model=model, api_key="test-key")
        self.scripts: list[list] = []
        self.call_log: list[dict] = []

    async def stream(
        self,
        turns,
        system_prompt,
        thinking=False,
        enabled_tools=(),
        tool_definitions=(),
        client=None,
    ):
        self.call_log.append({
            "messages": self.format_messages(turns),
            "system": system_prompt,
            "tools": list(tool_definitions),
        })
        script = self.scripts.pop(0)
        assembler = BlockAssembler()
        for entry in script:
            if isinstance(entry, (int, float)):
                await asyncio.sleep(entry)
                continue
            if isinstance(entry, asyncio.Event):
                await entry.wait()
                continue
            for chunk in assembler.feed(self.parse_event(entry)):
                yield chunk
                if chunk.type in (ChunkType.ERROR, ChunkType.DONE):
                    return
        yield assembler.finish()


# ---------------------------------------------------------------------------
# Wire event builders (Anthropic Messages API shape)
# ---------------------------------------------------------------------------

def text_block(index: int, *deltas: str) -> list[dict]:
    """Events for a text block streamed as ``deltas``."""
    events = [{
        "type": "content_block_start",
        "index": index,
        "content_block": {"type": "text", "text": ""},
    }]
    events.extend(
        {
            "type": "content_block_delta",
            "index": index,
            "delta": {"type": "text_delta", "text": d},
        }
        for d in deltas
    )
    events.append({"type": "content_block_stop", "index": index})
    return events


def thinking_block(index: int, text: str, signature: str = "sig") -> list[dict]:
    return [
        {
            "type": "content_block_start",
            "index": index,
            "content_block": {"type": "thinking", "thinking": ""},
        },
        {
            "type": "content_block_delta",
            "index": index,
            "delta": {"type": "thinking_delta", "thinking": text},
        },
        {
            "type": "content_block_delta",
            "index": index,
            "delta": {"type": "signature_delta", "signature": signature},
        },
        {"type": "content_block_stop", "index": index},
    ]


def tool_use_block(
    index: int,
    name: str,
    *fragments: str,
    call_id: str = "toolu_1",
    block_type: str = "tool_use",
) -> list[dict]:
    """Events for a tool call whose arguments arrive as ``fragments``."""
    events = [{
        "type": "content_block_start",
        "index": index,
        "content_block": {
            "type": block_type, "id": call_id, "name": name, "input": {},
        },
    }]
    events.extend(
        {
            "type": "content_block_delta",
            "index": index,
            "delta": {"type": "input_json_delta", "partial_json": f},
        }
        for f in fragments
    )
    events.append({"type": "content_block_stop", "index": index})
    return events


def tool_call(index: int, name: str, args: dict, call_id: str = "toolu_1") -> list[dict]:
    return tool_use_block(index, name, json.dumps(args), call_id=call_id)


def server_result_block(index: int, call_id: str, content) -> list[dict]:
    return [
        {
            "type": "content_block_start",
            "index": index,
            "content_block": {
                "type": "web_search_tool_result",
                "tool_use_id": call_id,
                "content": content,
            },
        },
        {"type": "content_block_stop", "index": index},
    ]


def message(*blocks: list[dict]) -> list:
    """A full reply: message_start, the given blocks, message_stop."""
    events: list = [{"type": "message_start", "message": {"id": "msg_1"}}]
    for block in blocks:
        events.extend(block)
    events.append({"type": "message_delta", "delta": {"stop_reason": "end_turn"}})
    events.append({"type": "message_stop"})
    return events


def text_reply(text: str) -> list:
    return message(text_block(0, text))


def tool_reply(name: str, args: dict, call_id: str = "toolu_1", text: str | None = None) -> list:
    blocks = []
    if text:
        blocks.append(text_block(0, text))
    blocks.append(tool_call(len(blocks), name, args, call_id=call_id))
    return message(*blocks)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def scripted_provider():
    return ScriptedProvider()


@pytest.fixture
def sample_tool():
    @tool
    def greet(name: str):
        """Say hello."""
        return f"Hello {name}"
    return greet


@pytest.fixture
def sample_async_tool():
    @tool
    async def async_greet(name: str):
        """Async greeting."""
        return f"Hello async {name}"
    return async_greet


@pytest.fixture
def failing_tool():
    @tool
    def explode(reason: str = "boom"):
        """Always fails."""
        raise RuntimeError(reason)
    return explode


@pytest.fixture
def dispatcher(sample_tool, sample_async_tool, failing_tool):
    return ToolDispatcher([sample_tool, sample_async_tool, failing_tool])


@pytest.fixture
def settings():
    return TurnSettings(
        model="anthropic/scripted-model",
        system_prompt="You are helpful.",
        thinking_budget_tokens=0,
    )


@pytest.fixture
def make_manager(scripted_provider, dispatcher, settings):
    """Factory fixture for a ConversationManager wired to the scripted provider."""
    from marginalia.conversation import ConversationManager

    def _make(provider=None, tools=None, **overrides):
        return ConversationManager(
            provider=provider or scripted_provider,
            dispatcher=tools if tools is not None else dispatcher,
            settings=settings.model_copy(update=overrides) if overrides else settings,
        )
    return _make
