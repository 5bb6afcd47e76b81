import json

import pytest

from marginalia.events import ContentEvent, ErrorEvent, ToolCallEvent, TurnCompleteEvent
from marginalia.sse import sse_generator
from marginalia.turn import ChatMessage, ConversationTurn, ToolCall


async def _events(*events):
    for e in events:
        yield e


def _parse(frame: str):
    event_line, data_line = frame.strip().split("\n")
    return event_line.removeprefix("event: "), json.loads(data_line.removeprefix("data: "))


class TestSSEGenerator:
    @pytest.mark.asyncio
    async def test_frames_and_done_marker(self):
        frames = [f async for f in sse_generator(_events(
            ContentEvent(turn_id="t1", content="Hi"),
        ))]

        assert len(frames) == 2
        assert _parse(frames[0]) == ("ContentEvent", {"turn_id": "t1", "content": "Hi"})
        assert frames[1] == "event: done\ndata: {}\n\n"

    @pytest.mark.asyncio
    async def test_models_serialized(self):
        turn = ConversationTurn(
            id="t1", user_input=ChatMessage(message="hi", prompt="hi"), is_complete=True,
        )
        frames = [f async for f in sse_generator(_events(
            ToolCallEvent(turn_id="t1", tool_call=ToolCall(id="c1", name="greet", input={"name": "A"})),
            TurnCompleteEvent(turn_id="t1", turn=turn),
        ))]

        name, data = _parse(frames[0])
        assert name == "ToolCallEvent"
        assert data["tool_call"]["input"] == {"name": "A"}

        name, data = _parse(frames[1])
        assert data["turn"]["user_input"]["type"] == "chat_message"
        assert data["turn"]["is_complete"] is True

    @pytest.mark.asyncio
    async def test_error_event(self):
        frames = [f async for f in sse_generator(_events(
            ErrorEvent(turn_id="t1", error="Inference was cancelled", cancelled=True),
        ))]
        name, data = _parse(frames[0])
        assert name == "ErrorEvent"
        assert data == {
            "turn_id": "t1", "error": "Inference was cancelled", "cancelled": True, "turn": None,
        }
