import json

import pytest

from marginalia.providers import get_provider
from marginalia.providers.anthropic import AnthropicProvider
from marginalia.providers.openai import OpenAIProvider
from marginalia.exceptions import ConfigurationError
from marginalia.streaming import BlockAssembler, BlockType, ChunkType
from marginalia.turn import ChatMessage, ConversationTurn, LLMFile, ToolCall, TurnStep


@pytest.fixture
def provider():
    return OpenAIProvider(model="gpt-4.1", api_key="k")


def _turn(steps=None, files=None):
    return ConversationTurn(
        user_input=ChatMessage(message="hi", prompt="hi", files=files),
        steps=steps or [],
    )


class TestParseEvent:
    def test_function_call_added(self, provider):
        result = provider.parse_event({
            "type": "response.output_item.added",
            "output_index": 1,
            "item": {"type": "function_call", "call_id": "call_1", "name": "greet", "arguments": ""},
        })
        assert result.block_start.index == 1
        assert result.block_start.type is BlockType.TOOL_CALL
        assert result.tool_call.id == "call_1"
        assert result.tool_call.is_server_call is False

    def test_web_search_is_server_call(self, provider):
        result = provider.parse_event({
            "type": "response.output_item.added",
            "output_index": 0,
            "item": {"type": "web_search_call", "id": "ws_1"},
        })
        assert result.tool_call.is_server_call is True
        assert result.tool_call.name == "web_search"

    def test_text_and_reasoning_deltas(self, provider):
        text = provider.parse_event({"type": "response.output_text.delta", "output_index": 0, "delta": "Hi"})
        reasoning = provider.parse_event({
            "type": "response.reasoning_summary_text.delta", "output_index": 0, "delta": "hmm",
        })
        assert text.content == "Hi" and text.is_thinking is False
        assert reasoning.content == "hmm" and reasoning.is_thinking is True

    def test_argument_delta(self, provider):
        result = provider.parse_event({
            "type": "response.function_call_arguments.delta", "output_index": 2, "delta": '{"a"',
        })
        assert result.tool_call_delta.index == 2
        assert result.tool_call_delta.text == '{"a"'

    def test_completed(self, provider):
        assert provider.parse_event({"type": "response.completed"}).is_complete is True

    def test_error_event(self, provider):
        result = provider.parse_event({"type": "error", "code": "rate_limit", "message": "slow down"})
        assert result.error == "rate_limit: slow down"

    def test_failed_response(self, provider):
        result = provider.parse_event({
            "type": "response.failed",
            "response": {"error": {"code": "server_error", "message": "oops"}},
        })
        assert result.error == "server_error: oops"

    def test_incomplete_response(self, provider):
        result = provider.parse_event({
            "type": "response.incomplete",
            "response": {"incomplete_details": {"reason": "max_output_tokens"}},
        })
        assert result.error == "Response incomplete: max_output_tokens"

    def test_chat_completions_delta(self, provider):
        result = provider.parse_event({"choices": [{"delta": {"content": "x"}, "finish_reason": None}]})
        assert result.content == "x"
        assert result.is_complete is False

    def test_mcp_call_done_carries_result(self, provider):
        result = provider.parse_event({
            "type": "response.output_item.done",
            "output_index": 0,
            "item": {"type": "mcp_call", "id": "mcp_1", "output": "42"},
        })
        assert result.block_complete.index == 0
        assert result.tool_call_result.result == "42"
        assert result.tool_call_result.is_server_call is True


class TestAssembledStream:
    def test_function_call_arguments_reassembled(self, provider):
        events = [
            {
                "type": "response.output_item.added", "output_index": 0,
                "item": {"type": "function_call", "call_id": "call_1", "name": "add", "arguments": ""},
            },
            {"type": "response.function_call_arguments.delta", "output_index": 0, "delta": '{"a":'},
            {"type": "response.function_call_arguments.delta", "output_index": 0, "delta": "1}"},
            {
                "type": "response.output_item.done", "output_index": 0,
                "item": {"type": "function_call", "call_id": "call_1", "arguments": '{"a":1}'},
            },
            {"type": "response.completed"},
        ]
        asm = BlockAssembler()
        chunks = [c for e in events for c in asm.feed(provider.parse_event(e))]

        complete = [c for c in chunks if c.type is ChunkType.TOOL_CALL and c.is_complete]
        assert len(complete) == 1
        assert complete[0].tool_call.input == {"a": 1}
        assert chunks[-1].type is ChunkType.DONE

    def test_text_done_then_item_done_completes_once(self, provider):
        events = [
            {"type": "response.output_item.added", "output_index": 0, "item": {"type": "message"}},
            {"type": "response.output_text.delta", "output_index": 0, "delta": "Hi"},
            {"type": "response.output_text.done", "output_index": 0},
            {"type": "response.output_item.done", "output_index": 0, "item": {"type": "message"}},
        ]
        asm = BlockAssembler()
        chunks = [c for e in events for c in asm.feed(provider.parse_event(e))]

        finished = [c for c in chunks if c.is_complete]
        assert len(finished) == 1
        assert finished[0].content == "Hi"


class TestBuildRequest:
    def test_reasoning_model_with_thinking(self):
        provider = OpenAIProvider(model="o3-mini", api_key="k")
        body = provider.build_request([_turn()], "s", True, ()).body
        assert body["reasoning"] == {"summary": "auto"}
        assert "temperature" not in body

    def test_regular_model_sets_temperature(self, provider):
        config = provider.build_request([_turn()], "sys", True, ())
        assert config.url == "https://api.openai.com/v1/responses"
        assert config.headers["Authorization"] == "Bearer k"
        assert config.body["instructions"] == "sys"
        assert config.body["temperature"] == 0.7

    def test_function_tools_and_web_search(self, provider):
        definitions = [{"name": "greet", "description": "", "parameters": {"type": "object"}}]
        body = provider.build_request([_turn()], "s", False, ("web_search",), definitions).body
        assert body["tools"][0]["type"] == "function"
        assert body["tools"][1] == {"type": "web_search_preview"}


class TestFormatTurn:
    def test_tool_calls_become_call_and_output_items(self, provider):
        step = TurnStep(
            content="Let me check",
            tool_calls={"c1": ToolCall(id="c1", name="greet", input={"name": "A"}, result={"ok": True})},
        )
        items = provider.format_turn(_turn(steps=[step]))

        assert items[1] == {"role": "assistant", "content": "Let me check"}
        assert items[2]["type"] == "function_call"
        assert json.loads(items[2]["arguments"]) == {"name": "A"}
        assert items[3] == {"type": "function_call_output", "call_id": "c1", "output": '{"ok": true}'}

    def test_pdf_as_data_url(self, provider):
        files = [LLMFile(type="pdf", path="a.pdf", content="UERG")]
        items = provider.format_turn(_turn(files=files))
        pdf = items[0]["content"][1]
        assert pdf["type"] == "input_file"
        assert pdf["file_data"] == "data:application/pdf;base64,UERG"


class TestGetProvider:
    def test_known_backends(self):
        assert isinstance(get_provider("anthropic/claude-x", api_key="k"), AnthropicProvider)
        provider = get_provider("openai/gpt-4.1", api_key="k")
        assert isinstance(provider, OpenAIProvider)
        assert provider.model == "gpt-4.1"

    @pytest.mark.parametrize("model", ["mistral/large", "anthropic", "anthropic/"])
    def test_unsupported(self, model):
        with pytest.raises(ConfigurationError, match="Unsupported LLM provider"):
            get_provider(model)
