import json
from collections.abc import Iterable, Sequence

from marginalia.providers.base import BackendProvider, error_message
from marginalia.streaming import (
    BlockComplete,
    BlockStart,
    BlockType,
    StreamParseResult,
    ToolCallDelta,
    ToolCallResult,
)
from marginalia.transport import RequestConfig
from marginalia.turn import ConversationTurn, LLMFile, ToolCall

ANTHROPIC_VERSION = "2023-06-01"

# Minimum reasoning budget the Messages API accepts.
MIN_THINKING_BUDGET = 1024

WEB_SEARCH_TOOL = {
    "type": "web_search_20250305",
    "name": "web_search",
    "max_uses": 5,
}
TEXT_EDITOR_TOOL = {
    "type": "text_editor_20250429",
    "name": "str_replace_based_edit_tool",
}

NO_SEARCH_MODELS = (
    "claude-3-5-sonnet-latest",
    "claude-3-5-haiku-latest",
)
NO_EDITOR_MODELS = (
    "claude-3-7-sonnet-latest",
    *NO_SEARCH_MODELS,
)

TOOL_USE_BLOCKS = ("tool_use", "server_tool_use", "mcp_tool_use")


class AnthropicProvider(BackendProvider):
    """Anthropic Messages API backend."""

    name = "Anthropic"
    api_key_env = "ANTHROPIC_API_KEY"
    default_base_url = "https://api.anthropic.com/v1"

    def builtin_tools(self) -> list[dict]:
        if self.model in NO_SEARCH_MODELS:
            return []
        if self.model in NO_EDITOR_MODELS:
            return [WEB_SEARCH_TOOL]
        return [WEB_SEARCH_TOOL, TEXT_EDITOR_TOOL]

    def tools_payload(
        self, enabled_tools: Iterable[str], tool_definitions: Sequence[dict],
    ) -> list[dict]:
        enabled = set(enabled_tools)
        tools = [t for t in self.builtin_tools() if t["name"] in enabled]
        builtin_names = {t["name"] for t in tools}
        tools.extend(
            {
                "name": d["name"],
                "description": d.get("description", ""),
                "input_schema": d.get("parameters") or {"type": "object"},
            }
            for d in tool_definitions
            if d["name"] not in builtin_names
        )
        return tools

    def build_request(
        self,
        turns: Sequence[ConversationTurn],
        system_prompt: str,
        thinking: bool,
        enabled_tools: Iterable[str],
        tool_definitions: Sequence[dict] = (),
    ) -> RequestConfig:
        self.validate_api_key()
        body = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": self.format_messages(turns),
            "system": system_prompt,
            "stream": True,
        }
        tools = self.tools_payload(enabled_tools, tool_definitions)
        if tools:
            body["tools"] = tools
        if thinking and self.thinking_budget_tokens > MIN_THINKING_BUDGET:
            body["thinking"] = {
                "type": "enabled",
                "budget_tokens": self.thinking_budget_tokens,
            }

        return RequestConfig(
            url=f"{self.base_url}/messages",
            method="POST",
            headers={
                "Content-Type": "application/json",
                "x-api-key": self.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            },
            body=body,
            parse_event=self.parse_event,
        )

    def format_file(self, file: LLMFile) -> dict | None:
        if file.type == "text":
            source = {
                "type": "text",
                "data": file.content or "",
                "media_type": file.mime_type or "text/plain",
            }
        elif file.type == "image":
            return {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": file.mime_type or "image/png",
                    "data": file.content or "",
                },
            }
        elif file.type == "pdf":
            source = {
                "type": "base64",
                "media_type": file.mime_type or "application/pdf",
                "data": file.content or "",
            }
        else:
            return None
        return {"type": "document", "source": source, "title": file.display_name}

    def format_turn(self, turn: ConversationTurn) -> list[dict]:
        messages = [{
            "role": "user",
            "content": [
                {"type": "text", "text": turn.user_input.prompt},
                *self.format_files(turn.user_input.files),
            ],
        }]
        for step in turn.steps:
            if step.is_empty():
                continue
            local_calls = step.local_tool_calls()
            if not local_calls:
                if step.content:
                    messages.append({"role": "assistant", "content": step.content})
                continue

            content = []
            if step.thinking and step.signature:
                content.append({
                    "type": "thinking",
                    "thinking": step.thinking,
                    "signature": step.signature,
                })
            if step.content:
                content.append({"type": "text", "text": step.content})
            content.extend(
                {
                    "type": "tool_use",
                    "id": tc.id,
                    "name": tc.name,
                    "input": tc.input or {},
                }
                for tc in local_calls
            )
            messages.append({"role": "assistant", "content": content})
            messages.append({
                "role": "user",
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": tc.id,
                        "content": json.dumps(tc.result),
                    }
                    for tc in local_calls
                ],
            })
        return messages

    def parse_event(self, obj: dict) -> StreamParseResult:
        kind = obj.get("type")
        if kind == "error" or obj.get("error"):
            return StreamParseResult(error=error_message(obj.get("error") or obj))

        if kind == "content_block_delta":
            return _parse_delta(obj)
        if kind == "content_block_start":
            return _parse_block_start(obj)
        if kind == "content_block_stop":
            return StreamParseResult(
                block_complete=BlockComplete(index=obj.get("index", 0)),
            )
        # message_delta only says the reply finished; message_stop ends
        # the whole exchange.
        if kind == "message_stop":
            return StreamParseResult(is_complete=True)
        return StreamParseResult()


def _parse_delta(obj: dict) -> StreamParseResult:
    delta = obj.get("delta") or {}
    index = obj.get("index", 0)
    delta_type = delta.get("type")
    if delta_type == "input_json_delta":
        return StreamParseResult(tool_call_delta=ToolCallDelta(
            index=index, text=delta.get("partial_json") or "",
        ))
    if delta_type == "signature_delta":
        return StreamParseResult(signature=delta.get("signature"), is_thinking=True)
    if delta.get("thinking"):
        return StreamParseResult(
            content=delta["thinking"], is_thinking=True, index=index,
        )
    if delta.get("text"):
        return StreamParseResult(content=delta["text"], index=index)
    return StreamParseResult()


def _parse_block_start(obj: dict) -> StreamParseResult:
    block = obj.get("content_block") or {}
    index = obj.get("index", 0)
    block_type = block.get("type")

    if block_type in TOOL_USE_BLOCKS:
        return StreamParseResult(
            tool_call=ToolCall(
                id=block.get("id", ""),
                name=block.get("name", ""),
                input=block.get("input") or {},
                is_server_call=block_type != "tool_use",
                server_name=block.get("server_name"),
            ),
            block_start=BlockStart(index=index, type=BlockType.TOOL_CALL),
        )
    if block.get("tool_use_id"):
        return StreamParseResult(
            block_start=BlockStart(index=index, type=BlockType.TOOL_CALL_RESULT),
            tool_call_result=ToolCallResult(
                id=block["tool_use_id"],
                result=block.get("content"),
                is_server_call=True,
            ),
        )
    if block_type in ("thinking", "redacted_thinking"):
        return StreamParseResult(
            block_start=BlockStart(index=index, type=BlockType.THINKING),
            content=block.get("thinking") or None,
            is_thinking=True,
        )
    return StreamParseResult(
        block_start=BlockStart(index=index, type=BlockType.CONTENT),
        content=block.get("text") or None,
    )
