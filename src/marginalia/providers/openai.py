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

REASONING_MODEL_PREFIXES = ("o1", "o3", "o4", "gpt-5")

WEB_SEARCH_TOOL = {"type": "web_search_preview"}

ARGUMENT_DELTA_EVENTS = (
    "response.function_call_arguments.delta",
    "response.mcp_call_arguments.delta",
)
REASONING_DELTA_EVENTS = (
    "response.reasoning_summary_text.delta",
    "response.reasoning_text.delta",
)
FAILURE_EVENTS = ("response.failed", "response.incomplete")


class OpenAIProvider(BackendProvider):
    """OpenAI Responses API backend.

    The parser also understands Chat Completions style text deltas so
    OpenAI-compatible servers can stream plain replies through it.
    """

    name = "OpenAI"
    api_key_env = "OPENAI_API_KEY"
    default_base_url = "https://api.openai.com/v1"

    @property
    def is_reasoning_model(self) -> bool:
        return self.model.startswith(REASONING_MODEL_PREFIXES)

    def tools_payload(
        self, enabled_tools: Iterable[str], tool_definitions: Sequence[dict],
    ) -> list[dict]:
        tools = [
            {
                "type": "function",
                "name": d["name"],
                "description": d.get("description", ""),
                "parameters": d.get("parameters") or {"type": "object"},
            }
            for d in tool_definitions
        ]
        if "web_search" in set(enabled_tools):
            tools.append(WEB_SEARCH_TOOL)
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
            "input": self.format_messages(turns),
            "instructions": system_prompt,
            "stream": True,
            "max_output_tokens": self.max_tokens,
        }
        if self.is_reasoning_model:
            if thinking:
                body["reasoning"] = {"summary": "auto"}
        else:
            body["temperature"] = 0.7
        tools = self.tools_payload(enabled_tools, tool_definitions)
        if tools:
            body["tools"] = tools

        return RequestConfig(
            url=f"{self.base_url}/responses",
            method="POST",
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.api_key}",
            },
            body=body,
            parse_event=self.parse_event,
        )

    def format_text(self, text: str, filename: str | None = None) -> dict:
        return {
            "type": "input_text",
            "text": f"File: {filename}\n\n{text}" if filename else text,
        }

    def format_file(self, file: LLMFile) -> dict | None:
        if file.type == "text":
            return self.format_text(file.content or "", file.display_name)
        if file.type == "image":
            mime_type = file.mime_type or "image/png"
            return {
                "type": "input_image",
                "image_url": f"data:{mime_type};base64,{file.content or ''}",
            }
        if file.type == "pdf":
            mime_type = file.mime_type or "application/pdf"
            return {
                "type": "input_file",
                "filename": file.display_name,
                "file_data": f"data:{mime_type};base64,{file.content or ''}",
            }
        return None

    def format_turn(self, turn: ConversationTurn) -> list[dict]:
        items = [{
            "role": "user",
            "content": [
                self.format_text(turn.user_input.prompt),
                *self.format_files(turn.user_input.files),
            ],
        }]
        for step in turn.steps:
            if step.content:
                items.append({"role": "assistant", "content": step.content})
            for tc in step.local_tool_calls():
                items.append({
                    "type": "function_call",
                    "call_id": tc.id,
                    "name": tc.name,
                    "arguments": _as_text(tc.input if tc.input is not None else {}),
                })
                items.append({
                    "type": "function_call_output",
                    "call_id": tc.id,
                    "output": _as_text(tc.result),
                })
        return items

    def parse_event(self, obj: dict) -> StreamParseResult:
        kind = obj.get("type", "")
        if kind == "error":
            return StreamParseResult(error=error_message(obj.get("error") or obj))
        nested = (obj.get("response") or {}).get("error") or obj.get("error")
        if nested:
            return StreamParseResult(error=error_message(nested))
        if kind in FAILURE_EVENTS:
            details = (obj.get("response") or {}).get("incomplete_details") or {}
            return StreamParseResult(
                error=f"Response {kind.rsplit('.', 1)[-1]}: "
                f"{details.get('reason', 'unknown reason')}",
            )

        index = obj.get("output_index", 0)
        if kind == "response.output_item.added":
            return _parse_item_added(obj.get("item") or {}, index)
        if kind == "response.content_part.added":
            return StreamParseResult(
                block_start=BlockStart(index=index, type=BlockType.CONTENT),
            )
        if kind in ARGUMENT_DELTA_EVENTS:
            return StreamParseResult(tool_call_delta=ToolCallDelta(
                index=index, text=obj.get("delta") or "",
            ))
        if kind == "response.output_text.delta":
            return StreamParseResult(content=obj.get("delta"), index=index)
        if kind in REASONING_DELTA_EVENTS:
            return StreamParseResult(
                content=obj.get("delta"), is_thinking=True, index=index,
            )
        if kind == "response.output_text.done":
            return StreamParseResult(block_complete=BlockComplete(index=index))
        if kind == "response.output_item.done":
            return _parse_item_done(obj.get("item") or {}, index)
        if kind == "response.completed":
            return StreamParseResult(is_complete=True)

        choices = obj.get("choices")
        if choices:
            choice = choices[0] or {}
            content = (choice.get("delta") or {}).get("content")
            return StreamParseResult(
                content=content or None,
                is_complete=bool(choice.get("finish_reason")),
            )
        return StreamParseResult()


def _call_id(item: dict) -> str:
    return item.get("call_id") or item.get("id") or ""


def _parse_item_added(item: dict, index: int) -> StreamParseResult:
    item_type = item.get("type")
    if item_type in ("function_call", "mcp_call"):
        return StreamParseResult(
            block_start=BlockStart(index=index, type=BlockType.TOOL_CALL),
            tool_call=ToolCall(
                id=_call_id(item),
                name=item.get("name", ""),
                input=item.get("arguments") or "",
                is_server_call=item_type == "mcp_call",
                server_name=item.get("server_label"),
            ),
        )
    if item_type == "web_search_call":
        return StreamParseResult(
            block_start=BlockStart(index=index, type=BlockType.TOOL_CALL),
            tool_call=ToolCall(
                id=_call_id(item), name="web_search", input={},
                is_server_call=True,
            ),
        )
    if item_type == "reasoning":
        return StreamParseResult(
            block_start=BlockStart(index=index, type=BlockType.THINKING),
        )
    return StreamParseResult(
        block_start=BlockStart(index=index, type=BlockType.CONTENT),
    )


def _parse_item_done(item: dict, index: int) -> StreamParseResult:
    result = StreamParseResult(block_complete=BlockComplete(index=index))
    item_type = item.get("type")
    if item_type == "mcp_call":
        result.tool_call_result = ToolCallResult(
            id=_call_id(item),
            result=item.get("output") if item.get("error") is None
            else {"error": item["error"]},
            is_server_call=True,
        )
    elif item_type == "web_search_call":
        result.tool_call_result = ToolCallResult(
            id=_call_id(item),
            result={"status": item.get("status"), "action": item.get("action")},
            is_server_call=True,
        )
    return result


def _as_text(value) -> str:
    return value if isinstance(value, str) else json.dumps(value)
