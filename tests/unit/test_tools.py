import pytest

from marginalia.exceptions import ToolExecutionError, UnknownToolError
from marginalia.tools import Tool, ToolDispatcher, _build_parameters_schema, tool


class TestToolDecorator:
    def test_creates_tool_instance(self):
        @tool
        def my_func(x: str):
            """Does something."""
            return x

        assert isinstance(my_func, Tool)
        assert my_func.name == "my_func"
        assert my_func.description == "Does something."

    def test_schema_types_and_required(self):
        @tool
        def typed(a: str, b: int, c: float = 1.0, d: bool = False, e: list | None = None):
            """Typed params."""

        props = typed.parameters_schema["properties"]
        assert props["a"]["type"] == "string"
        assert props["b"]["type"] == "integer"
        assert props["c"]["type"] == "number"
        assert props["d"]["type"] == "boolean"
        assert typed.parameters_schema["required"] == ["a", "b"]

    def test_parameters_schema_builder_returns_schema(self):
        def plain(path: str, limit: int = 10):
            """Plain function."""

        assert _build_parameters_schema(plain) == {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": ""},
                "limit": {"type": "integer", "description": ""},
            },
            "required": ["path"],
        }

    def test_generic_annotation_uses_origin(self):
        @tool
        def tagged(tags: list[str], meta: dict[str, int]):
            """Tags."""

        props = tagged.parameters_schema["properties"]
        assert props["tags"]["type"] == "array"
        assert props["meta"]["type"] == "object"

    def test_param_descriptions_from_docstring(self):
        @tool
        def view(path: str, start: int = 0):
            """View a file.

            Longer explanation here.

            Args:
                path: File to open, relative to
                    the vault root.
                start: First line to show.
            """

        props = view.parameters_schema["properties"]
        assert view.description == "View a file."
        assert props["path"]["description"] == "File to open, relative to the vault root."
        assert props["start"]["description"] == "First line to show."

    def test_overrides(self):
        @tool(name="view", description="Custom")
        def whatever(path: str):
            """Ignored."""

        assert whatever.name == "view"
        assert whatever.description == "Custom"

    def test_definition_shape(self, sample_tool):
        assert sample_tool.definition() == {
            "name": "greet",
            "description": "Say hello.",
            "parameters": {
                "type": "object",
                "properties": {"name": {"type": "string", "description": ""}},
                "required": ["name"],
            },
        }

    @pytest.mark.asyncio
    async def test_sync_and_async_call(self, sample_tool, sample_async_tool):
        assert await sample_tool(name="A") == "Hello A"
        assert await sample_async_tool(name="B") == "Hello async B"


class TestToolDispatcher:
    @pytest.mark.asyncio
    async def test_dispatch(self, dispatcher):
        assert await dispatcher.dispatch("greet", {"name": "Ada"}) == "Hello Ada"

    @pytest.mark.asyncio
    async def test_none_input_means_no_arguments(self, dispatcher):
        with pytest.raises(ToolExecutionError, match="boom"):
            await dispatcher.dispatch("explode", None)

    @pytest.mark.asyncio
    async def test_unknown_tool(self, dispatcher):
        with pytest.raises(UnknownToolError, match="Unsupported tool call: nope"):
            await dispatcher.dispatch("nope", {})

    @pytest.mark.asyncio
    async def test_non_object_input(self, dispatcher):
        with pytest.raises(ToolExecutionError, match="expected an object"):
            await dispatcher.dispatch("greet", [1, 2])

    @pytest.mark.asyncio
    async def test_tool_exception_wrapped(self, dispatcher):
        with pytest.raises(ToolExecutionError) as exc_info:
            await dispatcher.dispatch("explode", {"reason": "disk full"})

        assert str(exc_info.value) == "Error calling explode: disk full"
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_bad_arguments_wrapped(self, dispatcher):
        with pytest.raises(ToolExecutionError):
            await dispatcher.dispatch("greet", {"wrong": 1})

    def test_definitions_filtered(self, dispatcher):
        assert dispatcher.names == ["greet", "async_greet", "explode"]
        assert [d["name"] for d in dispatcher.definitions(["greet"])] == ["greet"]
        assert len(dispatcher.definitions()) == 3
