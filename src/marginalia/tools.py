import inspect
import logging
import re
import typing
from collections.abc import Callable, Iterable
from typing import Any

from pydantic import BaseModel, Field

from marginalia.exceptions import ToolExecutionError, UnknownToolError

logger = logging.getLogger(__name__)

_JSON_TYPES = {
    "str": "string",
    "int": "integer",
    "float": "number",
    "bool": "boolean",
    "NoneType": "null",
    "dict": "object",
    "list": "array",
    "tuple": "array",  # closest equivalent
    "set": "array",    # closest equivalent
}

_ARGS_HEADER = re.compile(r"^\s*(Args|Arguments|Parameters)\s*:\s*$")
_ARG_LINE = re.compile(r"^\s*(\w+)\s*(?:\([^)]*\))?\s*:\s*(.*)$")


def _json_type(annotation: Any) -> str:
    if annotation is inspect.Parameter.empty:
        return "string"
    if isinstance(annotation, str):
        return _JSON_TYPES.get(annotation.split("[")[0].strip(), "string")
    origin = typing.get_origin(annotation) or annotation
    return _JSON_TYPES.get(getattr(origin, "__name__", ""), "string")


def _parse_param_descriptions(func: Callable) -> dict[str, str]:
    """Read parameter descriptions from a Google-style ``Args:`` section."""
    doc = inspect.getdoc(func)
    if not doc:
        return {}

    descriptions: dict[str, str] = {}
    in_args = False
    current: str | None = None
    for line in doc.splitlines():
        if _ARGS_HEADER.match(line):
            in_args = True
            continue
        if not in_args:
            continue
        if not line.strip():
            current = None
            continue
        if not line.startswith((" ", "\t")):
            # next section
            break
        match = _ARG_LINE.match(line)
        if match and line.startswith("    ") and not line.startswith("     "):
            current = match.group(1)
            descriptions[current] = match.group(2).strip()
        elif current is not None:
            descriptions[current] = f"{descriptions[current]} {line.strip()}".strip()
    return descriptions


def _summary(func: Callable) -> str:
    doc = inspect.getdoc(func)
    if not doc:
        return ""
    return doc.split("\n\n")[0].strip()


def _build_parameters_schema(func: Callable) -> dict:
    signature = inspect.signature(func)
    descriptions = _parse_param_descriptions(func)
    properties = {}
    required = []
    for param_name, param in signature.parameters.items():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        properties[param_name] = {
            "type": _json_type(param.annotation),
            "description": descriptions.get(param_name, ""),
        }
        if param.default is inspect.Parameter.empty:
            required.append(param_name)

    return {
        "type": "object",
        "properties": properties,
        "required": required,
    }


class Tool(BaseModel):
    """A locally executable tool the model may call.

    Build one with the :func:`tool` decorator. Calling a tool awaits the
    wrapped function whether it is sync or async and returns its raw
    output, which must be JSON-serializable.
    """

    func: Callable = Field(exclude=True)
    name: str
    description: str = ""
    parameters_schema: dict = Field(default_factory=dict)
    model_config = {"arbitrary_types_allowed": True}

    def definition(self) -> dict:
        """Backend-neutral definition; providers wrap it in their own shape."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters_schema,
        }

    async def __call__(self, **kwargs) -> Any:
        result = self.func(**kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result


def tool(
    func: Callable | None = None,
    *,
    name: str | None = None,
    description: str | None = None,
):
    """Turn a function into a :class:`Tool`.

    Usable bare (``@tool``) or with overrides
    (``@tool(name="view", description="...")``).
    """
    def wrap(f: Callable) -> Tool:
        schema = _build_parameters_schema(f)
        return Tool(
            func=f,
            name=name or f.__name__,
            description=description if description is not None else _summary(f),
            parameters_schema=schema,
        )

    if func is not None:
        return wrap(func)
    return wrap


class ToolDispatcher:
    """Routes finished, non-server tool calls to local tools."""

    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: dict[str, Tool] = {}
        for t in tools:
            self.register(t)

    def register(self, t: Tool) -> None:
        self._tools[t.name] = t

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self, enabled: Iterable[str] | None = None) -> list[dict]:
        """Definitions of registered tools, restricted to ``enabled`` if given."""
        if enabled is None:
            return [t.definition() for t in self._tools.values()]
        enabled = set(enabled)
        return [
            t.definition() for t in self._tools.values() if t.name in enabled
        ]

    async def dispatch(self, name: str, input: Any) -> Any:
        """Run tool ``name`` with the parsed ``input``.

        Raises:
            UnknownToolError: If no tool is registered under ``name``.
            ToolExecutionError: If the input is not an object or the tool
                raises.
        """
        tool_obj = self._tools.get(name)
        if tool_obj is None:
            logger.warning(f"Tool not found: {name}")
            raise UnknownToolError(name)
        if input is None:
            input = {}
        if not isinstance(input, dict):
            raise ToolExecutionError(
                name, f"expected an object of arguments, got {type(input).__name__}"
            )

        logger.info(f"Calling {name} with {input}")
        try:
            return await tool_obj(**input)
        except Exception as e:
            logger.error(f"Tool {name} raised: {e}")
            raise ToolExecutionError(name, str(e)) from e
