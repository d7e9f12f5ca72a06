import inspect
import json
import logging
import re
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from relaycore.streaming import ToolCall

logger = logging.getLogger(__name__)

Executor = Callable[[str], Awaitable[str]]

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    set: "array",
    dict: "object",
}

_GOOGLE_PARAM = re.compile(r"^\s+(\w+)(?:\s*\([^)]*\))?:\s*(.+)$")
_SPHINX_PARAM = re.compile(r"^\s*:param\s+(\w+):\s*(.+)$")


class ToolRecoverableError(Exception):
    """Raised by a tool to hand a message back to the model.

    The message is forwarded as the tool result as-is, without the
    ``failed:`` prefix used for unexpected errors.
    """


class ToolDefinition(BaseModel):
    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


def _parse_param_descriptions(func: Callable) -> dict[str, str]:
    """Pull per-parameter descriptions out of a Google or Sphinx docstring."""
    doc = inspect.getdoc(func)
    if not doc:
        return {}
    descriptions: dict[str, str] = {}
    in_args = False
    for line in doc.splitlines():
        match = _SPHINX_PARAM.match(line)
        if match:
            descriptions[match.group(1)] = match.group(2).strip()
            continue
        if line.strip() in ("Args:", "Arguments:", "Parameters:"):
            in_args = True
            continue
        if in_args:
            if line and not line[0].isspace():
                in_args = False
                continue
            match = _GOOGLE_PARAM.match(line)
            if match:
                descriptions[match.group(1)] = match.group(2).strip()
    return descriptions


def _build_parameters_schema(func: Callable) -> tuple[dict, list[str]]:
    signature = inspect.signature(func)
    descriptions = _parse_param_descriptions(func)
    properties: dict[str, dict[str, str]] = {}
    required: list[str] = []
    for name, param in signature.parameters.items():
        json_type = _JSON_TYPES.get(param.annotation, "string")
        properties[name] = {"type": json_type}
        if name in descriptions:
            properties[name]["description"] = descriptions[name]
        if param.default is inspect.Parameter.empty:
            required.append(name)
    schema = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema, required


def _summary(func: Callable) -> str:
    doc = inspect.getdoc(func)
    if not doc:
        return ""
    return doc.split("\n\n", 1)[0].strip()


class Tool:
    """A Python function exposed to the model as a tool.

    The parameter schema is derived from the signature and the
    description from the docstring.  Calling :meth:`execute` decodes the
    model's JSON arguments and runs the function, sync or async.
    """

    def __init__(
        self,
        func: Callable,
        name: str | None = None,
        description: str | None = None,
    ):
        self.func = func
        self.name = name or func.__name__
        schema, _ = _build_parameters_schema(func)
        self.definition = ToolDefinition(
            name=self.name,
            description=description if description is not None else _summary(func),
            parameters=schema,
        )

    async def execute(self, arguments: str) -> str:
        params = json.loads(arguments) if arguments.strip() else {}
        if not isinstance(params, dict):
            raise ValueError("arguments must be a JSON object")
        result = self.func(**params)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, str):
            return result
        return json.dumps(result)


def tool(func: Callable | None = None, *, name: str | None = None,
         description: str | None = None):
    """Decorator turning a function into a :class:`Tool`.

    Usable bare (``@tool``) or with overrides (``@tool(name="search")``).
    """
    def wrap(f: Callable) -> Tool:
        return Tool(f, name=name, description=description)

    if func is not None:
        return wrap(func)
    return wrap


class ToolRegistry:
    """Host-provided tool executors keyed by tool name.

    Executors take the raw JSON argument text and return the result text.
    The registry never raises for a failing tool; failures become result
    text so the model can decide how to respond.
    """

    def __init__(self, tools: list[Tool] | None = None):
        self._definitions: dict[str, ToolDefinition] = {}
        self._executors: dict[str, Executor] = {}
        for t in tools or []:
            self.add(t)

    def __contains__(self, name: str) -> bool:
        return name in self._executors

    def __len__(self) -> int:
        return len(self._executors)

    def add(self, t: Tool) -> None:
        self.register(t.definition, t.execute)

    def register(self, definition: ToolDefinition, executor: Executor) -> None:
        self._definitions[definition.name] = definition
        self._executors[definition.name] = executor

    def definitions(self) -> list[ToolDefinition]:
        return list(self._definitions.values())

    async def execute(self, call: ToolCall) -> str:
        executor = self._executors.get(call.name)
        if executor is None:
            logger.warning(f"Tool not found: {call.name}")
            return f"Unknown tool: {call.name}"

        logger.info(f"Calling {call.name} with {call.arguments}")
        try:
            return await executor(call.arguments)
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON in arguments for {call.name}: {e}")
            return "Invalid arguments"
        except ToolRecoverableError as e:
            logger.info(f"Tool {call.name} asked the model to retry: {e}")
            return str(e)
        except Exception as e:
            logger.warning(f"Tool {call.name} raised: {e}")
            return f"{call.name} failed: {e}"
