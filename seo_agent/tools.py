import asyncio
import inspect
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Type, Union

from pydantic import BaseModel, ValidationError

from .errors import ToolExecutionError, ToolValidationError
from .events import ToolCall
from .schemas import ToolResult, ToolSchema


ToolHandler = Callable[[Dict[str, Any]], Awaitable[Any]]
SchemaLike = Union[ToolSchema, Dict[str, Any], Type[BaseModel]]

_JSON_TYPES: Dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
    "null": type(None),
}


def _type_matches(value: Any, expected: str) -> bool:
    if expected in ("integer", "number") and isinstance(value, bool):
        return False
    if expected == "integer" and isinstance(value, float):
        return value.is_integer()
    py_type = _JSON_TYPES.get(expected)
    if py_type is None:
        return True
    return isinstance(value, py_type)


def validate_value(value: Any, shape: Dict[str, Any], path: str = "arguments") -> Any:
    """Check ``value`` against a JSON-schema-like shape and fill defaults."""
    expected = shape.get("type")
    if expected is not None:
        options = expected if isinstance(expected, list) else [expected]
        if not any(_type_matches(value, opt) for opt in options):
            raise ToolValidationError(f"{path}: expected {' or '.join(options)}, got {type(value).__name__}")
    if "enum" in shape and value not in shape["enum"]:
        raise ToolValidationError(f"{path}: {value!r} is not one of {shape['enum']}")
    if isinstance(value, dict) and (expected == "object" or "properties" in shape):
        properties = shape.get("properties") or {}
        for key in shape.get("required") or []:
            if key not in value:
                raise ToolValidationError(f"{path}: missing required field '{key}'")
        if shape.get("additionalProperties") is False:
            extra = sorted(set(value) - set(properties))
            if extra:
                raise ToolValidationError(f"{path}: unexpected field(s) {', '.join(extra)}")
        cleaned = dict(value)
        for key, sub_shape in properties.items():
            if key in cleaned:
                cleaned[key] = validate_value(cleaned[key], sub_shape, f"{path}.{key}")
            elif "default" in sub_shape:
                cleaned[key] = sub_shape["default"]
        return cleaned
    if isinstance(value, list) and isinstance(shape.get("items"), dict):
        return [validate_value(item, shape["items"], f"{path}[{i}]") for i, item in enumerate(value)]
    return value


def _to_json_value(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return json.loads(json.dumps(value, default=str))


@dataclass(frozen=True)
class Tool:
    schema: ToolSchema
    handler: ToolHandler
    model: Optional[Type[BaseModel]] = None

    @property
    def name(self) -> str:
        return self.schema.name

    def validate(self, args: Any) -> Dict[str, Any]:
        if self.model is not None:
            try:
                return self.model.model_validate(args).model_dump()
            except ValidationError as exc:
                problems = "; ".join(
                    f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}" for err in exc.errors()
                )
                raise ToolValidationError(problems) from exc
        if not isinstance(args, dict):
            raise ToolValidationError(f"arguments: expected object, got {type(args).__name__}")
        return validate_value(args, self.schema.parameters)


class ToolRegistry:
    """Named tools with argument validation and failure-isolated execution.

    Registration happens during start-up; after :meth:`freeze` the registry
    is read-only and may be shared by concurrent conversations.
    """

    def __init__(self) -> None:
        self._tools: Dict[str, Tool] = {}
        self._frozen = False

    def register(self, name: str, schema: SchemaLike, handler: ToolHandler) -> Tool:
        if self._frozen:
            raise RuntimeError("tool registry is frozen")
        if not name:
            raise ValueError("tool name is required")
        if name in self._tools:
            raise ValueError(f"tool '{name}' already registered")
        if not callable(handler):
            raise ValueError(f"handler for '{name}' is not callable")
        description = inspect.getdoc(handler) or ""
        model: Optional[Type[BaseModel]] = None
        if isinstance(schema, ToolSchema):
            tool_schema = schema.model_copy(update={"name": name})
        elif isinstance(schema, type) and issubclass(schema, BaseModel):
            model = schema
            description = inspect.getdoc(schema) or description
            tool_schema = ToolSchema(name=name, description=description, parameters=schema.model_json_schema())
        elif isinstance(schema, dict):
            parameters = dict(schema)
            description = parameters.pop("description", None) or description
            tool_schema = ToolSchema(name=name, description=description, parameters=parameters)
        else:
            raise ValueError(f"unsupported schema for '{name}'")
        tool = Tool(schema=tool_schema, handler=handler, model=model)
        self._tools[name] = tool
        return tool

    def freeze(self) -> "ToolRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def schemas(self) -> List[ToolSchema]:
        return [tool.schema for tool in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def execute(self, call: ToolCall, timeout: Optional[float] = None) -> ToolResult:
        try:
            tool = self._tools.get(call.name)
            if tool is None:
                raise ToolValidationError(f"unknown tool '{call.name}'")
            if call.parse_error:
                raise ToolValidationError(call.parse_error)
            if not call.finalized:
                raise ToolValidationError("tool call arguments are incomplete")
            args = tool.validate(call.args)
        except ToolValidationError as exc:
            return ToolResult(call_id=call.id, name=call.name, error="tool_validation", message=exc.message)
        try:
            if timeout:
                output = await asyncio.wait_for(tool.handler(args), timeout=timeout)
            else:
                output = await tool.handler(args)
            return ToolResult(call_id=call.id, name=call.name, output=_to_json_value(output))
        except asyncio.TimeoutError as exc:
            if timeout:
                error = ToolExecutionError(f"tool '{call.name}' timed out after {timeout}s")
            else:
                error = ToolExecutionError(f"{type(exc).__name__}: {exc}")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = ToolExecutionError(f"{type(exc).__name__}: {exc}")
        return ToolResult(call_id=call.id, name=call.name, error="tool_execution", message=error.message)

    async def execute_all(self, calls: Iterable[ToolCall], timeout: Optional[float] = None) -> List[ToolResult]:
        return list(await asyncio.gather(*(self.execute(call, timeout=timeout) for call in calls)))
