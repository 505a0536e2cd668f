"""
Tools Framework

Declaration and invocation of tools with JSON Schema contracts.

Usage:
    from tools import ToolDispatcher, tool

    @tool
    def get_weather(postal_code: str) -> str:
        '''Current weather for a postal code.

        Args:
            postal_code: The postal code to look up
        '''
        return "70 degrees"

    dispatcher = ToolDispatcher()
    dispatcher.register(get_weather)
    result = await dispatcher.invoke("get_weather", {"postal_code": "98101"})

The @tool decorator:
- Generates the input JSON schema from type hints
- Extracts descriptions from docstrings
- Derives an output schema from a simple return annotation

invoke() never raises for tool failures: bad input, executor exceptions and
bad output all come back as a ToolResult carrying the error, so the model
can see what went wrong and the turn carries on.

A tool declared without an executor runs on the client. The agent ends the
turn with the call pending and the client sends the result as the next input:

    dispatcher.declare("read_clipboard", {"type": "object"}, {"type": "string"})
"""

import asyncio
import dataclasses
import inspect
import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Protocol, get_type_hints, runtime_checkable

from jsonschema.exceptions import SchemaError
from jsonschema.validators import validator_for

logger = logging.getLogger(__name__)


# =============================================================================
# Errors
# =============================================================================


class ToolValidationError(Exception):
    """Raised when a tool fails validation during registration."""
    pass


class SchemaValidationError(Exception):
    """Tool input or output does not match its declared schema."""

    def __init__(self, tool_name: str, errors: list[str], stage: str = "input"):
        self.tool_name = tool_name
        self.errors = errors
        self.stage = stage
        super().__init__(f"Invalid {stage} for tool '{tool_name}': " + "; ".join(errors))


class ToolExecutionError(Exception):
    """The tool could not be run, or raised while running."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(f"Tool '{tool_name}' failed: {message}")


# =============================================================================
# Schemas
# =============================================================================


def json_serialize(obj):
    """JSON serializer for objects not serializable by default."""
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def check_schema(schema: dict, tool_name: str = "?"):
    """Raise ToolValidationError unless `schema` is a valid JSON Schema."""
    if not isinstance(schema, dict):
        raise ToolValidationError(
            f"Tool '{tool_name}' has invalid schema: expected dict, got {type(schema).__name__}"
        )
    try:
        validator_for(schema).check_schema(schema)
    except SchemaError as e:
        raise ToolValidationError(f"Tool '{tool_name}' has invalid schema: {e.message}") from e


def validate_schema(schema: dict | None, value: Any) -> list[str]:
    """Validation errors of `value` against `schema`, as readable strings ([] when valid)."""
    if not schema:
        return []
    validator = validator_for(schema)(schema)
    errors = []
    for error in sorted(validator.iter_errors(value), key=lambda e: list(e.path)):
        location = "/".join(str(p) for p in error.path)
        errors.append(f"{location}: {error.message}" if location else error.message)
    return errors


def _python_type_to_json(py_type) -> dict:
    """Convert Python type hints to JSON schema types."""
    type_map = {
        str: {"type": "string"},
        int: {"type": "integer"},
        float: {"type": "number"},
        bool: {"type": "boolean"},
        list: {"type": "array"},
        dict: {"type": "object"},
    }

    origin = getattr(py_type, "__origin__", None)
    if origin is type(None) or py_type is type(None):
        return {"type": "null"}
    if origin in (list, dict):
        return dict(type_map[origin])

    if py_type in type_map:
        return dict(type_map[py_type])

    # Default to string
    return {"type": "string"}


def _parse_docstring(docstring: str) -> tuple[str, dict[str, str]]:
    """
    Parse a docstring to extract description and argument descriptions.

    Returns:
        (main_description, {arg_name: arg_description})
    """
    if not docstring:
        return "", {}

    lines = docstring.strip().split("\n")
    description_lines = []
    arg_descriptions = {}

    in_args = False
    in_other = False
    current_arg = None

    for line in lines:
        stripped = line.strip()

        if stripped.lower() in ("args:", "arguments:", "parameters:"):
            in_args, in_other = True, False
            continue

        if stripped.lower() in ("returns:", "raises:", "examples:", "example:"):
            in_args, in_other = False, True
            continue

        if in_args:
            # "arg_name: description" or "arg_name (type): description"
            match = re.match(r"(\w+)(?:\s*\([^)]*\))?\s*:\s*(.+)", stripped)
            if match:
                current_arg = match.group(1)
                arg_descriptions[current_arg] = match.group(2).strip()
            elif current_arg and stripped:
                arg_descriptions[current_arg] += " " + stripped
        elif not in_other and stripped:
            description_lines.append(stripped)

    return " ".join(description_lines), arg_descriptions


# =============================================================================
# Tool
# =============================================================================


class Tool:
    """
    A capability the model can call.

    `fn` receives the validated input dict and returns the output; it may be
    a plain function (run in a worker thread) or a coroutine function.
    Without `fn` the tool is client-side: the caller executes it.
    """

    def __init__(
        self,
        name: str,
        description: str,
        parameters: dict,
        fn: Callable | None = None,
        output_schema: dict | None = None,
    ):
        self.name = name
        self.fn = fn
        self.output_schema = output_schema
        self.schema = {
            "name": name,
            "description": description,
            "input_schema": parameters,
        }

    @property
    def description(self) -> str:
        return self.schema["description"]

    @property
    def input_schema(self) -> dict:
        return self.schema["input_schema"]

    @property
    def client_side(self) -> bool:
        return self.fn is None

    async def execute(self, params: dict) -> Any:
        if self.fn is None:
            raise RuntimeError(f"Tool '{self.name}' is executed by the client")
        if inspect.iscoroutinefunction(self.fn):
            return await self.fn(params)
        result = await asyncio.to_thread(self.fn, params)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __repr__(self):
        return f"Tool({self.name!r})"


@runtime_checkable
class ToolLike(Protocol):
    """Any object with these attributes can be converted to a Tool."""
    name: str
    fn: Callable
    schema: dict


def tool(
    fn: Callable = None,
    *,
    name: str = None,
    description: str = None,
    output_schema: dict | None = None,
):
    """
    Decorator to turn a function into a Tool.

    Can be used as:
        @tool
        def my_func(...): ...

    Or with options:
        @tool(name="custom_name", output_schema={"type": "object"})
        def my_func(...): ...

    The original function stays callable; the Tool is attached as `func.tool`.
    """
    def decorator(func: Callable):
        tool_name = name or func.__name__

        doc_desc, arg_descs = _parse_docstring(func.__doc__ or "")
        tool_description = description or doc_desc or f"Tool: {tool_name}"

        hints = get_type_hints(func) if hasattr(func, "__annotations__") else {}
        return_type = hints.pop("return", None)

        sig = inspect.signature(func)

        properties = {}
        required = []
        for param_name, param in sig.parameters.items():
            if param_name == "self":
                continue

            prop = _python_type_to_json(hints.get(param_name, str))
            if param_name in arg_descs:
                prop["description"] = arg_descs[param_name]
            properties[param_name] = prop

            if param.default is inspect.Parameter.empty:
                required.append(param_name)

        schema = {"type": "object", "properties": properties}
        if required:
            schema["required"] = required

        out_schema = output_schema
        if out_schema is None and return_type in (str, int, float, bool, list, dict):
            out_schema = _python_type_to_json(return_type)

        accepted = set(sig.parameters)
        if inspect.iscoroutinefunction(func):
            async def wrapper(params: dict):
                return await func(**{k: v for k, v in params.items() if k in accepted})
        else:
            def wrapper(params: dict):
                return func(**{k: v for k, v in params.items() if k in accepted})

        func.tool = Tool(
            name=tool_name,
            description=tool_description,
            parameters=schema,
            fn=wrapper,
            output_schema=out_schema,
        )
        return func

    if fn is not None:
        return decorator(fn)
    return decorator


# =============================================================================
# Dispatcher
# =============================================================================


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one invocation. Exactly one of output/error is meaningful."""

    tool_name: str
    tool_call_id: str = ""
    output: Any = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_content(self) -> Any:
        """Payload recorded in the tool-result message."""
        if self.error is None:
            return self.output
        payload = {"error": str(self.error), "type": type(self.error).__name__}
        if isinstance(self.error, SchemaValidationError):
            payload["stage"] = self.error.stage
            payload["details"] = list(self.error.errors)
        return payload


class ToolDispatcher:
    """Registry of tools plus schema-checked invocation."""

    def __init__(self, tools: list | None = None):
        self.tools: dict[str, Tool] = {}
        for t in tools or []:
            self.register(t)

    def declare(
        self,
        tool_id: str,
        input_schema: dict,
        output_schema: dict | None = None,
        executor: Callable | None = None,
        description: str = "",
    ) -> Tool:
        """Register a tool by its parts. Redeclaring an id replaces the earlier tool.

        Without an executor the tool is client-side: the model may call it,
        but the result has to come back from the caller in a later turn.
        """
        return self.register(
            Tool(
                name=tool_id,
                description=description or f"Tool: {tool_id}",
                parameters=input_schema,
                fn=executor,
                output_schema=output_schema,
            )
        )

    def register(self, obj) -> Tool:
        """Register a Tool, a @tool-decorated function or a ToolLike object.

        Raises:
            ToolValidationError: If the object is malformed or a schema is invalid.
        """
        validated = self._validate_and_convert(obj)
        check_schema(validated.input_schema, validated.name)
        if validated.output_schema is not None:
            check_schema(validated.output_schema, validated.name)

        if validated.name in self.tools:
            logger.debug("Tool '%s' redeclared, replacing previous definition", validated.name)
        self.tools[validated.name] = validated
        return validated

    def _validate_and_convert(self, obj) -> Tool:
        if isinstance(obj, Tool):
            return obj

        if isinstance(getattr(obj, "tool", None), Tool):
            return obj.tool

        if isinstance(obj, ToolLike):
            schema = obj.schema
            if not isinstance(schema, dict):
                raise ToolValidationError(
                    f"Tool '{getattr(obj, 'name', '?')}' has invalid schema: expected dict, got {type(schema).__name__}"
                )
            if "name" not in schema or "input_schema" not in schema:
                raise ToolValidationError(
                    f"Tool '{obj.name}' schema missing required keys. "
                    f"Expected 'name', 'description', 'input_schema'. Got: {list(schema.keys())}"
                )
            return Tool(
                name=obj.name,
                description=schema.get("description", f"Tool: {obj.name}"),
                parameters=schema["input_schema"],
                fn=obj.fn,
                output_schema=getattr(obj, "output_schema", None),
            )

        missing = [attr for attr in ("name", "fn", "schema") if not hasattr(obj, attr)]
        if missing:
            raise ToolValidationError(
                f"Invalid tool object (type: {type(obj).__name__}). "
                f"Missing required attributes: {missing}. "
                f"Use the Tool class, the @tool decorator, or provide 'name', 'fn' and 'schema'."
            )
        raise ToolValidationError(
            f"Tool '{getattr(obj, 'name', '?')}' has attributes but failed protocol check. "
            f"Verify 'name' is str, 'fn' is callable, and 'schema' is dict."
        )

    def get(self, tool_id: str) -> Tool | None:
        return self.tools.get(tool_id)

    @property
    def names(self) -> list[str]:
        return list(self.tools)

    def schemas(self) -> list[dict]:
        """Tool definitions in the shape model adapters expect."""
        return [t.schema for t in self.tools.values()]

    def extended(self, tools: list) -> "ToolDispatcher":
        """A copy of this dispatcher with extra tools registered on top."""
        copy = ToolDispatcher()
        copy.tools = dict(self.tools)
        for t in tools:
            copy.register(t)
        return copy

    async def invoke(self, tool_id: str, raw_arguments: Any, tool_call_id: str = "") -> ToolResult:
        """
        Validate, execute and validate again.

        Args:
            tool_id: Name of the tool
            raw_arguments: Input dict, or a JSON string as produced by a model
            tool_call_id: Id of the model's request, copied onto the result

        Returns:
            ToolResult. Failures are carried in `error` as a
            SchemaValidationError or ToolExecutionError, never raised.
        """
        def failed(error: Exception) -> ToolResult:
            logger.info("Tool %s returned an error: %s", tool_id, error)
            return ToolResult(tool_name=tool_id, tool_call_id=tool_call_id, error=error)

        t = self.tools.get(tool_id)
        if t is None:
            return failed(ToolExecutionError(tool_id, "unknown tool"))
        if t.client_side:
            return failed(ToolExecutionError(tool_id, "tool is executed by the client"))

        args = raw_arguments
        if isinstance(args, str):
            try:
                args = json.loads(args) if args.strip() else {}
            except json.JSONDecodeError as e:
                return failed(SchemaValidationError(tool_id, [f"arguments are not valid JSON: {e}"]))
        if args is None:
            args = {}

        errors = validate_schema(t.input_schema, args)
        if errors:
            return failed(SchemaValidationError(tool_id, errors, stage="input"))

        try:
            output = await t.execute(args)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Tool %s raised", tool_id)
            return failed(ToolExecutionError(tool_id, f"{type(e).__name__}: {e}"))

        try:
            output = json.loads(json.dumps(output, default=json_serialize))
        except (TypeError, ValueError) as e:
            return failed(ToolExecutionError(tool_id, f"result serialization failed: {e}"))

        errors = validate_schema(t.output_schema, output)
        if errors:
            return failed(SchemaValidationError(tool_id, errors, stage="output"))

        return ToolResult(tool_name=tool_id, tool_call_id=tool_call_id, output=output)
