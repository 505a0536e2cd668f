"""
Unit tests for tools/__init__.py

Tests cover:
- @tool decorator (both @tool and @tool(...) syntax)
- Schema generation from type hints, docstring parsing
- Type conversion (_python_type_to_json)
- ToolDispatcher: declare/register, redeclaration, schema checks, client-side tools
- invoke(): input validation, execution errors, output validation,
  unknown tools, JSON-string arguments, sync and async executors
- ToolResult.to_content for successes and failures
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime

import pytest

from tools import (
    SchemaValidationError,
    Tool,
    ToolDispatcher,
    ToolExecutionError,
    ToolResult,
    ToolValidationError,
    _parse_docstring,
    _python_type_to_json,
    json_serialize,
    tool,
    validate_schema,
)


WEATHER_INPUT = {
    "type": "object",
    "properties": {"postal_code": {"type": "string"}},
    "required": ["postal_code"],
}
WEATHER_OUTPUT = {"type": "string"}


# =============================================================================
# Type Conversion Tests
# =============================================================================


class TestPythonTypeToJson:
    """Test _python_type_to_json conversion."""

    def test_scalars(self):
        assert _python_type_to_json(str) == {"type": "string"}
        assert _python_type_to_json(int) == {"type": "integer"}
        assert _python_type_to_json(float) == {"type": "number"}
        assert _python_type_to_json(bool) == {"type": "boolean"}

    def test_containers(self):
        assert _python_type_to_json(list) == {"type": "array"}
        assert _python_type_to_json(dict[str, int]) == {"type": "object"}
        assert _python_type_to_json(list[str]) == {"type": "array"}

    def test_unknown_defaults_to_string(self):
        assert _python_type_to_json(bytes) == {"type": "string"}


class TestJsonSerialize:

    def test_datetime(self):
        assert json_serialize(datetime(2024, 1, 2, 3, 4)) == "2024-01-02T03:04:00"

    def test_dataclass(self):
        @dataclass
        class Point:
            x: int
            y: int

        assert json_serialize(Point(1, 2)) == {"x": 1, "y": 2}

    def test_unsupported(self):
        with pytest.raises(TypeError):
            json_serialize(object())


# =============================================================================
# Docstring Parsing Tests
# =============================================================================


class TestParseDocstring:
    """Test _parse_docstring extraction."""

    def test_simple_description(self):
        desc, args = _parse_docstring("Look up the weather.")
        assert desc == "Look up the weather."
        assert args == {}

    def test_with_args_section(self):
        docstring = """Look up the weather.

        Args:
            postal_code: The postal code
            units (str): metric or imperial
                (defaults to imperial)
        """
        desc, args = _parse_docstring(docstring)
        assert desc == "Look up the weather."
        assert args["postal_code"] == "The postal code"
        assert "defaults to imperial" in args["units"]

    def test_returns_section_not_in_description(self):
        docstring = """Tool.

        Args:
            query: Search query
        Returns:
            Dict with results
        """
        desc, args = _parse_docstring(docstring)
        assert desc == "Tool."
        assert list(args) == ["query"]

    def test_empty(self):
        assert _parse_docstring("") == ("", {})
        assert _parse_docstring(None) == ("", {})


# =============================================================================
# @tool Decorator Tests
# =============================================================================


class TestToolDecorator:
    """Test the @tool decorator."""

    def test_bare_decorator(self, weather_tool):
        t = weather_tool.tool
        assert isinstance(t, Tool)
        assert t.name == "get_weather"
        assert t.description == "Current weather for a postal code."
        assert t.input_schema == {
            "type": "object",
            "properties": {
                "postal_code": {"type": "string", "description": "The postal code to look up"},
            },
            "required": ["postal_code"],
        }
        assert t.output_schema == {"type": "string"}

    def test_decorator_with_options(self):
        @tool(name="lookup", description="Custom description", output_schema={"type": "object"})
        def search(query: str, limit: int = 5) -> dict:
            """Original docstring."""
            return {}

        t = search.tool
        assert t.name == "lookup"
        assert t.description == "Custom description"
        assert t.output_schema == {"type": "object"}
        assert t.input_schema["required"] == ["query"]
        assert t.input_schema["properties"]["limit"] == {"type": "integer"}

    def test_self_param_excluded(self):
        @tool
        def method(self, query: str) -> str:
            """A tool."""
            return query

        assert "self" not in method.tool.input_schema["properties"]

    def test_no_docstring_fallback(self):
        @tool
        def no_doc(x: str):
            return x

        assert no_doc.tool.description == "Tool: no_doc"
        assert no_doc.tool.output_schema is None

    def test_original_function_still_callable(self, weather_tool):
        assert weather_tool("98101") == "70 degrees"

    @pytest.mark.asyncio
    async def test_wrapper_filters_unknown_params(self):
        @tool
        def echo(query: str) -> dict:
            """Echo."""
            return {"query": query}

        assert await echo.tool.execute({"query": "test", "extra": "ignored"}) == {"query": "test"}

    @pytest.mark.asyncio
    async def test_async_function(self):
        @tool
        async def slow_echo(query: str) -> str:
            """Echo, eventually."""
            await asyncio.sleep(0)
            return query

        assert await slow_echo.tool.execute({"query": "hi"}) == "hi"


# =============================================================================
# Dispatcher Registration Tests
# =============================================================================


class TestDispatcherRegistration:

    def test_declare(self):
        dispatcher = ToolDispatcher()
        t = dispatcher.declare("get_weather", WEATHER_INPUT, WEATHER_OUTPUT, lambda p: "70 degrees")
        assert dispatcher.get("get_weather") is t
        assert dispatcher.names == ["get_weather"]
        assert dispatcher.schemas()[0]["input_schema"] == WEATHER_INPUT

    def test_declare_without_executor_is_client_side(self):
        dispatcher = ToolDispatcher()
        t = dispatcher.declare("read_clipboard", {"type": "object"}, {"type": "string"})
        assert t.client_side
        assert dispatcher.schemas()[0]["name"] == "read_clipboard"

    def test_register_decorated_function(self, weather_tool):
        dispatcher = ToolDispatcher([weather_tool])
        assert dispatcher.get("get_weather") is weather_tool.tool

    def test_register_tool_like(self):
        class Custom:
            name = "custom"
            fn = staticmethod(lambda params: "ok")
            schema = {"name": "custom", "description": "A custom tool", "input_schema": {"type": "object"}}

        t = ToolDispatcher().register(Custom())
        assert t.description == "A custom tool"

    def test_tool_like_missing_keys(self):
        class Broken:
            name = "broken"
            fn = staticmethod(lambda params: None)
            schema = {"description": "no input schema"}

        with pytest.raises(ToolValidationError, match="missing required keys"):
            ToolDispatcher().register(Broken())

    def test_invalid_object(self):
        with pytest.raises(ToolValidationError, match="Missing required attributes"):
            ToolDispatcher().register(object())

    def test_invalid_schema_rejected(self):
        with pytest.raises(ToolValidationError, match="invalid schema"):
            ToolDispatcher().declare("bad", {"type": "not-a-type"}, None, lambda p: None)

    def test_redeclare_last_writer_wins(self):
        dispatcher = ToolDispatcher()
        dispatcher.declare("clipboard", {"type": "object"}, None, lambda p: "first")
        dispatcher.declare("clipboard", {"type": "object"}, None, lambda p: "second")
        assert len(dispatcher.names) == 1
        assert dispatcher.get("clipboard").fn({}) == "second"

    def test_extended_copy(self, weather_tool):
        base = ToolDispatcher([weather_tool])
        extra = base.extended([Tool("extra", "Extra", {"type": "object"}, lambda p: None)])
        assert set(extra.names) == {"get_weather", "extra"}
        assert base.names == ["get_weather"]


# =============================================================================
# Invocation Tests
# =============================================================================


class TestInvoke:

    @pytest.mark.asyncio
    async def test_success(self, weather_tool):
        dispatcher = ToolDispatcher([weather_tool])
        result = await dispatcher.invoke("get_weather", {"postal_code": "98101"}, tool_call_id="call_1")
        assert result == ToolResult(tool_name="get_weather", tool_call_id="call_1", output="70 degrees")
        assert result.ok
        assert result.to_content() == "70 degrees"

    @pytest.mark.asyncio
    async def test_json_string_arguments(self, weather_tool):
        dispatcher = ToolDispatcher([weather_tool])
        result = await dispatcher.invoke("get_weather", '{"postal_code": "98101"}')
        assert result.output == "70 degrees"

    @pytest.mark.asyncio
    async def test_malformed_json_arguments(self, weather_tool):
        dispatcher = ToolDispatcher([weather_tool])
        result = await dispatcher.invoke("get_weather", '{"postal_code": ')
        assert isinstance(result.error, SchemaValidationError)
        assert "not valid JSON" in str(result.error)

    @pytest.mark.asyncio
    async def test_input_schema_violation_skips_executor(self):
        calls = []
        dispatcher = ToolDispatcher()
        dispatcher.declare("get_weather", WEATHER_INPUT, WEATHER_OUTPUT, lambda p: calls.append(p) or "x")

        result = await dispatcher.invoke("get_weather", {"postal_code": 98101})

        assert calls == []
        assert isinstance(result.error, SchemaValidationError)
        assert result.error.stage == "input"
        content = result.to_content()
        assert content["type"] == "SchemaValidationError"
        assert content["stage"] == "input"
        assert any("postal_code" in d for d in content["details"])

    @pytest.mark.asyncio
    async def test_missing_required_argument(self, weather_tool):
        result = await ToolDispatcher([weather_tool]).invoke("get_weather", {})
        assert isinstance(result.error, SchemaValidationError)

    @pytest.mark.asyncio
    async def test_output_schema_violation(self):
        dispatcher = ToolDispatcher()
        dispatcher.declare("get_weather", WEATHER_INPUT, WEATHER_OUTPUT, lambda p: {"temp": 70})

        result = await dispatcher.invoke("get_weather", {"postal_code": "98101"})

        assert isinstance(result.error, SchemaValidationError)
        assert result.error.stage == "output"

    @pytest.mark.asyncio
    async def test_executor_exception_captured(self):
        def explode(params):
            raise RuntimeError("weather service down")

        dispatcher = ToolDispatcher()
        dispatcher.declare("get_weather", WEATHER_INPUT, None, explode)

        result = await dispatcher.invoke("get_weather", {"postal_code": "98101"})

        assert isinstance(result.error, ToolExecutionError)
        assert "weather service down" in str(result.error)
        assert result.to_content()["type"] == "ToolExecutionError"

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        result = await ToolDispatcher().invoke("nope", {})
        assert isinstance(result.error, ToolExecutionError)
        assert "unknown tool" in str(result.error)

    @pytest.mark.asyncio
    async def test_client_side_tool_not_executed(self):
        dispatcher = ToolDispatcher()
        dispatcher.declare("read_clipboard", {"type": "object"}, {"type": "string"})
        result = await dispatcher.invoke("read_clipboard", {})
        assert isinstance(result.error, ToolExecutionError)
        assert "executed by the client" in str(result.error)

    @pytest.mark.asyncio
    async def test_async_executor(self):
        async def fetch(params):
            await asyncio.sleep(0)
            return {"value": params["key"]}

        dispatcher = ToolDispatcher()
        dispatcher.declare("fetch", {"type": "object"}, {"type": "object"}, fetch)
        result = await dispatcher.invoke("fetch", {"key": "k"})
        assert result.output == {"value": "k"}

    @pytest.mark.asyncio
    async def test_output_normalized_to_json(self):
        dispatcher = ToolDispatcher()
        dispatcher.declare("now", {"type": "object"}, None, lambda p: {"at": datetime(2024, 1, 1), "tags": {"a"}})
        result = await dispatcher.invoke("now", None)
        assert result.output == {"at": "2024-01-01T00:00:00", "tags": ["a"]}

    @pytest.mark.asyncio
    async def test_unserializable_output(self):
        dispatcher = ToolDispatcher()
        dispatcher.declare("bad", {"type": "object"}, None, lambda p: object())
        result = await dispatcher.invoke("bad", {})
        assert isinstance(result.error, ToolExecutionError)


class TestValidateSchema:

    def test_valid(self):
        assert validate_schema(WEATHER_INPUT, {"postal_code": "98101"}) == []

    def test_no_schema(self):
        assert validate_schema(None, 42) == []

    def test_error_paths(self):
        errors = validate_schema(WEATHER_INPUT, {"postal_code": 1})
        assert errors[0].startswith("postal_code:")
