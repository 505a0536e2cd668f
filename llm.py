"""
Model capability adapters.

The execution engine only needs one thing from a model: given a context,
stream back text deltas and tool-call requests, then finish. Each adapter
here turns a provider's streaming API into that shape:

- LiteLLMModel: any LiteLLM-supported provider (default)
- AnthropicModel: the Anthropic SDK directly
- ScriptedModel: plays back a fixed script (tests, offline demos)

Events:
    TextDelta(text)                       - a piece of assistant text
    ToolCallRequest(id, name, arguments)  - a complete tool call
    Finish(reason, usage)                 - end of this model step
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol, Union, runtime_checkable

from llm_config import LLMConfig, ModelConfig
from memory.models import Message, ToolResultPart, generate_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallRequest:
    id: str
    name: str
    # A dict when the model produced valid JSON, the raw string otherwise
    arguments: Any


@dataclass(frozen=True)
class Finish:
    reason: str = "stop"
    usage: dict = field(default_factory=dict)


ModelEvent = Union[TextDelta, ToolCallRequest, Finish]


@dataclass
class ModelRequest:
    """Everything one model step sees."""

    messages: list[Message]
    system: str = ""
    tools: list[dict] = field(default_factory=list)  # {"name", "description", "input_schema"}
    output_schema: dict | None = None
    max_tokens: int | None = None


@runtime_checkable
class ModelCapability(Protocol):
    def stream(self, request: ModelRequest) -> AsyncIterator[ModelEvent]:
        ...


# ═══════════════════════════════════════════════════════════
# RETRIES
# ═══════════════════════════════════════════════════════════


def _is_transient_error(exc: Exception) -> bool:
    """Check if an exception is a transient LLM API error worth retrying.

    Covers 503 Service Unavailable, 429 Rate Limit, and connection-level
    failures that are likely to resolve on their own.
    """
    exc_type = type(exc).__name__

    # litellm and anthropic wrap HTTP 503 / 529 / 429 in named errors
    if "ServiceUnavailable" in exc_type or "Overloaded" in exc_type:
        return True
    if "RateLimit" in exc_type:
        return True
    if "Timeout" in exc_type:
        return True
    if "APIConnectionError" in exc_type or "ConnectionError" in exc_type:
        return True

    # Fall back to inspecting the string representation for status codes
    exc_str = str(exc).lower()
    if "503" in exc_str or "service unavailable" in exc_str:
        return True
    if "429" in exc_str or "rate limit" in exc_str:
        return True
    if "connection refused" in exc_str or "connection reset" in exc_str:
        return True

    return False


async def _call_with_retries(call: Callable[[], Awaitable], max_retries: int = 3, base_delay: float = 2.0):
    """Run `call`, retrying transient errors with exponential backoff (2s, 4s, 8s)."""
    for attempt in range(max_retries + 1):
        try:
            return await call()
        except Exception as e:
            if attempt < max_retries and _is_transient_error(e):
                delay = base_delay * (2 ** attempt)
                logger.warning(
                    f"Transient LLM error (attempt {attempt + 1}/{max_retries + 1}), "
                    f"retrying in {delay}s: {e}"
                )
                await asyncio.sleep(delay)
            else:
                raise


def _parse_arguments(raw: str) -> Any:
    """Tool arguments from streamed JSON. Unparseable input is passed through as text."""
    if not raw or not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _tool_result_text(part: ToolResultPart) -> str:
    if isinstance(part.result, str):
        return part.result
    return json.dumps(part.result, default=str)


# ═══════════════════════════════════════════════════════════
# MESSAGE CONVERSION
# ═══════════════════════════════════════════════════════════


def to_openai_messages(messages: list[Message], system: str = "") -> list[dict]:
    """Convert stored messages to the OpenAI/LiteLLM chat format."""
    result = []
    if system:
        result.append({"role": "system", "content": system})

    for message in messages:
        if message.role == "tool":
            parts = message.tool_results
            if not parts:
                result.append({"role": "tool", "tool_call_id": message.tool_call_id, "content": message.text})
            for part in parts:
                result.append({
                    "role": "tool",
                    "tool_call_id": part.tool_call_id,
                    "content": _tool_result_text(part),
                })
        elif message.role == "assistant":
            msg_dict = {"role": "assistant", "content": message.text}
            calls = message.tool_calls
            if calls:
                msg_dict["tool_calls"] = [
                    {
                        "id": call.tool_call_id,
                        "type": "function",
                        "function": {
                            "name": call.tool_name,
                            "arguments": call.args if isinstance(call.args, str) else json.dumps(call.args),
                        },
                    }
                    for call in calls
                ]
            result.append(msg_dict)
        else:
            result.append({"role": "user", "content": message.text})

    return result


def to_openai_tools(tools: list[dict]) -> list[dict] | None:
    """Convert tool schemas to OpenAI/LiteLLM function format."""
    if not tools:
        return None
    return [
        {
            "type": "function",
            "function": {
                "name": t.get("name", ""),
                "description": t.get("description", ""),
                "parameters": t.get("input_schema", {}),
            },
        }
        for t in tools
    ]


def to_anthropic_messages(messages: list[Message]) -> list[dict]:
    """
    Convert stored messages to Anthropic content blocks.

    Tool results become user-role tool_result blocks, and consecutive
    messages of the same role are merged since Anthropic requires
    alternating roles.
    """
    result: list[dict] = []
    for message in messages:
        if message.role == "tool":
            role = "user"
            blocks = [
                {
                    "type": "tool_result",
                    "tool_use_id": part.tool_call_id,
                    "content": _tool_result_text(part),
                    "is_error": part.is_error,
                }
                for part in message.tool_results
            ]
        elif message.role == "assistant":
            role = "assistant"
            blocks = [{"type": "text", "text": message.text}] if message.text else []
            for call in message.tool_calls:
                blocks.append({
                    "type": "tool_use",
                    "id": call.tool_call_id,
                    "name": call.tool_name,
                    "input": call.args if isinstance(call.args, dict) else {},
                })
        else:
            role = "user"
            blocks = [{"type": "text", "text": message.text}] if message.text else []

        if not blocks:
            continue
        if result and result[-1]["role"] == role:
            result[-1]["content"].extend(blocks)
        else:
            result.append({"role": role, "content": blocks})

    return result


# ═══════════════════════════════════════════════════════════
# ADAPTERS
# ═══════════════════════════════════════════════════════════


class LiteLLMModel:
    """Streams from any LiteLLM-supported model."""

    def __init__(self, model: ModelConfig | str, max_retries: int = 3):
        self.model = ModelConfig(model_id=model) if isinstance(model, str) else model
        self.max_retries = max_retries
        self._litellm = None

    @property
    def litellm(self):
        if self._litellm is None:
            try:
                import litellm
            except ImportError:
                raise ImportError("litellm package required. Install with: pip install litellm")
            self._litellm = litellm
        return self._litellm

    async def stream(self, request: ModelRequest) -> AsyncIterator[ModelEvent]:
        call_kwargs = {
            "model": self.model.get_litellm_model(),
            "messages": to_openai_messages(request.messages, request.system),
            "max_tokens": request.max_tokens or self.model.max_tokens,
            "temperature": self.model.temperature,
            "stream": True,
        }
        tools = to_openai_tools(request.tools)
        if tools:
            call_kwargs["tools"] = tools
        if request.output_schema:
            call_kwargs["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "output", "schema": request.output_schema},
            }

        response = await _call_with_retries(
            lambda: self.litellm.acompletion(**call_kwargs), self.max_retries
        )

        # Tool calls arrive as fragments keyed by index
        pending: dict[int, dict] = {}
        finish_reason = "stop"
        usage = {}

        async for chunk in response:
            chunk_usage = getattr(chunk, "usage", None)
            if chunk_usage:
                usage = {
                    "input_tokens": getattr(chunk_usage, "prompt_tokens", 0) or 0,
                    "output_tokens": getattr(chunk_usage, "completion_tokens", 0) or 0,
                }
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta

            content = getattr(delta, "content", None)
            if content:
                yield TextDelta(content)

            for fragment in getattr(delta, "tool_calls", None) or []:
                index = getattr(fragment, "index", 0) or 0
                entry = pending.setdefault(index, {"id": None, "name": "", "arguments": ""})
                if getattr(fragment, "id", None):
                    entry["id"] = fragment.id
                function = getattr(fragment, "function", None)
                if function is not None:
                    if getattr(function, "name", None):
                        entry["name"] = function.name
                    if getattr(function, "arguments", None):
                        entry["arguments"] += function.arguments

            if choice.finish_reason:
                finish_reason = choice.finish_reason

        for index in sorted(pending):
            entry = pending[index]
            yield ToolCallRequest(
                id=entry["id"] or generate_id("call"),
                name=entry["name"],
                arguments=_parse_arguments(entry["arguments"]),
            )

        yield Finish(reason=finish_reason, usage=usage)


class AnthropicModel:
    """Streams from Claude through the Anthropic SDK."""

    def __init__(self, model: ModelConfig | str, client=None, max_retries: int = 3):
        self.model = ModelConfig(model_id=model) if isinstance(model, str) else model
        self.max_retries = max_retries
        self._client = client

    @property
    def client(self):
        if self._client is None:
            import anthropic
            self._client = anthropic.AsyncAnthropic()
        return self._client

    async def stream(self, request: ModelRequest) -> AsyncIterator[ModelEvent]:
        system = request.system
        if request.output_schema:
            system = (system + "\n\n" if system else "") + (
                "Respond only with a JSON object that matches this JSON Schema, with no other text:\n"
                + json.dumps(request.output_schema)
            )

        call_kwargs = {
            "model": self.model.model_id.removeprefix("anthropic/"),
            "max_tokens": request.max_tokens or self.model.max_tokens,
            "temperature": self.model.temperature,
            "messages": to_anthropic_messages(request.messages),
            "stream": True,
        }
        if system:
            call_kwargs["system"] = system
        if request.tools:
            call_kwargs["tools"] = [
                {"name": t["name"], "description": t.get("description", ""), "input_schema": t["input_schema"]}
                for t in request.tools
            ]

        response = await _call_with_retries(
            lambda: self.client.messages.create(**call_kwargs), self.max_retries
        )

        tool_blocks: dict[int, dict] = {}
        stop_reason = "end_turn"
        usage = {}

        async for event in response:
            if event.type == "content_block_start":
                block = event.content_block
                if block.type == "tool_use":
                    tool_blocks[event.index] = {"id": block.id, "name": block.name, "json": ""}
            elif event.type == "content_block_delta":
                delta = event.delta
                if delta.type == "text_delta":
                    yield TextDelta(delta.text)
                elif delta.type == "input_json_delta" and event.index in tool_blocks:
                    tool_blocks[event.index]["json"] += delta.partial_json
            elif event.type == "content_block_stop":
                block = tool_blocks.pop(event.index, None)
                if block is not None:
                    yield ToolCallRequest(
                        id=block["id"], name=block["name"], arguments=_parse_arguments(block["json"])
                    )
            elif event.type == "message_delta":
                if event.delta.stop_reason:
                    stop_reason = event.delta.stop_reason
                if getattr(event, "usage", None):
                    usage["output_tokens"] = event.usage.output_tokens

        yield Finish(reason=stop_reason, usage=usage)


Step = Union[list, Callable[[ModelRequest], list]]


class ScriptedModel:
    """
    Plays back a fixed sequence of model steps, one per stream() call.

    A step is a list of events, or a function of the ModelRequest that
    returns one (to react to tool results). An exception in the list is
    raised at that point of the stream.
    """

    def __init__(self, steps: list[Step], delay: float = 0.0):
        self.steps = list(steps)
        self.delay = delay
        self.requests: list[ModelRequest] = []

    async def stream(self, request: ModelRequest) -> AsyncIterator[ModelEvent]:
        self.requests.append(request)
        if not self.steps:
            raise RuntimeError("ScriptedModel has no steps left")
        step = self.steps.pop(0)
        events = step(request) if callable(step) else step

        for event in events:
            await asyncio.sleep(self.delay)
            if isinstance(event, BaseException):
                raise event
            yield event


def text_step(*chunks: str) -> list[ModelEvent]:
    """A step that streams `chunks` and stops."""
    return [TextDelta(c) for c in chunks] + [Finish("stop")]


def tool_step(name: str, arguments: Any, call_id: str | None = None, text: str = "") -> list[ModelEvent]:
    """A step that optionally says something, then requests one tool."""
    events: list[ModelEvent] = [TextDelta(text)] if text else []
    events.append(ToolCallRequest(id=call_id or generate_id("call"), name=name, arguments=arguments))
    events.append(Finish("tool_calls"))
    return events


def create_model(llm_config: LLMConfig, use: str = "agent") -> ModelCapability:
    """Model adapter for `use` ("agent" or "title") per the configured backend."""
    model = llm_config.title_model if use == "title" else llm_config.agent_model
    if llm_config.backend == "anthropic":
        return AnthropicModel(model)
    return LiteLLMModel(model)
