"""
Streaming execution engine.

An Agent runs conversational turns against a Memory, a model capability and
a ToolDispatcher. Each turn is a small state machine:

    ASSEMBLING → GENERATING → (TOOL_REQUESTED → TOOL_EXECUTING → GENERATING)*
               → FINALIZING → DONE
    (any non-terminal state) → ERRORED

Text is streamed to the caller as it arrives. Every tool request/result pair
is persisted as soon as the tool has run; the final assistant message and any
working-memory update are persisted together when the turn finalizes. A turn
that fails leaves no partial assistant message behind.

Tools declared without an executor run on the client. When the model calls
one, the turn finalizes with the request stored and listed in
`TurnResult.pending_tool_calls`; the client runs the tool and sends the
result as the next turn's input:

    await agent.generate(
        {"role": "tool", "tool_call_id": call.tool_call_id, "result": "copied text"},
        thread_id="t1",
    )

Usage:
    agent = Agent(memory, LiteLLMModel("gpt-4o"), tools=[get_weather])

    stream = agent.stream("What's the weather in 98101?", thread_id="t1", resource_id="u1")
    async for chunk in stream:
        if chunk.type == "text":
            print(chunk.text, end="")
    result = await stream.result()
"""

import asyncio
import json
import logging
import re
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from llm import Finish, ModelCapability, ModelRequest, TextDelta, ToolCallRequest
from llm_config import LLMConfig
from memory import (
    Memory,
    MemoryConfig,
    Message,
    NewMessage,
    StorageError,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from memory.models import part_from_dict
from memory.tools import (
    WorkingMemoryDraft,
    WorkingMemoryTagFilter,
    create_working_memory_tool,
    working_memory_instructions,
)
from tools import ToolDispatcher, validate_schema
from utils.events import EventEmitter

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTIONS = "You are a helpful assistant."
TITLE_INSTRUCTIONS = (
    "Write a short title (at most six words) for a conversation that starts with "
    "the user's message. Reply with the title only, no quotes or punctuation at the end."
)
MAX_TITLE_LENGTH = 80


class GenerationAbortedError(Exception):
    """The turn could not produce a complete response (model failure, cancellation, bad output)."""
    pass


class TurnState(str, Enum):
    ASSEMBLING = "assembling"
    GENERATING = "generating"
    TOOL_REQUESTED = "tool_requested"
    TOOL_EXECUTING = "tool_executing"
    FINALIZING = "finalizing"
    DONE = "done"
    ERRORED = "errored"


_TRANSITIONS = {
    TurnState.ASSEMBLING: {TurnState.GENERATING},
    TurnState.GENERATING: {TurnState.TOOL_REQUESTED, TurnState.FINALIZING},
    TurnState.TOOL_REQUESTED: {TurnState.TOOL_EXECUTING, TurnState.FINALIZING},
    TurnState.TOOL_EXECUTING: {TurnState.GENERATING},
    TurnState.FINALIZING: {TurnState.DONE},
    TurnState.DONE: set(),
    TurnState.ERRORED: set(),
}


# =============================================================================
# Turn data
# =============================================================================


@dataclass(frozen=True)
class StreamChunk:
    """
    One unit of streamed output.

    Types:
        - text: a piece of assistant text
        - tool-call: the model requested a tool (tool_call is set)
        - tool-result: the tool finished (tool_result is set, is_error on failure)
        - done: the turn was persisted (result is set)
        - error: the turn failed (error is set)
    """

    type: str
    text: str = ""
    tool_call: ToolCallPart | None = None
    tool_result: ToolResultPart | None = None
    error: Exception | None = None
    result: "TurnResult | None" = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"type": self.type}
        if self.type == "text":
            d["text"] = self.text
        if self.tool_call is not None:
            d.update(self.tool_call.to_dict())
            d["type"] = self.type
        if self.tool_result is not None:
            d.update(self.tool_result.to_dict())
            d["type"] = self.type
        if self.error is not None:
            d["error"] = str(self.error)
            d["error_type"] = type(self.error).__name__
        if self.result is not None:
            d["thread_id"] = self.result.thread_id
            d["message_ids"] = [m.id for m in self.result.messages]
            if self.result.pending_tool_calls:
                d["pending_tool_calls"] = [c.to_dict() for c in self.result.pending_tool_calls]
        return d


@dataclass
class TurnOptions:
    """Per-turn settings. Unset fields fall back to the Agent's defaults."""

    memory: dict | None = None  # MemoryConfig field overrides
    output_schema: dict | None = None
    instructions: str | None = None
    max_steps: int | None = None
    abort_on_cancel: bool | None = None


@dataclass
class TurnResult:
    thread_id: str
    resource_id: str | None = None
    state: TurnState = TurnState.ASSEMBLING
    states: list[TurnState] = field(default_factory=lambda: [TurnState.ASSEMBLING])
    text: str = ""
    object: Any = None
    messages: list[Message] = field(default_factory=list)
    tool_results: list[ToolResultPart] = field(default_factory=list)
    pending_tool_calls: list[ToolCallPart] = field(default_factory=list)  # client-side, unanswered
    finish_reason: str = ""
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.state == TurnState.DONE


class TurnStream:
    """
    Handle on a running turn.

    Iterate it once to receive StreamChunks. The turn keeps running even if
    nobody reads; `cancel()` (or leaving an `async with` block early) stops
    delivery, and also stops generation when the turn was started with
    abort_on_cancel.
    """

    def __init__(self, thread_id: str, resource_id: str | None = None):
        self._result = TurnResult(thread_id=thread_id, resource_id=resource_id)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._iterated = False
        self._exhausted = False
        self._cancelled = False

    def __aiter__(self):
        if self._iterated:
            raise RuntimeError("A turn stream can only be consumed once")
        self._iterated = True
        return self

    async def __anext__(self) -> StreamChunk:
        if self._exhausted:
            raise StopAsyncIteration
        chunk = await self._queue.get()
        if chunk is None:
            self._exhausted = True
            raise StopAsyncIteration
        return chunk

    async def text_stream(self):
        """Only the text deltas of the turn."""
        async for chunk in self:
            if chunk.type == "text":
                yield chunk.text

    async def __aenter__(self) -> "TurnStream":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if not self.done:
            self.cancel()

    def cancel(self):
        """Stop delivering chunks to this consumer."""
        if not self._cancelled:
            logger.debug("Turn on thread %s cancelled by consumer", self._result.thread_id)
        self._cancelled = True

    async def aclose(self):
        self.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def state(self) -> TurnState:
        return self._result.state

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def result(self) -> TurnResult:
        """Wait for the turn to end and return its result (check `.error`)."""
        if self._task is not None:
            await self._task
        return self._result


# =============================================================================
# Turn input
# =============================================================================


def _tool_result_inputs(parts) -> list[NewMessage]:
    """One tool message per result part."""
    if isinstance(parts, str) or not parts or not all(isinstance(p, ToolResultPart) for p in parts):
        raise ValueError("Tool input messages must contain only tool-result parts")
    return [NewMessage("tool", (p,), tool_call_id=p.tool_call_id) for p in parts]


def _dict_input(item: dict) -> list[NewMessage]:
    role = item.get("role", "user")
    content = item.get("content", "")

    if role == "user":
        if not isinstance(content, str):
            content = tuple(part_from_dict(p) for p in content)
        return [NewMessage("user", content)]

    if role == "tool":
        if "result" in item or isinstance(content, str):
            if not item.get("tool_call_id"):
                raise ValueError("A tool result input needs a tool_call_id")
            part = ToolResultPart(
                tool_call_id=item["tool_call_id"],
                tool_name=item.get("tool_name", ""),
                result=item.get("result", content),
                is_error=bool(item.get("is_error", False)),
            )
            return [NewMessage("tool", (part,), tool_call_id=part.tool_call_id)]
        return _tool_result_inputs(tuple(part_from_dict(p) for p in content))

    raise ValueError(f"Turn input must be user messages or tool results, got role '{role}'")


# =============================================================================
# Agent
# =============================================================================


class Agent(EventEmitter):
    """
    Runs turns. Construct once per process and share.

    Events:
        - turn_start: {thread_id, resource_id}
        - tool_start: {name, input, tool_call_id, thread_id}
        - tool_end: {name, result, is_error, tool_call_id, thread_id}
        - turn_end: {thread_id, state, error}
    """

    def __init__(
        self,
        memory: Memory,
        model: ModelCapability,
        tools: ToolDispatcher | list | None = None,
        instructions: str = DEFAULT_INSTRUCTIONS,
        name: str = "assistant",
        max_steps: int = 5,
        abort_on_cancel: bool = False,
        title_model: ModelCapability | None = None,
    ):
        self.__init_events__()
        self.memory = memory
        self.model = model
        self.tools = tools if isinstance(tools, ToolDispatcher) else ToolDispatcher(tools or [])
        self.instructions = instructions
        self.name = name
        self.max_steps = max_steps
        self.abort_on_cancel = abort_on_cancel
        self.title_model = title_model or model

    @classmethod
    def from_config(cls, config: dict, memory: Memory | None = None, tools=None) -> "Agent":
        """Build an Agent (and its Memory, unless given) from a config dict."""
        from llm import create_model

        llm_config = LLMConfig.from_config(config)
        agent_config = config.get("agent", {}) or {}
        return cls(
            memory=memory or Memory.from_config(config),
            model=create_model(llm_config, "agent"),
            tools=tools,
            instructions=agent_config.get("instructions") or DEFAULT_INSTRUCTIONS,
            name=agent_config.get("name", "assistant"),
            max_steps=agent_config.get("max_steps", 5),
            abort_on_cancel=agent_config.get("abort_on_cancel", False),
            title_model=create_model(llm_config, "title"),
        )

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def stream(
        self,
        input,
        thread_id: str,
        resource_id: str | None = None,
        options: TurnOptions | dict | None = None,
    ) -> TurnStream:
        """
        Start a turn and return its stream. Must be called from a running event loop.

        Args:
            input: A string, or a list of user messages (strings, NewMessage
                objects or {"role": "user", "content": ...} dicts) and results
                of client-side tools ({"role": "tool", "tool_call_id": ...,
                "result": ...} dicts or tool NewMessages). All are persisted.
            thread_id: Conversation to continue (created on first use)
            resource_id: Owner of the thread, used for resource-scoped recall
            options: TurnOptions or a dict of its fields

        Raises:
            ValueError: If the input is empty, has messages of another role, or
                has a tool result that answers no pending call in the thread.
        """
        drafts = self._normalize_input(input)
        drafts, requests = self._resolve_tool_results(thread_id, drafts)
        if isinstance(options, dict):
            options = TurnOptions(**options)
        options = options or TurnOptions()
        config = self.memory.config.merged(options.memory)

        stream = TurnStream(thread_id, resource_id)
        stream._task = asyncio.get_running_loop().create_task(
            self._run_turn(stream, drafts, requests, config, options)
        )
        return stream

    start = stream

    async def generate(
        self,
        input,
        thread_id: str,
        resource_id: str | None = None,
        options: TurnOptions | dict | None = None,
    ) -> TurnResult:
        """
        Run a turn to completion.

        Raises:
            GenerationAbortedError: The model failed, was cancelled, or gave invalid structured output.
            StorageError: The exchange could not be persisted.
        """
        stream = self.stream(input, thread_id, resource_id, options)
        async for _ in stream:
            pass
        result = await stream.result()
        if result.error is not None:
            raise result.error
        return result

    # -------------------------------------------------------------------------
    # Turn execution
    # -------------------------------------------------------------------------

    @staticmethod
    def _normalize_input(input) -> list[NewMessage]:
        if isinstance(input, (str, NewMessage, dict)):
            items = [input]
        else:
            items = list(input)

        drafts = []
        for item in items:
            if isinstance(item, str):
                drafts.append(NewMessage("user", item))
            elif isinstance(item, NewMessage):
                if item.role == "tool":
                    drafts.extend(_tool_result_inputs(item.content))
                elif item.role == "user":
                    drafts.append(item)
                else:
                    raise ValueError(f"Turn input must be user messages or tool results, got role '{item.role}'")
            elif isinstance(item, dict):
                drafts.extend(_dict_input(item))
            else:
                raise TypeError(f"Unsupported input message type: {type(item).__name__}")

        if not drafts:
            raise ValueError("A turn needs at least one input message")
        return drafts

    def _resolve_tool_results(
        self, thread_id: str, drafts: list[NewMessage]
    ) -> tuple[list[NewMessage], dict[str, Message]]:
        """Match tool-result inputs to the pending calls they answer.

        Returns the drafts (tool names filled in from the request) and the
        stored request messages keyed by tool_call_id.
        """
        if not any(d.role == "tool" for d in drafts):
            return drafts, {}

        open_calls = self.memory.open_tool_calls(thread_id)
        resolved, requests = [], {}
        for draft in drafts:
            if draft.role != "tool":
                resolved.append(draft)
                continue
            part = draft.content[0]
            request = open_calls.get(part.tool_call_id)
            if request is None or part.tool_call_id in requests:
                raise ValueError(
                    f"Tool result '{part.tool_call_id}' does not answer a pending tool call in thread {thread_id}"
                )
            requests[part.tool_call_id] = request
            if not part.tool_name:
                call = next(c for c in request.tool_calls if c.tool_call_id == part.tool_call_id)
                part = ToolResultPart(part.tool_call_id, call.tool_name, part.result, part.is_error)
                draft = NewMessage("tool", (part,), tool_call_id=part.tool_call_id)
            resolved.append(draft)
        return resolved, requests

    @staticmethod
    def _turn_context(
        history: list[Message], inputs: list[Message], requests: dict[str, Message]
    ) -> list[Message]:
        """History then new input, with each client tool result right after its request."""
        if not requests:
            return history + inputs

        by_id = {m.id: m for m in history}
        for request in requests.values():
            by_id.setdefault(request.id, request)
        results = {m.tool_call_id: m for m in inputs if m.role == "tool"}

        context = []
        for message in sorted(by_id.values(), key=lambda m: (m.created_at, m.seq)):
            context.append(message)
            for call in message.tool_calls:
                if call.tool_call_id in results:
                    context.append(results.pop(call.tool_call_id))
        context.extend(m for m in inputs if m.role != "tool")
        return context

    def _transition(self, stream: TurnStream, state: TurnState):
        result = stream._result
        if result.state == state:
            return
        if state not in _TRANSITIONS[result.state]:
            raise RuntimeError(f"Illegal turn transition {result.state.value} -> {state.value}")
        logger.debug("Turn %s: %s -> %s", result.thread_id, result.state.value, state.value)
        result.state = state
        result.states.append(state)

    def _deliver(self, stream: TurnStream, chunk: StreamChunk):
        if not stream.cancelled:
            stream._queue.put_nowait(chunk)

    def _fail(self, stream: TurnStream, error: Exception):
        result = stream._result
        result.error = error
        if result.state not in (TurnState.DONE, TurnState.ERRORED):
            result.state = TurnState.ERRORED
            result.states.append(TurnState.ERRORED)
        logger.warning("Turn on thread %s failed: %s", result.thread_id, error)
        self._deliver(stream, StreamChunk("error", error=error))

    def _system_prompt(self, options: TurnOptions, config: MemoryConfig, draft: WorkingMemoryDraft) -> str:
        parts = [options.instructions or self.instructions]
        if config.working_memory:
            parts.append(working_memory_instructions(draft.data, config.working_memory_mode))
        return "\n\n".join(p for p in parts if p)

    async def _run_turn(
        self,
        stream: TurnStream,
        drafts: list[NewMessage],
        requests: dict[str, Message],
        config: MemoryConfig,
        options: TurnOptions,
    ):
        result = stream._result
        thread_id, resource_id = result.thread_id, result.resource_id
        abort_on_cancel = self.abort_on_cancel if options.abort_on_cancel is None else options.abort_on_cancel
        max_steps = options.max_steps or self.max_steps

        # Input messages are written with the first checkpoint, not before
        pending_inputs = list(drafts)
        provisional = [d.provisional(thread_id, resource_id) for d in drafts]

        self.emit("turn_start", {"thread_id": thread_id, "resource_id": resource_id})
        try:
            query_text = "\n".join(m.text for m in provisional)
            window = await self.memory.assemble(thread_id, resource_id, query_text, config)
            context = self._turn_context(list(window.messages), provisional, requests)

            wm_draft = WorkingMemoryDraft(window.working_memory)
            tools = self.tools
            tag_filter = None
            if config.working_memory:
                if config.working_memory_mode == "tool-call":
                    tools = tools.extended([create_working_memory_tool(wm_draft)])
                else:
                    tag_filter = WorkingMemoryTagFilter()
            system = self._system_prompt(options, config, wm_draft)

            step_text: list[str] = []
            for _ in range(max_steps):
                self._transition(stream, TurnState.GENERATING)
                request = ModelRequest(
                    messages=list(context),
                    system=system,
                    tools=tools.schemas(),
                    output_schema=options.output_schema,
                )

                called_tool = False
                async with aclosing(self._model_events(stream, request, abort_on_cancel)) as events:
                    async for event in events:
                        if isinstance(event, TextDelta):
                            text = tag_filter.feed(event.text) if tag_filter else event.text
                            if text:
                                step_text.append(text)
                                result.text += text
                                self._deliver(stream, StreamChunk("text", text=text))
                        elif isinstance(event, ToolCallRequest):
                            called_tool = True
                            target = tools.get(event.name)
                            if target is not None and target.client_side:
                                self._request_client_tool(stream, event)
                                continue
                            context.extend(
                                await self._run_tool(
                                    stream, tools, event, step_text, pending_inputs, wm_draft
                                )
                            )
                            self._transition(stream, TurnState.GENERATING)
                            if abort_on_cancel and stream.cancelled:
                                raise GenerationAbortedError("Generation cancelled by the consumer")
                        elif isinstance(event, Finish):
                            result.finish_reason = event.reason

                if not called_tool or result.pending_tool_calls:
                    break
            else:
                logger.warning("Turn on thread %s stopped after %d steps", thread_id, max_steps)

            if tag_filter is not None:
                tail = tag_filter.flush()
                if tail:
                    step_text.append(tail)
                    result.text += tail
                    self._deliver(stream, StreamChunk("text", text=tail))

            self._transition(stream, TurnState.FINALIZING)
            final_text = "".join(step_text)
            if options.output_schema is not None and not result.pending_tool_calls:
                result.object = self._parse_structured(final_text, options.output_schema)
                final_text = json.dumps(result.object)

            new_messages = list(pending_inputs)
            if result.pending_tool_calls:
                parts = (TextPart(final_text),) if final_text else ()
                new_messages.append(NewMessage("assistant", parts + tuple(result.pending_tool_calls)))
            elif final_text:
                new_messages.append(NewMessage("assistant", final_text))
            wm_updates = dict(wm_draft.updates)
            if tag_filter is not None:
                wm_updates.update(tag_filter.updates())

            if new_messages or wm_updates:
                saved = self.memory.save_messages(
                    thread_id, resource_id, new_messages, working_memory_update=wm_updates or None
                )
                result.messages.extend(saved)
            pending_inputs.clear()

            await self._maybe_generate_title(thread_id, query_text, config)

            self._transition(stream, TurnState.DONE)
            self._deliver(stream, StreamChunk("done", result=result))
        except (GenerationAbortedError, StorageError) as e:
            self._fail(stream, e)
        except asyncio.CancelledError:
            self._fail(stream, GenerationAbortedError("Turn task was cancelled"))
            raise
        except Exception as e:
            logger.exception("Unexpected error in turn on thread %s", thread_id)
            error = GenerationAbortedError(f"Turn failed: {type(e).__name__}: {e}")
            error.__cause__ = e
            self._fail(stream, error)
        finally:
            stream._queue.put_nowait(None)
            self.emit("turn_end", {
                "thread_id": thread_id,
                "state": result.state.value,
                "error": str(result.error) if result.error else None,
            })

    async def _model_events(self, stream: TurnStream, request: ModelRequest, abort_on_cancel: bool):
        """Model events, with failures turned into GenerationAbortedError."""
        if abort_on_cancel and stream.cancelled:
            raise GenerationAbortedError("Generation cancelled by the consumer")
        events = self.model.stream(request)
        try:
            async for event in events:
                if abort_on_cancel and stream.cancelled:
                    raise GenerationAbortedError("Generation cancelled by the consumer")
                yield event
        except (GenerationAbortedError, asyncio.CancelledError):
            raise
        except Exception as e:
            raise GenerationAbortedError(f"Model stream failed: {type(e).__name__}: {e}") from e
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _run_tool(
        self,
        stream: TurnStream,
        tools: ToolDispatcher,
        event: ToolCallRequest,
        step_text: list[str],
        pending_inputs: list[NewMessage],
        wm_draft: WorkingMemoryDraft,
    ) -> list[Message]:
        """Execute one tool request and persist the request/result pair.

        Working memory staged by the tool is written in the same transaction,
        so a stored result never reports an update the thread does not have.
        """
        result = stream._result

        self._transition(stream, TurnState.TOOL_REQUESTED)
        call = ToolCallPart(tool_call_id=event.id, tool_name=event.name, args=event.arguments)
        self._deliver(stream, StreamChunk("tool-call", tool_call=call))

        self._transition(stream, TurnState.TOOL_EXECUTING)
        self.emit("tool_start", {
            "name": event.name,
            "input": event.arguments,
            "tool_call_id": event.id,
            "thread_id": result.thread_id,
        })
        outcome = await tools.invoke(event.name, event.arguments, tool_call_id=event.id)
        result_part = ToolResultPart(
            tool_call_id=event.id,
            tool_name=event.name,
            result=outcome.to_content(),
            is_error=not outcome.ok,
        )
        self.emit("tool_end", {
            "name": event.name,
            "result": result_part.result,
            "is_error": result_part.is_error,
            "tool_call_id": event.id,
            "thread_id": result.thread_id,
        })
        self._deliver(stream, StreamChunk("tool-result", tool_result=result_part))

        request_parts = []
        if step_text:
            request_parts.append(TextPart("".join(step_text)))
        request_parts.append(call)
        batch = list(pending_inputs) + [
            NewMessage("assistant", tuple(request_parts)),
            NewMessage("tool", (result_part,), tool_call_id=event.id),
        ]
        saved = self.memory.save_messages(
            result.thread_id, result.resource_id, batch,
            working_memory_update=dict(wm_draft.updates) or None,
        )
        wm_draft.commit()

        pending_inputs.clear()
        step_text.clear()
        result.messages.extend(saved)
        result.tool_results.append(result_part)
        return saved[-2:]

    def _request_client_tool(self, stream: TurnStream, event: ToolCallRequest):
        """Stream a client-side tool call. The request is stored when the turn finalizes."""
        result = stream._result
        self._transition(stream, TurnState.TOOL_REQUESTED)
        call = ToolCallPart(tool_call_id=event.id, tool_name=event.name, args=event.arguments)
        result.pending_tool_calls.append(call)
        self._deliver(stream, StreamChunk("tool-call", tool_call=call))
        logger.debug("Tool %s left for the client on thread %s", event.name, result.thread_id)

    @staticmethod
    def _parse_structured(text: str, schema: dict) -> Any:
        candidate = text.strip()
        fenced = re.match(r"^```(?:json)?\s*(.*?)\s*```$", candidate, re.DOTALL)
        if fenced:
            candidate = fenced.group(1)
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError as e:
            raise GenerationAbortedError(f"Structured output is not valid JSON: {e}") from e
        errors = validate_schema(schema, value)
        if errors:
            raise GenerationAbortedError("Structured output does not match schema: " + "; ".join(errors))
        return value

    # -------------------------------------------------------------------------
    # Thread titles
    # -------------------------------------------------------------------------

    async def _maybe_generate_title(self, thread_id: str, first_input: str, config: MemoryConfig):
        if not config.generate_thread_title:
            return
        thread = self.memory.get_thread(thread_id)
        if thread is None or thread.title:
            return

        try:
            title = await self._generate_title(thread_id, first_input)
        except Exception as e:
            logger.warning("Title generation failed for thread %s: %s", thread_id, e)
            return
        if not title:
            return

        try:
            self.memory.update_thread_title(thread_id, title)
        except StorageError as e:
            logger.warning("Could not save title for thread %s: %s", thread_id, e)

    async def _generate_title(self, thread_id: str, first_input: str) -> str:
        request = ModelRequest(
            messages=[NewMessage("user", first_input).provisional(thread_id)],
            system=TITLE_INSTRUCTIONS,
            max_tokens=32,
        )
        chunks = []
        async with aclosing(self.title_model.stream(request)) as events:
            async for event in events:
                if isinstance(event, TextDelta):
                    chunks.append(event.text)
        title = " ".join("".join(chunks).split()).strip().strip('"').strip()
        return title[:MAX_TITLE_LENGTH]
