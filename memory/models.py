"""
Core data models for conversation memory.

Design principles:
- Messages are immutable once appended
- Each thread has a strict total order (seq)
- Message content is either plain text or a list of typed parts
- Working memory is the only mutable per-thread state
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

ROLES = ("user", "assistant", "tool")


def _now() -> str:
    """ISO timestamp for now (UTC)."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def generate_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


# ═══════════════════════════════════════════════════════════
# CONTENT PARTS
# ═══════════════════════════════════════════════════════════


@dataclass(frozen=True)
class TextPart:
    text: str
    type: str = field(default="text", init=False)

    def to_dict(self) -> dict:
        return {"type": self.type, "text": self.text}


@dataclass(frozen=True)
class ToolCallPart:
    """A model request to run a tool."""

    tool_call_id: str
    tool_name: str
    args: Any
    type: str = field(default="tool-call", init=False)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "args": self.args,
        }


@dataclass(frozen=True)
class ToolResultPart:
    """The outcome of a tool call. `is_error` marks validation or execution failures."""

    tool_call_id: str
    tool_name: str
    result: Any
    is_error: bool = False
    type: str = field(default="tool-result", init=False)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "result": self.result,
            "is_error": self.is_error,
        }


@dataclass(frozen=True)
class UnknownPart:
    """A stored part of a type this version does not understand. Kept verbatim."""

    type: str
    data: dict

    def to_dict(self) -> dict:
        return dict(self.data)


Part = Union[TextPart, ToolCallPart, ToolResultPart, UnknownPart]


def part_from_dict(d: dict) -> Part:
    part_type = d.get("type")
    if part_type == "text":
        return TextPart(text=d.get("text", ""))
    if part_type == "tool-call":
        return ToolCallPart(
            tool_call_id=d["tool_call_id"], tool_name=d["tool_name"], args=d.get("args")
        )
    if part_type == "tool-result":
        return ToolResultPart(
            tool_call_id=d["tool_call_id"],
            tool_name=d["tool_name"],
            result=d.get("result"),
            is_error=bool(d.get("is_error", False)),
        )
    return UnknownPart(type=str(part_type), data=dict(d))


def encode_content(content: "str | tuple[Part, ...]") -> str:
    """Serialize message content for storage."""
    if isinstance(content, str):
        return json.dumps(content)
    return json.dumps([p.to_dict() for p in content], default=str)


def decode_content(raw: str) -> "str | tuple[Part, ...]":
    value = json.loads(raw)
    if isinstance(value, str):
        return value
    return tuple(part_from_dict(p) for p in value)


# ═══════════════════════════════════════════════════════════
# MESSAGES AND THREADS
# ═══════════════════════════════════════════════════════════


@dataclass(frozen=True)
class NewMessage:
    """A message that has not been appended yet. The store assigns id, seq and timestamp."""

    role: str
    content: "str | tuple[Part, ...]"
    tool_call_id: str | None = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown role '{self.role}', expected one of {ROLES}")
        if isinstance(self.content, list):
            object.__setattr__(self, "content", tuple(self.content))

    def provisional(self, thread_id: str, resource_id: str | None = None) -> "Message":
        """A Message view used in a turn's context before the draft is persisted."""
        return Message(
            id=generate_id("draft"),
            thread_id=thread_id,
            role=self.role,
            content=self.content,
            created_at=_now(),
            resource_id=resource_id,
            tool_call_id=self.tool_call_id,
        )


@dataclass(frozen=True)
class Message:
    """
    Immutable record of one conversation message.

    `seq` is the thread-local position assigned at append time. Ordering
    within a thread is by seq; `created_at` is strictly increasing as well.
    """

    id: str
    thread_id: str
    role: str
    content: "str | tuple[Part, ...]"
    created_at: str = field(default_factory=_now)
    seq: int = 0
    resource_id: str | None = None
    tool_call_id: str | None = None

    @property
    def parts(self) -> tuple:
        if isinstance(self.content, str):
            return (TextPart(self.content),) if self.content else ()
        return self.content

    @property
    def text(self) -> str:
        """Concatenated text of all text parts."""
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        return [p for p in self.parts if isinstance(p, ToolCallPart)]

    @property
    def tool_results(self) -> list[ToolResultPart]:
        return [p for p in self.parts if isinstance(p, ToolResultPart)]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "resource_id": self.resource_id,
            "role": self.role,
            "content": self.content if isinstance(self.content, str) else [p.to_dict() for p in self.content],
            "created_at": self.created_at,
            "seq": self.seq,
            "tool_call_id": self.tool_call_id,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Message":
        content = d.get("content", "")
        if not isinstance(content, str):
            content = tuple(part_from_dict(p) for p in content)
        return cls(
            id=d["id"],
            thread_id=d["thread_id"],
            role=d["role"],
            content=content,
            created_at=d.get("created_at") or _now(),
            seq=d.get("seq", 0),
            resource_id=d.get("resource_id"),
            tool_call_id=d.get("tool_call_id"),
        )


@dataclass
class Thread:
    """A conversation. Created on first append, removed only by explicit deletion."""

    id: str
    resource_id: str | None = None
    title: str | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "resource_id": self.resource_id,
            "title": self.title,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "metadata": self.metadata,
        }


@dataclass
class WorkingMemory:
    """Structured per-thread scratch state the model can read and update."""

    thread_id: str
    data: dict = field(default_factory=dict)
    updated_at: str = field(default_factory=_now)

    def to_prompt(self) -> str:
        return json.dumps(self.data, indent=2, sort_keys=True, default=str)


def merge_working_memory(data: dict, updates: dict) -> dict:
    """Merge updates into data. A None value removes the key."""
    merged = dict(data)
    for key, value in updates.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


# ═══════════════════════════════════════════════════════════
# RECALL
# ═══════════════════════════════════════════════════════════


@dataclass
class EmbeddingRecord:
    ref_id: str
    thread_id: str
    resource_id: str | None
    vector: list[float]
    created_at: str = ""
    seq: int = 0
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class SearchHit:
    message_id: str
    score: float
    thread_id: str
    created_at: str = ""
    seq: int = 0


@dataclass
class QueryResult:
    messages: list[Message] = field(default_factory=list)
    ui_messages: list[dict] = field(default_factory=list)


@dataclass
class ContextWindow:
    """
    The ordered history handed to the model for one turn.

    Messages are chronological and unique by id. `recalled_ids` marks the
    ones that came in through semantic recall rather than recency.
    """

    thread_id: str
    messages: list[Message] = field(default_factory=list)
    working_memory: WorkingMemory | None = None
    recalled_ids: frozenset = frozenset()

    def to_dict(self) -> dict:
        return {
            "thread_id": self.thread_id,
            "messages": [m.to_dict() for m in self.messages],
            "working_memory": self.working_memory.data if self.working_memory else None,
            "recalled_ids": sorted(self.recalled_ids),
        }
