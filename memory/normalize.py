"""
Conversion of stored messages into a display-oriented form.

Every message maps to exactly one UI dict. The mapping is total: unknown
part types become a placeholder entry instead of an error.
"""

import json
from typing import Any

from .models import Message, TextPart, ToolCallPart, ToolResultPart


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)


def _part_entry(part) -> dict:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text}
    if isinstance(part, ToolCallPart):
        return {
            "type": "tool-call",
            "tool_call_id": part.tool_call_id,
            "tool_name": part.tool_name,
            "args": _jsonable(part.args),
        }
    if isinstance(part, ToolResultPart):
        return {
            "type": "tool-result",
            "tool_call_id": part.tool_call_id,
            "tool_name": part.tool_name,
            "result": _jsonable(part.result),
            "is_error": part.is_error,
        }
    return {"type": "unknown", "original_type": str(getattr(part, "type", type(part).__name__))}


def to_ui_message(message: Message) -> dict:
    parts = [_part_entry(p) for p in message.parts]

    invocations = []
    for entry in parts:
        if entry["type"] == "tool-call":
            invocations.append({
                "state": "call",
                "tool_call_id": entry["tool_call_id"],
                "tool_name": entry["tool_name"],
                "args": entry["args"],
            })
        elif entry["type"] == "tool-result":
            invocations.append({
                "state": "result",
                "tool_call_id": entry["tool_call_id"],
                "tool_name": entry["tool_name"],
                "result": entry["result"],
                "is_error": entry["is_error"],
            })

    return {
        "id": message.id,
        "thread_id": message.thread_id,
        "role": message.role,
        "content": "".join(e["text"] for e in parts if e["type"] == "text"),
        "created_at": message.created_at,
        "tool_invocations": invocations,
        "parts": parts,
    }


def to_ui_messages(messages: list[Message]) -> list[dict]:
    return [to_ui_message(m) for m in messages]
