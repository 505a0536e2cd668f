"""
Unit tests for memory/normalize.py

Tests cover:
- Plain text messages
- Tool invocations (call and result states)
- Unknown part types become placeholders instead of errors
- Values that are not JSON serializable are stringified
"""

from datetime import datetime

from memory.models import Message, TextPart, ToolCallPart, ToolResultPart, UnknownPart
from memory.normalize import to_ui_message, to_ui_messages


def _msg(content, role="assistant", **kwargs):
    return Message(id="m1", thread_id="t1", role=role, content=content, seq=1, **kwargs)


class TestToUIMessage:

    def test_plain_text(self):
        ui = to_ui_message(_msg("hello", role="user"))
        assert ui["role"] == "user"
        assert ui["content"] == "hello"
        assert ui["parts"] == [{"type": "text", "text": "hello"}]
        assert ui["tool_invocations"] == []

    def test_tool_call(self):
        ui = to_ui_message(_msg((TextPart("Checking. "), ToolCallPart("c1", "get_weather", {"zip": "98101"}))))
        assert ui["content"] == "Checking. "
        assert ui["tool_invocations"] == [
            {"state": "call", "tool_call_id": "c1", "tool_name": "get_weather", "args": {"zip": "98101"}}
        ]

    def test_tool_result(self):
        ui = to_ui_message(
            _msg((ToolResultPart("c1", "get_weather", "70 degrees"),), role="tool", tool_call_id="c1")
        )
        invocation = ui["tool_invocations"][0]
        assert invocation["state"] == "result"
        assert invocation["result"] == "70 degrees"
        assert invocation["is_error"] is False

    def test_unknown_part_placeholder(self):
        ui = to_ui_message(_msg((UnknownPart("image", {"type": "image", "url": "x"}), TextPart("caption"))))
        assert ui["parts"][0] == {"type": "unknown", "original_type": "image"}
        assert ui["content"] == "caption"

    def test_unserializable_values_stringified(self):
        when = datetime(2024, 5, 1, 12, 0)
        ui = to_ui_message(_msg((ToolCallPart("c1", "schedule", when),)))
        assert ui["parts"][0]["args"] == str(when)

    def test_one_ui_message_per_message(self):
        messages = [_msg("a"), _msg((UnknownPart("widget", {"type": "widget"}),))]
        assert len(to_ui_messages(messages)) == 2
