"""
Working memory affordances for the model.

Two ways for the model to update a thread's working memory:
- tool-call mode: an `update_working_memory` tool it can call
- enabled (text) mode: a JSON object written between <working_memory> tags,
  which is captured and stripped from the streamed text

A tool-call update is written together with the tool request/result pair
that reports it. A tagged update is written when the turn is finalized, in
the same transaction as the final message.
"""

import json
import logging

from tools import Tool

from .models import WorkingMemory, merge_working_memory

logger = logging.getLogger(__name__)

UPDATE_WORKING_MEMORY = "update_working_memory"
OPEN_TAG = "<working_memory>"
CLOSE_TAG = "</working_memory>"


class WorkingMemoryDraft:
    """Working memory as seen during one turn: the stored state plus staged updates."""

    def __init__(self, base: WorkingMemory | None = None):
        self.base = dict(base.data) if base else {}
        self.updates: dict = {}

    def apply(self, updates: dict):
        self.updates.update(updates)

    @property
    def data(self) -> dict:
        return merge_working_memory(self.base, self.updates)

    @property
    def dirty(self) -> bool:
        return bool(self.updates)

    def commit(self):
        """Fold staged updates into the base once they have been persisted."""
        self.base = self.data
        self.updates = {}


def create_working_memory_tool(draft: WorkingMemoryDraft) -> Tool:
    """The `update_working_memory` tool, bound to one turn's draft."""

    def execute(params: dict) -> dict:
        updates = params.get("updates") or {}
        draft.apply(updates)
        logger.debug("Staged working memory update for keys %s", sorted(updates))
        return {"updated": sorted(updates), "working_memory": draft.data}

    return Tool(
        name=UPDATE_WORKING_MEMORY,
        description=(
            "Update your working memory for this conversation. Pass only the keys "
            "that change; set a key to null to forget it. Use it for durable facts "
            "about the user and the task (names, preferences, goals, open items)."
        ),
        parameters={
            "type": "object",
            "properties": {
                "updates": {
                    "type": "object",
                    "description": "Keys to set (or null to remove) in working memory",
                },
            },
            "required": ["updates"],
        },
        fn=execute,
        output_schema={
            "type": "object",
            "properties": {
                "updated": {"type": "array", "items": {"type": "string"}},
                "working_memory": {"type": "object"},
            },
            "required": ["updated", "working_memory"],
        },
    )


def working_memory_instructions(memory: dict, mode: str) -> str:
    """System-prompt block presenting working memory and how to update it."""
    current = json.dumps(memory, indent=2, sort_keys=True, default=str) if memory else "{}"
    if mode == "tool-call":
        how = (
            f"To change it, call the `{UPDATE_WORKING_MEMORY}` tool with the keys to "
            "update (null removes a key)."
        )
    else:
        how = (
            f"To change it, write a JSON object with the keys to update between "
            f"{OPEN_TAG} and {CLOSE_TAG} anywhere in your reply (null removes a key). "
            "The tagged block is not shown to the user."
        )
    return f"## Working memory\nWhat you currently remember about this conversation:\n{current}\n{how}"


def parse_working_memory_block(block: str) -> dict:
    """Updates from a tagged block: a JSON object, or free text kept under "notes"."""
    text = block.strip()
    if not text:
        return {}
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        return {"notes": text}
    if isinstance(value, dict):
        return value
    return {"notes": value}


class WorkingMemoryTagFilter:
    """
    Streaming filter that removes <working_memory>...</working_memory> blocks.

    Text outside the tags passes through as soon as it cannot be the start
    of a tag; only a possible partial opening tag is held back.
    """

    def __init__(self):
        self._buffer = ""
        self._inside = False
        self.blocks: list[str] = []

    def feed(self, text: str) -> str:
        self._buffer += text
        out = []
        while True:
            if self._inside:
                end = self._buffer.find(CLOSE_TAG)
                if end < 0:
                    break
                self.blocks.append(self._buffer[:end])
                self._buffer = self._buffer[end + len(CLOSE_TAG):]
                self._inside = False
                continue

            start = self._buffer.find(OPEN_TAG)
            if start >= 0:
                out.append(self._buffer[:start])
                self._buffer = self._buffer[start + len(OPEN_TAG):]
                self._inside = True
                continue

            keep = self._partial_tag_length(self._buffer)
            out.append(self._buffer[: len(self._buffer) - keep])
            self._buffer = self._buffer[len(self._buffer) - keep:]
            break
        return "".join(out)

    @staticmethod
    def _partial_tag_length(text: str) -> int:
        for size in range(min(len(text), len(OPEN_TAG) - 1), 0, -1):
            if OPEN_TAG.startswith(text[-size:]):
                return size
        return 0

    def flush(self) -> str:
        """End of stream: release held-back text. An unterminated block is still captured."""
        rest, self._buffer = self._buffer, ""
        if self._inside:
            self._inside = False
            self.blocks.append(rest)
            return ""
        return rest

    def updates(self) -> dict:
        merged: dict = {}
        for block in self.blocks:
            merged.update(parse_working_memory_block(block))
        return merged
