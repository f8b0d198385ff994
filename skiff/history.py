"""Conversation history: typed content blocks, turns, and the history store.

The store is an ordered list of turns. It only grows by append(), except
for three explicit operations: compact() (lossy, user-triggered),
truncate() (rollback after an aborted loop invocation) and clear().
"""

import copy
import json
from dataclasses import dataclass, field

COMPACT_THRESHOLD = 8
COMPACT_KEEP_RECENT = 6
PREVIEW_CHARS = 60


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextBlock:
    text: str

    def to_wire(self) -> dict:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ToolUseBlock:
    """A tool invocation request emitted by the model."""

    id: str
    name: str
    input: dict = field(default_factory=dict)

    def to_wire(self) -> dict:
        return {
            "type": "tool_use",
            "id": self.id,
            "name": self.name,
            "input": copy.deepcopy(self.input),
        }


@dataclass(frozen=True)
class ToolResultBlock:
    """The answer to a ToolUseBlock, carried back in the next user turn."""

    tool_use_id: str
    content: str
    is_error: bool = False

    def to_wire(self) -> dict:
        wire = {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
        }
        if self.is_error:
            wire["is_error"] = True
        return wire


@dataclass(frozen=True)
class RawBlock:
    """Any other block type, kept verbatim so it can be echoed back."""

    data: dict

    @property
    def type(self) -> str:
        return str(self.data.get("type", ""))

    def to_wire(self) -> dict:
        return copy.deepcopy(self.data)


Block = TextBlock | ToolUseBlock | ToolResultBlock | RawBlock


def block_from_wire(data) -> Block | None:
    """Parse one wire block. Returns None for entries that are not objects."""
    if not isinstance(data, dict):
        return None
    kind = data.get("type")
    if kind == "text":
        return TextBlock(text=str(data.get("text") or ""))
    if kind == "tool_use":
        raw_input = data.get("input")
        return ToolUseBlock(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            input=raw_input if isinstance(raw_input, dict) else {},
        )
    if kind == "tool_result":
        content = data.get("content", "")
        if not isinstance(content, str):
            content = json.dumps(content)
        return ToolResultBlock(
            tool_use_id=str(data.get("tool_use_id") or ""),
            content=content,
            is_error=bool(data.get("is_error", False)),
        )
    return RawBlock(data=dict(data))


def blocks_from_wire(items) -> list[Block]:
    """Parse a wire content array, dropping malformed entries."""
    if not isinstance(items, list):
        return []
    blocks = []
    for item in items:
        block = block_from_wire(item)
        if block is not None:
            blocks.append(block)
    return blocks


# ---------------------------------------------------------------------------
# Turns
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Turn:
    role: str
    content: str | tuple[Block, ...]

    def __post_init__(self):
        if self.role not in ("user", "assistant"):
            raise ValueError(f"invalid role {self.role!r}")
        if isinstance(self.content, list):
            object.__setattr__(self, "content", tuple(self.content))

    @classmethod
    def user(cls, content) -> "Turn":
        return cls("user", content)

    @classmethod
    def assistant(cls, content) -> "Turn":
        return cls("assistant", content)

    @property
    def blocks(self) -> tuple[Block, ...]:
        if isinstance(self.content, str):
            return (TextBlock(self.content),)
        return self.content

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.blocks if isinstance(b, ToolResultBlock)]

    def text(self) -> str:
        """Concatenated text of all text blocks."""
        return "\n".join(
            b.text for b in self.blocks if isinstance(b, TextBlock) and b.text
        )

    def to_wire(self) -> dict:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [b.to_wire() for b in self.content]}

    def preview(self, width: int = PREVIEW_CHARS) -> str:
        """Short one-line description used by the /history listing."""
        if isinstance(self.content, str):
            text = self.content
        else:
            text = ""
            for block in self.content:
                if isinstance(block, TextBlock):
                    text = block.text
                    break
                if isinstance(block, ToolUseBlock):
                    return f"[tool: {block.name}]"
                if isinstance(block, ToolResultBlock):
                    return "[tool result]"
        text = text.replace("\n", " ")
        if len(text) >= width:
            return text[:width] + "..."
        return text


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class History:
    """Ordered sequence of conversation turns."""

    def __init__(self, turns=None):
        self._turns: list[Turn] = list(turns or [])

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self):
        return iter(self._turns)

    def __getitem__(self, index):
        return self._turns[index]

    @property
    def turns(self) -> list[Turn]:
        return list(self._turns)

    def append(self, turn: Turn) -> None:
        if not isinstance(turn, Turn):
            raise TypeError(f"expected Turn, got {type(turn).__name__}")
        self._turns.append(turn)

    def truncate(self, length: int) -> int:
        """Drop every turn past `length`. Returns the number of turns removed."""
        length = max(length, 0)
        removed = max(len(self._turns) - length, 0)
        del self._turns[length:]
        return removed

    def clear(self) -> int:
        return self.truncate(0)

    def compact(
        self,
        threshold: int = COMPACT_THRESHOLD,
        keep_recent: int = COMPACT_KEEP_RECENT,
    ) -> int:
        """Keep the first turn and the last `keep_recent` turns.

        The elided middle is replaced by one synthetic assistant turn.
        No-op when the store holds `threshold` turns or fewer.
        Returns the number of turns elided.
        """
        total = len(self._turns)
        keep_recent = max(keep_recent, 0)
        elided = total - 1 - keep_recent
        if total <= threshold or elided < 1:
            return 0
        marker = Turn.assistant(
            [
                TextBlock(
                    f"[Earlier conversation compacted - {elided} messages removed]"
                )
            ]
        )
        self._turns[:] = [self._turns[0], marker, *self._turns[total - keep_recent :]]
        return elided

    def to_wire(self) -> list[dict]:
        return [turn.to_wire() for turn in self._turns]

    def last_assistant_text(self, start: int = 0) -> str | None:
        """Text of the newest assistant turn at index >= start that has any."""
        for turn in reversed(self._turns[start:]):
            if turn.role == "assistant":
                text = turn.text()
                if text:
                    return text
        return None

    def previews(self, width: int = PREVIEW_CHARS) -> list[tuple[int, str, str]]:
        """(1-based index, role, preview) for every turn."""
        return [
            (i, turn.role, turn.preview(width))
            for i, turn in enumerate(self._turns, start=1)
        ]
