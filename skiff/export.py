"""Markdown export of a session's conversation."""

import json
import socket
from datetime import datetime, timezone
from pathlib import Path

from .history import TextBlock, ToolResultBlock, ToolUseBlock
from .session import Session

RESULT_PREVIEW_CHARS = 500


def default_export_name(now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"skiff_{now.strftime('%Y-%m-%dT%H-%M-%S')}.md"


def render_markdown(session: Session, *, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    parts = [
        "# skiff Session\n",
        f"Date: {now.isoformat()}\n",
        f"Model: {session.model}\n",
        f"Host: {socket.gethostname()}\n\n---\n\n",
    ]

    for turn in session.history:
        heading = f"## {turn.role.capitalize()}\n\n"
        if isinstance(turn.content, str):
            parts.append(heading + turn.content + "\n\n")
            continue
        for block in turn.content:
            if isinstance(block, TextBlock):
                parts.append(heading + block.text + "\n\n")
            elif isinstance(block, ToolUseBlock):
                args = json.dumps(block.input, indent=2, ensure_ascii=False)
                parts.append(f"### Tool: {block.name}\n```json\n{args}\n```\n\n")
            elif isinstance(block, ToolResultBlock):
                preview = block.content[:RESULT_PREVIEW_CHARS]
                parts.append(f"### Tool Result\n```\n{preview}\n```\n\n")

    parts.append(
        f"---\n\n*Session: {session.turns} turns, "
        f"{session.input_tokens}/{session.output_tokens} tokens, "
        f"${session.estimate_cost():.4f}*\n"
    )
    return "".join(parts)


def export_conversation(session: Session, filename: str | None = None) -> Path:
    """Write the conversation to a Markdown file. Returns the path written.

    Raises OSError if the file cannot be written.
    """
    path = Path(filename or default_export_name())
    path.write_text(render_markdown(session), encoding="utf-8")
    return path
