"""Parse JSONL session log text into raw event dicts."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Optional

logger = logging.getLogger("sessiondash.parsers")

EVENT_TYPES = {"user", "assistant", "system", "progress", "summary", "queue-operation"}
BOOKKEEPING_TYPES = {"system", "progress", "summary", "queue-operation"}


@dataclass(frozen=True)
class LogLine:
    """One physical line of a log; `start`/`end` are offsets into the raw text."""

    start: int
    end: int
    text: str
    event: Optional[dict[str, Any]]

    @property
    def is_blank(self) -> bool:
        return not self.text.strip()

    @property
    def is_malformed(self) -> bool:
        return self.event is None and not self.is_blank


def _decode(line: str) -> dict[str, Any] | None:
    stripped = line.strip()
    if not stripped:
        return None
    try:
        parsed = json.loads(stripped)
    except ValueError:
        # Logs are read while the runtime appends; a torn last line is expected.
        logger.debug("Dropping malformed log line (%d chars)", len(stripped))
        return None
    if not isinstance(parsed, dict):
        logger.debug("Dropping non-object log line: %s", type(parsed).__name__)
        return None
    return parsed


def iter_lines(raw_text: str) -> Iterator[LogLine]:
    """Yield every line with exact offsets, newline included.

    Lines are split on "\\n" only; JSON string values may legally contain
    other Unicode line separators.
    """
    start = 0
    length = len(raw_text)
    while start < length:
        newline = raw_text.find("\n", start)
        end = length if newline == -1 else newline + 1
        text = raw_text[start:end]
        yield LogLine(start=start, end=end, text=text, event=_decode(text))
        start = end


def parse(raw_text: str) -> list[dict[str, Any]]:
    """Return the well-formed events of a log in file order."""
    return [line.event for line in iter_lines(raw_text) if line.event is not None]


def serialize(events: Iterable[dict[str, Any]]) -> str:
    return "".join(json.dumps(event, ensure_ascii=False) + "\n" for event in events)


def message_of(event: dict[str, Any]) -> dict[str, Any]:
    message = event.get("message")
    return message if isinstance(message, dict) else {}


def content_blocks(event: dict[str, Any]) -> list[dict[str, Any]]:
    content = message_of(event).get("content")
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def is_meta(event: dict[str, Any]) -> bool:
    return bool(event.get("isMeta"))


def is_tool_result_event(event: dict[str, Any]) -> bool:
    return event.get("type") == "user" and any(
        block.get("type") == "tool_result" for block in content_blocks(event)
    )


def is_turn_start(event: dict[str, Any]) -> bool:
    """A real user prompt: not meta and not a tool result carrier."""
    if event.get("type") != "user" or is_meta(event):
        return False
    return not is_tool_result_event(event)


def text_of(content: Any) -> str:
    """Flatten string-or-blocks message content into plain text."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts = [
        str(block.get("text") or "")
        for block in content
        if isinstance(block, dict) and block.get("type") == "text"
    ]
    return "\n".join(part for part in parts if part)


def user_text(event: dict[str, Any] | None) -> str:
    if not event:
        return ""
    return text_of(message_of(event).get("content"))
