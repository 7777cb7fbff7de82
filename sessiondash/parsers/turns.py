"""Group parsed events into turns.

A turn is one real user prompt plus everything the agent produced until the
next prompt. Tool results ride on user-role events but never open a turn.
Bookkeeping that precedes the first prompt belongs to turn 0.
"""
from __future__ import annotations

import re
from collections import Counter
from typing import Any, Sequence

from sessiondash.models import ToolCall, Turn
from sessiondash.parsers.events import (
    LogLine,
    content_blocks,
    is_turn_start,
    message_of,
    text_of,
    user_text,
)

_THINKING_TAG_PATTERN = re.compile(r"<thinking>([\s\S]*?)</thinking>")
_COMPACTION_TOOL_LIMIT = 5


def _turn_starts(events: Sequence[dict[str, Any]]) -> list[int]:
    """Event indices at which each turn begins."""
    starts = [i for i, event in enumerate(events) if is_turn_start(event)]
    if not starts:
        if any(event.get("type") == "assistant" for event in events):
            return [0]
        return []
    starts[0] = 0
    return starts


def count_turns(events: Sequence[dict[str, Any]]) -> int:
    return len(_turn_starts(events))


def turn_cut_offset(lines: Sequence[LogLine], keep_turns: int) -> int:
    """Offset in the raw text where turn `keep_turns` begins.

    Returns the full text length when the log has `keep_turns` turns or fewer,
    so `raw[:offset]` always holds exactly min(keep_turns, total) turns.
    """
    parsed = [line for line in lines if line.event is not None]
    starts = _turn_starts([line.event for line in parsed])
    text_end = lines[-1].end if lines else 0
    if keep_turns >= len(starts):
        return text_end
    if keep_turns <= 0:
        return 0
    return parsed[starts[keep_turns]].start


def _tool_result_text(content: Any) -> str:
    if content is None:
        return ""
    return text_of(content)


def _compaction_summary(turns: list[Turn], title: str) -> str:
    if not turns:
        return title
    tool_counts: Counter[str] = Counter()
    for turn in turns:
        tool_counts.update(call.name for call in turn.toolCalls if call.name)
    parts = [f"**{title}**", f"{len(turns)} turns compacted"]
    if tool_counts:
        top = ", ".join(f"{name} x{count}" for name, count in tool_counts.most_common(_COMPACTION_TOOL_LIMIT))
        parts.append(f"Tools: {top}")
    return "\n".join(parts)


def _absorb_assistant(turn: Turn, event: dict[str, Any], pending: dict[str, ToolCall]) -> None:
    message = message_of(event)
    if message.get("model"):
        turn.model = str(message["model"])
    timestamp = str(event.get("timestamp") or "")
    content = message.get("content")
    if isinstance(content, str):
        if content.strip():
            turn.assistantText.append(content.strip())
        return
    for block in content_blocks(event):
        block_type = block.get("type")
        if block_type == "thinking":
            thinking = str(block.get("thinking") or "").strip()
            if thinking:
                turn.thinking.append(thinking)
        elif block_type == "text":
            raw = str(block.get("text") or "")
            # `claude -p` writes thinking inline as tags
            for match in _THINKING_TAG_PATTERN.finditer(raw):
                if match.group(1).strip():
                    turn.thinking.append(match.group(1).strip())
            remaining = _THINKING_TAG_PATTERN.sub("", raw).strip()
            if remaining:
                turn.assistantText.append(remaining)
        elif block_type == "tool_use":
            tool_input = block.get("input")
            call = ToolCall(
                id=str(block.get("id") or ""),
                name=str(block.get("name") or ""),
                input=tool_input if isinstance(tool_input, dict) else {},
                timestamp=timestamp,
            )
            turn.toolCalls.append(call)
            if call.id:
                pending[call.id] = call


def _absorb_tool_results(event: dict[str, Any], pending: dict[str, ToolCall]) -> None:
    for block in content_blocks(event):
        if block.get("type") != "tool_result":
            continue
        call = pending.pop(str(block.get("tool_use_id") or ""), None)
        if call is None:
            continue
        call.result = _tool_result_text(block.get("content"))
        call.isError = bool(block.get("is_error"))
        call.pending = False


def segment(events: Sequence[dict[str, Any]]) -> list[Turn]:
    """Split a parsed event list into ordered, non-overlapping turns."""
    starts = _turn_starts(events)
    turns: list[Turn] = []
    pending: dict[str, ToolCall] = {}
    compaction: str | None = None

    for index, start in enumerate(starts):
        end = starts[index + 1] if index + 1 < len(starts) else len(events)
        chunk = list(events[start:end])
        anchor = next((event for event in chunk if is_turn_start(event)), None)
        turn = Turn(
            index=index,
            userEvent=anchor,
            userText=user_text(anchor),
            events=chunk,
            timestamp=str((anchor or chunk[0]).get("timestamp") or ""),
            startEvent=start,
            endEvent=end,
        )
        if compaction is not None:
            turn.compactionSummary = compaction
            compaction = None
        anchored = False
        for event in chunk:
            event_type = event.get("type")
            if event is anchor:
                anchored = True
            elif event_type == "assistant":
                _absorb_assistant(turn, event, pending)
            elif event_type == "user":
                _absorb_tool_results(event, pending)
            elif event_type == "summary":
                summary = _compaction_summary(turns, str(event.get("summary") or "Conversation compacted"))
                if anchored:
                    compaction = summary
                else:
                    turn.compactionSummary = summary
            elif event_type == "system" and event.get("subtype") == "turn_duration":
                duration = event.get("durationMs")
                if isinstance(duration, (int, float)):
                    turn.durationMs = int(duration)
        turns.append(turn)

    return turns
