"""Derive the live session status from raw log events.

Status is never stored: it is recomputed from the log by folding over the
events newest-first until the first decisive event.
"""
from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from sessiondash import config
from sessiondash.models import SessionStatusInfo
from sessiondash.parsers.events import content_blocks, is_meta, message_of, parse

logger = logging.getLogger("sessiondash.status")

STATUSES = ("idle", "thinking", "tool_use", "processing", "completed")

_QUEUE_DELTAS = {"enqueue": 1, "dequeue": -1, "remove": -1}


def _clamp_queue(delta: int) -> int:
    if delta < 0:
        logger.warning("Queue accounting went negative (%d); clamping to 0", delta)
        if config.STRICT_QUEUE_ACCOUNTING:
            assert delta >= 0, f"more dequeues than enqueues in log tail ({delta})"
    return max(0, delta)


def _has_prior_user_activity(events: Sequence[dict[str, Any]], before: int) -> bool:
    return any(
        event.get("type") == "user" and not is_meta(event)
        for event in reversed(events[:before])
    )


def _last_tool_name(event: dict[str, Any]) -> Optional[str]:
    tool_blocks = [block for block in content_blocks(event) if block.get("type") == "tool_use"]
    if not tool_blocks:
        return None
    name = tool_blocks[-1].get("name")
    return str(name) if name else None


def derive_status(events: Sequence[dict[str, Any]]) -> SessionStatusInfo:
    """Walk the events backwards to find the most recent meaningful signal."""
    queue_delta = 0

    for index in range(len(events) - 1, -1, -1):
        event = events[index]
        event_type = event.get("type")

        if event_type == "queue-operation":
            queue_delta += _QUEUE_DELTAS.get(str(event.get("operation") or ""), 0)
            continue

        if event_type == "assistant":
            stop_reason = message_of(event).get("stop_reason")
            pending_queue = _clamp_queue(queue_delta)
            if stop_reason == "end_turn":
                status = "completed" if _has_prior_user_activity(events, index) else "idle"
                return SessionStatusInfo(status=status, pendingQueue=pending_queue)
            if stop_reason == "tool_use":
                return SessionStatusInfo(
                    status="tool_use",
                    toolName=_last_tool_name(event),
                    pendingQueue=pending_queue,
                )
            # stop_reason missing while the response is still streaming
            return SessionStatusInfo(status="thinking", pendingQueue=pending_queue)

        if event_type == "user":
            if is_meta(event):
                continue
            # A prompt or a tool result: the agent owes a response.
            return SessionStatusInfo(status="processing", pendingQueue=_clamp_queue(queue_delta))

        # system, progress, summary and unknown types never decide the status

    return SessionStatusInfo(status="idle", pendingQueue=_clamp_queue(queue_delta))


def derive_status_from_tail(tail_text: str) -> SessionStatusInfo:
    """Derive status from the end of a log; a torn first line is dropped."""
    return derive_status(parse(tail_text))


def status_label(status: str | None, tool_name: str | None = None) -> str | None:
    """Human-readable label for a status. Returns None for "idle"."""
    if status == "thinking":
        return "Thinking..."
    if status == "tool_use":
        return f"Using {tool_name}" if tool_name else "Using tool..."
    if status == "processing":
        return "Processing..."
    if status == "completed":
        return "Idle"
    return None
