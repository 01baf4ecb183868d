import os
import json
import logging
from typing import Any, Dict, List, Optional

from bearbridge.core.errors import (
    BearBridgeError,
    CallbackError,
    CommandCancelledError,
    CommandTimeoutError,
    DatabaseError,
    TransportFailure,
    ValidationError,
)
from bearbridge.core.types import NoteRecord, NoteSummary, TagRecord

logger = logging.getLogger("BearBridge.mcp.utils")

DEFAULT_TOOL_RESPONSE_MAX_CHARS = 32768


def _max_response_chars() -> int:
    raw = os.environ.get("BEAR_BRIDGE_TOOL_RESPONSE_MAX_CHARS", str(DEFAULT_TOOL_RESPONSE_MAX_CHARS))
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid BEAR_BRIDGE_TOOL_RESPONSE_MAX_CHARS '%s'; using %d", raw, DEFAULT_TOOL_RESPONSE_MAX_CHARS)
        return DEFAULT_TOOL_RESPONSE_MAX_CHARS
    return max(256, value)


def truncate_tool_text(text: str, name: str) -> str:
    """Apply the response length limit to tool output."""
    max_chars = _max_response_chars()
    if len(text) > max_chars:
        logger.info("Truncating response for tool '%s' (%d -> %d chars)", name, len(text), max_chars)
        suffix = "\n\n[Response truncated due to size limits]"
        cutoff = max(0, max_chars - len(suffix))
        return text[:cutoff] + suffix
    return text


def tool_result(text: str, name: str, *, is_error: bool = False) -> Dict[str, Any]:
    result: Dict[str, Any] = {"content": [{"type": "text", "text": truncate_tool_text(text, name)}]}
    if is_error:
        result["isError"] = True
    return result


def format_payload_text(payload: Dict[str, Any]) -> str:
    """Render a callback payload for tool output."""
    if not payload:
        return "Success"
    return json.dumps(payload, indent=2, ensure_ascii=False, default=str)


def format_note_text(note: NoteRecord) -> str:
    return f"Title: {note.title}\nID: {note.id}\n\n{note.text}"


def format_note_list_text(
    notes: List[NoteSummary],
    contents: Dict[str, Optional[NoteRecord]],
    max_notes: int,
    empty_message: str,
) -> str:
    """Render notes with their content, capped at ``max_notes``."""
    if not notes:
        return empty_message
    shown = notes[:max_notes]
    blocks = [f"Found {len(notes)} note(s)" + (f", showing {len(shown)}." if len(notes) > len(shown) else ".")]
    for note in shown:
        lines = [f"## {note.title or '(untitled)'}", f"ID: {note.identifier}"]
        if note.tags:
            lines.append(f"Tags: {', '.join(note.tags)}")
        if note.created:
            lines.append(f"Created: {note.created}")
        record = contents.get(note.identifier)
        lines.append("")
        lines.append(record.text if record and record.text else "Content not available")
        blocks.append("\n".join(lines))
    return "\n\n---\n\n".join(blocks)


def format_tag_list_text(tags: List[TagRecord]) -> str:
    if not tags:
        return "No tags found."
    return "\n".join(f"- {tag.name}" for tag in tags)


def describe_tool_error(error: BaseException) -> str:
    """Prefix an error with its kind so callers can tell retryable failures apart."""
    if isinstance(error, ValidationError):
        kind = "Invalid input"
    elif isinstance(error, CommandCancelledError):
        kind = "Cancelled"
    elif isinstance(error, CommandTimeoutError):
        kind = "Timeout"
    elif isinstance(error, CallbackError):
        kind = "Bear error"
    elif isinstance(error, TransportFailure):
        kind = "Dispatch failed"
    elif isinstance(error, DatabaseError):
        kind = "Database error"
    elif isinstance(error, BearBridgeError):
        kind = "Error"
    else:
        kind = "Internal error"
    retry = " (retryable)" if getattr(error, "retryable", False) else ""
    return f"{kind}{retry}: {error}"
