"""Agent output stream: incremental file reader and record classification.

The agent writes newline-delimited JSON records (``--output-format
stream-json``) to a scratch file. ``OutputTail`` reads only the bytes
appended since the previous call and keeps any incomplete trailing line
until the rest of it arrives.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

# Record types that require a human reply before the agent can continue.
HUMAN_INPUT_TYPES = frozenset({"permission_request", "input_request"})


class OutputTail:
    """Byte cursor plus pending fragment over a file another process appends to."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.offset = 0
        self.pending = b""

    def read_new(self) -> list[str]:
        """Return complete, non-blank lines appended since the last read."""
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return []
        if size <= self.offset:
            return []
        with self.path.open("rb") as f:
            f.seek(self.offset)
            chunk = f.read(size - self.offset)
        self.offset += len(chunk)
        data = self.pending + chunk
        *complete, self.pending = data.split(b"\n")
        return _decode_lines(complete)

    def drain(self) -> list[str]:
        """Final read: new lines plus whatever fragment is still held back."""
        lines = self.read_new()
        tail, self.pending = self.pending, b""
        return lines + _decode_lines([tail])

    def reset(self) -> None:
        self.offset = 0
        self.pending = b""


def _decode_lines(raw_lines: list[bytes]) -> list[str]:
    lines = []
    for raw in raw_lines:
        text = raw.decode("utf-8", errors="replace").strip()
        if text:
            lines.append(text)
    return lines


def parse_record(line: str) -> dict[str, Any] | None:
    """Parse one output line as a JSON object record, or None for raw text."""
    try:
        parsed = json.loads(line)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def raw_text_record(text: str) -> dict[str, Any]:
    return {"type": "raw", "text": text}


def conversation_id(record: dict[str, Any]) -> str | None:
    """Conversation id announced by a ``system/init`` record."""
    if record.get("type") == "system" and record.get("subtype") == "init":
        value = record.get("session_id")
        if isinstance(value, str) and value:
            return value
    return None


def needs_human_input(record: dict[str, Any]) -> bool:
    if record.get("type") in HUMAN_INPUT_TYPES:
        return True
    return record.get("type") == "system" and record.get("subtype") == "permission"


def is_result(record: dict[str, Any]) -> bool:
    return record.get("type") == "result"


def record_text(record: dict[str, Any]) -> str:
    """Human-readable text carried by a ``result`` or ``assistant`` record."""
    kind = record.get("type")
    if kind == "result":
        result = record.get("result")
        return result if isinstance(result, str) else ""
    if kind != "assistant":
        return ""
    message = record.get("message")
    if isinstance(message, str):
        return message
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, dict) and block.get("type") == "text":
            parts.append(str(block.get("text", "")))
    return "\n".join(parts)
