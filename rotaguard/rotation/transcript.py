"""Read-only helpers over a session's JSONL transcript."""

import json
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

ACTIVE_TASK_SCAN_LINES = 50  # Tail window checked for unfinished tool calls


@dataclass
class MessagePair:
    """One user turn and the assistant reply that followed it."""

    user: str
    assistant: str


def content_text(content: Any) -> str:
    """Render a record's content body as plain text."""
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=False, separators=(",", ":"))


def parse_record(line: str) -> dict[str, Any] | None:
    """Parse one transcript line; None for blank, malformed or non-object lines."""
    line = line.strip()
    if not line:
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def read_lines(path: Path | None) -> list[str]:
    """Non-blank lines of the transcript, or [] if it can't be read."""
    if not path:
        return []
    try:
        with open(path, encoding="utf-8") as f:
            return [line for line in f if line.strip()]
    except (OSError, UnicodeDecodeError):
        return []


def count_records(path: Path) -> int:
    """Number of non-blank lines in *path*."""
    return len(read_lines(path))


def _tail_records(path: Path, limit: int) -> Iterator[dict[str, Any]]:
    try:
        with open(path, encoding="utf-8") as f:
            tail = deque((line for line in f if line.strip()), maxlen=limit)
    except (OSError, UnicodeDecodeError):
        return
    for line in tail:
        record = parse_record(line)
        if record is not None:
            yield record


def extract_recent_pairs(path: Path | None, count: int) -> list[MessagePair]:
    """
    Extract up to *count* user/assistant pairs from the end of the transcript.

    Walks backwards: the latest assistant turn not yet paired is held until
    the preceding user turn is found. Pairs are returned oldest first.
    """
    if count <= 0:
        return []

    pairs: list[MessagePair] = []
    pending_assistant: str | None = None

    for line in reversed(read_lines(path)):
        if len(pairs) >= count:
            break
        record = parse_record(line)
        if record is None:
            continue
        role = record.get("role")
        if role == "assistant" and pending_assistant is None:
            pending_assistant = content_text(record.get("content", ""))
        elif role == "user" and pending_assistant is not None:
            pairs.insert(0, MessagePair(
                user=content_text(record.get("content", "")),
                assistant=pending_assistant,
            ))
            pending_assistant = None

    return pairs


def _tool_use_ids(record: dict[str, Any]) -> set[str]:
    ids = set()
    content = record.get("content")
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "tool_use" and block.get("id"):
                ids.add(block["id"])
    # OpenAI-style assistant tool_calls
    for call in record.get("tool_calls") or []:
        if isinstance(call, dict) and call.get("id"):
            ids.add(call["id"])
    return ids


def _tool_result_ids(record: dict[str, Any]) -> set[str]:
    ids = set()
    content = record.get("content")
    if isinstance(content, list):
        for block in content:
            if (
                isinstance(block, dict)
                and block.get("type") == "tool_result"
                and block.get("tool_use_id")
            ):
                ids.add(block["tool_use_id"])
    if record.get("tool_call_id"):
        ids.add(record["tool_call_id"])
    return ids


def has_active_tasks(path: Path | None, scan_lines: int = ACTIVE_TASK_SCAN_LINES) -> bool:
    """True if the transcript tail has a tool call without a matching result."""
    if not path:
        return False

    requested: set[str] = set()
    answered: set[str] = set()
    for record in _tail_records(path, scan_lines):
        role = record.get("role")
        if role == "assistant":
            requested |= _tool_use_ids(record)
        elif role in ("tool", "user"):
            answered |= _tool_result_ids(record)

    return bool(requested - answered)
