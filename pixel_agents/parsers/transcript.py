"""Translate single Claude Code JSONL transcript lines into activity events.

Pure and stateless: the caller feeds complete lines in file order and the
per-agent state machine decides what the events mean over time.
"""
from __future__ import annotations

import json
import posixpath
from dataclasses import dataclass
from typing import Any, Union

_COMMAND_LABEL_LIMIT = 30

# Fixed labels for tools whose input does not change the description.
_STATIC_TOOL_LABELS: dict[str, str] = {
    "Glob": "Searching files",
    "Grep": "Searching code",
    "WebFetch": "Fetching web content",
    "WebSearch": "Searching the web",
    "Task": "Running subtask",
    "AskUserQuestion": "Waiting for your answer",
    "EnterPlanMode": "Planning",
    "NotebookEdit": "Editing notebook",
}

_FILE_TOOL_VERBS: dict[str, str] = {
    "Read": "Reading",
    "Edit": "Editing",
    "Write": "Writing",
}

_TURN_END_SUBTYPE = "turn_duration"


@dataclass(frozen=True)
class OperationStarted:
    id: str
    label: str


@dataclass(frozen=True)
class OperationCompleted:
    id: str


@dataclass(frozen=True)
class TurnEnded:
    debounced: bool


@dataclass(frozen=True)
class NewPrompt:
    pass


ActivityEvent = Union[OperationStarted, OperationCompleted, TurnEnded, NewPrompt]


def _basename(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return posixpath.basename(value.replace("\\", "/"))


def format_operation_label(tool_name: str, tool_input: Any) -> str:
    """Short human-readable description of a tool invocation."""
    params = tool_input if isinstance(tool_input, dict) else {}
    if tool_name in _FILE_TOOL_VERBS:
        return f"{_FILE_TOOL_VERBS[tool_name]} {_basename(params.get('file_path'))}"
    if tool_name == "Bash":
        command = params.get("command")
        command = command if isinstance(command, str) else ""
        if len(command) > _COMMAND_LABEL_LIMIT:
            command = command[:_COMMAND_LABEL_LIMIT] + "…"
        return f"Running: {command}"
    if tool_name in _STATIC_TOOL_LABELS:
        return _STATIC_TOOL_LABELS[tool_name]
    return f"Using {tool_name}"


def _content_blocks(record: dict[str, Any]) -> Any:
    message = record.get("message")
    if not isinstance(message, dict):
        return None
    return message.get("content")


def _assistant_events(record: dict[str, Any]) -> list[ActivityEvent]:
    content = _content_blocks(record)
    if not isinstance(content, list):
        return []
    blocks = [block for block in content if isinstance(block, dict)]

    tool_blocks = [block for block in blocks if block.get("type") == "tool_use"]
    if tool_blocks:
        events: list[ActivityEvent] = []
        for block in tool_blocks:
            tool_id = block.get("id")
            if not isinstance(tool_id, str) or not tool_id:
                continue
            name = block.get("name") if isinstance(block.get("name"), str) else ""
            events.append(OperationStarted(id=tool_id, label=format_operation_label(name, block.get("input"))))
        return events

    # Text-only records are often followed by a tool_use record for the same
    # turn, so they only arm the debounce. Thinking-only records say nothing.
    if any(block.get("type") == "text" for block in blocks):
        return [TurnEnded(debounced=True)]
    return []


def _user_events(record: dict[str, Any]) -> list[ActivityEvent]:
    content = _content_blocks(record)
    if isinstance(content, str):
        return [NewPrompt()] if content.strip() else []
    if not isinstance(content, list):
        return []

    blocks = [block for block in content if isinstance(block, dict)]
    results = [block for block in blocks if block.get("type") == "tool_result"]
    if not results:
        return [NewPrompt()]

    events: list[ActivityEvent] = []
    for block in results:
        tool_use_id = block.get("tool_use_id")
        if isinstance(tool_use_id, str) and tool_use_id:
            events.append(OperationCompleted(id=tool_use_id))
    return events


def parse_transcript_line(line: str) -> list[ActivityEvent]:
    """Parse one transcript line; an empty list means the line is ignored."""
    try:
        record = json.loads(line)
    except (json.JSONDecodeError, TypeError, ValueError):
        return []
    if not isinstance(record, dict):
        return []

    record_type = record.get("type")
    if record_type == "assistant":
        return _assistant_events(record)
    if record_type == "user":
        return _user_events(record)
    if record_type == "system" and record.get("subtype") == _TURN_END_SUBTYPE:
        return [TurnEnded(debounced=False)]
    return []
