"""Claude Code adapter — flat hook-event JSONL.

Claude Code hook logs are one JSON object per line:
    {"session_id": ..., "hook_event_type": "PreToolUse", "timestamp": ...,
     "payload": {...}, "source_app": ...}

Files are sharded by month: <events_dir>/<YYYY-MM>/<date>_all-events.jsonl,
so one session may span several files.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from ..models import EventType, HarnessType, NormalizedEvent, ToolResult
from .base import (
    HarnessAdapter,
    canonical_tool_name,
    deterministic_id,
    ensure_session_bounds,
    read_text,
    sort_events,
)

logger = logging.getLogger(__name__)

TOOL_NAME_MAP: dict[str, str] = {
    "Edit": "file_edit",
    "MultiEdit": "file_edit",
    "NotebookEdit": "file_edit",
    "Write": "file_write",
    "Read": "file_read",
    "NotebookRead": "file_read",
    "Bash": "shell_exec",
    "Grep": "file_search",
    "Glob": "file_search",
    "Task": "agent_spawn",
    "WebSearch": "web_access",
    "WebFetch": "web_access",
    "LSP": "lsp",
    "AskUserQuestion": "user_interaction",
    "Skill": "skill",
}

HOOK_TYPE_MAP: dict[str, EventType] = {
    "PreToolUse": EventType.TOOL_USE,
    "PostToolUse": EventType.TOOL_RESULT,
    "UserPromptSubmit": EventType.USER_PROMPT,
    "SessionStart": EventType.SESSION_START,
    "SessionEnd": EventType.SESSION_END,
    "Stop": EventType.SESSION_END,
    "SubagentStop": EventType.SESSION_END,
    "PermissionRequest": EventType.PERMISSION_RESULT,
}

_EVENTS_FILE_SUFFIX = "_all-events.jsonl"
_REQUIRED_FIELDS = ("session_id", "hook_event_type", "timestamp")


def map_hook_type(hook_type: str, payload: dict[str, Any] | None) -> EventType | None:
    """Map a hook category to an event type.

    Notification carries no reliable type of its own — only a nested
    ``type == "compaction"`` maps; all other notifications are dropped.
    """
    if hook_type == "Notification":
        if payload and payload.get("type") == "compaction":
            return EventType.COMPACTION
        return None
    return HOOK_TYPE_MAP.get(hook_type)


def _first_str(payload: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _extract_tool_input(payload: dict[str, Any]) -> dict[str, Any] | None:
    for key in ("tool_input", "input"):
        value = payload.get(key)
        if isinstance(value, dict) and value:
            return value
    return None


def _extract_tool_result(hook_type: str, payload: dict[str, Any]) -> ToolResult | None:
    result = payload.get("tool_result")
    if isinstance(result, dict):
        error = result.get("error")
        output = result.get("output")
        return ToolResult(
            success=result.get("success") is not False and error is None,
            output=output if isinstance(output, str) else None,
            error=error if isinstance(error, str) else (json.dumps(error) if error else None),
        )

    # PostToolUse may carry an error string directly
    error = payload.get("error")
    if isinstance(error, str) and error:
        return ToolResult(success=False, error=error)

    # PostToolUse with no error/result means success
    if hook_type == "PostToolUse":
        return ToolResult(success=True)
    return None


def _extract_permission(payload: dict[str, Any]) -> bool | None:
    granted = payload.get("permission_granted")
    if isinstance(granted, bool):
        return granted
    decision = payload.get("decision")
    if isinstance(decision, str):
        return decision.lower() in ("allow", "approve", "approved", "granted")
    return None


class ClaudeCodeAdapter(HarnessAdapter):
    """Reads Claude Code hook-event logs."""

    def get_event_source(self) -> HarnessType:
        return HarnessType.CLAUDE_CODE

    def parse_events(self, raw: str, session_id: str | None = None) -> list[NormalizedEvent]:
        """Parse JSONL hook events. ``session_id``, when given, filters the lines."""
        events: list[NormalizedEvent] = []

        for line_no, line in enumerate(raw.split("\n"), start=1):
            line = line.strip()
            if not line:
                continue
            try:
                d = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("claude-code adapter: skipping malformed JSONL at line %d", line_no)
                continue

            if not isinstance(d, dict) or not all(
                isinstance(d.get(k), str) for k in _REQUIRED_FIELDS
            ):
                logger.warning("claude-code adapter: skipping invalid event at line %d", line_no)
                continue

            if session_id is not None and d["session_id"] != session_id:
                continue

            event = self._to_normalized(d, line_no, line)
            if event is not None:
                events.append(event)

        return events

    def get_session_events(self, session_id: str) -> list[NormalizedEvent]:
        events: list[NormalizedEvent] = []
        for path in self._find_event_files():
            raw = read_text(path, "claude-code")
            if raw is None:
                continue
            events.extend(self.parse_events(raw, session_id))

        if not events:
            return []
        return ensure_session_bounds(sort_events(events), self.get_event_source(), session_id)

    def _to_normalized(self, d: dict[str, Any], line_no: int, line: str) -> NormalizedEvent | None:
        hook_type = d["hook_event_type"]
        payload = d.get("payload") if isinstance(d.get("payload"), dict) else {}
        event_type = map_hook_type(hook_type, payload)
        if event_type is None:
            return None

        raw_tool_name = _first_str(payload, "tool_name", "name")

        return NormalizedEvent(
            # Same line → same id, so re-parsing is idempotent
            id=deterministic_id(d["session_id"], str(line_no), line),
            timestamp=d["timestamp"],
            harness=HarnessType.CLAUDE_CODE,
            type=event_type,
            session_id=d["session_id"],
            cwd=_first_str(payload, "cwd"),
            tool_name=canonical_tool_name(raw_tool_name, TOOL_NAME_MAP) if raw_tool_name else None,
            tool_input=_extract_tool_input(payload),
            tool_result=_extract_tool_result(hook_type, payload),
            message=_first_str(payload, "message", "prompt"),
            permission_granted=(
                _extract_permission(payload) if event_type == EventType.PERMISSION_RESULT else None
            ),
            metadata={"hook_event_type": hook_type, "source_app": d.get("source_app")},
        )

    def _find_event_files(self) -> list[Path]:
        """All <month>/*_all-events.jsonl files, sorted by path."""
        if not self.events_dir.is_dir():
            return []
        files: list[Path] = []
        for month_dir in self.events_dir.iterdir():
            if not month_dir.is_dir():
                continue
            files.extend(
                p for p in month_dir.iterdir() if p.is_file() and p.name.endswith(_EVENTS_FILE_SUFFIX)
            )
        return sorted(files)
