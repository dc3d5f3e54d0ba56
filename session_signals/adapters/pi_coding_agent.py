"""Pi coding agent adapter — parent-pointer JSONL tree.

Each line is an entry ``{type, id, parentId, timestamp?, role?, content?,
toolName?, toolInput?, toolResult?}``. Entries form a tree: rewinding a
conversation starts a sibling branch, and only the latest branch is the
session that actually happened.

Session files live at <events_dir>/<cwd folder>/<timestamp>_<uuid>.jsonl.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..models import EventType, HarnessType, NormalizedEvent, ToolResult, parse_timestamp
from .base import HarnessAdapter, canonical_tool_name, deterministic_id, read_text

logger = logging.getLogger(__name__)

TOOL_NAME_MAP: dict[str, str] = {
    "read": "file_read",
    "ls": "file_read",
    "write": "file_write",
    "edit": "file_edit",
    "bash": "shell_exec",
    "grep": "file_search",
    "find": "file_search",
}

_SESSION_FILE_RE = re.compile(r"^[\d_T-]+_([a-f\d-]+)\.jsonl$", re.IGNORECASE)
_EPOCH_TS = "1970-01-01T00:00:00.000Z"


@dataclass
class PiEntry:
    type: str
    id: str
    parent_id: str | None = None
    timestamp: str | None = None
    role: str | None = None
    content: Any = None
    tool_name: str | None = None
    tool_input: Any = None
    tool_result: Any = None

    @classmethod
    def from_dict(cls, data: Any) -> PiEntry | None:
        """None when ``type``/``id`` are missing or not strings."""
        if not isinstance(data, dict):
            return None
        if not isinstance(data.get("type"), str) or not isinstance(data.get("id"), str):
            return None
        parent = data.get("parentId")
        timestamp = data.get("timestamp")
        role = data.get("role")
        tool_name = data.get("toolName")
        return cls(
            type=data["type"],
            id=data["id"],
            parent_id=parent if isinstance(parent, str) else None,
            timestamp=timestamp if isinstance(timestamp, str) else None,
            role=role if isinstance(role, str) else None,
            content=data.get("content"),
            tool_name=tool_name if isinstance(tool_name, str) and tool_name else None,
            tool_input=data.get("toolInput"),
            tool_result=data.get("toolResult"),
        )


# =============================================================================
# Tree linearization
# =============================================================================


def linearize(entries: Iterable[PiEntry]) -> list[PiEntry]:
    """Flatten the entry tree to its main branch.

    Starts at the last root and repeatedly descends to the last child, so
    abandoned (rewound) branches never appear. With no root at all, the
    entries are returned in encounter order.
    """
    ordered = list(entries)
    if not ordered:
        return []

    # Arena: id → entry, parent id → child ids in encounter order
    arena: dict[str, PiEntry] = {}
    children: dict[str | None, list[str]] = {}
    for entry in ordered:
        arena[entry.id] = entry
        children.setdefault(entry.parent_id, []).append(entry.id)

    roots = children.get(None)
    if not roots:
        logger.warning(
            "pi-coding-agent adapter: no root entries found (parentId: null), "
            "returning entries in original order"
        )
        return ordered

    result: list[PiEntry] = []
    seen: set[str] = set()
    current: str | None = roots[-1]
    while current is not None and current not in seen:
        seen.add(current)
        result.append(arena[current])
        kids = children.get(current)
        current = kids[-1] if kids else None
    return result


def fill_timestamps(entries: Sequence[PiEntry]) -> list[str]:
    """One parseable timestamp per entry.

    An entry with a missing or unparsable timestamp inherits its
    predecessor's; leading entries take the first known timestamp. With no
    timestamps at all, every entry gets the Unix epoch.
    """
    known = [e.timestamp for e in entries if parse_timestamp(e.timestamp or "") is not None]
    current = known[0] if known else _EPOCH_TS
    filled: list[str] = []
    for entry in entries:
        if parse_timestamp(entry.timestamp or "") is not None:
            current = entry.timestamp or current
        filled.append(current)
    return filled


# =============================================================================
# Entry → events
# =============================================================================


def _tool_result(entry: PiEntry) -> ToolResult:
    result = entry.tool_result
    if isinstance(result, dict) and "error" in result:
        error = result["error"]
        return ToolResult(success=False, error=error if isinstance(error, str) else json.dumps(error))
    if isinstance(entry.content, str):
        return ToolResult(success=True, output=entry.content)
    if result is not None:
        return ToolResult(success=True, output=result if isinstance(result, str) else json.dumps(result))
    return ToolResult(success=True)


def entry_to_event(
    entry: PiEntry, session_id: str, timestamp: str | None = None
) -> NormalizedEvent | None:
    """Apply the entry decision table; None for unmapped entries.

    ``timestamp`` overrides the entry's own (see ``fill_timestamps``).
    """
    tool_name = None
    tool_input = None
    tool_result = None
    message = None
    metadata: dict[str, Any] = {"entry_id": entry.id}

    if entry.type == "message":
        if entry.role == "user" and entry.tool_name is None and entry.content:
            event_type = EventType.USER_PROMPT
            message = entry.content if isinstance(entry.content, str) else json.dumps(entry.content)
        elif entry.role == "assistant" and entry.tool_name:
            event_type = EventType.TOOL_USE
            tool_name = canonical_tool_name(entry.tool_name, TOOL_NAME_MAP)
            if isinstance(entry.tool_input, dict) and entry.tool_input:
                tool_input = entry.tool_input
            metadata["raw_tool_name"] = entry.tool_name
        elif entry.role == "user" and entry.tool_name:
            event_type = EventType.TOOL_RESULT
            tool_name = canonical_tool_name(entry.tool_name, TOOL_NAME_MAP)
            tool_result = _tool_result(entry)
            metadata["raw_tool_name"] = entry.tool_name
        else:
            return None
    elif entry.type == "compaction":
        event_type = EventType.COMPACTION
    else:
        # branch_summary, label, model_change, ... carry no friction information
        return None

    return NormalizedEvent(
        id=deterministic_id(session_id, entry.id, event_type.value),
        timestamp=timestamp or entry.timestamp or _EPOCH_TS,
        harness=HarnessType.PI_CODING_AGENT,
        type=event_type,
        session_id=session_id,
        tool_name=tool_name,
        tool_input=tool_input,
        tool_result=tool_result,
        message=message,
        metadata=metadata,
    )


class PiCodingAgentAdapter(HarnessAdapter):
    """Reads Pi coding agent session trees."""

    def get_event_source(self) -> HarnessType:
        return HarnessType.PI_CODING_AGENT

    def parse_events(self, raw: str, session_id: str | None = None) -> list[NormalizedEvent]:
        sid = session_id or "unknown"
        entries: list[PiEntry] = []

        for line_no, line in enumerate(raw.split("\n"), start=1):
            line = line.strip()
            if not line:
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("pi-coding-agent adapter: skipping malformed JSONL at line %d", line_no)
                continue
            entry = PiEntry.from_dict(parsed)
            if entry is None:
                logger.warning("pi-coding-agent adapter: skipping invalid entry at line %d", line_no)
                continue
            entries.append(entry)

        linear = linearize(entries)
        timestamps = fill_timestamps(linear)
        first_ts = min(timestamps, key=parse_timestamp, default=_EPOCH_TS)
        last_ts = max(timestamps, key=parse_timestamp, default=first_ts)

        events = [self._boundary(sid, EventType.SESSION_START, first_ts)]
        for entry, timestamp in zip(linear, timestamps):
            event = entry_to_event(entry, sid, timestamp)
            if event is not None:
                events.append(event)
        events.append(self._boundary(sid, EventType.SESSION_END, last_ts))
        return events

    def get_session_events(self, session_id: str) -> list[NormalizedEvent]:
        for path, file_session_id in self._find_session_files():
            if file_session_id != session_id:
                continue
            raw = read_text(path, "pi-coding-agent")
            if raw is None:
                return []
            return self.parse_events(raw, session_id)
        return []

    def _boundary(self, session_id: str, event_type: EventType, timestamp: str) -> NormalizedEvent:
        return NormalizedEvent(
            id=deterministic_id(session_id, event_type.value),
            timestamp=timestamp,
            harness=HarnessType.PI_CODING_AGENT,
            type=event_type,
            session_id=session_id,
        )

    def _find_session_files(self) -> list[tuple[Path, str]]:
        if not self.events_dir.is_dir():
            return []
        files: list[tuple[Path, str]] = []
        for cwd_dir in self.events_dir.iterdir():
            if not cwd_dir.is_dir():
                continue
            for entry in cwd_dir.iterdir():
                if not entry.is_file():
                    continue
                match = _SESSION_FILE_RE.match(entry.name)
                if match:
                    files.append((entry, match.group(1)))
        return sorted(files, key=lambda f: str(f[0]))
