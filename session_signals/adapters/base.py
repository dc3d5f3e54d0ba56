"""Harness adapter contract and helpers shared by every adapter."""

from __future__ import annotations

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from ..models import (
    EventType,
    HarnessType,
    NormalizedEvent,
    ToolResult,
    format_timestamp,
    parse_timestamp,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Helpers
# =============================================================================


def canonical_tool_name(raw: str, table: dict[str, str]) -> str:
    """Map a harness tool name to the shared vocabulary.

    Unmapped names are lower-cased and passed through — the vocabulary is an
    open namespace.
    """
    return table.get(raw, raw.lower())


def deterministic_id(*parts: str) -> str:
    """Stable 32-hex-char id derived from its parts."""
    return hashlib.sha256(":".join(parts).encode("utf-8")).hexdigest()[:32]


def nested_error_result(payload: Any, fallback_output: Any = None) -> ToolResult:
    """Build a ToolResult from a payload whose failure is a nested ``error`` key.

    Used by adapters whose sources carry no top-level success flag. Non-string
    error values are serialized losslessly rather than discarded.
    """
    if isinstance(payload, dict) and "error" in payload:
        error = payload["error"]
        return ToolResult(
            success=False,
            error=error if isinstance(error, str) else json.dumps(error),
        )
    output = fallback_output if fallback_output is not None else payload
    if output is None:
        return ToolResult(success=True)
    return ToolResult(
        success=True,
        output=output if isinstance(output, str) else json.dumps(output),
    )


def sort_events(events: list[NormalizedEvent]) -> list[NormalizedEvent]:
    """Stable ascending sort by timestamp.

    Falls back to lexical comparison of the raw strings when any timestamp
    fails to parse.
    """
    parsed = [e.parsed_timestamp for e in events]
    if any(p is None for p in parsed):
        return sorted(events, key=lambda e: e.timestamp)
    order = sorted(range(len(events)), key=lambda i: parsed[i])  # type: ignore[arg-type,return-value]
    return [events[i] for i in order]


def offset_timestamp(base: datetime, milliseconds: int) -> str:
    return format_timestamp(base + timedelta(milliseconds=milliseconds))


def read_text(path: Path, adapter_name: str) -> str | None:
    """Read a file, warning (not raising) when it cannot be read."""
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("%s adapter: failed to read %s: %s", adapter_name, path, e)
        return None


def ensure_session_bounds(
    events: list[NormalizedEvent], harness: HarnessType, session_id: str
) -> list[NormalizedEvent]:
    """Enforce exactly one session_start first and one session_end last.

    Missing boundaries are synthesized at the first/last event timestamp.
    Duplicate boundaries collapse to the earliest start and the latest end.
    """
    if not events:
        return []

    starts = [e for e in events if e.type == EventType.SESSION_START]
    ends = [e for e in events if e.type == EventType.SESSION_END]
    body = [e for e in events if e.type not in (EventType.SESSION_START, EventType.SESSION_END)]

    start = starts[0] if starts else None
    end = ends[-1] if ends else None

    # Boundary timestamps must bracket every event
    all_ts = [e.timestamp for e in events]
    first_ts = min(all_ts, key=_timestamp_key)
    last_ts = max(all_ts, key=_timestamp_key)

    if start is None or start.timestamp != first_ts:
        start = NormalizedEvent(
            id=start.id if start else deterministic_id(session_id, "session_start"),
            timestamp=first_ts,
            harness=harness,
            type=EventType.SESSION_START,
            session_id=session_id,
            cwd=start.cwd if start else None,
            metadata={**(start.metadata if start else {}), "synthesized": True},
        )
    if end is None or end.timestamp != last_ts:
        end = NormalizedEvent(
            id=end.id if end else deterministic_id(session_id, "session_end"),
            timestamp=last_ts,
            harness=harness,
            type=EventType.SESSION_END,
            session_id=session_id,
            cwd=end.cwd if end else None,
            metadata={**(end.metadata if end else {}), "synthesized": True},
        )

    return [start, *body, end]


def _timestamp_key(value: str) -> tuple[int, Any]:
    parsed = parse_timestamp(value)
    return (0, parsed) if parsed is not None else (1, value)


# =============================================================================
# Abstract Adapter
# =============================================================================


class HarnessAdapter(ABC):
    """Base class for reading one harness's session logs.

    Subclasses implement the raw format for a specific harness (Claude Code,
    Gemini CLI, Pi) and produce NormalizedEvent sequences. A single bad
    line/entry is skipped with a warning; it never aborts the file.
    """

    def __init__(self, events_dir: str | Path):
        self.events_dir = Path(events_dir)

    @abstractmethod
    def parse_events(self, raw: str, session_id: str | None = None) -> list[NormalizedEvent]:
        """Parse a raw session representation into normalized events."""
        ...

    @abstractmethod
    def get_session_events(self, session_id: str) -> list[NormalizedEvent]:
        """Locate and read all files for a session, returning its events in order."""
        ...

    @abstractmethod
    def get_event_source(self) -> HarnessType:
        """Which harness this adapter handles."""
        ...
