"""Gemini CLI adapter — turn-based Content/Part session JSON.

A session file holds ``{"history": [Content, ...]}`` where each Content is
``{"role": "user" | "model", "parts": [Part, ...]}`` and a Part carries one of
``text``, ``functionCall {name, args}`` or ``functionResponse {name, response}``.

Session files live at <events_dir>/<project>/chats/session-<date>T<HH>-<MM>-<hex>.json.
The source has no session boundaries or per-turn timestamps, so both are
synthesized from the filename's timestamp.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..models import EventType, HarnessType, NormalizedEvent, parse_timestamp
from .base import (
    HarnessAdapter,
    canonical_tool_name,
    deterministic_id,
    nested_error_result,
    offset_timestamp,
    read_text,
)

logger = logging.getLogger(__name__)

TOOL_NAME_MAP: dict[str, str] = {
    "run_shell_command": "shell_exec",
    "write_file": "file_write",
    "replace": "file_edit",
    "read_file": "file_read",
    "list_directory": "file_read",
    "glob": "file_search",
    "search_file_content": "file_search",
    "grep_search": "file_search",
    "codebase_investigator": "file_search",
    "web_fetch": "web_access",
    "google_web_search": "web_access",
    "save_memory": "memory",
    "write_todos": "planning",
    "activate_skill": "skill",
}

_SESSION_FILE_RE = re.compile(r"^session-(\d{4}-\d{2}-\d{2})T(\d{2})-(\d{2})-([a-f\d]+)\.json$")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class _SessionFile:
    path: Path
    session_id: str
    base_time: datetime


def parse_session_filename(name: str) -> tuple[str, datetime] | None:
    """``session-2026-02-05T10-00-deadbeef.json`` → ("deadbeef", 2026-02-05 10:00Z)."""
    match = _SESSION_FILE_RE.match(name)
    if not match:
        return None
    date, hour, minute, session_id = match.groups()
    base = parse_timestamp(f"{date}T{hour}:{minute}:00Z")
    if base is None:
        return None
    return session_id, base


class GeminiCliAdapter(HarnessAdapter):
    """Reads Gemini CLI chat session files."""

    def get_event_source(self) -> HarnessType:
        return HarnessType.GEMINI_CLI

    def parse_events(self, raw: str, session_id: str | None = None) -> list[NormalizedEvent]:
        """Parse one session JSON document.

        Without a filename the base timestamp is the document's ``startTime``
        when present, else the Unix epoch, so output stays deterministic.
        """
        history, start_time = self._load_history(raw)
        if history is None:
            return []
        base = parse_timestamp(start_time) if isinstance(start_time, str) else None
        return self._parse_history(history, session_id or "unknown", base or _EPOCH)

    def get_session_events(self, session_id: str) -> list[NormalizedEvent]:
        for session_file in self._find_session_files():
            if session_file.session_id != session_id:
                continue
            raw = read_text(session_file.path, "gemini-cli")
            if raw is None:
                continue
            history, _ = self._load_history(raw)
            if history is None:
                return []
            return self._parse_history(history, session_id, session_file.base_time)
        return []

    def _load_history(self, raw: str) -> tuple[list[Any] | None, Any]:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("gemini-cli adapter: failed to parse session JSON")
            return None, None
        if not isinstance(parsed, dict):
            logger.warning("gemini-cli adapter: session data is not an object")
            return None, None
        history = parsed.get("history")
        if not isinstance(history, list):
            logger.warning("gemini-cli adapter: session has no history array")
            return None, None
        return history, parsed.get("startTime")

    def _parse_history(
        self, history: list[Any], session_id: str, base: datetime
    ) -> list[NormalizedEvent]:
        events = [
            self._event(
                session_id, "session_start", EventType.SESSION_START, offset_timestamp(base, 0)
            )
        ]

        for turn_index, content in enumerate(history):
            if not isinstance(content, dict):
                logger.warning(
                    "gemini-cli adapter: skipping invalid content at index %d", turn_index
                )
                continue
            role = content.get("role")
            parts = content.get("parts")
            if not isinstance(role, str) or not isinstance(parts, list):
                logger.warning(
                    "gemini-cli adapter: skipping content without role/parts at index %d",
                    turn_index,
                )
                continue
            # Offset each turn by 1ms past the start to keep ordering strict
            turn_ts = offset_timestamp(base, turn_index + 1)
            events.extend(self._turn_to_events(role, parts, session_id, turn_ts, turn_index))

        events.append(
            self._event(
                session_id,
                "session_end",
                EventType.SESSION_END,
                offset_timestamp(base, len(history) + 1),
            )
        )
        return events

    def _turn_to_events(
        self,
        role: str,
        parts: list[Any],
        session_id: str,
        timestamp: str,
        turn_index: int,
    ) -> list[NormalizedEvent]:
        events: list[NormalizedEvent] = []

        for part_index, part in enumerate(parts):
            if not isinstance(part, dict):
                continue
            key = f"{turn_index}.{part_index}"
            metadata: dict[str, Any] = {"content_index": turn_index}

            if "text" in part:
                # Only user text maps to an event
                if role == "user" and isinstance(part["text"], str):
                    event = self._event(session_id, key, EventType.USER_PROMPT, timestamp, metadata)
                    event.message = part["text"]
                    events.append(event)
                continue

            call = part.get("functionCall")
            if isinstance(call, dict) and isinstance(call.get("name"), str):
                metadata["raw_tool_name"] = call["name"]
                event = self._event(session_id, key, EventType.TOOL_USE, timestamp, metadata)
                event.tool_name = canonical_tool_name(call["name"], TOOL_NAME_MAP)
                args = call.get("args")
                if isinstance(args, dict) and args:
                    event.tool_input = args
                events.append(event)
                continue

            response = part.get("functionResponse")
            if isinstance(response, dict) and isinstance(response.get("name"), str):
                metadata["raw_tool_name"] = response["name"]
                event = self._event(session_id, key, EventType.TOOL_RESULT, timestamp, metadata)
                event.tool_name = canonical_tool_name(response["name"], TOOL_NAME_MAP)
                body = response.get("response")
                content = body.get("content") if isinstance(body, dict) else None
                event.tool_result = nested_error_result(content)
                events.append(event)

        return events

    def _event(
        self,
        session_id: str,
        key: str,
        event_type: EventType,
        timestamp: str,
        metadata: dict[str, Any] | None = None,
    ) -> NormalizedEvent:
        return NormalizedEvent(
            id=deterministic_id(session_id, key, event_type.value),
            timestamp=timestamp,
            harness=HarnessType.GEMINI_CLI,
            type=event_type,
            session_id=session_id,
            metadata=metadata or {},
        )

    def _find_session_files(self) -> list[_SessionFile]:
        if not self.events_dir.is_dir():
            return []
        files: list[_SessionFile] = []
        for project_dir in self.events_dir.iterdir():
            chats_dir = project_dir / "chats"
            if not chats_dir.is_dir():
                continue
            for entry in chats_dir.iterdir():
                if not entry.is_file():
                    continue
                parsed = parse_session_filename(entry.name)
                if parsed is None:
                    continue
                session_id, base = parsed
                files.append(_SessionFile(path=entry, session_id=session_id, base_time=base))
        return sorted(files, key=lambda f: str(f.path))
