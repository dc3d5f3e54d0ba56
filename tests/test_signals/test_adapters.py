"""Tests for harness adapters — raw session formats to normalized events."""

import json
from datetime import datetime, timezone
from pathlib import Path

from session_signals.adapters import (
    ClaudeCodeAdapter,
    GeminiCliAdapter,
    PiCodingAgentAdapter,
    canonical_tool_name,
    deterministic_id,
    ensure_session_bounds,
    linearize,
)
from session_signals.adapters.gemini_cli import parse_session_filename
from session_signals.adapters.pi_coding_agent import PiEntry, entry_to_event
from session_signals.models import EventType, HarnessType, NormalizedEvent


def _hook(hook_type: str, ts: str, session_id: str = "sess-1", **payload) -> str:
    return json.dumps(
        {
            "session_id": session_id,
            "hook_event_type": hook_type,
            "timestamp": ts,
            "payload": payload,
            "source_app": "test",
        }
    )


def _assert_bracketed(events: list[NormalizedEvent]) -> None:
    types = [e.type for e in events]
    assert types.count(EventType.SESSION_START) == 1
    assert types.count(EventType.SESSION_END) == 1
    assert events[0].type == EventType.SESSION_START
    assert events[-1].type == EventType.SESSION_END
    for event in events[1:-1]:
        assert events[0].parsed_timestamp <= event.parsed_timestamp <= events[-1].parsed_timestamp


class TestHelpers:
    def test_canonical_tool_name(self):
        assert canonical_tool_name("Bash", {"Bash": "shell_exec"}) == "shell_exec"
        assert canonical_tool_name("mcp__GitHub__Search", {}) == "mcp__github__search"

    def test_deterministic_id(self):
        a = deterministic_id("s1", "e1", "tool_use")
        assert a == deterministic_id("s1", "e1", "tool_use")
        assert a != deterministic_id("s1", "e1", "tool_result")
        assert len(a) == 32

    def test_ensure_session_bounds_empty(self):
        assert ensure_session_bounds([], HarnessType.CLAUDE_CODE, "s1") == []


# =============================================================================
# Claude Code
# =============================================================================


class TestClaudeCodeParse:
    def test_hook_types_map(self):
        raw = "\n".join(
            [
                _hook("SessionStart", "2026-03-01T10:00:00.000Z"),
                _hook("UserPromptSubmit", "2026-03-01T10:00:01.000Z", prompt="fix it"),
                _hook("PreToolUse", "2026-03-01T10:00:02.000Z", tool_name="Bash", tool_input={"command": "ls"}),
                _hook("PostToolUse", "2026-03-01T10:00:03.000Z", tool_name="Bash", error="exit 1"),
                _hook("Notification", "2026-03-01T10:00:04.000Z", type="compaction"),
                _hook("Notification", "2026-03-01T10:00:05.000Z", type="idle"),
                _hook("PermissionRequest", "2026-03-01T10:00:06.000Z", decision="deny"),
                _hook("SessionEnd", "2026-03-01T10:00:07.000Z"),
            ]
        )
        events = ClaudeCodeAdapter("/nonexistent").parse_events(raw)
        assert [e.type for e in events] == [
            EventType.SESSION_START,
            EventType.USER_PROMPT,
            EventType.TOOL_USE,
            EventType.TOOL_RESULT,
            EventType.COMPACTION,
            EventType.PERMISSION_RESULT,
            EventType.SESSION_END,
        ]
        assert events[1].message == "fix it"
        assert events[2].tool_name == "shell_exec"
        assert events[2].tool_input == {"command": "ls"}
        assert events[3].is_failure
        assert events[3].tool_result.error == "exit 1"
        assert events[5].permission_granted is False

    def test_bare_post_tool_use_is_success(self):
        raw = _hook("PostToolUse", "2026-03-01T10:00:00.000Z", tool_name="Read")
        [event] = ClaudeCodeAdapter("/nonexistent").parse_events(raw)
        assert event.is_success
        assert event.tool_name == "file_read"

    def test_tool_result_object(self):
        raw = _hook(
            "PostToolUse",
            "2026-03-01T10:00:00.000Z",
            tool_name="Edit",
            tool_result={"success": False, "output": "no match"},
        )
        [event] = ClaudeCodeAdapter("/nonexistent").parse_events(raw)
        assert event.is_failure
        assert event.tool_result.output == "no match"

    def test_malformed_lines_skipped(self, caplog):
        raw = "\n".join(
            [
                "{not json",
                json.dumps({"session_id": "sess-1", "timestamp": "x"}),
                _hook("UserPromptSubmit", "2026-03-01T10:00:01.000Z", prompt="ok"),
            ]
        )
        with caplog.at_level("WARNING", logger="session_signals.adapters.claude_code"):
            events = ClaudeCodeAdapter("/nonexistent").parse_events(raw)
        assert len(events) == 1
        assert "line 1" in caplog.text
        assert "line 2" in caplog.text

    def test_session_filter(self):
        raw = "\n".join(
            [
                _hook("UserPromptSubmit", "2026-03-01T10:00:01.000Z", session_id="a", prompt="x"),
                _hook("UserPromptSubmit", "2026-03-01T10:00:02.000Z", session_id="b", prompt="y"),
            ]
        )
        events = ClaudeCodeAdapter("/nonexistent").parse_events(raw, "b")
        assert [e.message for e in events] == ["y"]

    def test_ids_are_stable_across_parses(self):
        raw = _hook("UserPromptSubmit", "2026-03-01T10:00:01.000Z", prompt="x")
        adapter = ClaudeCodeAdapter("/nonexistent")
        assert adapter.parse_events(raw)[0].id == adapter.parse_events(raw)[0].id


class TestClaudeCodeSessionEvents:
    def _write(self, root: Path, month: str, day: str, lines: list[str]) -> None:
        month_dir = root / month
        month_dir.mkdir(parents=True, exist_ok=True)
        (month_dir / f"{day}_all-events.jsonl").write_text("\n".join(lines) + "\n")

    def test_merges_files_and_sorts(self, tmp_path: Path):
        self._write(
            tmp_path,
            "2026-03",
            "2026-03-02",
            [_hook("SessionEnd", "2026-03-02T00:00:05.000Z")],
        )
        self._write(
            tmp_path,
            "2026-03",
            "2026-03-01",
            [
                _hook("SessionStart", "2026-03-01T23:59:00.000Z"),
                _hook("UserPromptSubmit", "2026-03-01T23:59:30.000Z", prompt="late night"),
                _hook("UserPromptSubmit", "2026-03-01T23:59:10.000Z", session_id="other", prompt="x"),
            ],
        )
        events = ClaudeCodeAdapter(tmp_path).get_session_events("sess-1")
        assert [e.type for e in events] == [
            EventType.SESSION_START,
            EventType.USER_PROMPT,
            EventType.SESSION_END,
        ]
        _assert_bracketed(events)

    def test_synthesizes_missing_boundaries(self, tmp_path: Path):
        self._write(
            tmp_path,
            "2026-03",
            "2026-03-01",
            [
                _hook("UserPromptSubmit", "2026-03-01T10:00:00.000Z", prompt="a"),
                _hook("PreToolUse", "2026-03-01T10:00:05.000Z", tool_name="Grep"),
            ],
        )
        events = ClaudeCodeAdapter(tmp_path).get_session_events("sess-1")
        assert len(events) == 4
        _assert_bracketed(events)
        assert events[0].timestamp == "2026-03-01T10:00:00.000Z"
        assert events[-1].timestamp == "2026-03-01T10:00:05.000Z"
        assert events[0].metadata["synthesized"] is True
        assert events[0].id == deterministic_id("sess-1", "session_start")

    def test_collapses_duplicate_ends(self, tmp_path: Path):
        self._write(
            tmp_path,
            "2026-03",
            "2026-03-01",
            [
                _hook("SessionStart", "2026-03-01T10:00:00.000Z"),
                _hook("PreToolUse", "2026-03-01T10:00:01.000Z", tool_name="Bash"),
                _hook("Stop", "2026-03-01T10:00:02.000Z"),
                _hook("SessionEnd", "2026-03-01T10:00:03.000Z"),
            ],
        )
        events = ClaudeCodeAdapter(tmp_path).get_session_events("sess-1")
        assert len(events) == 3
        _assert_bracketed(events)
        assert events[-1].metadata["hook_event_type"] == "SessionEnd"

    def test_unknown_session(self, tmp_path: Path):
        assert ClaudeCodeAdapter(tmp_path).get_session_events("missing") == []


# =============================================================================
# Gemini CLI
# =============================================================================


def _gemini_session() -> dict:
    return {
        "startTime": "2026-02-05T10:00:00.000Z",
        "history": [
            {"role": "user", "parts": [{"text": "list the files"}]},
            {
                "role": "model",
                "parts": [
                    {"text": "Sure."},
                    {"functionCall": {"name": "run_shell_command", "args": {"command": "ls"}}},
                    {"functionCall": {"name": "list_directory", "args": {}}},
                ],
            },
            {
                "role": "user",
                "parts": [
                    {
                        "functionResponse": {
                            "name": "run_shell_command",
                            "response": {"content": {"error": {"code": 127}}},
                        }
                    },
                    {
                        "functionResponse": {
                            "name": "list_directory",
                            "response": {"content": "a.py\nb.py"},
                        }
                    },
                ],
            },
        ],
    }


class TestGeminiCli:
    def test_filename(self):
        parsed = parse_session_filename("session-2026-02-05T10-00-deadbeef.json")
        assert parsed == ("deadbeef", datetime(2026, 2, 5, 10, 0, tzinfo=timezone.utc))
        assert parse_session_filename("notes.json") is None

    def test_turns_to_events(self):
        events = GeminiCliAdapter("/nonexistent").parse_events(json.dumps(_gemini_session()), "g1")
        assert [e.type for e in events] == [
            EventType.SESSION_START,
            EventType.USER_PROMPT,
            EventType.TOOL_USE,
            EventType.TOOL_USE,
            EventType.TOOL_RESULT,
            EventType.TOOL_RESULT,
            EventType.SESSION_END,
        ]
        _assert_bracketed(events)

        use, empty_use = events[2], events[3]
        assert use.tool_name == "shell_exec"
        assert use.tool_input == {"command": "ls"}
        assert use.metadata["raw_tool_name"] == "run_shell_command"
        assert empty_use.tool_name == "file_read"
        assert empty_use.tool_input is None

        failed, ok = events[4], events[5]
        assert failed.is_failure
        assert json.loads(failed.tool_result.error) == {"code": 127}
        assert ok.is_success
        assert ok.tool_result.output == "a.py\nb.py"

    def test_synthesized_timestamps(self):
        events = GeminiCliAdapter("/nonexistent").parse_events(json.dumps(_gemini_session()), "g1")
        assert events[0].timestamp == "2026-02-05T10:00:00.000Z"
        assert events[1].timestamp == "2026-02-05T10:00:00.001Z"
        assert events[2].timestamp == "2026-02-05T10:00:00.002Z"
        assert events[4].timestamp == "2026-02-05T10:00:00.003Z"
        assert events[-1].timestamp == "2026-02-05T10:00:00.004Z"

    def test_epoch_without_start_time(self):
        session = _gemini_session()
        del session["startTime"]
        events = GeminiCliAdapter("/nonexistent").parse_events(json.dumps(session))
        assert events[0].timestamp == "1970-01-01T00:00:00.000Z"
        assert events[0].session_id == "unknown"

    def test_deterministic(self):
        adapter = GeminiCliAdapter("/nonexistent")
        raw = json.dumps(_gemini_session())
        assert [e.id for e in adapter.parse_events(raw, "g1")] == [
            e.id for e in adapter.parse_events(raw, "g1")
        ]

    def test_invalid_turn_skipped(self):
        session = {"history": ["garbage", {"role": "user", "parts": [{"text": "hi"}]}]}
        events = GeminiCliAdapter("/nonexistent").parse_events(json.dumps(session), "g1")
        assert [e.type for e in events] == [
            EventType.SESSION_START,
            EventType.USER_PROMPT,
            EventType.SESSION_END,
        ]
        assert events[1].metadata["content_index"] == 1

    def test_invalid_json(self):
        assert GeminiCliAdapter("/nonexistent").parse_events("{oops") == []
        assert GeminiCliAdapter("/nonexistent").parse_events(json.dumps({"messages": []})) == []

    def test_session_discovery(self, tmp_path: Path):
        chats = tmp_path / "0a1b2c" / "chats"
        chats.mkdir(parents=True)
        (chats / "session-2026-02-05T10-30-abc123.json").write_text(json.dumps(_gemini_session()))
        (chats / "session-2026-02-05T11-00-ffff00.json").write_text(json.dumps({"history": []}))

        events = GeminiCliAdapter(tmp_path).get_session_events("abc123")
        assert events[0].timestamp == "2026-02-05T10:30:00.000Z"
        assert all(e.session_id == "abc123" for e in events)
        assert GeminiCliAdapter(tmp_path).get_session_events("999999") == []


# =============================================================================
# Pi coding agent
# =============================================================================


def _pi(entry_id: str, parent: str | None, **fields) -> dict:
    data = {"type": "message", "id": entry_id, "parentId": parent}
    data.update(fields)
    return data


def _pi_entries(rows: list[dict]) -> list[PiEntry]:
    return [PiEntry.from_dict(r) for r in rows]


class TestPiLinearize:
    def test_later_sibling_wins_over_longer_earlier_branch(self):
        rows = [
            _pi("root", None, role="user", content="start"),
            _pi("a1", "root"),
            _pi("a2", "a1"),
            _pi("a3", "a2"),
            _pi("a4", "a3"),
            _pi("b1", "root"),
            _pi("b2", "b1"),
        ]
        linear = linearize(_pi_entries(rows))
        assert [e.id for e in linear] == ["root", "b1", "b2"]

    def test_last_root_is_used(self):
        rows = [_pi("r1", None), _pi("c1", "r1"), _pi("r2", None), _pi("c2", "r2")]
        assert [e.id for e in linearize(_pi_entries(rows))] == ["r2", "c2"]

    def test_no_root_returns_encounter_order(self, caplog):
        rows = [_pi("x", "missing"), _pi("y", "x")]
        with caplog.at_level("WARNING", logger="session_signals.adapters.pi_coding_agent"):
            linear = linearize(_pi_entries(rows))
        assert [e.id for e in linear] == ["x", "y"]
        assert "no root entries" in caplog.text

    def test_cycle_terminates(self):
        rows = [_pi("r", None), _pi("a", "r"), _pi("a", "a")]
        linear = linearize(_pi_entries(rows))
        assert [e.id for e in linear] == ["r", "a"]

    def test_empty(self):
        assert linearize([]) == []


class TestPiEntryMapping:
    def test_decision_table(self):
        prompt = entry_to_event(PiEntry.from_dict(_pi("1", None, role="user", content="hi")), "s")
        use = entry_to_event(
            PiEntry.from_dict(_pi("2", "1", role="assistant", toolName="bash", toolInput={"command": "ls"})),
            "s",
        )
        result = entry_to_event(
            PiEntry.from_dict(_pi("3", "2", role="user", toolName="bash", toolResult={"error": "nope"})),
            "s",
        )
        compaction = entry_to_event(PiEntry.from_dict({"type": "compaction", "id": "4", "parentId": "3"}), "s")
        assistant_text = entry_to_event(PiEntry.from_dict(_pi("5", "4", role="assistant", content="ok")), "s")
        label = entry_to_event(PiEntry.from_dict({"type": "label", "id": "6", "parentId": "5"}), "s")

        assert prompt.type == EventType.USER_PROMPT
        assert prompt.message == "hi"
        assert use.type == EventType.TOOL_USE
        assert use.tool_name == "shell_exec"
        assert use.tool_input == {"command": "ls"}
        assert result.type == EventType.TOOL_RESULT
        assert result.is_failure
        assert result.tool_result.error == "nope"
        assert compaction.type == EventType.COMPACTION
        assert assistant_text is None
        assert label is None

    def test_non_string_error_serialized(self):
        entry = PiEntry.from_dict(
            _pi("3", None, role="user", toolName="edit", toolResult={"error": {"reason": "stale"}})
        )
        event = entry_to_event(entry, "s")
        assert json.loads(event.tool_result.error) == {"reason": "stale"}

    def test_ids(self):
        event = entry_to_event(PiEntry.from_dict(_pi("e7", None, role="user", content="x")), "s")
        assert event.id == deterministic_id("s", "e7", "user_prompt")

    def test_invalid_entry(self):
        assert PiEntry.from_dict({"type": "message"}) is None
        assert PiEntry.from_dict({"type": 1, "id": "x"}) is None


class TestPiAdapter:
    def _raw(self) -> str:
        rows = [
            {"type": "session", "id": "h", "parentId": None, "timestamp": "2026-03-01T09:00:00.000Z"},
            _pi("u1", "h", role="user", content="refactor", timestamp="2026-03-01T09:00:01.000Z"),
            _pi("t1", "u1", role="assistant", toolName="read", toolInput={"path": "a.ts"}, timestamp="2026-03-01T09:00:02.000Z"),
            _pi("old", "t1", role="user", content="never mind", timestamp="2026-03-01T09:00:03.000Z"),
            _pi("r1", "t1", role="user", toolName="read", content="export {}", timestamp="2026-03-01T09:00:04.000Z"),
        ]
        return "\n".join(json.dumps(r) for r in rows) + "\n{broken\n"

    def test_parse_events(self):
        events = PiCodingAgentAdapter("/nonexistent").parse_events(self._raw(), "pi-1")
        assert [e.type for e in events] == [
            EventType.SESSION_START,
            EventType.USER_PROMPT,
            EventType.TOOL_USE,
            EventType.TOOL_RESULT,
            EventType.SESSION_END,
        ]
        _assert_bracketed(events)
        assert all(e.message != "never mind" for e in events)
        assert events[0].timestamp == "2026-03-01T09:00:00.000Z"
        assert events[-1].timestamp == "2026-03-01T09:00:04.000Z"
        assert events[0].id == deterministic_id("pi-1", "session_start")
        assert events[3].tool_result.output == "export {}"

    def test_entry_without_timestamp_stays_bracketed(self):
        rows = [
            _pi("a", None, role="user", content="run tests", timestamp="2026-03-01T10:00:00.000Z"),
            _pi("b", "a", role="assistant", toolName="bash", toolInput={"command": "pytest"}),
            _pi("c", "b", role="user", content="again", timestamp="2026-03-01T10:05:00.000Z"),
        ]
        raw = "\n".join(json.dumps(r) for r in rows)
        events = PiCodingAgentAdapter("/nonexistent").parse_events(raw, "pi-2")
        _assert_bracketed(events)
        assert events[2].type == EventType.TOOL_USE
        assert events[2].timestamp == "2026-03-01T10:00:00.000Z"
        assert events[-1].timestamp == "2026-03-01T10:05:00.000Z"

    def test_boundaries_span_out_of_order_timestamps(self):
        rows = [
            _pi("a", None, role="user", content="one", timestamp="2026-03-01T10:05:00.000Z"),
            _pi("b", "a", role="user", content="two", timestamp="2026-03-01T10:00:00.000Z"),
        ]
        raw = "\n".join(json.dumps(r) for r in rows)
        events = PiCodingAgentAdapter("/nonexistent").parse_events(raw, "pi-3")
        _assert_bracketed(events)
        assert events[0].timestamp == "2026-03-01T10:00:00.000Z"

    def test_no_timestamps_uses_epoch(self):
        raw = json.dumps(_pi("a", None, role="user", content="hi"))
        events = PiCodingAgentAdapter("/nonexistent").parse_events(raw, "pi-4")
        assert {e.timestamp for e in events} == {"1970-01-01T00:00:00.000Z"}

    def test_session_discovery(self, tmp_path: Path):
        folder = tmp_path / "--home-me-project--"
        folder.mkdir()
        sid = "0f3c9a2e-1234-4abc-9def-001122334455"
        (folder / f"2026-03-01T09-00-00-000_{sid}.jsonl").write_text(self._raw())
        events = PiCodingAgentAdapter(tmp_path).get_session_events(sid)
        assert len(events) == 5
        assert events[1].session_id == sid
        assert PiCodingAgentAdapter(tmp_path).get_session_events("deadbeef") == []
