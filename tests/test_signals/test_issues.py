"""Tests for issue filing through the bd CLI."""

from datetime import date

import pytest

from session_signals.actions.issues import (
    BeadsCli,
    build_issue_title,
    build_trend_comment,
    execute_issue_action,
    find_existing_issue,
    map_priority,
    meets_threshold,
)
from session_signals.config import IssueActionConfig
from session_signals.errors import CommandError
from session_signals.models import Pattern, PatternTrend, PatternType, Severity

TITLE = "[signals] Build command fails repeatedly"


def _pattern(
    pattern_id: str = "pat-1",
    severity: Severity = Severity.HIGH,
    frequency: int = 4,
    trend: PatternTrend = PatternTrend.INCREASING,
    description: str = "Build command fails repeatedly",
) -> Pattern:
    return Pattern(
        id=pattern_id,
        type=PatternType.RECURRING_FRICTION,
        scope="pai",
        description=description,
        severity=severity,
        frequency=frequency,
        trend=trend,
        root_cause_hypothesis="Missing dependency",
        suggested_fix="Pin the toolchain",
    )


class FakeBeads(BeadsCli):
    def __init__(self, available: bool = True, search_output: str = "", fail_on: str | None = None):
        super().__init__()
        self.available = available
        self.search_output = search_output
        self.fail_on = fail_on
        self.calls: list[tuple] = []

    def is_available(self) -> bool:
        return self.available

    def _run(self, *args: str) -> str:
        self.calls.append(args)
        if self.fail_on and args[0] == self.fail_on:
            raise CommandError(["bd", *args], "exited with 1: boom", 1)
        if args[0] == "search":
            return self.search_output
        return "ok"


class TestFindExistingIssue:
    def test_plain_match(self):
        assert find_existing_issue(f"bd-12 {TITLE}\n", TITLE) == "bd-12"

    def test_status_word(self):
        assert find_existing_issue(f"bd-3 open {TITLE}", TITLE) == "bd-3"
        assert find_existing_issue(f"bd-4 [in_progress] {TITLE}", TITLE) == "bd-4"

    def test_closed_never_matches(self):
        assert find_existing_issue(f"bd-5 closed {TITLE}\nbd-6 [closed] {TITLE}", TITLE) is None

    def test_substring_is_not_a_match(self):
        output = f"bd-7 {TITLE} on Windows\nbd-8 open Re: {TITLE}"
        assert find_existing_issue(output, TITLE) is None

    def test_title_starting_with_status_word(self):
        title = "open files leak on reload"
        assert find_existing_issue(f"bd-9 {title}", title) == "bd-9"
        assert find_existing_issue(f"bd-10 closed {title}", title) is None

    def test_first_match_wins_and_blank_lines_ignored(self):
        output = f"\nbd-1 closed {TITLE}\nbd-2 {TITLE}\nbd-3 {TITLE}\n"
        assert find_existing_issue(output, TITLE) == "bd-2"


class TestHelpers:
    def test_threshold(self):
        config = IssueActionConfig(min_severity=Severity.MEDIUM, min_frequency=2)
        assert meets_threshold(_pattern(severity=Severity.MEDIUM, frequency=2), config)
        assert not meets_threshold(_pattern(severity=Severity.LOW, frequency=10), config)
        assert not meets_threshold(_pattern(severity=Severity.HIGH, frequency=1), config)

    def test_priority(self):
        assert [map_priority(s) for s in (Severity.HIGH, Severity.MEDIUM, Severity.LOW)] == [1, 2, 3]

    def test_title(self):
        assert build_issue_title(_pattern(), "[signals]") == TITLE

    def test_trend_comment(self):
        today = date(2026, 3, 6)
        improving = build_trend_comment(_pattern(trend=PatternTrend.DECREASING), today)
        assert improving.startswith("**Trend improving** (2026-03-06)")
        update = build_trend_comment(_pattern(), today)
        assert update.startswith("**Signal update** (2026-03-06)")
        assert "- **Trend:** increasing" in update
        assert "- **Suggested fix:** Pin the toolchain" in update


class TestExecuteIssueAction:
    def test_creates_new_issue(self):
        cli = FakeBeads()
        [result] = execute_issue_action([_pattern()], IssueActionConfig(), cli=cli)
        assert result.action == "created"
        assert result.issue_title == TITLE
        assert ("create", "--title", TITLE, "--type", "bug", "--priority", "1") in cli.calls

    def test_updates_existing_issue(self):
        cli = FakeBeads(search_output=f"bd-12 open {TITLE}\n")
        [result] = execute_issue_action([_pattern()], IssueActionConfig(), cli=cli, today=date(2026, 3, 6))
        assert result.action == "updated"
        assert result.issue_id == "bd-12"
        comment = [c for c in cli.calls if c[0] == "comments"][0]
        assert comment[:3] == ("comments", "add", "bd-12")
        assert not any(c[0] == "create" for c in cli.calls)

    def test_below_threshold(self):
        cli = FakeBeads()
        [result] = execute_issue_action([_pattern(severity=Severity.LOW)], IssueActionConfig(), cli=cli)
        assert result.action == "skipped"
        assert result.reason == "Below threshold (severity=low, frequency=4)"
        assert cli.calls == []

    def test_cli_unavailable_skips_everything(self):
        results = execute_issue_action(
            [_pattern("a"), _pattern("b")], IssueActionConfig(), cli=FakeBeads(available=False)
        )
        assert [(r.pattern_id, r.action, r.reason) for r in results] == [
            ("a", "skipped", "bd CLI not available"),
            ("b", "skipped", "bd CLI not available"),
        ]

    def test_command_failure_skips_only_that_pattern(self):
        cli = FakeBeads(fail_on="create")
        results = execute_issue_action([_pattern("a"), _pattern("b")], IssueActionConfig(), cli=cli)
        assert [r.action for r in results] == ["skipped", "skipped"]
        assert results[0].reason.startswith("Error: bd create")

    def test_disabled(self):
        assert execute_issue_action([_pattern()], IssueActionConfig(enabled=False), cli=FakeBeads()) == []

    def test_to_dict_drops_none(self):
        cli = FakeBeads()
        [result] = execute_issue_action([_pattern()], IssueActionConfig(), cli=cli)
        assert result.to_dict() == {"pattern_id": "pat-1", "action": "created", "issue_title": TITLE}


class TestBeadsCli:
    def test_missing_binary_is_unavailable(self):
        assert BeadsCli(binary="definitely-not-a-real-bd-binary").is_available() is False

    def test_commands(self, monkeypatch):
        seen = []

        def fake_run(args, timeout, cwd=None):
            seen.append((args, timeout))
            return ""

        monkeypatch.setattr("session_signals.actions.issues.run_command", fake_run)
        cli = BeadsCli()
        cli.search("build fails")
        cli.add_comment("bd-1", "text")
        assert seen == [
            (["bd", "search", "build fails"], 10.0),
            (["bd", "comments", "add", "bd-1", "text"], 10.0),
        ]

    @pytest.mark.parametrize("severity", list(Severity))
    def test_priority_is_string_arg(self, severity, monkeypatch):
        seen = []
        monkeypatch.setattr(
            "session_signals.actions.issues.run_command",
            lambda args, timeout, cwd=None: seen.append(args) or "",
        )
        BeadsCli().create("t", "bug", map_priority(severity))
        assert seen[0][-1] == str(map_priority(severity))
