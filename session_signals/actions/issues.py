"""Issue filing through the ``bd`` issue tracker CLI.

Each pattern that clears the severity/frequency gate becomes one issue.
Before creating, existing issues are searched and matched by exact title so
a recurring pattern gets a trend comment instead of a duplicate issue.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from ..config import IssueActionConfig
from ..errors import CommandError
from ..models import Pattern, PatternTrend, Severity, severity_rank
from .process import run_command

logger = logging.getLogger(__name__)

BD_TIMEOUT_SECONDS = 10.0
ISSUE_TYPE = "bug"

# Status words `bd search` may print between the id and the title
_STATUS_WORDS = frozenset({"open", "closed", "in_progress", "blocked", "deferred"})
_CLOSED = "closed"

_PRIORITY = {Severity.HIGH: 1, Severity.MEDIUM: 2, Severity.LOW: 3}


class BeadsCli:
    """Thin wrapper over the ``bd`` binary."""

    def __init__(self, binary: str = "bd", timeout: float = BD_TIMEOUT_SECONDS):
        self.binary = binary
        self.timeout = timeout

    def _run(self, *args: str) -> str:
        return run_command([self.binary, *args], timeout=self.timeout)

    def is_available(self) -> bool:
        try:
            self._run("--version")
        except CommandError:
            return False
        return True

    def search(self, query: str) -> str:
        return self._run("search", query)

    def create(self, title: str, issue_type: str, priority: int) -> str:
        return self._run(
            "create", "--title", title, "--type", issue_type, "--priority", str(priority)
        )

    def add_comment(self, issue_id: str, text: str) -> str:
        return self._run("comments", "add", issue_id, text)


@dataclass
class IssueActionResult:
    pattern_id: str
    action: str  # "created" | "updated" | "skipped"
    issue_title: str | None = None
    issue_id: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


# =============================================================================
# Helpers
# =============================================================================


def meets_threshold(pattern: Pattern, config: IssueActionConfig) -> bool:
    return (
        severity_rank(pattern.severity) >= severity_rank(config.min_severity)
        and pattern.frequency >= config.min_frequency
    )


def map_priority(severity: Severity) -> int:
    """bd priority: high → 1, medium → 2, low → 3."""
    return _PRIORITY[Severity(severity)]


def build_issue_title(pattern: Pattern, prefix: str) -> str:
    return f"{prefix} {pattern.description}"


def find_existing_issue(search_output: str, title: str) -> str | None:
    """Return the id of an open issue whose title is exactly ``title``.

    ``bd search`` prints one issue per line: the id, an optional status word
    (``open`` or ``[open]``), then the title. Closed issues never match, and a
    title that merely contains ``title`` is not a match.
    """
    wanted = title.strip()
    for line in search_output.splitlines():
        parts = line.strip().split(None, 1)
        if len(parts) < 2:
            continue
        issue_id, rest = parts

        status_parts = rest.split(None, 1)
        status = status_parts[0].strip("[]").lower()
        if status in _STATUS_WORDS and len(status_parts) > 1 and status_parts[1].strip() == wanted:
            if status == _CLOSED:
                continue
            return issue_id

        if rest.strip() == wanted:
            return issue_id
    return None


def _today(today: date | None) -> str:
    return (today or datetime.now(timezone.utc).date()).isoformat()


def build_update_comment(pattern: Pattern, today: date | None = None) -> str:
    lines = [
        f"**Signal update** ({_today(today)})",
        "",
        f"- **Severity:** {pattern.severity.value}",
        f"- **Frequency:** {pattern.frequency} sessions",
        f"- **Trend:** {pattern.trend.value}",
    ]
    if pattern.root_cause_hypothesis:
        lines.append(f"- **Root cause hypothesis:** {pattern.root_cause_hypothesis}")
    if pattern.suggested_fix:
        lines.append(f"- **Suggested fix:** {pattern.suggested_fix}")
    return "\n".join(lines)


def build_trend_comment(pattern: Pattern, today: date | None = None) -> str:
    if pattern.trend == PatternTrend.DECREASING:
        return (
            f"**Trend improving** ({_today(today)}): This pattern is decreasing in frequency "
            f"({pattern.frequency} sessions). May resolve on its own."
        )
    return build_update_comment(pattern, today)


# =============================================================================
# Action
# =============================================================================


def execute_issue_action(
    patterns: Sequence[Pattern],
    config: IssueActionConfig,
    cli: BeadsCli | None = None,
    today: date | None = None,
) -> list[IssueActionResult]:
    """File or update one issue per qualifying pattern.

    A missing ``bd`` binary skips every pattern; a failure on one pattern
    skips only that pattern.
    """
    if not config.enabled:
        return []

    cli = cli or BeadsCli()
    if not cli.is_available():
        logger.warning("issue action: bd CLI not available, skipping")
        return [
            IssueActionResult(pattern_id=p.id, action="skipped", reason="bd CLI not available")
            for p in patterns
        ]

    results: list[IssueActionResult] = []
    for pattern in patterns:
        if not meets_threshold(pattern, config):
            results.append(
                IssueActionResult(
                    pattern_id=pattern.id,
                    action="skipped",
                    reason=(
                        f"Below threshold (severity={pattern.severity.value}, "
                        f"frequency={pattern.frequency})"
                    ),
                )
            )
            continue

        title = build_issue_title(pattern, config.title_prefix)
        try:
            existing_id = find_existing_issue(cli.search(pattern.description), title)
            if existing_id:
                cli.add_comment(existing_id, build_trend_comment(pattern, today))
                results.append(
                    IssueActionResult(
                        pattern_id=pattern.id,
                        action="updated",
                        issue_title=title,
                        issue_id=existing_id,
                    )
                )
            else:
                cli.create(title, ISSUE_TYPE, map_priority(pattern.severity))
                results.append(
                    IssueActionResult(pattern_id=pattern.id, action="created", issue_title=title)
                )
        except CommandError as e:
            logger.warning("issue action: failed for pattern %s: %s", pattern.id, e)
            results.append(
                IssueActionResult(pattern_id=pattern.id, action="skipped", reason=f"Error: {e}")
            )
    return results
