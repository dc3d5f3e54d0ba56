"""Daily Markdown digest of signals, patterns and action outcomes.

Rendering is pure (data → markdown); only ``execute_digest_action`` touches
the filesystem. The day's file is fully regenerated on every run.
"""

from __future__ import annotations

import logging
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path

from ..analyzer import AnalysisResult, date_range
from ..config import Config, expand_home
from ..models import PatternTrend, Severity, SignalRecord
from .autofix import AutofixResult
from .issues import IssueActionResult

logger = logging.getLogger(__name__)

_SEVERITY_MARKER = {Severity.HIGH: "🔴", Severity.MEDIUM: "🟡", Severity.LOW: "🟢"}
_TREND_ARROW = {
    PatternTrend.INCREASING: "↗️",
    PatternTrend.STABLE: "→",
    PatternTrend.DECREASING: "↘️",
    PatternTrend.NEW: "🆕",
}


@dataclass
class DigestInput:
    config: Config
    analysis_results: list[AnalysisResult] = field(default_factory=list)
    signal_records: list[SignalRecord] = field(default_factory=list)
    issue_results: list[IssueActionResult] = field(default_factory=list)
    autofix_results: list[AutofixResult] = field(default_factory=list)


@dataclass
class DigestResult:
    path: Path
    markdown: str


def _severity_counts(records: Sequence[SignalRecord]) -> dict[Severity, int]:
    counts = {s: 0 for s in Severity}
    for record in records:
        for signal in record.signals:
            counts[signal.severity] += 1
    return counts


# =============================================================================
# Sections
# =============================================================================


def _overview(data: DigestInput) -> list[str]:
    records = data.signal_records
    counts = _severity_counts(records)
    total_signals = sum(len(r.signals) for r in records)
    total_patterns = sum(len(r.analysis.patterns) for r in data.analysis_results)
    attempts = sum(1 for r in data.autofix_results if r.action != "skipped")
    return [
        "## Overview",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Sessions analyzed | {len({r.session_id for r in records})} |",
        f"| Total signals | {total_signals} |",
        f"| High severity | {counts[Severity.HIGH]} |",
        f"| Medium severity | {counts[Severity.MEDIUM]} |",
        f"| Low severity | {counts[Severity.LOW]} |",
        f"| Patterns identified | {total_patterns} |",
        f"| Auto-fix attempts | {attempts} |",
        "",
    ]


def _friction_patterns(data: DigestInput) -> list[str]:
    patterns = [p for r in data.analysis_results for p in r.analysis.patterns]
    if not patterns:
        return ["## Friction Patterns", "", "No friction patterns detected.", ""]

    issues = {r.pattern_id: r for r in data.issue_results}
    lines = ["## Friction Patterns", ""]
    for pattern in patterns:
        lines += [
            f"### {_SEVERITY_MARKER[pattern.severity]} {pattern.description}",
            "",
            f"- **Severity:** {pattern.severity.value}",
            f"- **Frequency:** {pattern.frequency} sessions",
            f"- **Trend:** {_TREND_ARROW[pattern.trend]} {pattern.trend.value}",
            f"- **Scope:** {pattern.scope}",
        ]
        if pattern.root_cause_hypothesis:
            lines.append(f"- **Root cause:** {pattern.root_cause_hypothesis}")
        if pattern.suggested_fix:
            lines.append(f"- **Suggested fix:** {pattern.suggested_fix}")
        if pattern.auto_fixable:
            lines.append("- **Auto-fixable:** Yes")
        issue = issues.get(pattern.id)
        if issue is not None and issue.action in ("created", "updated"):
            lines.append(f"- **Issue:** {issue.issue_title or pattern.id} ({issue.action})")
        if pattern.affected_files:
            lines.append(f"- **Affected files:** {', '.join(pattern.affected_files)}")
        lines.append("")
    return lines


def _delight_patterns(data: DigestInput) -> list[str]:
    delight = [d for r in data.analysis_results for d in r.analysis.delight_patterns]
    if not delight:
        return ["## Delight Patterns", "", "No delight patterns identified.", ""]
    lines = ["## Delight Patterns", ""]
    lines += [f"- **{d.description}**: {d.insight}" for d in delight]
    lines.append("")
    return lines


def _trend_table(records: Sequence[SignalRecord], days: Sequence[str]) -> list[str]:
    lines = [
        f"## {len(days)}-Day Trend Table",
        "",
        "| Date | Sessions | Signals | High | Medium | Low |",
        "|------|----------|---------|------|--------|-----|",
    ]
    for day in days:
        day_records = [r for r in records if r.date == day]
        counts = _severity_counts(day_records)
        lines.append(
            f"| {day} | {len({r.session_id for r in day_records})} "
            f"| {sum(len(r.signals) for r in day_records)} "
            f"| {counts[Severity.HIGH]} | {counts[Severity.MEDIUM]} | {counts[Severity.LOW]} |"
        )
    if not records:
        lines += ["", "No signal records in this window."]
    lines.append("")
    return lines


def _configuration(config: Config) -> list[str]:
    actions = config.actions
    return [
        "## Configuration",
        "",
        "| Setting | Value |",
        "|---------|-------|",
        f"| Model | {config.analyzer.model} |",
        f"| Lookback days | {config.analyzer.lookback_days} |",
        f"| Min session signals | {config.analyzer.min_session_signals} |",
        f"| Issue filing enabled | {actions.beads.enabled} |",
        f"| Issue min severity | {actions.beads.min_severity.value} |",
        f"| Auto-fix enabled | {actions.autofix.enabled} |",
        f"| Auto-fix min severity | {actions.autofix.min_severity.value} |",
        f"| Harnesses enabled | {', '.join(h.value for h in config.enabled_harnesses()) or 'none'} |",
        "",
    ]


def _scope_breakdown(records: Sequence[SignalRecord]) -> list[str]:
    if not records:
        return ["## Scope Breakdown", "", "No data available.", ""]

    sessions: dict[str, set[str]] = {}
    signals: dict[str, int] = {}
    for record in records:
        sessions.setdefault(record.scope, set()).add(record.session_id)
        signals[record.scope] = signals.get(record.scope, 0) + len(record.signals)

    lines = [
        "## Scope Breakdown",
        "",
        "| Scope | Sessions | Signals |",
        "|-------|----------|---------|",
    ]
    # Stable sort keeps first-seen order among equal volumes
    for scope in sorted(signals, key=lambda s: signals[s], reverse=True):
        lines.append(f"| {scope} | {len(sessions[scope])} | {signals[scope]} |")
    lines.append("")
    return lines


def _actions(data: DigestInput) -> list[str]:
    lines = ["## Actions", ""]

    skipped = [r for r in data.analysis_results if r.skipped]
    if skipped:
        lines.append("**Skipped scopes:**")
        lines.append("")
        lines += [f"- {r.scope}: {r.reason or 'skipped'}" for r in skipped]
    else:
        lines.append("No scopes were skipped.")
    lines.append("")

    if data.autofix_results:
        lines.append("**Auto-fix:**")
        lines.append("")
        for result in data.autofix_results:
            detail = f" on `{result.branch}`" if result.branch else ""
            reason = f" ({result.reason})" if result.reason else ""
            lines.append(f"- {result.pattern_id}: {result.action}{detail}{reason}")
    else:
        lines.append("No auto-fix attempts.")
    lines.append("")
    return lines


# =============================================================================
# Public API
# =============================================================================


def generate_digest_markdown(data: DigestInput, day: date | None = None) -> str:
    ref = day or datetime.now(timezone.utc).date()
    days = date_range(data.config.analyzer.lookback_days, ref)

    lines = [f"# Session Signals Digest: {ref.isoformat()}", ""]
    summaries = [r for r in data.analysis_results if r.analysis.summary]
    if summaries:
        for result in summaries:
            lines.append(f"> **{result.scope}:** {result.analysis.summary}")
            lines.append(">")
        lines.pop()
    else:
        lines.append("_No analysis summary available._")
    lines.append("")

    lines += _overview(data)
    lines += _friction_patterns(data)
    lines += _delight_patterns(data)
    lines += _trend_table(data.signal_records, days)
    lines += _configuration(data.config)
    lines += _scope_breakdown(data.signal_records)
    lines += _actions(data)
    return "\n".join(lines)


def _write_atomic(path: Path, text: str) -> None:
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".digest_", suffix=".tmp")
    try:
        with open(fd, "w", encoding="utf-8") as f:
            f.write(text)
        Path(tmp_path).replace(path)
    except Exception:
        try:
            Path(tmp_path).unlink()
        except OSError:
            pass
        raise


def execute_digest_action(data: DigestInput, day: date | None = None) -> DigestResult | None:
    """Write ``<output_dir>/<date>_digest.md``; None when the digest is disabled."""
    digest_config = data.config.actions.digest
    if not digest_config.enabled:
        return None

    ref = day or datetime.now(timezone.utc).date()
    markdown = generate_digest_markdown(data, ref)
    output_dir = Path(expand_home(digest_config.output_dir))
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / f"{ref.isoformat()}_digest.md"
    _write_atomic(path, markdown)
    logger.info("Wrote digest to %s", path)
    return DigestResult(path=path, markdown=markdown)
