"""Pattern analyzer — cross-session aggregation via a local LLM.

Batch job over a lookback window of day files:
    load records → group by scope → per-day histogram → trend labels → LLM → patterns

The trend labels are computed here, deterministically, and handed to the
model to use as-is. A scope is skipped (never an error) when it has no
qualifying sessions, when Ollama is down, or when the model's output fails
schema validation.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any

from .config import Config
from .errors import SchemaError
from .llm import OllamaClient, OllamaError
from .models import DelightPattern, Pattern, PatternAnalysis, PatternTrend, SignalRecord
from .storage import SignalStore

logger = logging.getLogger(__name__)

# Second-half / first-half ratios that decide increasing vs decreasing
_INCREASING_RATIO = 1.2
_DECREASING_RATIO = 0.8
_MIN_ACTIVE_DAYS = 3


def date_range(lookback_days: int, reference: date | None = None) -> list[str]:
    """``lookback_days`` consecutive YYYY-MM-DD strings ending at ``reference``, ascending."""
    ref = reference or datetime.now(timezone.utc).date()
    return [(ref - timedelta(days=i)).isoformat() for i in range(lookback_days - 1, -1, -1)]


def group_by_scope(records: Sequence[SignalRecord]) -> dict[str, list[SignalRecord]]:
    """Group records by scope, keeping first-seen scope order."""
    groups: dict[str, list[SignalRecord]] = {}
    for record in records:
        groups.setdefault(record.scope, []).append(record)
    return groups


# =============================================================================
# Trends
# =============================================================================


@dataclass
class DailyTrend:
    date: str
    counts: dict[str, int] = field(default_factory=dict)  # signal type → summed count


def compute_daily_trends(records: Sequence[SignalRecord], days: Sequence[str]) -> list[DailyTrend]:
    """Sum ``signal.count`` per signal type per day. Records outside ``days`` are ignored."""
    by_day = {day: DailyTrend(date=day) for day in days}
    for record in records:
        trend = by_day.get(record.date)
        if trend is None:
            continue
        for signal in record.signals:
            key = signal.type.value
            trend.counts[key] = trend.counts.get(key, 0) + signal.count
    return [by_day[day] for day in days]


def classify_trend(signal_type: str, trends: Sequence[DailyTrend]) -> PatternTrend:
    """Classify one signal type's trajectory across the window.

    Too little history is always ``new``: no activity, activity only on the
    most recent day, or fewer than three active days. Otherwise the second
    half of the window is compared to the first.
    """
    counts = [t.counts.get(signal_type, 0) for t in trends]
    active = [i for i, c in enumerate(counts) if c > 0]

    if not active:
        return PatternTrend.NEW
    if active == [len(counts) - 1]:
        return PatternTrend.NEW
    if len(active) < _MIN_ACTIVE_DAYS:
        return PatternTrend.NEW

    mid = len(counts) // 2
    first_half = sum(counts[:mid])
    second_half = sum(counts[mid:])
    if second_half > first_half * _INCREASING_RATIO:
        return PatternTrend.INCREASING
    if second_half < first_half * _DECREASING_RATIO:
        return PatternTrend.DECREASING
    return PatternTrend.STABLE


# =============================================================================
# Prompt
# =============================================================================

_SCHEMA_TEMPLATE = """{{
  "patterns": [
    {{
      "id": "pat-YYYYMMDD-NNN",
      "type": "recurring_friction" | "new_friction" | "regression",
      "scope": "{scope}",
      "description": "...",
      "severity": "high" | "medium" | "low",
      "frequency": <number of sessions affected>,
      "trend": "increasing" | "stable" | "decreasing" | "new",
      "root_cause_hypothesis": "...",
      "suggested_fix": "...",
      "auto_fixable": true | false,
      "fix_scope": "pai" | "project",
      "affected_files": ["..."]
    }}
  ],
  "delight_patterns": [
    {{
      "description": "...",
      "insight": "..."
    }}
  ],
  "summary": "Brief overall summary of friction patterns"
}}"""


def trend_classifications(
    records: Sequence[SignalRecord], trends: Sequence[DailyTrend]
) -> dict[str, PatternTrend]:
    """Trend label for every signal type present in ``records``, in first-seen order."""
    labels: dict[str, PatternTrend] = {}
    for record in records:
        for signal in record.signals:
            key = signal.type.value
            if key not in labels:
                labels[key] = classify_trend(key, trends)
    return labels


def build_prompt(scope: str, records: Sequence[SignalRecord], trends: Sequence[DailyTrend]) -> str:
    summary = [
        {
            "session_id": r.session_id,
            "type": s.type.value,
            "severity": s.severity.value,
            "count": s.count,
            "context": s.context,
        }
        for r in records
        for s in r.signals
    ]
    trend_lines = [
        f"{t.date}: "
        + (", ".join(f"{k}={v}" for k, v in t.counts.items()) or "(none)")
        for t in trends
    ]
    labels = {k: v.value for k, v in trend_classifications(records, trends).items()}

    return f"""You are a coding agent friction analyst. Analyze these signals from scope "{scope}" and produce a structured JSON response.

## Signals ({len(summary)} total from {len(records)} sessions)

{json.dumps(summary, indent=2)}

## Daily Trend Table (last {len(trends)} days)

{chr(10).join(trend_lines)}

## Pre-computed Trend Classifications

{json.dumps(labels, indent=2)}

## Instructions

Produce a JSON object matching this exact schema:

{_SCHEMA_TEMPLATE.format(scope=scope)}

Rules:
- Group related signals into patterns (e.g. repeated tool_failure_cascade on the same tool)
- Use the pre-computed trend classifications as given; do not recompute them
- Set auto_fixable=true only for patterns that could be fixed by modifying config or CLAUDE.md
- Include delight_patterns for things that work well (low failure rates, fast sessions)
- Keep the summary under 200 words
- Return ONLY valid JSON, no markdown fences or extra text"""


# =============================================================================
# Analysis
# =============================================================================


@dataclass
class AnalysisResult:
    scope: str
    analysis: PatternAnalysis = field(default_factory=PatternAnalysis)
    skipped: bool = False
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "scope": self.scope,
            "skipped": self.skipped,
            "patterns_count": len(self.analysis.patterns),
            "analysis": self.analysis.to_dict(),
        }
        if self.reason:
            d["reason"] = self.reason
        return d


@dataclass
class AnalysisRun:
    """Everything one analyzer run produced, for the action engine."""

    days: list[str]
    records: list[SignalRecord]
    results: list[AnalysisResult]

    @property
    def patterns(self) -> list[Pattern]:
        return [p for r in self.results for p in r.analysis.patterns]

    @property
    def delight_patterns(self) -> list[DelightPattern]:
        return [d for r in self.results for d in r.analysis.delight_patterns]


def _skip(scope: str, reason: str) -> AnalysisResult:
    return AnalysisResult(scope=scope, skipped=True, reason=reason)


def analyze_scope(
    scope: str,
    records: Sequence[SignalRecord],
    trends: Sequence[DailyTrend],
    client: OllamaClient,
    config: Config,
) -> AnalysisResult:
    """Analyze one scope. Never raises; failures become skipped results."""
    qualifying = [r for r in records if len(r.signals) >= config.analyzer.min_session_signals]
    if not qualifying:
        return _skip(scope, "no sessions meet the minimum signal count")

    if not client.is_available():
        logger.warning("Ollama is not available, skipping pattern analysis for %s", scope)
        return _skip(scope, "Ollama is not available")

    prompt = build_prompt(scope, qualifying, trends)
    try:
        payload = client.generate_json(prompt, model=config.analyzer.model)
        analysis = PatternAnalysis.from_dict(payload)
    except OllamaError as e:
        logger.warning('Pattern analysis failed for scope "%s": %s', scope, e)
        return _skip(scope, f"analysis failed: {e}")
    except SchemaError as e:
        logger.warning('Ollama returned an invalid analysis for scope "%s": %s', scope, e)
        return _skip(scope, f"invalid analysis: {e}")

    return AnalysisResult(scope=scope, analysis=analysis)


def run_analysis(
    config: Config,
    client: OllamaClient,
    store: SignalStore,
    reference: date | None = None,
) -> AnalysisRun:
    """Load the lookback window and analyze every scope sequentially."""
    days = date_range(config.analyzer.lookback_days, reference)
    records = store.load(days)
    logger.info("Loaded %d signal records across %d days", len(records), len(days))

    results: list[AnalysisResult] = []
    for scope, scope_records in group_by_scope(records).items():
        trends = compute_daily_trends(scope_records, days)
        results.append(analyze_scope(scope, scope_records, trends, client, config))

    return AnalysisRun(days=days, records=records, results=results)
