"""Data models for session-signals — harness-agnostic abstractions.

These models normalize session data from ANY coding-agent harness (Claude Code,
Gemini CLI, Pi coding agent) into a common event stream that detectors can work
with, plus the records and patterns that flow downstream of them.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import SchemaError

# =============================================================================
# Enumerations
# =============================================================================


class HarnessType(str, Enum):
    """One tag per harness adapter."""

    CLAUDE_CODE = "claude_code"
    GEMINI_CLI = "gemini_cli"
    PI_CODING_AGENT = "pi_coding_agent"


class EventType(str, Enum):
    """Normalized event types shared by every adapter."""

    SESSION_START = "session_start"
    SESSION_END = "session_end"
    USER_PROMPT = "user_prompt"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    COMPACTION = "compaction"
    PERMISSION_RESULT = "permission_result"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


_SEVERITY_RANK = {Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3}


def severity_rank(severity: Severity | str) -> int:
    """Numeric rank for severity comparisons (low=1 … high=3)."""
    return _SEVERITY_RANK[Severity(severity)]


class FrictionSignalType(str, Enum):
    REPHRASE_STORM = "rephrase_storm"
    TOOL_FAILURE_CASCADE = "tool_failure_cascade"
    CONTEXT_CHURN = "context_churn"
    PERMISSION_FRICTION = "permission_friction"
    ABANDON_SIGNAL = "abandon_signal"
    LONG_STALL = "long_stall"
    RETRY_LOOP = "retry_loop"


class SessionOutcome(str, Enum):
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    ERRORED = "errored"


class PatternType(str, Enum):
    RECURRING_FRICTION = "recurring_friction"
    NEW_FRICTION = "new_friction"
    REGRESSION = "regression"


class PatternTrend(str, Enum):
    INCREASING = "increasing"
    STABLE = "stable"
    DECREASING = "decreasing"
    NEW = "new"


# Scope is either "pai" or "project:<absolute path>"
PAI_SCOPE = "pai"
PROJECT_SCOPE_PREFIX = "project:"


# =============================================================================
# Timestamps
# =============================================================================


def parse_timestamp(value: str) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Returns None when the value cannot be parsed.
    """
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as ISO-8601 UTC with millisecond precision and a Z suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


# =============================================================================
# Normalized Event
# =============================================================================


@dataclass
class ToolResult:
    """Outcome of a single tool invocation."""

    success: bool
    output: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"success": self.success}
        if self.output is not None:
            d["output"] = self.output
        if self.error is not None:
            d["error"] = self.error
        return d


@dataclass
class NormalizedEvent:
    """A single harness-agnostic event — the common currency of the pipeline.

    Adapters produce these, detectors consume them.
    """

    id: str
    timestamp: str  # ISO-8601 UTC; ordering-significant
    harness: HarnessType
    type: EventType
    session_id: str
    cwd: str | None = None
    tool_name: str | None = None  # Canonicalized ("shell_exec", "file_read", ...)
    tool_input: dict[str, Any] | None = None
    tool_result: ToolResult | None = None
    message: str | None = None
    permission_granted: bool | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def parsed_timestamp(self) -> datetime | None:
        return parse_timestamp(self.timestamp)

    @property
    def is_failure(self) -> bool:
        return (
            self.type == EventType.TOOL_RESULT
            and self.tool_result is not None
            and self.tool_result.success is False
        )

    @property
    def is_success(self) -> bool:
        return (
            self.type == EventType.TOOL_RESULT
            and self.tool_result is not None
            and self.tool_result.success is True
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "harness": self.harness.value,
            "type": self.type.value,
            "session_id": self.session_id,
        }
        if self.cwd is not None:
            d["cwd"] = self.cwd
        if self.tool_name is not None:
            d["tool_name"] = self.tool_name
        if self.tool_input is not None:
            d["tool_input"] = self.tool_input
        if self.tool_result is not None:
            d["tool_result"] = self.tool_result.to_dict()
        if self.message is not None:
            d["message"] = self.message
        if self.permission_granted is not None:
            d["permission_granted"] = self.permission_granted
        if self.metadata:
            d["metadata"] = self.metadata
        return d


# =============================================================================
# Friction Signals & Facets
# =============================================================================


def _mapping(value: Any, name: str) -> dict[str, Any]:
    """Return `value` if it is a JSON object, else raise ValueError."""
    if not isinstance(value, dict):
        raise ValueError(f"{name} must be an object, got {type(value).__name__}")
    return value



@dataclass(frozen=True)
class Evidence:
    event_indices: list[int] = field(default_factory=list)
    sample_data: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"event_indices": list(self.event_indices)}
        if self.sample_data is not None:
            d["sample_data"] = self.sample_data
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Evidence:
        data = _mapping(data, "evidence")
        return cls(
            event_indices=[int(i) for i in data.get("event_indices", [])],
            sample_data=data.get("sample_data"),
        )


@dataclass(frozen=True)
class FrictionSignal:
    """One detector's finding that something went wrong in a session.

    Computed once per session, immutable thereafter.
    """

    type: FrictionSignalType
    severity: Severity
    count: int
    context: str  # Human-readable explanation
    evidence: Evidence = field(default_factory=Evidence)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "count": self.count,
            "context": self.context,
            "evidence": self.evidence.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FrictionSignal:
        data = _mapping(data, "signal")
        return cls(
            type=FrictionSignalType(data["type"]),
            severity=Severity(data["severity"]),
            count=int(data["count"]),
            context=str(data.get("context", "")),
            evidence=Evidence.from_dict(data.get("evidence") or {}),
        )


@dataclass
class SessionFacets:
    """Aggregate statistics derived once per session."""

    languages: list[str] = field(default_factory=list)
    tools_used: list[str] = field(default_factory=list)
    tool_failure_rate: float = 0.0  # 0-1
    session_duration_min: float = 0.0
    total_turns: int = 0
    outcome: SessionOutcome = SessionOutcome.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "languages": list(self.languages),
            "tools_used": list(self.tools_used),
            "tool_failure_rate": self.tool_failure_rate,
            "session_duration_min": self.session_duration_min,
            "total_turns": self.total_turns,
            "outcome": self.outcome.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionFacets:
        data = _mapping(data, "facets")
        return cls(
            languages=list(data.get("languages", [])),
            tools_used=list(data.get("tools_used", [])),
            tool_failure_rate=float(data.get("tool_failure_rate", 0.0)),
            session_duration_min=float(data.get("session_duration_min", 0.0)),
            total_turns=int(data.get("total_turns", 0)),
            outcome=SessionOutcome(data.get("outcome", SessionOutcome.COMPLETED.value)),
        )


@dataclass
class SignalRecord:
    """Per-session output of the tagger. Append-only, one JSON line each."""

    session_id: str
    timestamp: str  # When the session was tagged; decides the day partition
    project: str  # cwd of the session
    scope: str  # "pai" or "project:<path>"
    signals: list[FrictionSignal] = field(default_factory=list)
    facets: SessionFacets = field(default_factory=SessionFacets)

    @property
    def date(self) -> str:
        """Calendar day (YYYY-MM-DD) of the record's own timestamp."""
        return self.timestamp[:10]

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "timestamp": self.timestamp,
            "project": self.project,
            "scope": self.scope,
            "signals": [s.to_dict() for s in self.signals],
            "facets": self.facets.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SignalRecord:
        return cls(
            session_id=str(data["session_id"]),
            timestamp=str(data["timestamp"]),
            project=str(data.get("project", "")),
            scope=str(data["scope"]),
            signals=[FrictionSignal.from_dict(s) for s in data.get("signals", [])],
            facets=SessionFacets.from_dict(data.get("facets") or {}),
        )


# =============================================================================
# Pattern Analysis Output
# =============================================================================


@dataclass
class Pattern:
    """An LLM-synthesized, trend-classified generalization within a scope.

    Not persisted — consumed immediately by the action engine.
    """

    id: str
    type: PatternType
    scope: str
    description: str
    severity: Severity
    frequency: int  # Sessions affected
    trend: PatternTrend
    root_cause_hypothesis: str = ""
    suggested_fix: str = ""
    auto_fixable: bool = False
    fix_scope: str = ""
    affected_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "scope": self.scope,
            "description": self.description,
            "severity": self.severity.value,
            "frequency": self.frequency,
            "trend": self.trend.value,
            "root_cause_hypothesis": self.root_cause_hypothesis,
            "suggested_fix": self.suggested_fix,
            "auto_fixable": self.auto_fixable,
            "fix_scope": self.fix_scope,
            "affected_files": list(self.affected_files),
        }

    @classmethod
    def from_dict(cls, data: Any) -> Pattern:
        """Strictly validate and build a Pattern; raises SchemaError."""
        if not isinstance(data, dict):
            raise SchemaError("pattern must be an object")
        for key in ("id", "scope", "description"):
            if not isinstance(data.get(key), str):
                raise SchemaError(f"pattern.{key} must be a string")
        frequency = data.get("frequency")
        if isinstance(frequency, bool) or not isinstance(frequency, (int, float)):
            raise SchemaError("pattern.frequency must be a number")
        if not math.isfinite(frequency):
            raise SchemaError("pattern.frequency must be finite")
        if not isinstance(data.get("auto_fixable"), bool):
            raise SchemaError("pattern.auto_fixable must be a boolean")
        files = data.get("affected_files", [])
        if not isinstance(files, list) or not all(isinstance(f, str) for f in files):
            raise SchemaError("pattern.affected_files must be a string array")
        for key in ("root_cause_hypothesis", "suggested_fix", "fix_scope"):
            if key in data and not isinstance(data[key], str):
                raise SchemaError(f"pattern.{key} must be a string")
        try:
            return cls(
                id=data["id"],
                type=PatternType(data.get("type")),
                scope=data["scope"],
                description=data["description"],
                severity=Severity(data.get("severity")),
                frequency=int(frequency),
                trend=PatternTrend(data.get("trend")),
                root_cause_hypothesis=data.get("root_cause_hypothesis", ""),
                suggested_fix=data.get("suggested_fix", ""),
                auto_fixable=data["auto_fixable"],
                fix_scope=data.get("fix_scope", ""),
                affected_files=list(files),
            )
        except ValueError as e:
            raise SchemaError(f"pattern {data.get('id')!r}: {e}") from e


@dataclass
class DelightPattern:
    """Something that works well and is worth keeping."""

    description: str
    insight: str

    def to_dict(self) -> dict[str, Any]:
        return {"description": self.description, "insight": self.insight}

    @classmethod
    def from_dict(cls, data: Any) -> DelightPattern:
        if not isinstance(data, dict):
            raise SchemaError("delight pattern must be an object")
        if not isinstance(data.get("description"), str) or not isinstance(
            data.get("insight"), str
        ):
            raise SchemaError("delight pattern needs string description and insight")
        return cls(description=data["description"], insight=data["insight"])


@dataclass
class PatternAnalysis:
    """Structured LLM output for one scope."""

    patterns: list[Pattern] = field(default_factory=list)
    delight_patterns: list[DelightPattern] = field(default_factory=list)
    summary: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "patterns": [p.to_dict() for p in self.patterns],
            "delight_patterns": [d.to_dict() for d in self.delight_patterns],
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: Any) -> PatternAnalysis:
        """Validate an LLM payload against the Pattern/DelightPattern schema."""
        if not isinstance(data, dict):
            raise SchemaError("analysis must be a JSON object")
        patterns = data.get("patterns")
        if not isinstance(patterns, list):
            raise SchemaError("analysis.patterns must be an array")
        if not isinstance(data.get("summary"), str):
            raise SchemaError("analysis.summary must be a string")
        delight = data.get("delight_patterns", [])
        if not isinstance(delight, list):
            raise SchemaError("analysis.delight_patterns must be an array")
        return cls(
            patterns=[Pattern.from_dict(p) for p in patterns],
            delight_patterns=[DelightPattern.from_dict(d) for d in delight],
            summary=data["summary"],
        )
