"""Configuration for session-signals.

This is the SINGLE SOURCE OF TRUTH for thresholds and action settings. The
config is a JSON file validated into dataclasses at startup; any schema
violation raises ConfigError and is fatal.

Usage:
    from session_signals.config import load_config

    config = load_config()                 # SESSION_SIGNALS_CONFIG or default path
    config = load_config("/path/to.json")  # explicit file

    # Or use environment variables to override at runtime:
    # SESSION_SIGNALS_CONFIG=/path/to/config.json
    # SESSION_SIGNALS_DIR=/path/to/signals
"""

from __future__ import annotations

import copy
import json
import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigError
from .models import HarnessType, Severity

logger = logging.getLogger(__name__)

SUPPORTED_VERSIONS = ("1.0.0",)
_VALID_SEVERITIES = tuple(s.value for s in (Severity.HIGH, Severity.MEDIUM, Severity.LOW))

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "session-signals" / "config.json"

DEFAULT_CONFIG: dict[str, Any] = {
    "version": "1.0.0",
    "tagger": {
        "rephrase_threshold": 3,
        "rephrase_similarity": 0.6,
        "tool_failure_cascade_min": 3,
        "context_churn_threshold": 2,
        "abandon_window_seconds": 120,
        "stall_threshold_seconds": 60,
        "retry_loop_min": 3,
        "retry_similarity": 0.7,
    },
    "analyzer": {
        "model": "llama3.2",
        "ollama_url": "http://localhost:11434",
        "lookback_days": 7,
        "min_session_signals": 1,
        "timeout_seconds": 30,
        "max_retries": 3,
    },
    "actions": {
        "beads": {
            "enabled": True,
            "min_severity": "medium",
            "min_frequency": 2,
            "title_prefix": "[signals]",
        },
        "digest": {
            "enabled": True,
            "output_dir": "~/.claude/history/signals/digests",
        },
        "autofix": {
            "enabled": False,
            "min_severity": "high",
            "min_frequency": 3,
            "branch_prefix": "signals/fix-",
            "branch_ttl_days": 14,
            "allowed_tools": ["Edit", "Write", "Read"],
            "max_per_run": 3,
            "agent_timeout_seconds": 300,
        },
    },
    "harnesses": {
        "claude_code": {"enabled": True, "events_dir": "~/.claude/history/raw-outputs"},
        "gemini_cli": {"enabled": False, "events_dir": "~/.gemini/tmp"},
        "pi_coding_agent": {"enabled": False, "events_dir": "~/.pi/agent/sessions"},
    },
    "scope_rules": {
        "pai_paths": ["~/.claude"],
        "ignore_paths": ["node_modules", ".git", "dist", "build"],
    },
}


def expand_home(path: str) -> str:
    """Expand a leading ``~/`` (or a bare ``~``) to the user's home directory."""
    if path == "~":
        return str(Path.home())
    if path.startswith("~/"):
        return str(Path.home() / path[2:])
    return path


# =============================================================================
# Config Dataclasses
# =============================================================================


@dataclass
class TaggerConfig:
    """Detector thresholds.

    Attributes:
        rephrase_threshold: Adjacent similar prompt pairs needed to fire.
        rephrase_similarity: Levenshtein ratio (0, 1) at which two prompts count as a rephrase.
        tool_failure_cascade_min: Longest consecutive failure run needed to fire.
        context_churn_threshold: Compaction events needed to fire.
        abandon_window_seconds: Trailing window before session end scanned for failures.
        stall_threshold_seconds: Gap between adjacent events that counts as a stall.
        retry_loop_min: Longest run of near-identical tool calls needed to fire.
        retry_similarity: Levenshtein ratio (0, 1) between serialized tool inputs.
    """

    rephrase_threshold: float = 3
    rephrase_similarity: float = 0.6
    tool_failure_cascade_min: float = 3
    context_churn_threshold: float = 2
    abandon_window_seconds: float = 120
    stall_threshold_seconds: float = 60
    retry_loop_min: float = 3
    retry_similarity: float = 0.7


@dataclass
class AnalyzerConfig:
    model: str = "llama3.2"
    ollama_url: str = "http://localhost:11434"
    lookback_days: int = 7
    min_session_signals: int = 1
    timeout_seconds: float = 30
    max_retries: int = 3


@dataclass
class IssueActionConfig:
    """Issue filing (``bd``) settings. Stored under ``actions.beads``."""

    enabled: bool = True
    min_severity: Severity = Severity.MEDIUM
    min_frequency: int = 2
    title_prefix: str = "[signals]"


@dataclass
class DigestActionConfig:
    enabled: bool = True
    output_dir: str = "~/.claude/history/signals/digests"


@dataclass
class AutofixActionConfig:
    enabled: bool = False
    min_severity: Severity = Severity.HIGH
    min_frequency: int = 3
    branch_prefix: str = "signals/fix-"
    branch_ttl_days: float = 14
    allowed_tools: list[str] = field(default_factory=lambda: ["Edit", "Write", "Read"])
    max_per_run: int = 3
    agent_timeout_seconds: float = 300


@dataclass
class ActionsConfig:
    beads: IssueActionConfig = field(default_factory=IssueActionConfig)
    digest: DigestActionConfig = field(default_factory=DigestActionConfig)
    autofix: AutofixActionConfig = field(default_factory=AutofixActionConfig)


@dataclass
class HarnessConfig:
    enabled: bool
    events_dir: str

    @property
    def resolved_events_dir(self) -> Path:
        return Path(expand_home(self.events_dir))


@dataclass
class ScopeRulesConfig:
    pai_paths: list[str] = field(default_factory=lambda: ["~/.claude"])
    ignore_paths: list[str] = field(default_factory=list)


@dataclass
class Config:
    """Validated top-level configuration."""

    version: str
    tagger: TaggerConfig
    analyzer: AnalyzerConfig
    actions: ActionsConfig
    harnesses: dict[HarnessType, HarnessConfig]  # Insertion order is significant
    scope_rules: ScopeRulesConfig

    def enabled_harnesses(self) -> list[HarnessType]:
        return [h for h, hc in self.harnesses.items() if hc.enabled]


# =============================================================================
# Validation
# =============================================================================


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _require_object(value: Any, path: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigError(f"config.{path} must be an object" if path else "config must be an object")
    return value


def _where(path: str, key: str) -> str:
    return f"config.{path}.{key}" if path else f"config.{key}"


def _string(obj: dict[str, Any], key: str, path: str) -> str:
    if not isinstance(obj.get(key), str):
        raise ConfigError(f"{_where(path, key)} must be a string")
    return obj[key]


def _boolean(obj: dict[str, Any], key: str, path: str) -> bool:
    if not isinstance(obj.get(key), bool):
        raise ConfigError(f"{_where(path, key)} must be a boolean")
    return obj[key]


def _number(obj: dict[str, Any], key: str, path: str) -> float:
    if not _is_number(obj.get(key)):
        raise ConfigError(f"{_where(path, key)} must be a number")
    return obj[key]


def _non_negative(obj: dict[str, Any], key: str, path: str) -> float:
    value = _number(obj, key, path)
    if value < 0:
        raise ConfigError(f"{_where(path, key)} must be non-negative")
    return value


def _positive(obj: dict[str, Any], key: str, path: str) -> float:
    value = _number(obj, key, path)
    if value <= 0:
        raise ConfigError(f"{_where(path, key)} must be positive")
    return value


def _unit_interval(obj: dict[str, Any], key: str, path: str) -> float:
    value = _number(obj, key, path)
    if not 0 < value < 1:
        raise ConfigError(f"{_where(path, key)} must be between 0 and 1 exclusive")
    return value


def _severity(obj: dict[str, Any], key: str, path: str) -> Severity:
    value = obj.get(key)
    if value not in _VALID_SEVERITIES:
        raise ConfigError(f"{_where(path, key)} must be one of: {', '.join(_VALID_SEVERITIES)}")
    return Severity(value)


def _string_list(obj: dict[str, Any], key: str, path: str) -> list[str]:
    value = obj.get(key)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{_where(path, key)} must be a string array")
    return list(value)


def _optional(obj: dict[str, Any], key: str, path: str, check, default):
    if key not in obj:
        return default
    return check(obj, key, path)


def _warn_extraneous(obj: dict[str, Any], expected: Iterable[str], path: str) -> None:
    allowed = set(expected)
    for key in obj:
        if key not in allowed:
            logger.warning('config warning: unexpected key "%s" in %s', key, path or "root")


def _parse_tagger(raw: Any) -> TaggerConfig:
    t = _require_object(raw, "tagger")
    _warn_extraneous(t, TaggerConfig.__dataclass_fields__, "tagger")
    return TaggerConfig(
        rephrase_threshold=_non_negative(t, "rephrase_threshold", "tagger"),
        rephrase_similarity=_unit_interval(t, "rephrase_similarity", "tagger"),
        tool_failure_cascade_min=_non_negative(t, "tool_failure_cascade_min", "tagger"),
        context_churn_threshold=_non_negative(t, "context_churn_threshold", "tagger"),
        abandon_window_seconds=_positive(t, "abandon_window_seconds", "tagger"),
        stall_threshold_seconds=_positive(t, "stall_threshold_seconds", "tagger"),
        retry_loop_min=_non_negative(t, "retry_loop_min", "tagger"),
        retry_similarity=_unit_interval(t, "retry_similarity", "tagger"),
    )


def _parse_analyzer(raw: Any) -> AnalyzerConfig:
    a = _require_object(raw, "analyzer")
    _warn_extraneous(a, AnalyzerConfig.__dataclass_fields__, "analyzer")
    return AnalyzerConfig(
        model=_string(a, "model", "analyzer"),
        ollama_url=_string(a, "ollama_url", "analyzer"),
        lookback_days=int(_positive(a, "lookback_days", "analyzer")),
        min_session_signals=int(_non_negative(a, "min_session_signals", "analyzer")),
        timeout_seconds=_optional(a, "timeout_seconds", "analyzer", _positive, 30),
        max_retries=int(_optional(a, "max_retries", "analyzer", _positive, 3)),
    )


def _parse_actions(raw: Any) -> ActionsConfig:
    a = _require_object(raw, "actions")
    _warn_extraneous(a, ActionsConfig.__dataclass_fields__, "actions")

    path = "actions.beads"
    beads = _require_object(a.get("beads"), path)
    _warn_extraneous(beads, IssueActionConfig.__dataclass_fields__, path)
    issue_config = IssueActionConfig(
        enabled=_boolean(beads, "enabled", path),
        min_severity=_severity(beads, "min_severity", path),
        min_frequency=_non_negative(beads, "min_frequency", path),
        title_prefix=_string(beads, "title_prefix", path),
    )

    path = "actions.digest"
    digest = _require_object(a.get("digest"), path)
    _warn_extraneous(digest, DigestActionConfig.__dataclass_fields__, path)
    digest_config = DigestActionConfig(
        enabled=_boolean(digest, "enabled", path),
        output_dir=_string(digest, "output_dir", path),
    )

    path = "actions.autofix"
    autofix = _require_object(a.get("autofix"), path)
    _warn_extraneous(autofix, AutofixActionConfig.__dataclass_fields__, path)
    autofix_config = AutofixActionConfig(
        enabled=_boolean(autofix, "enabled", path),
        min_severity=_severity(autofix, "min_severity", path),
        min_frequency=_non_negative(autofix, "min_frequency", path),
        branch_prefix=_string(autofix, "branch_prefix", path),
        branch_ttl_days=_positive(autofix, "branch_ttl_days", path),
        allowed_tools=_string_list(autofix, "allowed_tools", path),
        max_per_run=int(_optional(autofix, "max_per_run", path, _non_negative, 3)),
        agent_timeout_seconds=_optional(autofix, "agent_timeout_seconds", path, _positive, 300),
    )

    return ActionsConfig(beads=issue_config, digest=digest_config, autofix=autofix_config)


def _parse_harnesses(raw: Any) -> dict[HarnessType, HarnessConfig]:
    h = _require_object(raw, "harnesses")
    harnesses: dict[HarnessType, HarnessConfig] = {}
    for key, entry in h.items():
        path = f"harnesses.{key}"
        try:
            harness = HarnessType(key)
        except ValueError:
            raise ConfigError(
                f"config.{path} is not a known harness "
                f"(expected one of: {', '.join(t.value for t in HarnessType)})"
            ) from None
        entry = _require_object(entry, path)
        _warn_extraneous(entry, ("enabled", "events_dir"), path)
        harnesses[harness] = HarnessConfig(
            enabled=_boolean(entry, "enabled", path),
            events_dir=_string(entry, "events_dir", path),
        )
    return harnesses


def _parse_scope_rules(raw: Any) -> ScopeRulesConfig:
    s = _require_object(raw, "scope_rules")
    _warn_extraneous(s, ScopeRulesConfig.__dataclass_fields__, "scope_rules")
    return ScopeRulesConfig(
        pai_paths=_string_list(s, "pai_paths", "scope_rules"),
        ignore_paths=_string_list(s, "ignore_paths", "scope_rules"),
    )


def validate_config(raw: Any) -> Config:
    """Validate a parsed JSON document into a Config.

    Raises:
        ConfigError: On the first schema violation found.
    """
    obj = _require_object(raw, "")
    _warn_extraneous(obj, Config.__dataclass_fields__, "")
    version = _string(obj, "version", "")
    if version not in SUPPORTED_VERSIONS:
        raise ConfigError(
            f'config version "{version}" is not supported '
            f"(expected one of: {', '.join(SUPPORTED_VERSIONS)})"
        )
    return Config(
        version=version,
        tagger=_parse_tagger(obj.get("tagger")),
        analyzer=_parse_analyzer(obj.get("analyzer")),
        actions=_parse_actions(obj.get("actions")),
        harnesses=_parse_harnesses(obj.get("harnesses")),
        scope_rules=_parse_scope_rules(obj.get("scope_rules")),
    )


def default_config() -> Config:
    """The built-in defaults, validated like any other config."""
    return validate_config(copy.deepcopy(DEFAULT_CONFIG))


def resolve_config_path(path: str | Path | None = None) -> Path | None:
    """Explicit path → SESSION_SIGNALS_CONFIG → default path (if it exists)."""
    if path is not None:
        return Path(path)
    env_path = os.environ.get("SESSION_SIGNALS_CONFIG")
    if env_path:
        return Path(expand_home(env_path))
    if DEFAULT_CONFIG_PATH.exists():
        return DEFAULT_CONFIG_PATH
    return None


def load_config(path: str | Path | None = None) -> Config:
    """Load and validate configuration.

    Falls back to the built-in defaults only when no path is given and no
    config file exists. An explicitly named file that is missing is an error.

    Raises:
        ConfigError: If the file cannot be read, is not JSON, or fails validation.
    """
    config_path = resolve_config_path(path)
    if config_path is None:
        return default_config()

    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read config file {config_path}: {e}") from e
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"config file {config_path} is not valid JSON: {e}") from e
    return validate_config(parsed)
