"""Signal tagger — one Signal Record per finished session.

Runs inline with a live coding session (from a session-end hook), so the
single entry point ``run_signal_tagger`` never raises: every failure degrades
to "no record written" and is logged at debug level.

Pipeline:
    hook JSON → detect harness → adapter → events → scope → detectors → store
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from .adapters import ClaudeCodeAdapter, GeminiCliAdapter, HarnessAdapter, PiCodingAgentAdapter
from .config import Config, expand_home, load_config
from .heuristics import collect_signals, extract_facets
from .models import (
    PAI_SCOPE,
    PROJECT_SCOPE_PREFIX,
    HarnessType,
    NormalizedEvent,
    SignalRecord,
    format_timestamp,
)
from .storage import SignalStore

logger = logging.getLogger(__name__)

# Path fragments that identify which harness wrote a transcript
_TRANSCRIPT_MARKERS: tuple[tuple[str, HarnessType], ...] = (
    (f"{os.sep}.claude{os.sep}", HarnessType.CLAUDE_CODE),
    (f"{os.sep}.gemini{os.sep}", HarnessType.GEMINI_CLI),
    (f"{os.sep}.pi{os.sep}", HarnessType.PI_CODING_AGENT),
)

_ENV_HINTS: tuple[tuple[str, HarnessType], ...] = (
    ("CLAUDE_CODE_SESSION", HarnessType.CLAUDE_CODE),
    ("GEMINI_SESSION", HarnessType.GEMINI_CLI),
    ("PI_CODING_AGENT_DIR", HarnessType.PI_CODING_AGENT),
)

_ADAPTERS: dict[HarnessType, type[HarnessAdapter]] = {
    HarnessType.CLAUDE_CODE: ClaudeCodeAdapter,
    HarnessType.GEMINI_CLI: GeminiCliAdapter,
    HarnessType.PI_CODING_AGENT: PiCodingAgentAdapter,
}


@dataclass
class HookInput:
    """The JSON a session-end hook receives on stdin."""

    session_id: str
    cwd: str | None = None
    transcript_path: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> HookInput | None:
        if not isinstance(data, dict) or not isinstance(data.get("session_id"), str):
            return None
        cwd = data.get("cwd")
        transcript = data.get("transcript_path")
        return cls(
            session_id=data["session_id"],
            cwd=cwd if isinstance(cwd, str) and cwd else None,
            transcript_path=transcript if isinstance(transcript, str) and transcript else None,
        )


class TagStatus(str, Enum):
    WRITTEN = "written"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class TagOutcome:
    """Result of one tagging attempt. Expected conditions never raise."""

    status: TagStatus
    reason: str | None = None
    record: SignalRecord | None = None
    path: Path | None = None

    @classmethod
    def skipped(cls, reason: str) -> TagOutcome:
        return cls(status=TagStatus.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, reason: str) -> TagOutcome:
        return cls(status=TagStatus.FAILED, reason=reason)


# =============================================================================
# Harness & Scope
# =============================================================================


def detect_harness(
    hook_input: HookInput, config: Config, environ: Mapping[str, str] | None = None
) -> HarnessType | None:
    """Transcript path markers → environment hints → first enabled harness."""
    env = os.environ if environ is None else environ

    transcript = hook_input.transcript_path or ""
    for marker, harness in _TRANSCRIPT_MARKERS:
        if marker in transcript:
            return harness

    for var, harness in _ENV_HINTS:
        if env.get(var):
            return harness

    enabled = config.enabled_harnesses()
    return enabled[0] if enabled else None


def create_adapter(harness: HarnessType, config: Config) -> HarnessAdapter | None:
    """Adapter for ``harness``, or None when it is not enabled."""
    harness_config = config.harnesses.get(harness)
    if harness_config is None or not harness_config.enabled:
        return None
    return _ADAPTERS[harness](harness_config.resolved_events_dir)


def _is_within(path: str, root: str) -> bool:
    root = root.rstrip(os.sep) or os.sep
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def resolve_scope(cwd: str, config: Config) -> str:
    """``"pai"`` for infrastructure paths, else ``"project:<cwd>"``.

    A cwd is infrastructure when it equals a configured pai path or lies
    beneath one. A shared string prefix alone is not enough
    (``~/.claude-other`` is not inside ``~/.claude``).
    """
    for pai_path in config.scope_rules.pai_paths:
        if _is_within(cwd, expand_home(pai_path)):
            return PAI_SCOPE
    return f"{PROJECT_SCOPE_PREFIX}{cwd}"


def is_ignored(cwd: str, config: Config) -> bool:
    """True when the session ran somewhere tagging should not look at.

    Relative entries (``node_modules``) match any path component; absolute
    entries match the path itself and everything beneath it.
    """
    parts = Path(cwd).parts
    for entry in config.scope_rules.ignore_paths:
        expanded = expand_home(entry)
        if os.path.isabs(expanded):
            if _is_within(cwd, expanded):
                return True
        elif expanded in parts:
            return True
    return False


# =============================================================================
# Record Construction
# =============================================================================


def build_signal_record(
    session_id: str,
    events: Sequence[NormalizedEvent],
    config: Config,
    cwd: str,
    now: datetime | None = None,
) -> SignalRecord:
    """Run every detector and facet extractor over one session's events.

    The record's timestamp is the tagging wall clock, not the session's own
    time; it decides which day file the record lands in.
    """
    return SignalRecord(
        session_id=session_id,
        timestamp=format_timestamp(now or datetime.now(timezone.utc)),
        project=cwd,
        scope=resolve_scope(cwd, config),
        signals=collect_signals(events, config.tagger),
        facets=extract_facets(events, config.tagger),
    )


def _resolve_cwd(hook_input: HookInput, events: Sequence[NormalizedEvent]) -> str:
    if hook_input.cwd:
        return hook_input.cwd
    for event in events:
        if event.cwd:
            return event.cwd
    logger.debug("no cwd in hook input or events, falling back to process cwd")
    return os.getcwd()


def tag_session(
    hook_input: HookInput,
    config: Config,
    store: SignalStore,
    environ: Mapping[str, str] | None = None,
    now: datetime | None = None,
) -> TagOutcome:
    """Tag one session and append its record to ``store``."""
    harness = detect_harness(hook_input, config, environ)
    if harness is None:
        return TagOutcome.skipped("no harness detected")

    adapter = create_adapter(harness, config)
    if adapter is None:
        return TagOutcome.skipped(f"harness {harness.value} is not enabled")

    events = adapter.get_session_events(hook_input.session_id)
    if not events:
        return TagOutcome.skipped("no events for session")

    cwd = _resolve_cwd(hook_input, events)
    if is_ignored(cwd, config):
        return TagOutcome.skipped(f"cwd {cwd} is ignored")

    record = build_signal_record(hook_input.session_id, events, config, cwd, now=now)
    try:
        path = store.append(record)
    except (OSError, ValueError) as e:
        return TagOutcome.failed(f"failed to write signal record: {e}")
    return TagOutcome(status=TagStatus.WRITTEN, record=record, path=path)


def run_signal_tagger(
    raw_stdin: str,
    config_path: str | Path | None = None,
    store: SignalStore | None = None,
    environ: Mapping[str, str] | None = None,
) -> TagOutcome:
    """Hook entry point: parse, tag, and swallow every failure.

    Returns the outcome for callers that care; the hook itself ignores it.
    """
    try:
        raw = raw_stdin.strip()
        if not raw:
            return TagOutcome.skipped("empty hook input")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            return _log_outcome(TagOutcome.failed(f"hook input is not JSON: {e}"))

        hook_input = HookInput.from_dict(parsed)
        if hook_input is None:
            return _log_outcome(TagOutcome.skipped("hook input has no session_id"))

        config = load_config(config_path)
        outcome = tag_session(hook_input, config, store or SignalStore(), environ=environ)
        return _log_outcome(outcome)
    except Exception as e:
        # Never propagate into the coding session
        return _log_outcome(TagOutcome.failed(f"{type(e).__name__}: {e}"))


def _log_outcome(outcome: TagOutcome) -> TagOutcome:
    if outcome.status == TagStatus.WRITTEN:
        logger.debug("wrote signal record for %s to %s", outcome.record.session_id, outcome.path)
    else:
        logger.debug("signal tagger %s: %s", outcome.status.value, outcome.reason)
    return outcome
