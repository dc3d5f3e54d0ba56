"""Friction detectors and session facets.

Every detector is a pure function ``(events, TaggerConfig) -> FrictionSignal | None``
over one session's ordered NormalizedEvent stream. Detectors are harness-agnostic:
the same analysis works for Claude Code, Gemini CLI, Pi, or any adapter that
produces normalized events.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from datetime import datetime

from .config import TaggerConfig
from .models import (
    EventType,
    Evidence,
    FrictionSignal,
    FrictionSignalType,
    NormalizedEvent,
    SessionFacets,
    SessionOutcome,
    Severity,
    parse_timestamp,
)

Detector = Callable[[Sequence[NormalizedEvent], TaggerConfig], FrictionSignal | None]

# Outcome is "errored" when this many trailing tool results all failed
_ERRORED_TAIL = 3
_MAX_SAMPLES = 3


# =============================================================================
# String Similarity
# =============================================================================


def levenshtein_distance(a: str, b: str) -> int:
    if not a:
        return len(b)
    if not b:
        return len(a)

    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        curr = [i] + [0] * len(b)
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            curr[j] = min(prev[j] + 1, curr[j - 1] + 1, prev[j - 1] + cost)
        prev = curr
    return prev[-1]


def levenshtein_ratio(a: str, b: str) -> float:
    """Similarity in [0, 1]; 1.0 means identical (including two empty strings)."""
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / max_len


# =============================================================================
# Helpers
# =============================================================================


def _seconds_between(a: str, b: str) -> float | None:
    ta = parse_timestamp(a)
    tb = parse_timestamp(b)
    if ta is None or tb is None:
        return None
    return (tb - ta).total_seconds()


def severity_from_count(count: float, low_threshold: float, high_threshold: float) -> Severity:
    if count >= high_threshold:
        return Severity.HIGH
    if count >= low_threshold:
        return Severity.MEDIUM
    return Severity.LOW


def _serialize_input(tool_input: dict) -> str:
    return json.dumps(tool_input, separators=(",", ":"), default=str)


# =============================================================================
# Detectors
# =============================================================================


def detect_rephrase_storm(
    events: Sequence[NormalizedEvent], config: TaggerConfig
) -> FrictionSignal | None:
    """User keeps rewording nearly the same prompt.

    Only adjacent prompt pairs are compared, so an interleaved A → B → A
    sequence is not detected.
    """
    prompts = [(i, e) for i, e in enumerate(events) if e.type == EventType.USER_PROMPT and e.message]
    if len(prompts) < 2:
        return None

    count = 0
    indices: list[int] = []
    samples: list[str] = []
    for (prev_i, prev), (curr_i, curr) in zip(prompts, prompts[1:]):
        if levenshtein_ratio(prev.message, curr.message) < config.rephrase_similarity:
            continue
        count += 1
        if prev_i not in indices:
            indices.append(prev_i)
        indices.append(curr_i)
        if len(samples) < _MAX_SAMPLES:
            samples.append(curr.message)

    if count < config.rephrase_threshold:
        return None

    return FrictionSignal(
        type=FrictionSignalType.REPHRASE_STORM,
        severity=severity_from_count(count, config.rephrase_threshold, config.rephrase_threshold * 2),
        count=count,
        context=f"User rephrased {count} times with similarity >= {config.rephrase_similarity}",
        evidence=Evidence(event_indices=indices, sample_data=" | ".join(samples)),
    )


def detect_tool_failure_cascade(
    events: Sequence[NormalizedEvent], config: TaggerConfig
) -> FrictionSignal | None:
    """Longest run of consecutive failing tool results.

    Non-result events do not break a streak; a successful result resets it.
    """
    streak: list[int] = []
    best: list[int] = []
    for i, event in enumerate(events):
        if event.type != EventType.TOOL_RESULT:
            continue
        if event.is_failure:
            streak.append(i)
            if len(streak) > len(best):
                best = list(streak)
        else:
            streak = []

    longest = len(best)
    if longest < config.tool_failure_cascade_min:
        return None

    failed_tools = [events[i].tool_name for i in best if events[i].tool_name]
    return FrictionSignal(
        type=FrictionSignalType.TOOL_FAILURE_CASCADE,
        severity=severity_from_count(
            longest, config.tool_failure_cascade_min, config.tool_failure_cascade_min * 2
        ),
        count=longest,
        context=f"{longest} consecutive tool failures",
        evidence=Evidence(event_indices=best, sample_data=", ".join(failed_tools)),
    )


def detect_context_churn(
    events: Sequence[NormalizedEvent], config: TaggerConfig
) -> FrictionSignal | None:
    indices = [i for i, e in enumerate(events) if e.type == EventType.COMPACTION]
    if len(indices) < config.context_churn_threshold:
        return None
    return FrictionSignal(
        type=FrictionSignalType.CONTEXT_CHURN,
        severity=severity_from_count(
            len(indices), config.context_churn_threshold, config.context_churn_threshold * 2
        ),
        count=len(indices),
        context=f"{len(indices)} context compaction events in session",
        evidence=Evidence(event_indices=indices),
    )


def detect_permission_friction(
    events: Sequence[NormalizedEvent], config: TaggerConfig
) -> FrictionSignal | None:
    indices = [
        i
        for i, e in enumerate(events)
        if e.type == EventType.PERMISSION_RESULT and e.permission_granted is False
    ]
    if not indices:
        return None
    return FrictionSignal(
        type=FrictionSignalType.PERMISSION_FRICTION,
        severity=severity_from_count(len(indices), 1, 3),
        count=len(indices),
        context=f"{len(indices)} permission denial(s) in session",
        evidence=Evidence(event_indices=indices),
    )


def detect_abandon_signal(
    events: Sequence[NormalizedEvent], config: TaggerConfig
) -> FrictionSignal | None:
    """Session ended shortly after failures that were never resolved."""
    end_index = next(
        (i for i in range(len(events) - 1, -1, -1) if events[i].type == EventType.SESSION_END),
        None,
    )
    if end_index is None:
        return None
    end_ts = events[end_index].timestamp

    failures: list[int] = []
    for i in range(end_index - 1, -1, -1):
        gap = _seconds_between(events[i].timestamp, end_ts)
        if gap is None:
            continue
        if gap > config.abandon_window_seconds:
            break
        if events[i].is_failure:
            failures.append(i)

    if not failures:
        return None

    last_failure = max(failures)
    if any(e.is_success for e in events[last_failure + 1 : end_index]):
        return None

    return FrictionSignal(
        type=FrictionSignalType.ABANDON_SIGNAL,
        severity=severity_from_count(len(failures), 1, 3),
        count=len(failures),
        context=(
            f"Session ended within {config.abandon_window_seconds}s of "
            f"{len(failures)} unresolved failure(s)"
        ),
        evidence=Evidence(event_indices=[*failures, end_index]),
    )


def detect_long_stall(
    events: Sequence[NormalizedEvent], config: TaggerConfig
) -> FrictionSignal | None:
    stalls = 0
    indices: list[int] = []
    for i in range(1, len(events)):
        gap = _seconds_between(events[i - 1].timestamp, events[i].timestamp)
        if gap is None or gap < config.stall_threshold_seconds:
            continue
        stalls += 1
        for idx in (i - 1, i):
            if idx not in indices:
                indices.append(idx)

    if stalls == 0:
        return None
    return FrictionSignal(
        type=FrictionSignalType.LONG_STALL,
        severity=severity_from_count(stalls, 1, 3),
        count=stalls,
        context=f"{stalls} stall(s) exceeding {config.stall_threshold_seconds}s",
        evidence=Evidence(event_indices=indices),
    )


def detect_retry_loop(
    events: Sequence[NormalizedEvent], config: TaggerConfig
) -> FrictionSignal | None:
    """Same tool called repeatedly with near-identical input."""
    uses = [(i, e) for i, e in enumerate(events) if e.type == EventType.TOOL_USE and e.tool_input]
    if len(uses) < 2:
        return None

    run: list[int] = [uses[0][0]]
    best: list[int] = []
    for (_, prev), (curr_i, curr) in zip(uses, uses[1:]):
        similar = prev.tool_name == curr.tool_name and (
            levenshtein_ratio(_serialize_input(prev.tool_input), _serialize_input(curr.tool_input))
            >= config.retry_similarity
        )
        if similar:
            run.append(curr_i)
            if len(run) > len(best):
                best = list(run)
        else:
            run = [curr_i]

    longest = len(best)
    if longest < config.retry_loop_min:
        return None
    return FrictionSignal(
        type=FrictionSignalType.RETRY_LOOP,
        severity=severity_from_count(longest, config.retry_loop_min, config.retry_loop_min * 2),
        count=longest,
        context=f"Same tool executed {longest} times with similarity >= {config.retry_similarity}",
        evidence=Evidence(event_indices=best),
    )


DETECTORS: tuple[Detector, ...] = (
    detect_rephrase_storm,
    detect_tool_failure_cascade,
    detect_context_churn,
    detect_permission_friction,
    detect_abandon_signal,
    detect_long_stall,
    detect_retry_loop,
)


def collect_signals(
    events: Sequence[NormalizedEvent], config: TaggerConfig
) -> list[FrictionSignal]:
    """Run every detector in order and keep the ones that fired."""
    signals = []
    for detector in DETECTORS:
        signal = detector(events, config)
        if signal is not None:
            signals.append(signal)
    return signals


# =============================================================================
# Facets
# =============================================================================

EXTENSION_TO_LANGUAGE: dict[str, str] = {
    "ts": "TypeScript",
    "tsx": "TypeScript",
    "js": "JavaScript",
    "jsx": "JavaScript",
    "mjs": "JavaScript",
    "py": "Python",
    "pyw": "Python",
    "rb": "Ruby",
    "erb": "Ruby",
    "rs": "Rust",
    "go": "Go",
    "java": "Java",
    "kt": "Kotlin",
    "kts": "Kotlin",
    "swift": "Swift",
    "cs": "C#",
    "cpp": "C++",
    "cc": "C++",
    "cxx": "C++",
    "hpp": "C++",
    "hxx": "C++",
    "c": "C",
    "h": "C",  # Ambiguous with C++/Objective-C
    "php": "PHP",
    "scala": "Scala",
    "sh": "Shell",
    "bash": "Shell",
    "zsh": "Shell",
    "sql": "SQL",
    "html": "HTML",
    "htm": "HTML",
    "css": "CSS",
    "scss": "CSS",
    "sass": "CSS",
    "less": "CSS",
    "json": "JSON",
    "yaml": "YAML",
    "yml": "YAML",
    "md": "Markdown",
    "xml": "XML",
    "toml": "TOML",
}

_PATH_KEYS = ("file_path", "path", "target_file", "filePath")


def infer_languages(events: Sequence[NormalizedEvent]) -> list[str]:
    """Languages touched, from file-path-like keys of tool inputs."""
    languages: set[str] = set()
    for event in events:
        if event.type not in (EventType.TOOL_USE, EventType.TOOL_RESULT) or not event.tool_input:
            continue
        for key in _PATH_KEYS:
            value = event.tool_input.get(key)
            if not isinstance(value, str) or "." not in value:
                continue
            language = EXTENSION_TO_LANGUAGE.get(value.rsplit(".", 1)[-1].lower())
            if language:
                languages.add(language)
    return sorted(languages)


def classify_outcome(events: Sequence[NormalizedEvent], config: TaggerConfig) -> SessionOutcome:
    if not any(e.type == EventType.SESSION_END for e in events):
        return SessionOutcome.ABANDONED
    if detect_abandon_signal(events, config) is not None:
        return SessionOutcome.ABANDONED

    tail = [e for e in events if e.type == EventType.TOOL_RESULT][-_ERRORED_TAIL:]
    if tail and all(e.is_failure for e in tail):
        return SessionOutcome.ERRORED
    return SessionOutcome.COMPLETED


def extract_facets(events: Sequence[NormalizedEvent], config: TaggerConfig) -> SessionFacets:
    results = [e for e in events if e.type == EventType.TOOL_RESULT]
    failures = sum(1 for e in results if e.is_failure)
    times: list[datetime] = [t for t in (e.parsed_timestamp for e in events) if t is not None]
    duration_min = (max(times) - min(times)).total_seconds() / 60 if len(times) >= 2 else 0.0

    return SessionFacets(
        languages=infer_languages(events),
        tools_used=sorted({e.tool_name for e in events if e.tool_name}),
        tool_failure_rate=failures / len(results) if results else 0.0,
        session_duration_min=duration_min,
        total_turns=sum(1 for e in events if e.type == EventType.USER_PROMPT),
        outcome=classify_outcome(events, config),
    )
