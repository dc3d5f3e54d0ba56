"""Session Signals - friction detection for AI coding-agent sessions.

Reads session logs from Claude Code, Gemini CLI and the Pi coding agent,
tags each finished session with friction signals, and turns recurring
signals into issues, a daily digest, and optional auto-fix branches.

Usage:
    from session_signals import load_config, run_signal_tagger

    config = load_config()
    outcome = run_signal_tagger(hook_json)
"""

__version__ = "0.1.0"

from .config import Config, load_config
from .errors import CommandError, ConfigError, SchemaError, SessionSignalsError
from .models import (
    EventType,
    FrictionSignal,
    FrictionSignalType,
    HarnessType,
    NormalizedEvent,
    Pattern,
    PatternAnalysis,
    SignalRecord,
)
from .tagger import run_signal_tagger, tag_session

__all__ = [
    "__version__",
    "Config",
    "load_config",
    "CommandError",
    "ConfigError",
    "SchemaError",
    "SessionSignalsError",
    "EventType",
    "FrictionSignal",
    "FrictionSignalType",
    "HarnessType",
    "NormalizedEvent",
    "Pattern",
    "PatternAnalysis",
    "SignalRecord",
    "run_signal_tagger",
    "tag_session",
]
