"""Exception hierarchy for session-signals."""

from __future__ import annotations


class SessionSignalsError(Exception):
    """Base class for all session-signals errors."""


class ConfigError(SessionSignalsError):
    """Configuration file is missing, unreadable, or violates the schema.

    Always fatal at startup — never silently defaulted.
    """


class SchemaError(SessionSignalsError):
    """A structured payload (e.g. an LLM response) does not match its schema."""


class CommandError(SessionSignalsError):
    """An external command (git, bd, claude) failed, timed out, or is missing."""

    def __init__(self, args: list[str], message: str, returncode: int | None = None):
        super().__init__(f"{' '.join(args)}: {message}")
        self.command = args
        self.returncode = returncode
