"""Command-line interface for session-signals."""

from . import signals  # noqa: F401
from .main import main

__all__ = ["main"]
