"""Harness adapters: raw session logs → NormalizedEvent streams."""

from .base import HarnessAdapter, canonical_tool_name, deterministic_id, ensure_session_bounds
from .claude_code import ClaudeCodeAdapter
from .gemini_cli import GeminiCliAdapter
from .pi_coding_agent import PiCodingAgentAdapter, linearize

__all__ = [
    "HarnessAdapter",
    "ClaudeCodeAdapter",
    "GeminiCliAdapter",
    "PiCodingAgentAdapter",
    "canonical_tool_name",
    "deterministic_id",
    "ensure_session_bounds",
    "linearize",
]
