"""Action engine: issue filing, daily digest and auto-fix."""

from .autofix import (
    AgentRunner,
    AutofixResult,
    CleanupResult,
    FixAttempt,
    FixState,
    GitOps,
    cleanup_expired_branches,
    execute_autofix_action,
)
from .digest import DigestInput, DigestResult, execute_digest_action, generate_digest_markdown
from .issues import BeadsCli, IssueActionResult, execute_issue_action
from .process import run_command

__all__ = [
    "AgentRunner",
    "AutofixResult",
    "BeadsCli",
    "CleanupResult",
    "DigestInput",
    "DigestResult",
    "FixAttempt",
    "FixState",
    "GitOps",
    "IssueActionResult",
    "cleanup_expired_branches",
    "execute_autofix_action",
    "execute_digest_action",
    "execute_issue_action",
    "generate_digest_markdown",
    "run_command",
]
