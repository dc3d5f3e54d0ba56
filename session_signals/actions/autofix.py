"""Auto-fix spawner — runs a coding agent on an isolated git branch per pattern.

Each attempt is a small state machine:

    IDLE → BRANCH_CREATED → AGENT_INVOKED → FIXED
                                          → RETAINED     (agent failed, branch has commits)
                                          → ROLLED_BACK  (agent failed, no commits, branch deleted)
    IDLE | BRANCH_CREATED → FAILED                       (git error before the agent ran)

The original branch is always checked out again after an attempt, and a fix
branch is only deleted once that checkout succeeded. Partial work is never
discarded: if the commit check itself fails, commits are assumed to exist.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from ..config import AutofixActionConfig
from ..errors import CommandError
from ..models import PAI_SCOPE, PROJECT_SCOPE_PREFIX, Pattern, severity_rank
from .process import run_command

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 10.0
AGENT_VERSION_TIMEOUT_SECONDS = 10.0
_SECONDS_PER_DAY = 86400
_REF_CHARS_RE = re.compile(r"[A-Za-z0-9._/-]+")


# =============================================================================
# External tools
# =============================================================================


class GitOps:
    """Git operations on one working tree."""

    def __init__(self, cwd: str | Path | None = None, timeout: float = GIT_TIMEOUT_SECONDS):
        self.cwd = Path(cwd) if cwd is not None else None
        self.timeout = timeout

    def _run(self, *args: str) -> str:
        return run_command(["git", *args], timeout=self.timeout, cwd=self.cwd).strip()

    def is_clean(self) -> bool:
        return self._run("status", "--porcelain") == ""

    def current_branch(self) -> str:
        return self._run("rev-parse", "--abbrev-ref", "HEAD")

    def branch_exists(self, name: str) -> bool:
        try:
            self._run("rev-parse", "--verify", "--quiet", f"refs/heads/{name}")
        except CommandError:
            return False
        return True

    def list_branches(self, prefix: str) -> list[str]:
        output = self._run("for-each-ref", "--format=%(refname:short)", f"refs/heads/{prefix}*")
        return [line.strip() for line in output.splitlines() if line.strip()]

    def create_and_checkout(self, name: str) -> None:
        self._run("checkout", "-b", name)

    def checkout(self, name: str) -> None:
        self._run("checkout", name)

    def delete_branch(self, name: str) -> None:
        self._run("branch", "-D", name)

    def branch_age_days(self, name: str, now: datetime | None = None) -> float:
        """Whole days since the branch's last commit.

        An unparsable commit timestamp is treated as infinitely old.
        """
        output = self._run("log", "-1", "--format=%ct", name)
        try:
            commit_epoch = int(output)
        except ValueError:
            return math.inf
        now_epoch = (now or datetime.now(timezone.utc)).timestamp()
        return float((int(now_epoch) - commit_epoch) // _SECONDS_PER_DAY)

    def has_new_commits(self, branch: str, base: str) -> bool:
        count = self._run("rev-list", "--count", f"{base}..{branch}")
        return int(count) > 0


class AgentRunner:
    """Runs the ``claude`` CLI non-interactively."""

    def __init__(self, binary: str = "claude", timeout: float = 300.0):
        self.binary = binary
        self.timeout = timeout

    def is_available(self) -> bool:
        try:
            run_command([self.binary, "--version"], timeout=AGENT_VERSION_TIMEOUT_SECONDS)
        except CommandError:
            return False
        return True

    def run(self, prompt: str, allowed_tools: Sequence[str], cwd: str | Path) -> str:
        return run_command(
            [self.binary, "-p", prompt, "--allowedTools", ",".join(allowed_tools)],
            timeout=self.timeout,
            cwd=cwd,
        )


# =============================================================================
# Helpers
# =============================================================================


def meets_autofix_threshold(pattern: Pattern, config: AutofixActionConfig) -> bool:
    return (
        pattern.auto_fixable is True
        and severity_rank(pattern.severity) >= severity_rank(config.min_severity)
        and pattern.frequency >= config.min_frequency
    )


def sanitize_for_fence(value: str) -> str:
    """Strip backticks so interpolated text cannot close the code fence."""
    return value.replace("`", "")


def build_fix_prompt(pattern: Pattern) -> str:
    # Pattern fields come from local analysis; they are still fenced and sanitized
    lines = [
        "You are fixing a detected friction pattern in this codebase.",
        "",
        "## Pattern Details",
        "",
        "```",
        f"Description: {sanitize_for_fence(pattern.description)}",
        f"Type: {sanitize_for_fence(pattern.type.value)}",
        f"Severity: {sanitize_for_fence(pattern.severity.value)}",
        f"Frequency: {pattern.frequency} sessions affected",
        f"Trend: {sanitize_for_fence(pattern.trend.value)}",
    ]
    if pattern.root_cause_hypothesis:
        lines.append(f"Root cause hypothesis: {sanitize_for_fence(pattern.root_cause_hypothesis)}")
    if pattern.suggested_fix:
        lines.append(f"Suggested fix: {sanitize_for_fence(pattern.suggested_fix)}")
    if pattern.affected_files:
        files = ", ".join(sanitize_for_fence(f) for f in pattern.affected_files)
        lines.append(f"Affected files: {files}")
    lines += [
        "```",
        "",
        "## Instructions",
        "",
        "1. Read the affected files to understand the current state.",
        "2. Implement the suggested fix (or your best judgment if the suggestion is insufficient).",
        "3. Commit your changes with a descriptive message.",
        "4. Do NOT merge, push, or create a pull request. Only commit locally.",
    ]
    return "\n".join(lines)


def build_branch_name(pattern: Pattern, prefix: str) -> str:
    return f"{prefix}{pattern.id}"


def is_valid_branch_name(name: str) -> bool:
    """Conservative subset of `git check-ref-format --branch`."""
    if not _REF_CHARS_RE.fullmatch(name) or name.startswith("-"):
        return False
    if ".." in name or name.endswith((".", ".lock")):
        return False
    return all(part and not part.startswith(".") for part in name.split("/"))


def resolve_fix_cwd(pattern: Pattern, default: str | Path) -> Path:
    """Working directory for a pattern's fix.

    A ``project:<path>`` scope runs in that path when it exists; ``pai`` and
    anything else run in ``default``.
    """
    if pattern.scope.startswith(PROJECT_SCOPE_PREFIX):
        project = Path(pattern.scope[len(PROJECT_SCOPE_PREFIX) :])
        if project.is_dir():
            return project
        logger.warning("autofix: project path %s does not exist, using %s", project, default)
    elif pattern.scope != PAI_SCOPE:
        logger.warning("autofix: unknown scope %r, using %s", pattern.scope, default)
    return Path(default)


# =============================================================================
# Fix attempt state machine
# =============================================================================


class FixState(str, Enum):
    IDLE = "idle"
    BRANCH_CREATED = "branch_created"
    AGENT_INVOKED = "agent_invoked"
    FIXED = "fixed"
    RETAINED = "retained"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


_TRANSITIONS: dict[FixState, frozenset[FixState]] = {
    FixState.IDLE: frozenset({FixState.BRANCH_CREATED, FixState.FAILED}),
    FixState.BRANCH_CREATED: frozenset({FixState.AGENT_INVOKED, FixState.FAILED}),
    FixState.AGENT_INVOKED: frozenset({FixState.FIXED, FixState.RETAINED, FixState.ROLLED_BACK}),
    FixState.FIXED: frozenset(),
    FixState.RETAINED: frozenset(),
    FixState.ROLLED_BACK: frozenset(),
    FixState.FAILED: frozenset(),
}


@dataclass
class FixAttempt:
    """One pattern's trip through the fix state machine."""

    pattern_id: str
    branch: str
    cwd: Path
    state: FixState = FixState.IDLE
    history: list[FixState] = field(default_factory=lambda: [FixState.IDLE])
    reason: str | None = None

    @property
    def terminal(self) -> bool:
        return not _TRANSITIONS[self.state]

    def advance(self, state: FixState, reason: str | None = None) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise ValueError(f"illegal fix transition {self.state.value} → {state.value}")
        self.state = state
        self.history.append(state)
        if reason is not None:
            self.reason = reason


@dataclass
class AutofixResult:
    pattern_id: str
    action: str  # "fixed" | "retained" | "rolled_back" | "failed" | "skipped"
    branch: str | None = None
    reason: str | None = None
    transitions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"pattern_id": self.pattern_id, "action": self.action}
        if self.branch:
            d["branch"] = self.branch
        if self.reason:
            d["reason"] = self.reason
        if self.transitions:
            d["transitions"] = list(self.transitions)
        return d

    @classmethod
    def skipped(cls, pattern_id: str, reason: str, branch: str | None = None) -> AutofixResult:
        return cls(pattern_id=pattern_id, action="skipped", branch=branch, reason=reason)

    @classmethod
    def from_attempt(cls, attempt: FixAttempt) -> AutofixResult:
        # Rolled-back branches no longer exist
        branch = None if attempt.state == FixState.ROLLED_BACK else attempt.branch
        return cls(
            pattern_id=attempt.pattern_id,
            action=attempt.state.value,
            branch=branch,
            reason=attempt.reason,
            transitions=[s.value for s in attempt.history],
        )


def run_fix_attempt(
    attempt: FixAttempt,
    prompt: str,
    git: GitOps,
    agent: AgentRunner,
    allowed_tools: Sequence[str],
    original_branch: str,
) -> bool:
    """Drive one attempt to a terminal state.

    Returns False when the original branch could not be checked out again,
    in which case the caller must stop touching the repository.
    """
    try:
        git.create_and_checkout(attempt.branch)
    except CommandError as e:
        logger.warning("autofix: could not create branch %s: %s", attempt.branch, e)
        attempt.advance(FixState.FAILED, f"Git error: {e}")
        return _return_to(git, original_branch)
    attempt.advance(FixState.BRANCH_CREATED)

    attempt.advance(FixState.AGENT_INVOKED)
    try:
        agent.run(prompt, allowed_tools, attempt.cwd)
    except CommandError as agent_error:
        logger.warning("autofix: agent failed for pattern %s: %s", attempt.pattern_id, agent_error)
        return _after_agent_failure(attempt, git, original_branch, agent_error)

    returned = _return_to(git, original_branch)
    attempt.advance(
        FixState.FIXED, None if returned else "Fixed, but could not return to original branch"
    )
    return returned


def _after_agent_failure(
    attempt: FixAttempt, git: GitOps, original_branch: str, agent_error: CommandError
) -> bool:
    try:
        has_commits = git.has_new_commits(attempt.branch, original_branch)
    except (CommandError, ValueError) as e:
        logger.warning("autofix: commit check failed, assuming commits exist to preserve work: %s", e)
        has_commits = True

    returned = _return_to(git, original_branch)

    if has_commits:
        attempt.advance(
            FixState.RETAINED, f"Agent failed; branch retained (has partial commits): {agent_error}"
        )
    elif not returned:
        attempt.advance(
            FixState.RETAINED, f"Agent failed; branch retained (checkout failed): {agent_error}"
        )
    else:
        try:
            git.delete_branch(attempt.branch)
        except CommandError as e:
            logger.warning("autofix: could not delete branch %s: %s", attempt.branch, e)
            attempt.advance(
                FixState.RETAINED, f"Agent failed; branch retained (delete failed): {agent_error}"
            )
        else:
            attempt.advance(
                FixState.ROLLED_BACK, f"Agent failed; branch deleted (no commits): {agent_error}"
            )
    return returned


def _return_to(git: GitOps, branch: str) -> bool:
    try:
        git.checkout(branch)
    except CommandError as e:
        logger.warning("autofix: failed to return to branch %s: %s", branch, e)
        return False
    return True


# =============================================================================
# Actions
# =============================================================================


def execute_autofix_action(
    patterns: Sequence[Pattern],
    config: AutofixActionConfig,
    git: GitOps | None = None,
    agent: AgentRunner | None = None,
    max_per_run: int | None = None,
    cwd: str | Path | None = None,
    git_factory: Callable[[Path], GitOps] | None = None,
) -> list[AutofixResult]:
    """Attempt fixes for auto-fixable patterns, at most ``max_per_run`` per run.

    Only patterns that pass the threshold gate count toward the cap. A dirty
    working tree or a missing agent binary skips every pattern.

    Args:
        git: Git operations for the default working tree ``cwd``.
        git_factory: Builds GitOps for a project scope's own repository.
            Defaults to ``GitOps(path)``.
    """
    if not config.enabled:
        return []

    default_cwd = Path(cwd) if cwd is not None else Path.cwd()
    git = git or GitOps(default_cwd)
    agent = agent or AgentRunner(timeout=config.agent_timeout_seconds)
    limit = config.max_per_run if max_per_run is None else max_per_run
    repos: dict[Path, GitOps] = {default_cwd: git}

    def git_for(path: Path) -> GitOps:
        if path not in repos:
            repos[path] = git_factory(path) if git_factory else GitOps(path)
        return repos[path]

    try:
        clean = git.is_clean()
    except CommandError as e:
        logger.warning("autofix: could not check working tree: %s", e)
        return [AutofixResult.skipped(p.id, f"Git error: {e}") for p in patterns]
    if not clean:
        logger.warning("autofix: working tree is dirty, skipping all fixes")
        return [AutofixResult.skipped(p.id, "Working tree is dirty") for p in patterns]

    if not agent.is_available():
        logger.warning("autofix: claude CLI not available, skipping")
        return [AutofixResult.skipped(p.id, "claude CLI not available") for p in patterns]

    results: list[AutofixResult] = []
    attempted = 0
    aborted: str | None = None

    for pattern in patterns:
        if aborted:
            results.append(AutofixResult.skipped(pattern.id, aborted))
            continue

        if not meets_autofix_threshold(pattern, config):
            results.append(
                AutofixResult.skipped(
                    pattern.id,
                    f"Below threshold (auto_fixable={pattern.auto_fixable}, "
                    f"severity={pattern.severity.value}, frequency={pattern.frequency})",
                )
            )
            continue

        if attempted >= limit:
            results.append(AutofixResult.skipped(pattern.id, f"Run limit reached ({limit})"))
            continue

        branch = build_branch_name(pattern, config.branch_prefix)
        if not is_valid_branch_name(branch):
            logger.warning("autofix: pattern id %r is not a valid branch name, skipping", pattern.id)
            results.append(AutofixResult.skipped(pattern.id, f"Invalid branch name {branch!r}"))
            continue
        fix_cwd = resolve_fix_cwd(pattern, default_cwd)
        repo = git_for(fix_cwd)

        try:
            if repo is not git and not repo.is_clean():
                results.append(AutofixResult.skipped(pattern.id, f"Working tree {fix_cwd} is dirty"))
                continue
            if repo.branch_exists(branch):
                results.append(
                    AutofixResult.skipped(
                        pattern.id, "Branch already exists (previously attempted)", branch=branch
                    )
                )
                continue
            original_branch = repo.current_branch()
        except CommandError as e:
            results.append(AutofixResult.skipped(pattern.id, f"Git error: {e}"))
            continue

        attempted += 1
        attempt = FixAttempt(pattern_id=pattern.id, branch=branch, cwd=fix_cwd)
        returned = run_fix_attempt(
            attempt, build_fix_prompt(pattern), repo, agent, config.allowed_tools, original_branch
        )
        results.append(AutofixResult.from_attempt(attempt))
        if not returned:
            aborted = f"Aborted: could not return {fix_cwd} to branch {original_branch}"

    return results


@dataclass
class CleanupResult:
    branch: str
    deleted: bool
    age_days: float
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "branch": self.branch,
            "deleted": self.deleted,
            "age_days": None if math.isinf(self.age_days) else self.age_days,
        }
        if self.reason:
            d["reason"] = self.reason
        return d


def cleanup_expired_branches(
    config: AutofixActionConfig,
    git: GitOps | None = None,
    now: datetime | None = None,
    cwd: str | Path | None = None,
) -> list[CleanupResult]:
    """Delete fix branches at or past the TTL, except the checked-out one.

    Per-branch failures are recorded in the results, never raised.
    """
    git = git or GitOps(cwd)
    try:
        branches = git.list_branches(config.branch_prefix)
        current = git.current_branch()
    except CommandError as e:
        logger.warning("autofix cleanup: could not list branches: %s", e)
        return []

    results: list[CleanupResult] = []
    for branch in branches:
        try:
            age = git.branch_age_days(branch, now)
        except CommandError as e:
            logger.warning("autofix cleanup: failed to read age of %s: %s", branch, e)
            results.append(CleanupResult(branch, deleted=False, age_days=0, reason=f"Error: {e}"))
            continue

        if math.isinf(age):
            logger.warning("autofix cleanup: branch %s has unparsable timestamp, treating as expired", branch)

        if age < config.branch_ttl_days:
            results.append(CleanupResult(branch, deleted=False, age_days=age))
            continue
        if branch == current:
            results.append(
                CleanupResult(branch, deleted=False, age_days=age, reason="Currently checked out")
            )
            continue

        try:
            git.delete_branch(branch)
        except CommandError as e:
            logger.warning("autofix cleanup: failed to delete %s: %s", branch, e)
            results.append(CleanupResult(branch, deleted=False, age_days=age, reason=f"Error: {e}"))
            continue
        logger.info("autofix cleanup: deleted expired branch %s (%s days old)", branch, age)
        results.append(CleanupResult(branch, deleted=True, age_days=age))

    return results
