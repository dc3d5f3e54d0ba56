"""CLI commands: tag a finished session, analyze patterns, clean up fix branches."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

import click

from .main import main


def _load_config_or_exit(ctx: click.Context):
    from ..config import load_config
    from ..errors import ConfigError

    try:
        return load_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        raise click.ClickException(str(e)) from e


@main.command()
@click.pass_context
def tag(ctx: click.Context) -> None:
    """Tag one finished session from hook JSON on stdin.

    Meant to run as a session-end hook. Never fails and never prints:
    any problem means no record is written. Set SESSION_SIGNALS_DEBUG=1 to
    see why.

    \b
    Example hook input:
        {"session_id": "abc123", "cwd": "/home/me/project"}
    """
    from ..tagger import TagStatus, run_signal_tagger

    debug = ctx.obj.get("debug", False)
    if not debug:
        # Adapter warnings must not leak into the coding session's output
        logging.getLogger("session_signals").setLevel(logging.CRITICAL + 1)

    outcome = run_signal_tagger(sys.stdin.read(), config_path=ctx.obj.get("config_path"))
    if debug:
        detail = outcome.path if outcome.status == TagStatus.WRITTEN else outcome.reason
        click.echo(f"[tag] {outcome.status.value}: {detail}", err=True)


@main.command()
@click.option(
    "--date",
    "day",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Last day of the lookback window (default: today, UTC).",
)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print results as JSON.")
@click.pass_context
def analyze(ctx: click.Context, day: datetime | None, as_json: bool) -> None:
    """Find recurring friction patterns and run the enabled actions.

    \b
    Runs, in order:
        1. Pattern analysis per scope (Ollama)
        2. Issue filing (bd)
        3. Auto-fix branches (git + claude), when enabled
        4. Daily Markdown digest
    """
    from ..actions import (
        DigestInput,
        execute_autofix_action,
        execute_digest_action,
        execute_issue_action,
    )
    from ..analyzer import run_analysis
    from ..llm import OllamaClient
    from ..storage import SignalStore

    config = _load_config_or_exit(ctx)
    reference = day.date() if day else datetime.now(timezone.utc).date()

    with OllamaClient(
        config.analyzer.ollama_url,
        config.analyzer.model,
        timeout=config.analyzer.timeout_seconds,
        max_retries=config.analyzer.max_retries,
    ) as client:
        run = run_analysis(config, client, SignalStore(), reference=reference)

    patterns = run.patterns
    issue_results = execute_issue_action(patterns, config.actions.beads, today=reference)
    autofix_results = execute_autofix_action(patterns, config.actions.autofix)
    digest = execute_digest_action(
        DigestInput(
            config=config,
            analysis_results=run.results,
            signal_records=run.records,
            issue_results=issue_results,
            autofix_results=autofix_results,
        ),
        reference,
    )

    if as_json:
        output = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "days": run.days,
            "results": [r.to_dict() for r in run.results],
            "issues": [r.to_dict() for r in issue_results],
            "autofix": [r.to_dict() for r in autofix_results],
            "digest": str(digest.path) if digest else None,
        }
        click.echo(json.dumps(output, indent=2))
        return

    click.echo(f"Analyzed {len(run.records)} signal records ({run.days[0]} .. {run.days[-1]})")
    if not run.results:
        click.echo("  No signal records in window.")
    for result in run.results:
        if result.skipped:
            click.echo(f"  {result.scope}: skipped ({result.reason})")
        else:
            click.echo(f"  {result.scope}: {len(result.analysis.patterns)} pattern(s)")

    for label, results in (("Issues", issue_results), ("Auto-fix", autofix_results)):
        if results:
            counts: dict[str, int] = {}
            for r in results:
                counts[r.action] = counts.get(r.action, 0) + 1
            click.echo(f"{label}: " + ", ".join(f"{k}={v}" for k, v in counts.items()))

    if digest:
        click.echo(f"Digest: {digest.path}")


@main.command()
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="List expired fix branches without deleting them.",
)
@click.pass_context
def cleanup(ctx: click.Context, dry_run: bool) -> None:
    """Delete auto-fix branches older than the configured TTL."""
    from ..actions import GitOps, cleanup_expired_branches
    from ..errors import CommandError

    config = _load_config_or_exit(ctx)
    autofix = config.actions.autofix

    if dry_run:
        git = GitOps()
        try:
            for branch in git.list_branches(autofix.branch_prefix):
                age = git.branch_age_days(branch)
                marker = "expired" if age >= autofix.branch_ttl_days else "kept"
                click.echo(f"  {branch}: {age} days ({marker})")
        except CommandError as e:
            raise click.ClickException(str(e)) from e
        return

    results = cleanup_expired_branches(autofix)
    if not results:
        click.echo(f"No branches matching {autofix.branch_prefix}*")
        return
    for r in results:
        status = "deleted" if r.deleted else "kept"
        reason = f" ({r.reason})" if r.reason else ""
        click.echo(f"  {r.branch}: {status}, {r.age_days} days{reason}")
