"""External command execution shared by the actions (git, bd, claude)."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from ..errors import CommandError

logger = logging.getLogger(__name__)

# Short calls (git, bd) vs the spawned coding agent
DEFAULT_COMMAND_TIMEOUT = 10.0


def run_command(
    args: list[str],
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
    cwd: str | Path | None = None,
) -> str:
    """Run a command and return its stdout.

    Raises:
        CommandError: If the binary is missing, the command times out, or it
            exits non-zero.
    """
    logger.debug("Running %s (timeout=%ss, cwd=%s)", " ".join(args), timeout, cwd)
    try:
        result = subprocess.run(
            args,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise CommandError(args, f"timed out after {timeout}s") from e
    except OSError as e:
        raise CommandError(args, f"could not be started: {e}") from e

    if result.returncode != 0:
        stderr = result.stderr.strip() or result.stdout.strip()
        raise CommandError(args, f"exited with {result.returncode}: {stderr}", result.returncode)
    return result.stdout
