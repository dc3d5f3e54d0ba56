"""Day-partitioned signal record store.

One JSONL file per calendar day: <signals_dir>/<YYYY-MM-DD>_signals.jsonl.
Records are appended, never rewritten. The day a record lands in is the
date of the record's own timestamp.
"""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Iterable
from datetime import date as date_type
from pathlib import Path

from .models import SignalRecord

logger = logging.getLogger(__name__)

DEFAULT_SIGNALS_DIR = Path.home() / ".claude" / "history" / "signals"
_FILE_SUFFIX = "_signals.jsonl"
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def default_signals_dir() -> Path:
    """``SESSION_SIGNALS_DIR`` if set, else ~/.claude/history/signals."""
    override = os.environ.get("SESSION_SIGNALS_DIR")
    if override:
        return Path(override).expanduser()
    return DEFAULT_SIGNALS_DIR


def validate_date(value: str) -> str:
    """Return ``value`` if it is a real YYYY-MM-DD date.

    Raises:
        ValueError: On any other string.
    """
    if not isinstance(value, str) or not _DATE_RE.match(value):
        raise ValueError(f"invalid date string: {value!r}")
    date_type.fromisoformat(value)
    return value


class SignalStore:
    """Append-only JSONL storage for SignalRecords.

    Characteristics:
    - One file per day, created with parent directories on first append
    - Reading never mutates files
    - Malformed lines are skipped with a warning

    Args:
        signals_dir: Directory holding the day files. Defaults to
            ``default_signals_dir()``.
    """

    def __init__(self, signals_dir: str | Path | None = None) -> None:
        self.signals_dir = Path(signals_dir) if signals_dir is not None else default_signals_dir()

    def file_for(self, day: str) -> Path:
        return self.signals_dir / f"{validate_date(day)}{_FILE_SUFFIX}"

    def append(self, record: SignalRecord) -> Path:
        """Append one record to the file of its own timestamp's day."""
        path = self.file_for(record.date)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record.to_dict()) + "\n")
        return path

    def load(self, days: Iterable[str]) -> list[SignalRecord]:
        """Load every valid record from the given days' files, in day order.

        Missing files are treated as empty.
        """
        records: list[SignalRecord] = []
        for day in days:
            path = self.file_for(day)
            if not path.exists():
                continue
            try:
                text = path.read_text(encoding="utf-8")
            except OSError as e:
                logger.warning("Failed to read signals file %s: %s", path, e)
                continue
            records.extend(self._parse_lines(text, path))
        return records

    def available_days(self) -> list[str]:
        """Days with a signals file on disk, ascending."""
        if not self.signals_dir.is_dir():
            return []
        days = []
        for entry in self.signals_dir.iterdir():
            if not entry.name.endswith(_FILE_SUFFIX):
                continue
            day = entry.name[: -len(_FILE_SUFFIX)]
            if _DATE_RE.match(day):
                days.append(day)
        return sorted(days)

    def _parse_lines(self, text: str, path: Path) -> list[SignalRecord]:
        records: list[SignalRecord] = []
        for line_no, line in enumerate(text.split("\n"), start=1):
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed line %d in %s", line_no, path)
                continue
            if (
                not isinstance(data, dict)
                or not isinstance(data.get("session_id"), str)
                or not isinstance(data.get("scope"), str)
            ):
                logger.warning("Skipping record without session_id/scope at line %d in %s", line_no, path)
                continue
            try:
                records.append(SignalRecord.from_dict(data))
            except (KeyError, TypeError, ValueError, OverflowError) as e:
                logger.warning("Skipping invalid record at line %d in %s: %s", line_no, path, e)
        return records
