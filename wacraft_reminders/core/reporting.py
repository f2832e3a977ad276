from __future__ import annotations

import json
import logging
import threading
from collections import deque
from pathlib import Path
from typing import Any, Dict, Optional

from .models import ContactOutcome, CycleReport, OutcomeStatus
from .timeutils import ensure_utc, format_local

LOGGER = logging.getLogger(__name__)

_FAILURE_LEVELS = {
    OutcomeStatus.TRANSIENT_FAILURE: logging.WARNING,
    OutcomeStatus.PERMANENT_FAILURE: logging.ERROR,
    OutcomeStatus.LEDGER_ERROR: logging.ERROR,
}


def log_outcome(outcome: ContactOutcome, logger: logging.Logger = LOGGER) -> Dict[str, Any]:
    """Emit one structured log record for a contact outcome and return the record."""
    record = outcome.as_record()
    level = _FAILURE_LEVELS.get(outcome.status, logging.INFO)
    logger.log(
        level,
        "contact=%s rule=%s outcome=%s%s",
        outcome.contact_id,
        outcome.rule_name or "-",
        outcome.status.value,
        f" detail={outcome.detail}" if outcome.detail else "",
        extra={"outcome": record},
    )
    return record


def format_cycle_summary(report: CycleReport, timezone_name: str = "UTC") -> str:
    """Compose a short human readable report for a finished cycle."""
    finished = ensure_utc(report.finished_at or report.started_at)
    duration = (finished - ensure_utc(report.started_at)).total_seconds()
    lines = [f"Reminder cycle ({format_local(finished, timezone_name)}, {duration:.1f}s):"]
    lines.append(f"- Contacts evaluated: {report.contacts_seen}")
    counts = report.counts()
    for status in OutcomeStatus:
        if counts.get(status.value):
            lines.append(f"- {status.value}: {counts[status.value]}")
    if report.error:
        lines.append(f"- Cycle failed: {report.error}")
    return "\n".join(lines)


class OutcomeLog:
    """Append-only JSONL file of contact outcomes, pruned to the newest entries."""

    def __init__(self, path: Path | str, max_entries: int = 5000) -> None:
        self.path = Path(path)
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._entries: Optional[int] = None

    def append(self, record: Dict[str, Any]) -> None:
        line = json.dumps(record, ensure_ascii=True)
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as fh:
                    fh.write(line)
                    fh.write("\n")
                self._entries = self._count_entries() + 1
                self._prune_if_needed()
            except OSError as exc:
                LOGGER.warning("Failed to append outcome log %s: %s", self.path, exc)

    def _count_entries(self) -> int:
        if self._entries is not None:
            return self._entries
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                # the line just appended is counted by the caller
                return max(sum(1 for _ in fh) - 1, 0)
        except FileNotFoundError:
            return 0

    def _prune_if_needed(self) -> None:
        if self._entries is None or self._entries <= self.max_entries:
            return
        if self.max_entries <= 0:
            self.path.unlink(missing_ok=True)
            self._entries = 0
            return

        with self.path.open("r", encoding="utf-8") as fh:
            tail = deque(fh, maxlen=self.max_entries)

        temp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as fh:
                fh.writelines(tail)
            temp_path.replace(self.path)
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise
        self._entries = len(tail)
