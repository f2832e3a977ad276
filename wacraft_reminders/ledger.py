from __future__ import annotations

import copy
import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional

from .core.config import write_json_atomic
from .core.errors import LedgerError, LedgerWriteError
from .core.timeutils import ensure_utc, utc_now

LOGGER = logging.getLogger(__name__)

LEDGER_VERSION = 1

# contact id -> rule name -> window id -> sent at (ISO 8601)
LedgerEntries = Dict[str, Dict[str, Dict[str, str]]]


def window_key(last_activity: datetime) -> str:
    """Window id of an inactivity period: the contact's last activity in UTC."""
    return ensure_utc(last_activity).isoformat()


class DedupeLedger:
    """
    File-backed record of which rule fired for which contact and window.

    Every write replaces the whole file atomically. The in-memory view is only
    updated once the new file is durably in place, so a failed write leaves the
    ledger exactly as it was.
    """

    def __init__(self, path: Path | str, clock: Callable[[], datetime] = utc_now) -> None:
        self.path = Path(path)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: LedgerEntries = self._load()

    def _load(self) -> LedgerEntries:
        if not self.path.exists():
            LOGGER.info("Ledger %s does not exist yet; starting empty", self.path)
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                payload = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise LedgerError(f"Failed to read ledger {self.path}: {exc}") from exc

        if not isinstance(payload, dict) or not isinstance(payload.get("entries", {}), dict):
            raise LedgerError(f"Ledger {self.path} has an unexpected layout")
        entries = payload.get("entries", {})
        for contact_id, rules in entries.items():
            if not isinstance(rules, dict) or not all(isinstance(windows, dict) for windows in rules.values()):
                raise LedgerError(f"Ledger {self.path} has a malformed entry for contact {contact_id}")
        return entries

    def has_sent(self, contact_id: str, rule_name: str, last_activity: datetime) -> bool:
        with self._lock:
            windows = self._entries.get(contact_id, {}).get(rule_name, {})
            return window_key(last_activity) in windows

    def sent_at(self, contact_id: str, rule_name: str, last_activity: datetime) -> Optional[str]:
        with self._lock:
            return self._entries.get(contact_id, {}).get(rule_name, {}).get(window_key(last_activity))

    def record_sent(self, contact_id: str, rule_name: str, last_activity: datetime) -> None:
        """
        Durably record a delivery for (contact, rule, window).

        Older windows of the same (contact, rule) pair are dropped. Raises
        LedgerWriteError when the file could not be replaced.
        """
        window = window_key(last_activity)
        with self._lock:
            if window in self._entries.get(contact_id, {}).get(rule_name, {}):
                return
            candidate = copy.deepcopy(self._entries)
            candidate.setdefault(contact_id, {})[rule_name] = {window: self._clock().isoformat()}
            try:
                write_json_atomic(self.path, {"version": LEDGER_VERSION, "entries": candidate})
            except (OSError, TypeError, ValueError) as exc:
                raise LedgerWriteError(f"Failed to write ledger {self.path}: {exc}") from exc
            self._entries = candidate
        LOGGER.debug("Ledger recorded contact=%s rule=%s window=%s", contact_id, rule_name, window)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(rules) for rules in self._entries.values())
