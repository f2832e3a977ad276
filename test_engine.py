import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest
import pytz

from wacraft_reminders.channels import ChannelRouter
from wacraft_reminders.contact_source import ContactSource
from wacraft_reminders.core.errors import AuthError, LedgerWriteError, TransientNetworkError
from wacraft_reminders.core.models import (
    ActionKind,
    Contact,
    DeliveryOutcome,
    HttpRequestAction,
    OutcomeStatus,
    PlatformMessageAction,
    RetryPolicy,
    Rule,
)
from wacraft_reminders.core.reporting import OutcomeLog
from wacraft_reminders.engine import ReminderEngine
from wacraft_reminders.ledger import DedupeLedger

NOW = datetime(2024, 5, 10, 12, 0, tzinfo=pytz.UTC)
WEBHOOK = HttpRequestAction("POST", "https://hooks.example.com/{contact_id}")
MESSAGE = PlatformMessageAction({"type": "text", "text": {"body": "Hi {contact_name}"}})

RULES = [
    Rule("12h", timedelta(hours=12), WEBHOOK),
    Rule("24h", timedelta(hours=24), WEBHOOK),
    Rule("48h", timedelta(hours=48), MESSAGE),
]


def _contact(contact_id: str, hours_inactive: float) -> Contact:
    return Contact(contact_id, contact_id.upper(), NOW - timedelta(hours=hours_inactive), wa_id="5511")


class _Source(ContactSource):
    def __init__(self, pages: List[List[Contact]], error: Optional[Exception] = None):
        self.pages = pages
        self.error = error
        self.cursors = []

    def list_contacts(self, cursor, batch_size):
        self.cursors.append(cursor)
        if self.error:
            raise self.error
        index = int(cursor or 0)
        next_cursor = str(index + 1) if index + 1 < len(self.pages) else None
        return list(self.pages[index]) if self.pages else [], next_cursor

    def get_contact(self, contact_id):
        for page in self.pages:
            for contact in page:
                if contact.contact_id == contact_id:
                    return contact
        return None


class _Channel:
    def __init__(self, kind, script: Optional[Dict[str, List[object]]] = None, delay: float = 0.0):
        self.kind = kind
        self.script = script or {}
        self.delay = delay
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def deliver(self, contact, action):
        with self._lock:
            self.calls.append(contact.contact_id)
            queue = self.script.get(contact.contact_id)
            result = queue.pop(0) if queue else DeliveryOutcome.delivered()
        if self.delay:
            time.sleep(self.delay)
        if isinstance(result, Exception):
            raise result
        return result


def _engine(tmp_path, pages, channels=None, rules=RULES, **kwargs):
    channels = channels or {kind: _Channel(kind) for kind in ActionKind}
    engine = ReminderEngine(
        contact_source=_Source(pages) if not isinstance(pages, ContactSource) else pages,
        rules=rules,
        ledger=DedupeLedger(tmp_path / "ledger.json"),
        router=ChannelRouter(channels),
        retry_policy=kwargs.pop("retry_policy", RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)),
        clock=lambda: NOW,
        **kwargs,
    )
    return engine, channels


def test_escalation_selects_the_48h_rule(tmp_path):
    engine, channels = _engine(tmp_path, [[_contact("a", 50)]])

    report = engine.run_cycle()

    outcome = report.outcome_for("a")
    assert outcome.status is OutcomeStatus.DELIVERED
    assert outcome.rule_name == "48h"
    assert channels[ActionKind.PLATFORM_MESSAGE].calls == ["a"]
    assert channels[ActionKind.HTTP_REQUEST].calls == []


def test_second_cycle_does_not_resend(tmp_path):
    engine, channels = _engine(tmp_path, [[_contact("a", 30)]])

    engine.run_cycle()
    report = engine.run_cycle()

    assert report.outcome_for("a").status is OutcomeStatus.NO_MATCH
    assert channels[ActionKind.HTTP_REQUEST].calls == ["a"]


def test_ledger_survives_engine_restart(tmp_path):
    engine, _ = _engine(tmp_path, [[_contact("a", 30)]])
    engine.run_cycle()

    restarted, channels = _engine(tmp_path, [[_contact("a", 30)]])
    report = restarted.run_cycle()

    assert report.outcome_for("a").status is OutcomeStatus.NO_MATCH
    assert channels[ActionKind.HTTP_REQUEST].calls == []


def test_new_activity_resets_window(tmp_path):
    engine, channels = _engine(tmp_path, [[_contact("a", 30)]])
    engine.run_cycle()

    engine.contact_source = _Source([[_contact("a", 25)]])
    report = engine.run_cycle()

    assert report.outcome_for("a").status is OutcomeStatus.DELIVERED
    assert channels[ActionKind.HTTP_REQUEST].calls == ["a", "a"]


def test_transient_failures_are_retried_then_delivered(tmp_path):
    http = _Channel(ActionKind.HTTP_REQUEST, {"a": [DeliveryOutcome.transient("503"), DeliveryOutcome.transient("503")]})
    channels = {kind: _Channel(kind) for kind in ActionKind}
    channels[ActionKind.HTTP_REQUEST] = http
    engine, _ = _engine(tmp_path, [[_contact("a", 30)]], channels=channels)

    outcome = engine.run_cycle().outcome_for("a")

    assert outcome.status is OutcomeStatus.DELIVERED
    assert outcome.attempts == 3


def test_exhausted_transient_failure_is_not_recorded(tmp_path):
    failures = [DeliveryOutcome.transient("timeout")] * 3
    http = _Channel(ActionKind.HTTP_REQUEST, {"a": list(failures)})
    channels = {kind: _Channel(kind) for kind in ActionKind}
    channels[ActionKind.HTTP_REQUEST] = http
    engine, _ = _engine(tmp_path, [[_contact("a", 30)]], channels=channels)

    outcome = engine.run_cycle().outcome_for("a")

    assert outcome.status is OutcomeStatus.TRANSIENT_FAILURE
    assert outcome.attempts == 3
    assert not engine.ledger.has_sent("a", "24h", _contact("a", 30).last_activity)

    # eligible again on the next cycle
    assert engine.run_cycle().outcome_for("a").status is OutcomeStatus.DELIVERED


def test_permanent_failure_is_not_retried(tmp_path):
    http = _Channel(ActionKind.HTTP_REQUEST, {"a": [DeliveryOutcome.permanent("404")]})
    channels = {kind: _Channel(kind) for kind in ActionKind}
    channels[ActionKind.HTTP_REQUEST] = http
    engine, _ = _engine(tmp_path, [[_contact("a", 30)]], channels=channels)

    outcome = engine.run_cycle().outcome_for("a")

    assert outcome.status is OutcomeStatus.PERMANENT_FAILURE
    assert outcome.attempts == 1
    assert http.calls == ["a"]


def test_permanent_failure_is_not_dispatched_again_in_later_cycles(tmp_path):
    message = _Channel(ActionKind.PLATFORM_MESSAGE, {"a": [DeliveryOutcome.permanent("400 bad template")]})
    channels = {kind: _Channel(kind) for kind in ActionKind}
    channels[ActionKind.PLATFORM_MESSAGE] = message
    engine, _ = _engine(tmp_path, [[_contact("a", 50)]], channels=channels, rules=[RULES[2]])

    statuses = [engine.run_cycle().outcome_for("a").status for _ in range(3)]

    assert statuses == [OutcomeStatus.PERMANENT_FAILURE, OutcomeStatus.NO_MATCH, OutcomeStatus.NO_MATCH]
    assert message.calls == ["a"]
    assert len(engine.ledger) == 0


def test_permanent_failure_lets_lower_rule_fire_next_cycle(tmp_path):
    message = _Channel(ActionKind.PLATFORM_MESSAGE, {"a": [DeliveryOutcome.permanent("400 bad template")]})
    channels = {kind: _Channel(kind) for kind in ActionKind}
    channels[ActionKind.PLATFORM_MESSAGE] = message
    engine, _ = _engine(tmp_path, [[_contact("a", 50)]], channels=channels)

    first = engine.run_cycle().outcome_for("a")
    second = engine.run_cycle().outcome_for("a")
    third = engine.run_cycle().outcome_for("a")

    assert (first.status, first.rule_name) == (OutcomeStatus.PERMANENT_FAILURE, "48h")
    assert (second.status, second.rule_name) == (OutcomeStatus.DELIVERED, "24h")
    assert third.status is OutcomeStatus.NO_MATCH
    assert message.calls == ["a"]
    assert channels[ActionKind.HTTP_REQUEST].calls == ["a"]


def test_permanent_failure_is_retried_after_new_activity(tmp_path):
    message = _Channel(ActionKind.PLATFORM_MESSAGE, {"a": [DeliveryOutcome.permanent("400 bad template")]})
    channels = {kind: _Channel(kind) for kind in ActionKind}
    channels[ActionKind.PLATFORM_MESSAGE] = message
    engine, _ = _engine(tmp_path, [[_contact("a", 50)]], channels=channels, rules=[RULES[2]])
    engine.run_cycle()

    engine.contact_source = _Source([[_contact("a", 49)]])
    outcome = engine.run_cycle().outcome_for("a")

    assert outcome.status is OutcomeStatus.DELIVERED
    assert message.calls == ["a", "a"]


def test_one_contact_failure_does_not_abort_batch(tmp_path, caplog):
    http = _Channel(ActionKind.HTTP_REQUEST, {"b": [RuntimeError("boom")]})
    channels = {kind: _Channel(kind) for kind in ActionKind}
    channels[ActionKind.HTTP_REQUEST] = http
    engine, _ = _engine(tmp_path, [[_contact("a", 30), _contact("b", 30), _contact("c", 30)]], channels=channels)

    caplog.set_level(logging.INFO)
    report = engine.run_cycle()

    assert report.ok
    assert report.outcome_for("b").status is OutcomeStatus.PERMANENT_FAILURE
    assert report.outcome_for("a").status is OutcomeStatus.DELIVERED
    assert report.outcome_for("c").status is OutcomeStatus.DELIVERED
    assert "Unexpected error while evaluating contact b" in caplog.text


def test_auth_error_marks_cycle_failed(tmp_path):
    message = _Channel(ActionKind.PLATFORM_MESSAGE, {"a": [AuthError("denied")]})
    channels = {kind: _Channel(kind) for kind in ActionKind}
    channels[ActionKind.PLATFORM_MESSAGE] = message
    engine, _ = _engine(tmp_path, [[_contact("a", 50)], [_contact("b", 50)]], channels=channels)

    report = engine.run_cycle()

    assert not report.ok
    assert "authentication failed" in report.error
    assert report.outcome_for("b") is None
    assert engine.contact_source.cursors == [None]


def test_contact_fetch_failure_marks_cycle_failed(tmp_path):
    engine, _ = _engine(tmp_path, _Source([], error=TransientNetworkError("timeout")))

    report = engine.run_cycle()

    assert not report.ok
    assert report.outcomes == []


def test_pagination_and_duplicate_contacts(tmp_path):
    pages = [
        [_contact("a", 30), _contact("a", 13)],
        [_contact("a", 50), _contact("b", 30)],
    ]
    engine, channels = _engine(tmp_path, pages)

    report = engine.run_cycle()

    assert report.contacts_seen == 2
    assert engine.contact_source.cursors == [None, "1"]
    # the most recent activity on the first page wins: 13h inactive -> 12h rule
    assert report.outcome_for("a").rule_name == "12h"
    assert sorted(channels[ActionKind.HTTP_REQUEST].calls) == ["a", "b"]
    assert channels[ActionKind.PLATFORM_MESSAGE].calls == []


def test_action_less_rule_records_checkpoint(tmp_path):
    rules = [Rule("watch", timedelta(hours=1))]
    engine, channels = _engine(tmp_path, [[_contact("a", 2)]], rules=rules)

    first = engine.run_cycle().outcome_for("a")
    second = engine.run_cycle().outcome_for("a")

    assert first.status is OutcomeStatus.CHECKPOINT
    assert second.status is OutcomeStatus.NO_MATCH
    assert all(channel.calls == [] for channel in channels.values())


def test_dry_run_dispatches_and_records_nothing(tmp_path):
    engine, channels = _engine(tmp_path, [[_contact("a", 50)]], dry_run=True)

    outcome = engine.run_cycle().outcome_for("a")

    assert outcome.status is OutcomeStatus.DRY_RUN
    assert "wacraft_message" in outcome.detail
    assert all(channel.calls == [] for channel in channels.values())
    assert len(engine.ledger) == 0


def test_ledger_write_failure_is_unconfirmed_but_not_resent(tmp_path, monkeypatch):
    engine, channels = _engine(tmp_path, [[_contact("a", 30)]])

    def _fail(*_args, **_kwargs):
        raise LedgerWriteError("disk full")

    monkeypatch.setattr(engine.ledger, "record_sent", _fail)

    first = engine.run_cycle().outcome_for("a")
    second = engine.run_cycle().outcome_for("a")

    assert first.status is OutcomeStatus.LEDGER_ERROR
    assert second.status is OutcomeStatus.NO_MATCH
    assert channels[ActionKind.HTTP_REQUEST].calls == ["a"]

    # a new window replaces the remembered one instead of piling up
    engine.contact_source = _Source([[_contact("a", 25)]])
    assert engine.run_cycle().outcome_for("a").status is OutcomeStatus.LEDGER_ERROR
    assert list(engine._unconfirmed) == [("a", "24h")]


def test_confirmed_deliveries_are_not_kept_in_memory(tmp_path):
    engine, _ = _engine(tmp_path, [[_contact("a", 30), _contact("b", 50)]])

    report = engine.run_cycle()

    assert report.count(OutcomeStatus.DELIVERED) == 2
    assert engine._unconfirmed == {}


def test_concurrent_runs_deliver_at_most_once(tmp_path):
    http = _Channel(ActionKind.HTTP_REQUEST, delay=0.2)
    channels = {kind: _Channel(kind) for kind in ActionKind}
    channels[ActionKind.HTTP_REQUEST] = http
    engine, _ = _engine(tmp_path, [[_contact("a", 30)]], channels=channels)

    results = []
    threads = [threading.Thread(target=lambda: results.append(engine.run_single("a"))) for _ in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert http.calls == ["a"]
    statuses = sorted(outcome.status.value for outcome in results)
    assert statuses.count("delivered") == 1


def test_abort_stops_retry_backoff(tmp_path):
    http = _Channel(ActionKind.HTTP_REQUEST, {"a": [DeliveryOutcome.transient("503")] * 5})
    channels = {kind: _Channel(kind) for kind in ActionKind}
    channels[ActionKind.HTTP_REQUEST] = http
    engine, _ = _engine(
        tmp_path,
        [[_contact("a", 30)]],
        channels=channels,
        retry_policy=RetryPolicy(max_attempts=5, base_delay=10.0, max_delay=10.0),
    )
    abort = threading.Event()
    threading.Timer(0.2, abort.set).start()

    started = time.monotonic()
    report = engine.run_cycle(abort)

    assert time.monotonic() - started < 5
    outcome = report.outcome_for("a")
    assert outcome.status is OutcomeStatus.TRANSIENT_FAILURE
    assert "abandoned" in outcome.detail
    assert report.error == "cycle abandoned at shutdown deadline"


def test_run_single_unknown_contact(tmp_path):
    engine, _ = _engine(tmp_path, [[_contact("a", 30)]])

    outcome = engine.run_single("missing")

    assert outcome.status is OutcomeStatus.PERMANENT_FAILURE
    assert outcome.detail == "contact not found"


def test_run_single_propagates_auth_error(tmp_path):
    message = _Channel(ActionKind.PLATFORM_MESSAGE, {"a": [AuthError("denied")]})
    channels = {kind: _Channel(kind) for kind in ActionKind}
    channels[ActionKind.PLATFORM_MESSAGE] = message
    engine, _ = _engine(tmp_path, [[_contact("a", 50)]], channels=channels)

    with pytest.raises(AuthError):
        engine.run_single("a")


def test_outcomes_are_written_to_outcome_log(tmp_path):
    log = OutcomeLog(tmp_path / "outcomes.jsonl", max_entries=10)
    engine, _ = _engine(tmp_path, [[_contact("a", 30), _contact("b", 1)]], outcome_log=log)

    engine.run_cycle()

    lines = (tmp_path / "outcomes.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert '"outcome": "delivered"' in "".join(lines)
