from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

import requests

from .channels import ChannelRouter, EmailChannel, HttpRequestChannel, PlatformMessageChannel
from .contact_source import ContactSource, WacraftContactSource
from .core.config import LEDGER_FILE_NAME
from .core.errors import AuthError, LedgerWriteError, RemoteError, TransientNetworkError
from .core.models import (
    Action,
    ActionKind,
    Contact,
    ContactOutcome,
    CycleReport,
    DeliveryOutcome,
    OutcomeStatus,
    RetryPolicy,
    Rule,
    Settings,
    TokenState,
)
from .core.reporting import OutcomeLog, format_cycle_summary, log_outcome
from .core.timeutils import utc_now
from .ledger import DedupeLedger, window_key
from .rules import RuleSet
from .token_manager import TokenManager
from .wacraft_client import WacraftClient

LOGGER = logging.getLogger(__name__)

DedupeKey = Tuple[str, str, str]


class _CycleState:
    """Abort signal and failure reason shared by the workers of one cycle."""

    def __init__(self, abort: threading.Event) -> None:
        self.abort = abort
        self.error: Optional[str] = None
        self._lock = threading.Lock()

    def fail(self, reason: str) -> None:
        with self._lock:
            if self.error is None:
                self.error = reason
        self.abort.set()


class ReminderEngine:
    """
    Drives evaluation cycles: fetch contacts, match rules, dispatch, record.

    One contact's failure never affects the others. Only an authentication
    failure stops the cycle early; it is reported on the CycleReport instead
    of being raised.
    """

    def __init__(
        self,
        contact_source: ContactSource,
        rules: Union[RuleSet, Sequence[Rule]],
        ledger: DedupeLedger,
        router: ChannelRouter,
        batch_size: int = 100,
        max_workers: int = 4,
        retry_policy: Optional[RetryPolicy] = None,
        dry_run: bool = False,
        outcome_log: Optional[OutcomeLog] = None,
        timezone_name: str = "UTC",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.contact_source = contact_source
        self.rules = rules if isinstance(rules, RuleSet) else RuleSet(rules)
        self.ledger = ledger
        self.router = router
        self.batch_size = batch_size
        self.max_workers = max_workers
        self.retry_policy = retry_policy or RetryPolicy()
        self.dry_run = dry_run
        self.outcome_log = outcome_log
        self.timezone_name = timezone_name
        self._clock = clock
        self._claims_lock = threading.Lock()
        self._claimed: Set[DedupeKey] = set()
        # (contact, rule) -> window, one entry per pair so both stay bounded
        self._unconfirmed: Dict[Tuple[str, str], str] = {}
        self._permanent_failures: Dict[Tuple[str, str], str] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        rules: Union[RuleSet, Sequence[Rule]],
        on_tokens_changed: Optional[Callable[[TokenState], None]] = None,
        dry_run: bool = False,
        session: Optional[requests.Session] = None,
    ) -> "ReminderEngine":
        engine_settings = settings.engine
        session = session or requests.Session()
        client = WacraftClient(settings.wacraft.base_url, session=session, timeout=engine_settings.http_timeout)
        client.token_manager = TokenManager(
            email=settings.wacraft.email,
            password=settings.wacraft.password,
            fetch_token=client.request_token,
            state=settings.wacraft.token_state(),
            on_change=on_tokens_changed,
        )

        router = ChannelRouter(
            {
                ActionKind.PLATFORM_MESSAGE: PlatformMessageChannel(client),
                ActionKind.EMAIL: EmailChannel(settings.email, template_dir=settings.base_dir),
                ActionKind.HTTP_REQUEST: HttpRequestChannel(session, timeout=engine_settings.http_timeout),
            }
        )

        ledger_path = engine_settings.ledger_path or Path(settings.base_dir or ".") / LEDGER_FILE_NAME
        outcome_log = None
        if engine_settings.outcome_log_path:
            outcome_log = OutcomeLog(engine_settings.outcome_log_path, engine_settings.outcome_log_max_entries)

        return cls(
            contact_source=WacraftContactSource(client),
            rules=rules,
            ledger=DedupeLedger(ledger_path),
            router=router,
            batch_size=engine_settings.batch_size,
            max_workers=engine_settings.max_workers,
            retry_policy=engine_settings.retry,
            dry_run=dry_run,
            outcome_log=outcome_log,
            timezone_name=settings.timezone,
        )

    # ----------------------------------------------------------------- cycle

    def run_cycle(self, abort: Optional[threading.Event] = None) -> CycleReport:
        """
        Evaluate every contact once.

        ``abort`` is set by the scheduler when its shutdown deadline passes;
        pending work is then reported as a transient failure.
        """
        state = _CycleState(abort or threading.Event())
        now = self._clock()
        report = CycleReport(started_at=now)
        seen: Set[str] = set()
        cursor: Optional[str] = None

        LOGGER.info("Starting reminder cycle (dry_run=%s, rules=%s)", self.dry_run, len(self.rules))
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="reminder") as pool:
            while not state.abort.is_set():
                try:
                    contacts, next_cursor = self.contact_source.list_contacts(cursor, self.batch_size)
                except AuthError as exc:
                    state.fail(f"authentication failed: {exc}")
                    break
                except (TransientNetworkError, RemoteError) as exc:
                    LOGGER.error("Failed to fetch contacts (cursor=%s): %s", cursor, exc)
                    state.fail(f"contact fetch failed: {exc}")
                    break

                batch = _unique_contacts(contacts, seen)
                report.contacts_seen += len(batch)
                futures = [pool.submit(self._evaluate_guarded, contact, now, state) for contact in batch]
                for future in as_completed(futures):
                    report.outcomes.append(self._record(future.result()))

                if next_cursor is None:
                    break
                cursor = next_cursor

        if state.error is None and state.abort.is_set():
            state.error = "cycle abandoned at shutdown deadline"
        report.error = state.error
        report.finished_at = self._clock()
        LOGGER.info("%s", format_cycle_summary(report, self.timezone_name))
        return report

    def run_single(self, contact_id: str) -> ContactOutcome:
        """
        Evaluate one contact fetched by id.

        AuthError propagates to the caller.
        """
        now = self._clock()
        try:
            contact = self.contact_source.get_contact(contact_id)
        except TransientNetworkError as exc:
            return self._record(ContactOutcome(contact_id, OutcomeStatus.TRANSIENT_FAILURE, detail=str(exc)))
        except RemoteError as exc:
            status = OutcomeStatus.TRANSIENT_FAILURE if exc.is_server_error else OutcomeStatus.PERMANENT_FAILURE
            return self._record(ContactOutcome(contact_id, status, detail=str(exc)))

        if contact is None:
            return self._record(
                ContactOutcome(contact_id, OutcomeStatus.PERMANENT_FAILURE, detail="contact not found")
            )
        return self._record(self.evaluate(contact, now, threading.Event()))

    # ------------------------------------------------------------ evaluation

    def evaluate(self, contact: Contact, now: datetime, abort: Optional[threading.Event] = None) -> ContactOutcome:
        """Match, dedupe, dispatch and record for a single contact snapshot."""
        abort = abort or threading.Event()
        inactive_hours = contact.inactive_for(now).total_seconds() / 3600
        window = window_key(contact.last_activity)

        def is_fulfilled(rule: Rule) -> bool:
            with self._claims_lock:
                unconfirmed = self._unconfirmed.get((contact.contact_id, rule.name)) == window
            if unconfirmed:
                return True
            return self.ledger.has_sent(contact.contact_id, rule.name, contact.last_activity)

        def has_failed(rule: Rule) -> bool:
            with self._claims_lock:
                return self._permanent_failures.get((contact.contact_id, rule.name)) == window

        rule = self.rules.match(contact, now, is_fulfilled, has_failed)
        if rule is None:
            return ContactOutcome(contact.contact_id, OutcomeStatus.NO_MATCH, inactive_hours=inactive_hours)

        key: DedupeKey = (contact.contact_id, rule.name, window)
        if not self._claim(key):
            return ContactOutcome(
                contact.contact_id,
                OutcomeStatus.DUPLICATE,
                rule_name=rule.name,
                detail="delivery already in progress",
                inactive_hours=inactive_hours,
            )

        try:
            # another worker may have finished this key between match and claim
            if is_fulfilled(rule) or has_failed(rule):
                return ContactOutcome(
                    contact.contact_id,
                    OutcomeStatus.DUPLICATE,
                    rule_name=rule.name,
                    detail="already handled in this window",
                    inactive_hours=inactive_hours,
                )
            return self._dispatch(contact, rule, key, abort, inactive_hours)
        finally:
            self._release(key)

    def _dispatch(
        self,
        contact: Contact,
        rule: Rule,
        key: DedupeKey,
        abort: threading.Event,
        inactive_hours: float,
    ) -> ContactOutcome:
        outcome = ContactOutcome(contact.contact_id, OutcomeStatus.NO_MATCH, rule_name=rule.name, inactive_hours=inactive_hours)

        if self.dry_run:
            outcome.status = OutcomeStatus.DRY_RUN
            outcome.detail = f"would dispatch {rule.action.kind.value}" if rule.action else "would record checkpoint"
            return outcome

        if rule.action is None:
            outcome.status = OutcomeStatus.CHECKPOINT
            return self._confirm(contact, key, outcome)

        delivery, attempts = self._deliver_with_retry(contact, rule.action, abort)
        outcome.attempts = attempts
        if delivery.is_delivered:
            outcome.status = OutcomeStatus.DELIVERED
            return self._confirm(contact, key, outcome)

        outcome.detail = delivery.reason
        if delivery.is_transient:
            outcome.status = OutcomeStatus.TRANSIENT_FAILURE
            return outcome

        # not retried in later cycles of this window; a lower rule may fire instead
        outcome.status = OutcomeStatus.PERMANENT_FAILURE
        with self._claims_lock:
            self._permanent_failures[(key[0], key[1])] = key[2]
        return outcome

    def _confirm(self, contact: Contact, key: DedupeKey, outcome: ContactOutcome) -> ContactOutcome:
        try:
            self.ledger.record_sent(contact.contact_id, key[1], contact.last_activity)
        except LedgerWriteError as exc:
            LOGGER.error("Delivery to %s is unconfirmed: %s", contact.contact_id, exc)
            outcome.status = OutcomeStatus.LEDGER_ERROR
            outcome.detail = str(exc)
            # keeps later cycles of this process from sending it again
            with self._claims_lock:
                self._unconfirmed[(key[0], key[1])] = key[2]
        return outcome

    def _deliver_with_retry(
        self, contact: Contact, action: Action, abort: threading.Event
    ) -> Tuple[DeliveryOutcome, int]:
        attempt = 0
        while True:
            attempt += 1
            delivery = self.router.deliver(contact, action)
            if not delivery.is_transient or attempt >= self.retry_policy.max_attempts:
                return delivery, attempt

            delay = self.retry_policy.delay_for(attempt)
            LOGGER.info(
                "Transient failure for %s (attempt %s/%s): %s; retrying in %.1fs",
                contact.contact_id,
                attempt,
                self.retry_policy.max_attempts,
                delivery.reason,
                delay,
            )
            if abort.wait(delay):
                return DeliveryOutcome.transient(f"abandoned after {attempt} attempt(s): {delivery.reason}"), attempt

    def _evaluate_guarded(self, contact: Contact, now: datetime, state: _CycleState) -> ContactOutcome:
        if state.abort.is_set():
            return ContactOutcome(contact.contact_id, OutcomeStatus.TRANSIENT_FAILURE, detail="abandoned before evaluation")
        try:
            return self.evaluate(contact, now, state.abort)
        except AuthError as exc:
            state.fail(f"authentication failed: {exc}")
            return ContactOutcome(contact.contact_id, OutcomeStatus.TRANSIENT_FAILURE, detail=f"authentication failed: {exc}")
        except Exception as exc:
            LOGGER.exception("Unexpected error while evaluating contact %s", contact.contact_id)
            return ContactOutcome(contact.contact_id, OutcomeStatus.PERMANENT_FAILURE, detail=f"unexpected error: {exc}")

    # --------------------------------------------------------------- helpers

    def _claim(self, key: DedupeKey) -> bool:
        with self._claims_lock:
            if key in self._claimed:
                return False
            self._claimed.add(key)
            return True

    def _release(self, key: DedupeKey) -> None:
        with self._claims_lock:
            self._claimed.discard(key)

    def _record(self, outcome: ContactOutcome) -> ContactOutcome:
        record = log_outcome(outcome)
        if self.outcome_log is not None:
            self.outcome_log.append(record)
        return outcome


def _unique_contacts(contacts: Iterable[Contact], seen: Set[str]) -> List[Contact]:
    """Drop contacts already handled this cycle; inside a page the latest activity wins."""
    latest: Dict[str, Contact] = {}
    for contact in contacts:
        if contact.contact_id in seen:
            LOGGER.debug("Contact %s already evaluated this cycle", contact.contact_id)
            continue
        current = latest.get(contact.contact_id)
        if current is None or contact.last_activity > current.last_activity:
            latest[contact.contact_id] = contact
    seen.update(latest)
    return list(latest.values())
