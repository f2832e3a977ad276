from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Dict, List, Optional, Union

import pytz

from .timeutils import ensure_utc, utc_now


@dataclass(frozen=True)
class WacraftSettings:
    """Wacraft API endpoint, login and the persisted token pair."""

    base_url: str
    email: str
    password: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[int] = None

    def token_state(self) -> "TokenState":
        expires_at = None
        if self.token_expires_at is not None:
            expires_at = datetime.fromtimestamp(int(self.token_expires_at), tz=pytz.UTC)
        return TokenState(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_at=expires_at,
        )


@dataclass(frozen=True)
class EmailSettings:
    """SMTP relay used by the email channel."""

    smtp_server: str
    smtp_user: str
    smtp_password: str
    from_address: str
    smtp_port: int = 587
    use_starttls: bool = True
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff used for transient delivery failures."""

    max_attempts: int = 3
    base_delay: float = 2.0
    multiplier: float = 2.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given failed attempt (1-based)."""
        if attempt < 1:
            return 0.0
        return min(self.max_delay, self.base_delay * (self.multiplier ** (attempt - 1)))


@dataclass(frozen=True)
class EngineSettings:
    interval_seconds: float = 3600.0
    batch_size: int = 100
    max_workers: int = 4
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    shutdown_grace_seconds: Optional[float] = 30.0
    ledger_path: Optional[Path] = None
    outcome_log_path: Optional[Path] = None
    outcome_log_max_entries: int = 5000
    http_timeout: float = 15.0


@dataclass(frozen=True)
class Settings:
    """Top-level runtime configuration loaded from settings.json."""

    wacraft: WacraftSettings
    email: Optional[EmailSettings] = None
    engine: EngineSettings = field(default_factory=EngineSettings)
    timezone: str = "UTC"
    base_dir: Optional[Path] = None


class ActionKind(str, Enum):
    PLATFORM_MESSAGE = "wacraft_message"
    EMAIL = "email"
    HTTP_REQUEST = "http_request"


@dataclass(frozen=True)
class PlatformMessageAction:
    """Send a Wacraft message; ``sender_data`` is the message payload without ``to``."""

    sender_data: Dict[str, Any]
    kind: ClassVar[ActionKind] = ActionKind.PLATFORM_MESSAGE


@dataclass(frozen=True)
class EmailAction:
    subject: str
    template: str
    kind: ClassVar[ActionKind] = ActionKind.EMAIL


@dataclass(frozen=True)
class HttpRequestAction:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    kind: ClassVar[ActionKind] = ActionKind.HTTP_REQUEST


Action = Union[PlatformMessageAction, EmailAction, HttpRequestAction]


@dataclass(frozen=True)
class Rule:
    """A named inactivity threshold with an optional action."""

    name: str
    threshold: timedelta
    action: Optional[Action] = None

    @property
    def inactive_for_hours(self) -> float:
        return self.threshold.total_seconds() / 3600


@dataclass(frozen=True)
class Contact:
    """Snapshot of a messaging product contact taken at the start of a cycle."""

    contact_id: str
    name: str
    last_activity: datetime
    email: Optional[str] = None
    wa_id: Optional[str] = None
    phone_number: Optional[str] = None

    def inactive_for(self, now: datetime) -> timedelta:
        return ensure_utc(now) - ensure_utc(self.last_activity)


@dataclass(frozen=True)
class TokenState:
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_fresh(self, now: datetime, margin: timedelta) -> bool:
        if not self.access_token or self.expires_at is None:
            return False
        return self.expires_at > now + margin

    @property
    def expires_at_epoch(self) -> Optional[int]:
        if self.expires_at is None:
            return None
        return int(self.expires_at.timestamp())


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of a single channel delivery attempt."""

    status: DeliveryStatus
    reason: Optional[str] = None

    @classmethod
    def delivered(cls) -> "DeliveryOutcome":
        return cls(DeliveryStatus.DELIVERED)

    @classmethod
    def transient(cls, reason: str) -> "DeliveryOutcome":
        return cls(DeliveryStatus.TRANSIENT_FAILURE, reason)

    @classmethod
    def permanent(cls, reason: str) -> "DeliveryOutcome":
        return cls(DeliveryStatus.PERMANENT_FAILURE, reason)

    @property
    def is_delivered(self) -> bool:
        return self.status is DeliveryStatus.DELIVERED

    @property
    def is_transient(self) -> bool:
        return self.status is DeliveryStatus.TRANSIENT_FAILURE


class OutcomeStatus(str, Enum):
    DELIVERED = "delivered"
    CHECKPOINT = "checkpoint"
    NO_MATCH = "no_match"
    DRY_RUN = "dry_run"
    DUPLICATE = "duplicate"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"
    LEDGER_ERROR = "ledger_error"


FAILURE_STATUSES = frozenset(
    {OutcomeStatus.TRANSIENT_FAILURE, OutcomeStatus.PERMANENT_FAILURE, OutcomeStatus.LEDGER_ERROR}
)


@dataclass
class ContactOutcome:
    """Per-contact result reported by the engine."""

    contact_id: str
    status: OutcomeStatus
    rule_name: Optional[str] = None
    detail: Optional[str] = None
    attempts: int = 0
    inactive_hours: Optional[float] = None
    logged_at: datetime = field(default_factory=utc_now)

    @property
    def failed(self) -> bool:
        return self.status in FAILURE_STATUSES

    def as_record(self) -> Dict[str, Any]:
        return {
            "contact_id": self.contact_id,
            "rule": self.rule_name,
            "outcome": self.status.value,
            "detail": self.detail,
            "attempts": self.attempts,
            "inactive_hours": None if self.inactive_hours is None else round(self.inactive_hours, 2),
            "logged_at": self.logged_at.isoformat(),
        }


@dataclass
class CycleReport:
    """Everything one evaluation cycle produced."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    outcomes: List[ContactOutcome] = field(default_factory=list)
    contacts_seen: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status is status)

    def counts(self) -> Dict[str, int]:
        totals: Dict[str, int] = {}
        for outcome in self.outcomes:
            totals[outcome.status.value] = totals.get(outcome.status.value, 0) + 1
        return totals

    def outcome_for(self, contact_id: str) -> Optional[ContactOutcome]:
        for outcome in self.outcomes:
            if outcome.contact_id == contact_id:
                return outcome
        return None
