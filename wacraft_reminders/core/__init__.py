from __future__ import annotations

from .models import (
    ActionKind,
    Contact,
    ContactOutcome,
    CycleReport,
    DeliveryOutcome,
    DeliveryStatus,
    EmailAction,
    EmailSettings,
    EngineSettings,
    HttpRequestAction,
    OutcomeStatus,
    PlatformMessageAction,
    RetryPolicy,
    Rule,
    Settings,
    TokenState,
    WacraftSettings,
)
from .errors import (
    AuthError,
    ConfigurationError,
    LedgerError,
    LedgerWriteError,
    ReminderError,
    RemoteError,
    TransientNetworkError,
)
from .config import load_rules, load_settings, persist_tokens

__all__ = [
    "ActionKind",
    "AuthError",
    "ConfigurationError",
    "Contact",
    "ContactOutcome",
    "CycleReport",
    "DeliveryOutcome",
    "DeliveryStatus",
    "EmailAction",
    "EmailSettings",
    "EngineSettings",
    "HttpRequestAction",
    "LedgerError",
    "LedgerWriteError",
    "OutcomeStatus",
    "PlatformMessageAction",
    "ReminderError",
    "RemoteError",
    "RetryPolicy",
    "Rule",
    "Settings",
    "TokenState",
    "TransientNetworkError",
    "WacraftSettings",
    "load_rules",
    "load_settings",
    "persist_tokens",
]
