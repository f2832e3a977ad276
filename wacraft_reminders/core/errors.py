from __future__ import annotations

from typing import Optional


class ConfigurationError(RuntimeError):
    """Raised when required configuration is missing or malformed."""


class ReminderError(Exception):
    """Base class for failures raised by the reminder runtime."""


class AuthError(ReminderError):
    """Wacraft credentials were rejected and re-authentication did not help."""


class TransientNetworkError(ReminderError):
    """The remote side could not be reached (connection error, timeout)."""


class RemoteError(ReminderError):
    """The remote API answered with a non-success status."""

    def __init__(self, status_code: int, body: str = "", message: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message or f"Remote API returned {status_code}: {body[:200]}")

    @property
    def is_server_error(self) -> bool:
        return self.status_code >= 500


class LedgerError(ReminderError):
    """The dedupe ledger file could not be read."""


class LedgerWriteError(LedgerError):
    """The dedupe ledger could not durably record a delivery."""
