from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional

from .core.errors import AuthError, RemoteError, TransientNetworkError
from .core.models import TokenState
from .core.timeutils import utc_now

LOGGER = logging.getLogger(__name__)

DEFAULT_SAFETY_MARGIN = timedelta(seconds=60)

TokenFetcher = Callable[[Mapping[str, Any]], Dict[str, Any]]
TokenSink = Callable[[TokenState], None]


class TokenManager:
    """
    Owner of the Wacraft access/refresh token pair.

    All refreshes run under one lock. Callers that queue up behind an
    in-progress refresh do not start another one: they receive the result
    (token or error) of the refresh they waited for.
    """

    def __init__(
        self,
        email: str,
        password: str,
        fetch_token: TokenFetcher,
        state: Optional[TokenState] = None,
        on_change: Optional[TokenSink] = None,
        safety_margin: timedelta = DEFAULT_SAFETY_MARGIN,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._email = email
        self._password = password
        self._fetch_token = fetch_token
        self._state = state or TokenState()
        self._on_change = on_change
        self._safety_margin = safety_margin
        self._clock = clock
        self._lock = threading.Lock()
        self._refresh_count = 0
        self._last_error: Optional[Exception] = None
        self.needs_persist = False

    @property
    def state(self) -> TokenState:
        return self._state

    @property
    def refresh_count(self) -> int:
        return self._refresh_count

    def get_valid_token(self) -> str:
        state = self._state
        if state.is_fresh(self._clock(), self._safety_margin):
            return state.access_token  # type: ignore[return-value]

        seen = self._refresh_count
        with self._lock:
            if self._refresh_count != seen:
                return self._shared_outcome()
            state = self._state
            if state.is_fresh(self._clock(), self._safety_margin):
                return state.access_token  # type: ignore[return-value]
            LOGGER.info("Access token is expired or missing; refreshing")
            return self._refresh_locked()

    def force_refresh(self, rejected_token: Optional[str] = None) -> str:
        """
        Refresh after the remote side rejected ``rejected_token``.

        If another caller already replaced that token, the current one is
        returned without contacting the token endpoint again.
        """
        seen = self._refresh_count
        with self._lock:
            if self._refresh_count != seen:
                return self._shared_outcome()
            state = self._state
            if (
                rejected_token is not None
                and state.access_token
                and state.access_token != rejected_token
                and state.is_fresh(self._clock(), self._safety_margin)
            ):
                return state.access_token
            LOGGER.info("Forcing access token refresh")
            return self._refresh_locked()

    def _shared_outcome(self) -> str:
        error = self._last_error
        if error is None:
            LOGGER.debug("Token was refreshed by another caller")
            return self._state.access_token  # type: ignore[return-value]
        if isinstance(error, TransientNetworkError):
            raise TransientNetworkError(str(error)) from error
        raise AuthError(str(error)) from error

    def _refresh_locked(self) -> str:
        self._last_error = None
        try:
            token = self._obtain_tokens()
        except Exception as exc:
            self._last_error = exc
            raise
        finally:
            self._refresh_count += 1
        return token

    def _obtain_tokens(self) -> str:
        refresh_token = self._state.refresh_token
        if refresh_token:
            try:
                response = self._fetch_token({"grant_type": "refresh_token", "refresh_token": refresh_token})
                self._apply(response)
                LOGGER.info("Refreshed access token with refresh_token grant")
                return self._state.access_token  # type: ignore[return-value]
            except (RemoteError, TransientNetworkError, ValueError) as exc:
                LOGGER.warning("Refresh token grant failed (%s); falling back to password", exc)

        try:
            response = self._fetch_token(
                {"grant_type": "password", "username": self._email, "password": self._password}
            )
        except RemoteError as exc:
            raise AuthError(f"Wacraft authentication failed: {exc}") from exc

        try:
            self._apply(response)
        except ValueError as exc:
            raise AuthError(f"Malformed token response: {exc}") from exc
        LOGGER.info("Obtained new access token with password grant")
        return self._state.access_token  # type: ignore[return-value]

    def _apply(self, response: Mapping[str, Any]) -> None:
        access_token = response.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("token response has no access_token")
        try:
            expires_in = int(response.get("expires_in"))  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            raise ValueError("token response has no valid expires_in") from exc

        refresh_token = response.get("refresh_token") or self._state.refresh_token
        self._state = TokenState(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=self._clock() + timedelta(seconds=expires_in),
        )
        self.needs_persist = True
        self._notify()

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self._state)
        except Exception as exc:  # pragma: no cover - persistence is best effort
            LOGGER.error("Failed to persist refreshed tokens: %s", exc)
            return
        self.needs_persist = False
