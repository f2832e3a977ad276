from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, TYPE_CHECKING

import requests

from .core.errors import AuthError, RemoteError, TransientNetworkError

if TYPE_CHECKING:  # pragma: no cover
    from .token_manager import TokenManager

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0


class WacraftClient:
    """Thin wrapper around the Wacraft REST API used by the reminder runtime."""

    def __init__(
        self,
        base_url: str,
        token_manager: Optional["TokenManager"] = None,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token_manager = token_manager
        self.session = session or requests.Session()
        self.timeout = timeout

    # ------------------------------------------------------------------ auth

    def request_token(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """POST to the OAuth token endpoint without authorization."""
        url = f"{self.base_url}/user/oauth/token"
        try:
            response = self.session.post(url, json=dict(payload), timeout=self.timeout)
        except requests.RequestException as exc:
            raise TransientNetworkError(f"Token request failed: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise RemoteError(response.status_code, response.text, f"Token request failed with status {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise RemoteError(response.status_code, response.text, "Token response is not valid JSON") from exc
        if not isinstance(data, dict):
            raise RemoteError(response.status_code, response.text, "Token response is not a JSON object")
        return data

    # --------------------------------------------------------------- reading

    def list_conversations(self, limit: int, offset: int) -> List[Dict[str, Any]]:
        return self._expect_list(
            self._authorized_request("GET", "/message/conversation", params={"limit": limit, "offset": offset})
        )

    def get_contact_conversations(self, contact_id: str, limit: int = 1, offset: int = 0) -> List[Dict[str, Any]]:
        """Latest conversations of a messaging product contact, newest first."""
        params = {"limit": limit, "offset": offset, "created_at": "desc"}
        return self._expect_list(
            self._authorized_request(
                "GET", f"/message/conversation/messaging-product-contact/{contact_id}", params=params
            )
        )

    def get_messaging_product_contact(self, contact_id: str) -> Optional[Dict[str, Any]]:
        params = {"id": contact_id, "limit": 1, "offset": 0}
        items = self._expect_list(self._authorized_request("GET", "/messaging-product/contact", params=params))
        return items[0] if items else None

    # --------------------------------------------------------------- writing

    def send_message(self, to_id: str, sender_data: Mapping[str, Any]) -> Any:
        payload = {"to_id": to_id, "sender_data": dict(sender_data)}
        LOGGER.debug("Sending Wacraft message to %s", to_id)
        return self._authorized_request("POST", "/message/whatsapp", json=payload)

    # -------------------------------------------------------------- plumbing

    def _authorized_request(self, method: str, path: str, **kwargs: Any) -> Any:
        """
        Perform a bearer-authorized call.

        A 401 triggers exactly one forced token refresh and one retry. A second
        401 is surfaced as AuthError.
        """
        if self.token_manager is None:
            raise AuthError("WacraftClient has no token manager configured")

        token = self.token_manager.get_valid_token()
        response = self._send(method, path, token, **kwargs)
        if response.status_code == 401:
            LOGGER.info("Wacraft rejected the access token for %s %s; forcing refresh", method, path)
            token = self.token_manager.force_refresh(token)
            response = self._send(method, path, token, **kwargs)
            if response.status_code == 401:
                raise AuthError(f"Wacraft rejected refreshed credentials for {method} {path}")

        if not 200 <= response.status_code < 300:
            raise RemoteError(response.status_code, response.text)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    def _send(self, method: str, path: str, token: str, **kwargs: Any) -> requests.Response:
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {token}"}
        try:
            return self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise TransientNetworkError(f"{method} {path} failed: {exc}") from exc

    @staticmethod
    def _expect_list(payload: Any) -> List[Dict[str, Any]]:
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise RemoteError(200, str(payload)[:200], "Expected a JSON list from Wacraft")
        return [item for item in payload if isinstance(item, dict)]
