from __future__ import annotations

import logging
import smtplib
from abc import ABC, abstractmethod
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

import requests

from .core.errors import ConfigurationError, RemoteError, TransientNetworkError
from .core.models import (
    Action,
    ActionKind,
    Contact,
    DeliveryOutcome,
    EmailAction,
    EmailSettings,
    HttpRequestAction,
    PlatformMessageAction,
)
from .core.templating import render_text, render_value
from .wacraft_client import WacraftClient

LOGGER = logging.getLogger(__name__)

HTTP_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"})


class DeliveryChannel(ABC):
    """Sends one kind of action to one contact."""

    kind: ActionKind

    @abstractmethod
    def deliver(self, contact: Contact, action: Action) -> DeliveryOutcome:
        """Attempt delivery once. Only AuthError may escape."""


class PlatformMessageChannel(DeliveryChannel):
    kind = ActionKind.PLATFORM_MESSAGE

    def __init__(self, client: WacraftClient) -> None:
        self.client = client

    def deliver(self, contact: Contact, action: Action) -> DeliveryOutcome:
        _expect(action, PlatformMessageAction)
        if not contact.wa_id:
            return DeliveryOutcome.permanent(f"Contact {contact.contact_id} has no WhatsApp id")

        sender_data: Dict[str, Any] = render_value(action.sender_data, contact)
        sender_data["to"] = contact.wa_id
        try:
            self.client.send_message(contact.contact_id, sender_data)
        except TransientNetworkError as exc:
            return DeliveryOutcome.transient(str(exc))
        except RemoteError as exc:
            if exc.is_server_error:
                return DeliveryOutcome.transient(str(exc))
            return DeliveryOutcome.permanent(str(exc))
        LOGGER.debug("Wacraft message delivered to %s", contact.contact_id)
        return DeliveryOutcome.delivered()


class EmailChannel(DeliveryChannel):
    """
    SMTP delivery of an HTML body rendered from a template file.

    Relative template paths are resolved against ``template_dir`` (the
    configuration directory).
    """

    kind = ActionKind.EMAIL

    def __init__(
        self,
        settings: Optional[EmailSettings],
        template_dir: Optional[Path] = None,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
    ) -> None:
        self.settings = settings
        self.template_dir = template_dir
        self.smtp_factory = smtp_factory

    def deliver(self, contact: Contact, action: Action) -> DeliveryOutcome:
        _expect(action, EmailAction)
        if self.settings is None:
            return DeliveryOutcome.permanent("SMTP settings are not configured")
        if not contact.email:
            return DeliveryOutcome.permanent(f"Contact {contact.contact_id} has no email address")

        template_path = self._template_path(action.template)
        try:
            template = template_path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            return DeliveryOutcome.permanent(f"Email template {template_path} is not valid UTF-8: {exc}")
        except OSError as exc:
            return DeliveryOutcome.permanent(f"Email template {template_path} is unreadable: {exc}")

        message = MIMEText(render_text(template, contact), "html", "utf-8")
        message["Subject"] = render_text(action.subject, contact)
        message["From"] = self.settings.from_address
        message["To"] = contact.email
        return self._send(self.settings, message, contact)

    def _template_path(self, template: str) -> Path:
        path = Path(template).expanduser()
        if not path.is_absolute() and self.template_dir is not None:
            return self.template_dir / path
        return path

    def _send(self, settings: EmailSettings, message: MIMEText, contact: Contact) -> DeliveryOutcome:
        try:
            with self.smtp_factory(settings.smtp_server, settings.smtp_port, timeout=settings.timeout_seconds) as server:
                if settings.use_starttls:
                    server.starttls()
                if settings.smtp_user:
                    server.login(settings.smtp_user, settings.smtp_password)
                server.send_message(message)
        except smtplib.SMTPConnectError as exc:
            return DeliveryOutcome.transient(f"SMTP connect failed: {exc}")
        except smtplib.SMTPAuthenticationError as exc:
            return DeliveryOutcome.permanent(f"SMTP authentication failed: {exc}")
        except smtplib.SMTPRecipientsRefused as exc:
            codes = [code for code, _ in exc.recipients.values()]
            if codes and all(code >= 500 for code in codes):
                return DeliveryOutcome.permanent(f"SMTP recipient refused: {exc.recipients}")
            return DeliveryOutcome.transient(f"SMTP recipient deferred: {exc.recipients}")
        except smtplib.SMTPResponseException as exc:
            if 400 <= exc.smtp_code < 500:
                return DeliveryOutcome.transient(f"SMTP temporary failure {exc.smtp_code}: {exc.smtp_error!r}")
            return DeliveryOutcome.permanent(f"SMTP rejected message {exc.smtp_code}: {exc.smtp_error!r}")
        except (smtplib.SMTPException, OSError) as exc:
            return DeliveryOutcome.transient(f"SMTP transport error: {exc}")
        LOGGER.debug("Email delivered to %s", contact.contact_id)
        return DeliveryOutcome.delivered()


class HttpRequestChannel(DeliveryChannel):
    kind = ActionKind.HTTP_REQUEST

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 15.0) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout

    def deliver(self, contact: Contact, action: Action) -> DeliveryOutcome:
        _expect(action, HttpRequestAction)
        method = action.method.strip().upper()
        if method not in HTTP_METHODS:
            return DeliveryOutcome.permanent(f"Invalid HTTP method: {action.method!r}")

        url = render_text(action.url, contact)
        headers = {key: render_text(value, contact) for key, value in action.headers.items()}
        kwargs: Dict[str, Any] = {"headers": headers, "timeout": self.timeout}
        if action.body is not None:
            kwargs["json"] = render_value(action.body, contact)

        try:
            response = self.session.request(method, url, **kwargs)
        except (requests.exceptions.InvalidURL, requests.exceptions.MissingSchema, requests.exceptions.InvalidSchema) as exc:
            return DeliveryOutcome.permanent(f"Invalid URL {url!r}: {exc}")
        except requests.RequestException as exc:
            return DeliveryOutcome.transient(f"HTTP request failed: {exc}")

        if response.status_code >= 500:
            return DeliveryOutcome.transient(f"HTTP {response.status_code}: {response.text[:200]}")
        if response.status_code >= 400:
            return DeliveryOutcome.permanent(f"HTTP {response.status_code}: {response.text[:200]}")
        return DeliveryOutcome.delivered()


class ChannelRouter:
    """Routes every action kind to exactly one channel."""

    def __init__(self, channels: Mapping[ActionKind, DeliveryChannel]) -> None:
        missing = [kind.value for kind in ActionKind if kind not in channels]
        if missing:
            raise ConfigurationError(f"No delivery channel registered for: {', '.join(missing)}")
        self._channels: Dict[ActionKind, DeliveryChannel] = dict(channels)

    def deliver(self, contact: Contact, action: Action) -> DeliveryOutcome:
        return self._channels[action.kind].deliver(contact, action)


def _expect(action: Action, action_type: type) -> None:
    if not isinstance(action, action_type):
        raise TypeError(f"{action_type.__name__} expected, got {type(action).__name__}")
