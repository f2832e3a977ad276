from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .core.models import Contact
from .core.timeutils import parse_timestamp
from .wacraft_client import WacraftClient

LOGGER = logging.getLogger(__name__)

NIL_UUID = "00000000-0000-0000-0000-000000000000"

ContactPage = Tuple[List[Contact], Optional[str]]


class ContactSource(ABC):
    """Paginated view of contacts and their last activity."""

    @abstractmethod
    def list_contacts(self, cursor: Optional[str], batch_size: int) -> ContactPage:
        """Return one page of contacts and the cursor of the next page (None when done)."""

    @abstractmethod
    def get_contact(self, contact_id: str) -> Optional[Contact]:
        """Fetch a single contact, or None when it does not exist."""


class WacraftContactSource(ContactSource):
    """
    Contacts derived from Wacraft conversations.

    The cursor is the conversation offset as a string. A conversation's
    ``updated_at`` is the last activity of the contact it belongs to.
    """

    def __init__(self, client: WacraftClient) -> None:
        self.client = client

    def list_contacts(self, cursor: Optional[str], batch_size: int) -> ContactPage:
        offset = int(cursor) if cursor else 0
        LOGGER.info("Fetching conversations batch: limit=%s, offset=%s", batch_size, offset)
        conversations = self.client.list_conversations(limit=batch_size, offset=offset)
        if not conversations:
            return [], None

        contacts: List[Contact] = []
        for conversation in conversations:
            contact = contact_from_conversation(conversation)
            if contact is None:
                LOGGER.debug("Skipping conversation %s without a usable contact", conversation.get("id"))
                continue
            contacts.append(contact)
        return contacts, str(offset + len(conversations))

    def get_contact(self, contact_id: str) -> Optional[Contact]:
        conversations = self.client.get_contact_conversations(contact_id, limit=1, offset=0)
        if not conversations:
            LOGGER.info("No conversation found for contact %s", contact_id)
            return None

        latest = conversations[0]
        contact = contact_from_conversation(latest, prefer_id=contact_id)
        if contact is not None:
            return contact

        # Conversation carries no contact details; look the contact up directly.
        last_activity = parse_timestamp(latest.get("updated_at"))
        if last_activity is None:
            return None
        record = self.client.get_messaging_product_contact(contact_id)
        if record is None:
            return None
        return contact_from_messaging_product_contact(record, last_activity)


def contact_from_conversation(conversation: Mapping[str, Any], prefer_id: Optional[str] = None) -> Optional[Contact]:
    """
    Build a Contact from the ``to`` side of a conversation, falling back to ``from``.

    With ``prefer_id`` set, the side carrying that contact id wins.
    """
    last_activity = parse_timestamp(conversation.get("updated_at"))
    if last_activity is None:
        return None

    candidates = [
        record
        for record in (conversation.get("to"), conversation.get("from"))
        if isinstance(record, Mapping) and record.get("id") and record.get("id") != NIL_UUID
    ]
    if prefer_id is not None:
        for record in candidates:
            if str(record["id"]) == prefer_id:
                return contact_from_messaging_product_contact(record, last_activity)
    if not candidates:
        return None
    return contact_from_messaging_product_contact(candidates[0], last_activity)


def contact_from_messaging_product_contact(record: Mapping[str, Any], last_activity: datetime) -> Contact:
    details: Dict[str, Any] = record.get("contact") or {}
    product: Dict[str, Any] = record.get("product_details") or {}
    contact_id = str(record["id"])
    phone_number = product.get("phone_number") or None
    return Contact(
        contact_id=contact_id,
        name=details.get("name") or phone_number or contact_id,
        last_activity=last_activity,
        email=details.get("email") or None,
        wa_id=product.get("wa_id") or None,
        phone_number=phone_number,
    )
