from __future__ import annotations

import re
from typing import Any, Dict

from .models import Contact

PLACEHOLDER_PATTERN = re.compile(r"\{([a-z_]+)\}")


def placeholder_values(contact: Contact) -> Dict[str, str]:
    return {
        "contact_id": contact.contact_id,
        "contact_name": contact.name,
        "contact_email": contact.email or "",
        "contact_phone": contact.phone_number or contact.wa_id or "",
    }


def render_text(template: str, contact: Contact) -> str:
    """
    Substitute contact placeholders in ``template``.

    Unknown ``{tokens}`` are left untouched, so literal braces in user text
    survive rendering.
    """
    values = placeholder_values(contact)

    def _replace(match: "re.Match[str]") -> str:
        return values.get(match.group(1), match.group(0))

    return PLACEHOLDER_PATTERN.sub(_replace, template)


def render_value(value: Any, contact: Contact) -> Any:
    """Render every string leaf of a JSON-like structure; keys are kept as is."""
    if isinstance(value, str):
        return render_text(value, contact)
    if isinstance(value, dict):
        return {key: render_value(item, contact) for key, item in value.items()}
    if isinstance(value, list):
        return [render_value(item, contact) for item in value]
    return value
