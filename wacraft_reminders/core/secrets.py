from __future__ import annotations

import os
from typing import Any, Dict, Mapping, Tuple

ENV_SECRET_KEYS: Dict[Tuple[str, str], str] = {
    ("wacraft", "base_url"): "WACRAFT_BASE_URL",
    ("wacraft", "email"): "WACRAFT_EMAIL",
    ("wacraft", "password"): "WACRAFT_PASSWORD",
    ("email", "smtp_user"): "SMTP_USER",
    ("email", "smtp_password"): "SMTP_PASSWORD",
}

MASKED_FIELDS = {("wacraft", "password"), ("wacraft", "access_token"), ("wacraft", "refresh_token"), ("email", "smtp_password")}
MASK = "********"


def apply_env_overrides(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Return a copy of the settings payload with credentials taken from the environment.

    Environment variables take precedence over the file. A section that is absent
    from the file is only created when at least one of its variables is set.
    """
    merged: Dict[str, Any] = {key: dict(value) if isinstance(value, Mapping) else value for key, value in payload.items()}
    for (section, field), env_key in ENV_SECRET_KEYS.items():
        value = os.getenv(env_key)
        if not value:
            continue
        target = merged.get(section)
        if not isinstance(target, dict):
            target = {}
            merged[section] = target
        target[field] = value
    return merged


def mask_secrets(payload: Any) -> Any:
    if not isinstance(payload, Mapping):
        return payload
    masked: Dict[str, Any] = {key: dict(value) if isinstance(value, Mapping) else value for key, value in payload.items()}
    for section, field in MASKED_FIELDS:
        node = masked.get(section)
        if isinstance(node, dict) and node.get(field):
            node[field] = MASK
    return masked
