from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ConfigurationError
from .models import (
    Action,
    ActionKind,
    EmailAction,
    EmailSettings,
    EngineSettings,
    HttpRequestAction,
    PlatformMessageAction,
    RetryPolicy,
    Rule,
    Settings,
    TokenState,
    WacraftSettings,
)
from .secrets import apply_env_overrides, mask_secrets

LOGGER = logging.getLogger(__name__)

CONFIG_DIR_ENV_VAR = "WACRAFT_REMINDERS_CONFIG_DIR"
CONFIG_DIR_NAME = "wacraft-reminders"
SETTINGS_FILE_NAME = "settings.json"
REMINDERS_FILE_NAME = "reminders.json"
LEDGER_FILE_NAME = "ledger.json"

DEFAULT_SETTINGS: Dict[str, Any] = {
    "wacraft": {
        "base_url": "https://api.wacraft.com.br",
        "email": "user@example.com",
        "password": "your_password",
        "access_token": None,
        "refresh_token": None,
        "token_expires_at": None,
    },
    "email": {
        "smtp_server": "smtp.example.com",
        "smtp_port": 587,
        "smtp_user": "user@example.com",
        "smtp_password": "your_smtp_password",
        "from_address": "reminders@example.com",
    },
    "engine": {
        "interval_seconds": 3600,
        "batch_size": 100,
        "max_workers": 4,
        "retry": {"max_attempts": 3, "base_delay": 2.0, "multiplier": 2.0, "max_delay": 30.0},
        "shutdown_grace_seconds": 30,
        "ledger_path": LEDGER_FILE_NAME,
        "outcome_log_path": None,
        "http_timeout": 15,
    },
    "timezone": "UTC",
}


def resolve_config_dir(path: Path | str | None = None) -> Path:
    """
    Resolve the configuration directory.

    Order: explicit path, WACRAFT_REMINDERS_CONFIG_DIR, $XDG_CONFIG_HOME, ~/.config.
    """
    if path:
        return Path(path).expanduser()

    env_override = os.getenv(CONFIG_DIR_ENV_VAR)
    if env_override:
        return Path(env_override).expanduser()

    xdg_home = os.getenv("XDG_CONFIG_HOME")
    base = Path(xdg_home).expanduser() if xdg_home else Path.home() / ".config"
    return base / CONFIG_DIR_NAME


def settings_path(override: Path | str | None = None, config_dir: Path | str | None = None) -> Path:
    if override:
        return Path(override).expanduser()
    return resolve_config_dir(config_dir) / SETTINGS_FILE_NAME


def reminders_path(override: Path | str | None = None, config_dir: Path | str | None = None) -> Path:
    if override:
        return Path(override).expanduser()
    return resolve_config_dir(config_dir) / REMINDERS_FILE_NAME


def load_settings(path: Path | str | None = None, config_dir: Path | str | None = None) -> Settings:
    """
    Load settings.json into a Settings object.

    Credentials can be overridden from the environment (see ``core.secrets``).
    Relative paths inside the file are resolved against the file's directory.
    """
    resolved = settings_path(path, config_dir)
    if not resolved.exists():
        raise ConfigurationError(f"Settings file not found: {resolved}. Run 'manage_config.py init' to create it.")

    payload = _read_json(resolved)
    if not isinstance(payload, Mapping):
        raise ConfigurationError(f"Settings file {resolved} must contain a JSON object")
    return parse_settings(apply_env_overrides(payload), base_dir=resolved.parent)


def parse_settings(payload: Mapping[str, Any], base_dir: Path) -> Settings:
    wacraft_raw = payload.get("wacraft")
    if not isinstance(wacraft_raw, Mapping):
        raise ConfigurationError("Settings are missing the 'wacraft' section")

    missing = [key for key in ("base_url", "email", "password") if not wacraft_raw.get(key)]
    if missing:
        raise ConfigurationError(f"Missing wacraft settings: {', '.join(missing)}")

    expires_at = wacraft_raw.get("token_expires_at")
    wacraft = WacraftSettings(
        base_url=str(wacraft_raw["base_url"]).rstrip("/"),
        email=str(wacraft_raw["email"]),
        password=str(wacraft_raw["password"]),
        access_token=wacraft_raw.get("access_token") or None,
        refresh_token=wacraft_raw.get("refresh_token") or None,
        token_expires_at=_as_int(expires_at, "wacraft.token_expires_at") if expires_at is not None else None,
    )

    return Settings(
        wacraft=wacraft,
        email=_parse_email(payload.get("email")),
        engine=_parse_engine(payload.get("engine") or {}, base_dir),
        timezone=str(payload.get("timezone") or "UTC"),
        base_dir=base_dir,
    )


def _parse_email(raw: Any) -> Optional[EmailSettings]:
    if not raw:
        return None
    if not isinstance(raw, Mapping):
        raise ConfigurationError("The 'email' section must be an object")

    missing = [key for key in ("smtp_server", "from_address") if not raw.get(key)]
    if missing:
        raise ConfigurationError(f"Missing email settings: {', '.join(missing)}")

    return EmailSettings(
        smtp_server=str(raw["smtp_server"]),
        smtp_port=_as_int(raw.get("smtp_port", 587), "email.smtp_port"),
        smtp_user=str(raw.get("smtp_user") or ""),
        smtp_password=str(raw.get("smtp_password") or ""),
        from_address=str(raw["from_address"]),
        use_starttls=bool(raw.get("use_starttls", True)),
        timeout_seconds=_as_float(raw.get("timeout_seconds", 30.0), "email.timeout_seconds"),
    )


def _parse_engine(raw: Mapping[str, Any], base_dir: Path) -> EngineSettings:
    if not isinstance(raw, Mapping):
        raise ConfigurationError("The 'engine' section must be an object")

    retry_raw = raw.get("retry") or {}
    retry = RetryPolicy(
        max_attempts=_as_int(retry_raw.get("max_attempts", 3), "engine.retry.max_attempts"),
        base_delay=_as_float(retry_raw.get("base_delay", 2.0), "engine.retry.base_delay"),
        multiplier=_as_float(retry_raw.get("multiplier", 2.0), "engine.retry.multiplier"),
        max_delay=_as_float(retry_raw.get("max_delay", 30.0), "engine.retry.max_delay"),
    )
    if retry.max_attempts < 1:
        raise ConfigurationError("engine.retry.max_attempts must be at least 1")

    grace = raw.get("shutdown_grace_seconds", 30)
    outcome_log = raw.get("outcome_log_path")
    engine = EngineSettings(
        interval_seconds=_as_float(raw.get("interval_seconds", 3600), "engine.interval_seconds"),
        batch_size=_as_int(raw.get("batch_size", 100), "engine.batch_size"),
        max_workers=_as_int(raw.get("max_workers", 4), "engine.max_workers"),
        retry=retry,
        shutdown_grace_seconds=None if grace is None else _as_float(grace, "engine.shutdown_grace_seconds"),
        ledger_path=_resolve_relative(raw.get("ledger_path") or LEDGER_FILE_NAME, base_dir),
        outcome_log_path=_resolve_relative(outcome_log, base_dir) if outcome_log else None,
        outcome_log_max_entries=_as_int(raw.get("outcome_log_max_entries", 5000), "engine.outcome_log_max_entries"),
        http_timeout=_as_float(raw.get("http_timeout", 15), "engine.http_timeout"),
    )
    if engine.interval_seconds <= 0:
        raise ConfigurationError("engine.interval_seconds must be positive")
    if engine.batch_size < 1 or engine.max_workers < 1:
        raise ConfigurationError("engine.batch_size and engine.max_workers must be at least 1")
    return engine


def load_rules(path: Path | str | None = None, config_dir: Path | str | None = None) -> List[Rule]:
    """Load reminders.json. A missing file means no rules."""
    resolved = reminders_path(path, config_dir)
    if not resolved.exists():
        LOGGER.warning("Reminders file %s not found; no rules configured", resolved)
        return []

    payload = _read_json(resolved)
    if not isinstance(payload, list):
        raise ConfigurationError(f"Reminders file {resolved} must contain a JSON list")
    return [parse_rule(item) for item in payload]


def parse_rule(raw: Any) -> Rule:
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"Reminder rule must be an object, got {raw!r}")

    name = raw.get("name")
    if not name or not isinstance(name, str):
        raise ConfigurationError(f"Reminder rule is missing a name: {raw!r}")

    if "inactive_for_hours" not in raw:
        raise ConfigurationError(f"Reminder rule '{name}' is missing inactive_for_hours")
    hours = _as_float(raw["inactive_for_hours"], f"{name}.inactive_for_hours")
    if hours < 0:
        raise ConfigurationError(f"Reminder rule '{name}' has a negative inactive_for_hours")

    action_raw = raw.get("action")
    action = parse_action(action_raw, name) if action_raw is not None else None
    return Rule(name=name, threshold=timedelta(hours=hours), action=action)


def parse_action(raw: Any, rule_name: str = "?") -> Action:
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"Action of rule '{rule_name}' must be an object")

    action_type = raw.get("type")
    try:
        kind = ActionKind(action_type)
    except ValueError as exc:
        raise ConfigurationError(f"Unknown action type {action_type!r} in rule '{rule_name}'") from exc

    if kind is ActionKind.PLATFORM_MESSAGE:
        sender_data = raw.get("sender_data")
        if not isinstance(sender_data, Mapping):
            raise ConfigurationError(f"wacraft_message action of rule '{rule_name}' needs a sender_data object")
        return PlatformMessageAction(sender_data=dict(sender_data))

    if kind is ActionKind.EMAIL:
        subject = raw.get("subject")
        template = raw.get("template")
        if not isinstance(subject, str) or not isinstance(template, str) or not template:
            raise ConfigurationError(f"email action of rule '{rule_name}' needs subject and template")
        return EmailAction(subject=subject, template=template)

    method = raw.get("method")
    url = raw.get("url")
    if not isinstance(method, str) or not isinstance(url, str) or not url:
        raise ConfigurationError(f"http_request action of rule '{rule_name}' needs method and url")
    headers = raw.get("headers") or {}
    if not isinstance(headers, Mapping):
        raise ConfigurationError(f"http_request headers of rule '{rule_name}' must be an object")
    return HttpRequestAction(
        method=method,
        url=url,
        headers={str(key): str(value) for key, value in headers.items()},
        body=raw.get("body"),
    )


def persist_tokens(state: TokenState, path: Path | str) -> None:
    """
    Write the token pair back into settings.json.

    Only the token fields of the ``wacraft`` section change; everything else in
    the file (including keys this package does not know) is preserved.
    """
    target = Path(path)
    payload = _read_json(target) if target.exists() else {}
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Settings file {target} must contain a JSON object")

    wacraft = payload.setdefault("wacraft", {})
    wacraft["access_token"] = state.access_token
    wacraft["refresh_token"] = state.refresh_token
    wacraft["token_expires_at"] = state.expires_at_epoch
    write_json_atomic(target, payload)
    LOGGER.debug("Persisted refreshed Wacraft tokens to %s", target)


def save_settings(payload: Mapping[str, Any], path: Path | str) -> None:
    write_json_atomic(Path(path), dict(payload))


def init_config_files(
    config_dir: Path | str | None = None,
    force: bool = False,
    settings_override: Path | str | None = None,
    reminders_override: Path | str | None = None,
) -> Tuple[Path, Path]:
    """Create default settings.json and an empty reminders.json."""
    settings_file = settings_path(settings_override, config_dir)
    reminders_file = reminders_path(reminders_override, config_dir)

    if not force and (settings_file.exists() or reminders_file.exists()):
        raise ConfigurationError("Configuration files already exist. Use --force to overwrite.")

    save_settings(DEFAULT_SETTINGS, settings_file)
    write_json_atomic(reminders_file, [])
    return settings_file, reminders_file


def render_config_view(settings_file: Path, reminders_file: Path) -> str:
    """Pretty-print both configuration files with secrets masked."""
    sections = ["--- Settings ---"]
    try:
        sections.append(json.dumps(mask_secrets(_read_json(settings_file)), indent=2, ensure_ascii=False))
    except ConfigurationError:
        sections.append(f"Could not load settings from: {settings_file}. Run 'init' to create it.")

    sections.append("")
    sections.append("--- Reminders ---")
    try:
        sections.append(json.dumps(_read_json(reminders_file), indent=2, ensure_ascii=False))
    except ConfigurationError:
        sections.append(f"Could not load reminders from: {reminders_file}. Run 'init' to create it.")
    return "\n".join(sections)


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write JSON through a temp file in the same directory, then replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, ensure_ascii=False, indent=2)
            fh.write("\n")
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _read_json(path: Path) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"File not found: {path}") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Failed to read JSON from {path}: {exc}") from exc


def _resolve_relative(value: Any, base_dir: Path) -> Path:
    candidate = Path(str(value)).expanduser()
    if candidate.is_absolute():
        return candidate
    return base_dir / candidate


def _as_int(value: Any, field: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{field} must be an integer, got {value!r}") from exc


def _as_float(value: Any, field: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{field} must be a number, got {value!r}") from exc
