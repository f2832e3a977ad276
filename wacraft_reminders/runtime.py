from __future__ import annotations

import argparse
import logging
from functools import partial
from pathlib import Path
from typing import Optional, Tuple

from .core.config import load_rules, load_settings, persist_tokens, settings_path
from .core.models import Settings
from .engine import ReminderEngine
from .rules import RuleSet

LOGGER = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def add_config_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--settings-config",
        help="Path to settings.json. Defaults to the wacraft-reminders config directory.",
    )
    parser.add_argument(
        "--reminders-config",
        help="Path to reminders.json. Defaults to the wacraft-reminders config directory.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )


def configure_logging(verbose: bool, log_file: Optional[str] = None) -> None:
    handlers = None
    if log_file:
        Path(log_file).expanduser().parent.mkdir(parents=True, exist_ok=True)
        handlers = [logging.FileHandler(Path(log_file).expanduser(), encoding="utf-8")]
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
    )


def build_engine(
    settings_config: Optional[str] = None,
    reminders_config: Optional[str] = None,
    dry_run: bool = False,
) -> Tuple[ReminderEngine, Settings]:
    """
    Load both configuration files and assemble a ReminderEngine.

    Refreshed Wacraft tokens are written back to the settings file.
    """
    settings_file = settings_path(settings_config)
    settings = load_settings(settings_file)
    rules = RuleSet(load_rules(reminders_config, config_dir=settings_file.parent))
    LOGGER.debug("Loaded %s reminder rule(s) from configuration", len(rules))
    engine = ReminderEngine.from_settings(
        settings,
        rules,
        on_tokens_changed=partial(persist_tokens, path=settings_file),
        dry_run=dry_run,
    )
    return engine, settings
