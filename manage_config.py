#!/usr/bin/env python3
"""Create, inspect and locate the wacraft-reminders configuration files."""

from __future__ import annotations

import argparse
import logging
import sys

from wacraft_reminders.core.config import (
    init_config_files,
    reminders_path,
    render_config_view,
    resolve_config_dir,
    settings_path,
)
from wacraft_reminders.core.errors import ConfigurationError


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage wacraft-reminders configuration files.")
    parser.add_argument("--config-dir", help="Configuration directory to operate on.")
    parser.add_argument("--settings-config", help="Path to settings.json.")
    parser.add_argument("--reminders-config", help="Path to reminders.json.")

    subparsers = parser.add_subparsers(dest="command", required=True)
    init_parser = subparsers.add_parser("init", help="Write default settings.json and an empty reminders.json.")
    init_parser.add_argument("--force", action="store_true", help="Overwrite existing files.")
    subparsers.add_parser("view", help="Print both files with secrets masked.")
    subparsers.add_parser("path", help="Print the configuration directory.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    settings_file = settings_path(args.settings_config, args.config_dir)
    reminders_file = reminders_path(args.reminders_config, args.config_dir)

    if args.command == "path":
        print(resolve_config_dir(args.config_dir))
        return 0

    if args.command == "view":
        print(render_config_view(settings_file, reminders_file))
        return 0

    try:
        created_settings, created_reminders = init_config_files(
            args.config_dir,
            force=args.force,
            settings_override=args.settings_config,
            reminders_override=args.reminders_config,
        )
    except ConfigurationError as exc:
        logging.error("Configuration error: %s", exc)
        return 2
    except OSError as exc:
        logging.error("Failed to write configuration files: %s", exc)
        return 1

    print(f"Created default settings file at: {created_settings}")
    print(f"Created empty reminders file at: {created_reminders}")
    print("Edit the files with your credentials and rules.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
