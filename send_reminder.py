#!/usr/bin/env python3
"""
Manually evaluate and send the reminder for a single Wacraft contact.

Uses the same matching, dedupe ledger and channels as the daemon, so a
reminder sent here is not sent again by the next daemon cycle.
"""

from __future__ import annotations

import argparse
import logging
import sys

from wacraft_reminders.core.errors import AuthError, ConfigurationError, LedgerError
from wacraft_reminders.core.models import OutcomeStatus
from wacraft_reminders.runtime import add_config_arguments, build_engine, configure_logging

CONFIRMED_STATUSES = {
    OutcomeStatus.DELIVERED,
    OutcomeStatus.CHECKPOINT,
    OutcomeStatus.NO_MATCH,
    OutcomeStatus.DRY_RUN,
    OutcomeStatus.DUPLICATE,
}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send the appropriate inactivity reminder to one contact.")
    parser.add_argument(
        "--contact-id",
        required=True,
        help="Messaging product contact id to evaluate.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Match rules and report, but do not dispatch or record anything.",
    )
    add_config_arguments(parser)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose)

    try:
        engine, _ = build_engine(args.settings_config, args.reminders_config, dry_run=args.dry_run)
        outcome = engine.run_single(args.contact_id)
    except (ConfigurationError, LedgerError) as exc:
        logging.error("Configuration error: %s", exc)
        return 2
    except AuthError as exc:
        logging.error("Wacraft authentication failed: %s", exc)
        return 2
    except Exception as exc:  # pragma: no cover - defensive automation guard
        logging.exception("Unexpected failure while sending reminder: %s", exc)
        return 1

    line = f"{outcome.contact_id}: {outcome.status.value}"
    if outcome.rule_name:
        line += f" (rule '{outcome.rule_name}')"
    if outcome.detail:
        line += f" - {outcome.detail}"
    print(line)
    return 0 if outcome.status in CONFIRMED_STATUSES else 3


if __name__ == "__main__":
    sys.exit(main())
