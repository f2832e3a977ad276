#!/usr/bin/env python3
"""
Long-running reminder daemon.

Runs a reminder cycle every ``--interval`` seconds until SIGINT/SIGTERM. The
first signal lets the running cycle finish (bounded by the shutdown grace
period), a second one abandons it.
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
import sys

from wacraft_reminders.core.errors import ConfigurationError, LedgerError
from wacraft_reminders.runtime import add_config_arguments, build_engine, configure_logging
from wacraft_reminders.scheduler import Scheduler


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run Wacraft inactivity reminders periodically.")
    parser.add_argument(
        "--interval",
        type=float,
        help="Seconds between cycles (default: engine.interval_seconds, 3600).",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        help="Contacts fetched per page (default: engine.batch_size, 100).",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        help="Contacts processed concurrently (default: engine.max_workers, 4).",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cycle and exit.",
    )
    parser.add_argument(
        "--dry-run",
        "--mock",
        dest="dry_run",
        action="store_true",
        help="Match rules and report, but do not dispatch or record anything.",
    )
    parser.add_argument(
        "--log-file",
        help="Write logs to this file instead of stderr.",
    )
    add_config_arguments(parser)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose, args.log_file)

    try:
        engine, settings = build_engine(args.settings_config, args.reminders_config, dry_run=args.dry_run)
    except (ConfigurationError, LedgerError) as exc:
        logging.error("Configuration error: %s", exc)
        return 2

    if args.batch_size is not None:
        engine.batch_size = args.batch_size
    if args.max_workers is not None:
        engine.max_workers = args.max_workers
    if engine.batch_size < 1 or engine.max_workers < 1:
        logging.error("Configuration error: --batch-size and --max-workers must be at least 1")
        return 2

    engine_settings = settings.engine
    if args.interval is not None:
        engine_settings = dataclasses.replace(engine_settings, interval_seconds=args.interval)

    if args.once:
        report = engine.run_cycle()
        return 0 if report.ok else 1

    try:
        scheduler = Scheduler(
            engine.run_cycle,
            interval_seconds=engine_settings.interval_seconds,
            shutdown_grace=engine_settings.shutdown_grace_seconds,
        )
    except ValueError as exc:
        logging.error("Configuration error: %s", exc)
        return 2

    def _handle_signal(signum, _frame):
        logging.info("Received signal %s; shutting down", signum)
        scheduler.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logging.info(
        "Daemon started. Interval: %ss, Batch size: %s, Workers: %s, Dry run: %s",
        engine_settings.interval_seconds,
        engine.batch_size,
        engine.max_workers,
        args.dry_run,
    )
    try:
        scheduler.run_forever()
    except Exception as exc:  # pragma: no cover - defensive automation guard
        logging.exception("Unexpected failure in reminder daemon: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
