"""Command-line interface for the podmirror service."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import pprint
import signal
import threading
from pathlib import Path
from typing import List, Optional

from .config import AppConfig, parse_app_config
from .runner import Engine

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Mirror video channels as locally hosted podcast feeds."
    )
    parser.add_argument(
        "--config",
        default="configs/config.xml",
        help="Path to the main configuration XML file.",
    )

    # Overrides for logging/debugging
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (e.g. DEBUG, INFO, WARNING). Overrides config.",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Optional path to a log file. Overrides config.",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("run", help="Run the dispatcher until interrupted.")
    commands.add_parser(
        "sync-feeds", help="Load the feed definitions file into the registry."
    )
    trigger = commands.add_parser("trigger", help="Process a feed as soon as possible.")
    trigger.add_argument("feed_id", help="Identifier of the feed to process.")
    commands.add_parser("status", help="Print feed and queue state as JSON.")
    commands.add_parser("recover", help="Run the queue recovery scan and exit.")

    return parser


def configure_logging(level_name: str, log_file: Optional[str] = None) -> None:
    """Initialise logging according to options."""
    log_level = getattr(logging, level_name.upper(), None)
    if not isinstance(log_level, int):
        raise ValueError(f"Unsupported log level: {level_name}")

    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    root_logger.setLevel(log_level)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    if log_file:
        log_path = Path(log_file)
        if log_path.parent and not log_path.parent.exists():
            log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
        logger.debug(
            "Logger initialised with level %s and file output to %s",
            level_name.upper(),
            log_path,
        )
    else:
        logger.debug(
            "Logger initialised with console output at level %s", level_name.upper()
        )


def _log_active_config(app_config: AppConfig) -> None:
    config_dict = dataclasses.asdict(app_config)
    if config_dict.get("database", {}).get("connection_string"):
        config_dict["database"]["connection_string"] = "***MASKED***"
    logger.info("Active Configuration:\n%s", pprint.pformat(config_dict))


def _run_forever(engine: Engine) -> None:
    stop_requested = threading.Event()

    def _request_stop(signum, _frame) -> None:
        logger.info("Received signal %s; shutting down", signum)
        stop_requested.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    engine.start()
    try:
        while not stop_requested.wait(1.0):
            pass
    finally:
        engine.stop(timeout=30.0)


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        app_config = parse_app_config(args.config)

        # Determine logging settings (CLI overrides Config)
        log_level = args.log_level or app_config.logging.level
        log_file = args.log_file or app_config.logging.file

        configure_logging(log_level, log_file)
        _log_active_config(app_config)

        engine = Engine(app_config)

        if args.command == "run":
            _run_forever(engine)
            return 0
        if args.command == "sync-feeds":
            stored = engine.sync_feeds()
            output = f"Synchronised {len(stored)} feeds."
        elif args.command == "trigger":
            job = engine.trigger(args.feed_id)
            if job is None:
                output = f"Feed '{args.feed_id}' is already being processed."
            else:
                output = f"Feed '{args.feed_id}' queued for {job.scheduled_for.isoformat()}."
        elif args.command == "status":
            output = json.dumps(engine.status(), indent=2)
        else:
            output = json.dumps(engine.recover().as_dict(), indent=2)
    except ValueError as exc:
        parser.error(str(exc))
    except (RuntimeError, FileNotFoundError) as exc:
        logger.error("%s", exc)
        return 1
    except Exception:  # noqa: BLE001
        logger.exception("Unexpected error during execution.")
        return 1

    print(output)
    return 0
