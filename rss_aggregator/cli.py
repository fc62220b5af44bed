"""Command-line interface for the rss_aggregator feed poller."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import pprint
from pathlib import Path
from typing import List, Optional

from . import db
from .config import parse_app_config, parse_env_config, resolve_connection_string
from .runner import FeedPoller, PollerConfig, run_single_cycle

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Poll subscribed RSS feeds and store new posts."
    )
    parser.add_argument(
        "--config",
        default="configs/config.xml",
        help="Path to the main configuration XML file.",
    )
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
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between polling cycles. Overrides config.",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Number of feeds fetched per cycle. Overrides config.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single polling cycle, wait for it to finish and exit.",
    )
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


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        app_config = parse_app_config(args.config)

        if app_config.env_file:
            env_vars = parse_env_config(app_config.env_file)
            os.environ.update(env_vars)

        log_level = args.log_level or app_config.logging.level
        log_file = args.log_file or app_config.logging.file
        configure_logging(log_level, log_file)

        poller_config = PollerConfig(
            interval=(
                args.interval
                if args.interval is not None
                else app_config.poll_interval_seconds
            ),
            batch_size=(
                args.batch_size
                if args.batch_size is not None
                else app_config.batch_size
            ),
            concurrency=app_config.concurrency,
            fetch_timeout=app_config.fetch_timeout_seconds,
            published_format=app_config.published_format,
        )
        logger.info(
            "Active Configuration:\n%s", pprint.pformat(dataclasses.asdict(poller_config))
        )

        engine = db.init_engine(resolve_connection_string(app_config))
        poller = FeedPoller(db.get_session_factory(engine), poller_config)

        if args.once:
            try:
                run_single_cycle(poller)
            finally:
                poller.stop()
        else:
            poller.run_forever()
    except ValueError as exc:
        parser.error(str(exc))
    except (RuntimeError, FileNotFoundError) as exc:
        logger.error("%s", exc)
        return 1
    except Exception:  # noqa: BLE001
        logger.exception("Unexpected error during execution.")
        return 1

    return 0
