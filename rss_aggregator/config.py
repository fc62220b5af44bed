"""Configuration loading for the feed aggregator."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional
from xml.etree import ElementTree as ET

from .feeds import RFC1123Z

logger = logging.getLogger(__name__)

CONNECTION_STRING_ENV = "DB_CONNECTION_STRING"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None


@dataclass
class DatabaseConfig:
    connection_string: Optional[str] = None


@dataclass
class AppConfig:
    env_file: Optional[str] = None
    poll_interval_seconds: float = 60.0
    batch_size: int = 10
    concurrency: int = 10
    fetch_timeout_seconds: float = 10.0
    published_format: str = RFC1123Z
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)


def _resolve_path(base_path: Path, target_path: str) -> str:
    """Resolve a path relative to the base config file if it's not absolute."""
    target = Path(target_path)
    if target.is_absolute():
        return str(target)
    return str((base_path.parent / target).resolve())


def _positive(value: float, name: str) -> float:
    if value <= 0:
        raise ValueError(f"<{name}> must be positive, got {value}")
    return value


def parse_env_config(path: str) -> Dict[str, str]:
    """Parse environment variables from XML."""
    env_vars = {}
    if not path:
        return env_vars

    logger.info("Loading environment configuration from %s", path)
    try:
        tree = ET.parse(path)
        root = tree.getroot()
        for var in root.findall("variable"):
            name = var.attrib.get("name")
            value = var.text
            if name and value:
                env_vars[name] = value.strip()
    except Exception as exc:
        logger.warning("Failed to load environment config: %s", exc)
        raise

    return env_vars


def resolve_connection_string(config: AppConfig) -> str:
    """Return the configured connection string, falling back to the environment."""
    connection_string = config.database.connection_string or os.environ.get(
        CONNECTION_STRING_ENV
    )
    if not connection_string:
        raise ValueError(
            f"No database configured; set <database><connection-string> or {CONNECTION_STRING_ENV}."
        )
    return connection_string


def parse_app_config(path: str) -> AppConfig:
    """Parse the main application configuration XML."""
    config_path = Path(path).resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    logger.info("Loading application configuration from %s", config_path)
    tree = ET.parse(config_path)
    root = tree.getroot()

    env_node = root.find("env")
    env_file = (
        _resolve_path(config_path, env_node.text.strip())
        if env_node is not None and env_node.text
        else None
    )

    try:
        interval = float(root.findtext("poll-interval-seconds", "60"))
        batch_size = int(root.findtext("batch-size", "10"))
        concurrency = int(root.findtext("concurrency", "10"))
        fetch_timeout = float(root.findtext("fetch-timeout-seconds", "10"))
    except ValueError as exc:
        raise ValueError(f"Invalid numeric setting in {config_path}: {exc}") from exc

    _positive(interval, "poll-interval-seconds")
    _positive(batch_size, "batch-size")
    _positive(concurrency, "concurrency")
    _positive(fetch_timeout, "fetch-timeout-seconds")

    published_format = root.findtext("published-format") or RFC1123Z

    # Logging
    log_node = root.find("logging")
    logging_config = LoggingConfig()
    if log_node is not None:
        logging_config.level = log_node.findtext("level", "INFO")
        log_file = log_node.findtext("file")
        if log_file:
            logging_config.file = _resolve_path(config_path, log_file)

    # Database
    db_node = root.find("database")
    db_config = DatabaseConfig()
    if db_node is not None:
        connection_string = db_node.findtext("connection-string")
        if connection_string:
            db_config.connection_string = connection_string.strip()

    return AppConfig(
        env_file=env_file,
        poll_interval_seconds=interval,
        batch_size=batch_size,
        concurrency=concurrency,
        fetch_timeout_seconds=fetch_timeout,
        published_format=published_format,
        logging=logging_config,
        database=db_config,
    )
