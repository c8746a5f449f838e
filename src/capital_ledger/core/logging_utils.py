"""
Logging utilities for the capital ledger.
"""

import json
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger


def get_logger(name: str, config: dict[str, Any]) -> logging.Logger:
    """Get a logger instance configured according to the provided config.

    Args:
        name: Logger name (typically module or class name)
        config: Logging configuration dictionary

    Returns:
        Configured logger instance

    Example:
        >>> config = {
        ...     'level': 'INFO',
        ...     'file': 'logs/capital_ledger.log',
        ...     'rotation': '1 day',
        ...     'retention': '1 week',
        ... }
        >>> logger = get_logger('PortfolioLedger', config)
        >>> logger.info('[LEDGER] initialized')
    """
    logger_instance = logging.getLogger(name)
    logger_instance.handlers.clear()

    level = config.get("level", "INFO").upper()
    logger_instance.setLevel(getattr(logging, level, logging.INFO))

    format_string = config.get(
        "format", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    formatter = logging.Formatter(format_string)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level, logging.INFO))
    console_handler.setFormatter(formatter)
    logger_instance.addHandler(console_handler)

    log_file = config.get("file")
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = _create_rotating_file_handler(
            log_path,
            config.get("rotation", "1 day"),
            config.get("retention", "1 week"),
            formatter,
        )
        file_handler.setLevel(getattr(logging, level, logging.INFO))
        logger_instance.addHandler(file_handler)

    logger_instance.propagate = False

    return logger_instance


def _create_rotating_file_handler(
    log_path: Path, rotation: str, retention: str, formatter: logging.Formatter
) -> logging.Handler:
    """Create a timed rotating file handler from '<count> <unit>' strings.

    Args:
        log_path: Path to the log file
        rotation: Rotation period (e.g., '1 day', '6 hour')
        retention: Retention period expressed in the same units
        formatter: Log formatter

    Returns:
        Configured rotating file handler
    """
    when_map = {
        "second": "S",
        "minute": "M",
        "hour": "H",
        "day": "D",
        "week": "W0",
    }

    rotation_parts = rotation.split()
    if len(rotation_parts) == 2:
        interval = int(rotation_parts[0])
        when = when_map.get(rotation_parts[1].lower().rstrip("s"), "D")
    else:
        interval = 1
        when = "D"

    retention_parts = retention.split()
    if len(retention_parts) == 2:
        retention_count = int(retention_parts[0])
        retention_unit = retention_parts[1].lower().rstrip("s")
        # Backups are counted in rotation intervals
        if retention_unit == "week" and when == "D":
            backup_count = retention_count * 7
        else:
            backup_count = retention_count
    else:
        backup_count = 7

    handler = logging.handlers.TimedRotatingFileHandler(
        filename=str(log_path),
        when=when,
        interval=interval,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size: str = "10 MB",
    backup_count: int = 5,
    format_string: Optional[str] = None,
) -> None:
    """Setup process logging using loguru.

    Args:
        level: Logging level
        log_file: Path to log file
        max_size: Maximum log file size before rotation
        backup_count: Number of rotated files to keep
        format_string: Custom format string
    """
    logger.remove()

    if format_string is None:
        format_string = (
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        )

    logger.add(sys.stdout, format=format_string, level=level.upper(), colorize=True)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            format=format_string,
            level=level.upper(),
            rotation=max_size,
            retention=backup_count,
            compression="zip",
        )

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class LoggerMixin:
    """Mixin class to add logging capabilities to any class."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._logger: Optional[logging.Logger] = None

    @property
    def logger(self) -> logging.Logger:
        """Get logger for this class."""
        if not hasattr(self, "_logger") or self._logger is None:
            config = getattr(self, "config", None) or {}
            logging_config = config.get("logging", {}) if isinstance(config, dict) else {}

            if logging_config:
                self._logger = get_logger(self.__class__.__name__, logging_config)
            else:
                self._logger = logging.getLogger(self.__class__.__name__)

        return self._logger

    def set_logger_config(self, config: dict[str, Any]) -> None:
        """Set logging configuration for this instance.

        Args:
            config: Logging configuration dictionary
        """
        self._logger = get_logger(self.__class__.__name__, config)


def audit_line(tag: str, payload: dict[str, Any]) -> str:
    """Render a structured audit line such as ``[PNL-AUDIT] {...}``.

    Args:
        tag: Audit tag without brackets
        payload: JSON-serialisable payload

    Returns:
        The formatted log line
    """
    return f"[{tag}] {json.dumps(payload, default=str, sort_keys=False)}"
