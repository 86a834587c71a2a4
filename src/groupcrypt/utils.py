"""
groupcrypt - Utility functions.

Identifier normalization, fingerprint formatting and logging setup.
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Any, Mapping, Optional

from .constants import (
    LOG_BACKUP_COUNT,
    LOG_DATE_FORMAT,
    LOG_FILENAME,
    LOG_FORMAT,
    LOG_MAX_BYTES,
    LOGS_DIR,
)
from .errors import ErrorCode, GroupCryptError

logger = logging.getLogger(__name__)


def normalize_user_id(user: Any) -> str:
    """
    Reduce a user reference to its canonical string id.

    Accepts a string, an int, or a mapping carrying ``id`` or ``_id`` (API
    payloads use either). Call once where ids enter the system; everything
    downstream compares the returned strings directly.

    Raises:
        GroupCryptError: the reference is empty or of an unsupported type
    """
    if isinstance(user, Mapping):
        value = user.get("id") or user.get("_id")
    else:
        value = user

    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise GroupCryptError(
            ErrorCode.E002_INVALID_ARGUMENT,
            f"Cannot derive a user id from {type(user).__name__}",
        )
    normalized = str(value).strip()
    if not normalized:
        raise GroupCryptError(ErrorCode.E002_INVALID_ARGUMENT, "User id is empty")
    return normalized


def format_fingerprint(fingerprint: str) -> str:
    """
    Format a fingerprint for display with spaces every 4 characters.

    Args:
        fingerprint: Hex fingerprint string

    Returns:
        Formatted fingerprint
    """
    return " ".join(fingerprint[i : i + 4] for i in range(0, len(fingerprint), 4))


def setup_logging(config: Any, data_dir: Optional[Path] = None, debug: bool = False) -> None:
    """
    Configure the ``groupcrypt`` logger from the ``[logging]`` config section.

    Args:
        config: Config instance
        data_dir: Where the ``logs/`` directory lives when file logging is on
        debug: Force DEBUG level regardless of configuration
    """
    root = logging.getLogger("groupcrypt")
    level_name = "DEBUG" if debug else str(config.get("logging", "level", "INFO")).upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    if config.get("logging", "console_logging", True):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)

    if config.get("logging", "file_logging", False) and data_dir is not None:
        log_dir = Path(data_dir) / LOGS_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / LOG_FILENAME, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if not root.handlers:
        root.addHandler(logging.NullHandler())
    logger.debug(f"Logging configured at {level_name}")
