"""
groupcrypt - Settings for embedding applications and the CLI.

Settings come from three layers, later ones winning:

    1. DEFAULT_CONFIG below
    2. a TOML file (``~/.groupcrypt/config.toml`` unless a path is given)
    3. GROUPCRYPT_<SECTION>_<KEY> environment variables

Every layer is validated together once loading finishes. The typed views
(``api``, ``background``, ``signaling``) are what the session wiring reads.
"""

import copy
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO

# Python 3.11+ has tomllib built-in, older versions need tomli
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .constants import (
    API_TIMEOUT,
    BACKGROUND_QUEUE_SIZE,
    BACKGROUND_WORKERS,
    CALL_ANSWER_TIMEOUT,
    CALL_CONNECTION_TIMEOUT,
    CONFIG_FILENAME,
    DEFAULT_API_BASE_URL,
    DEFAULT_DATA_DIR,
)
from .errors import ConfigError, ErrorCode

logger = logging.getLogger(__name__)

ENV_PREFIX = "GROUPCRYPT"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

DEFAULT_CONFIG: Dict[str, Any] = {
    "api": {
        "base_url": DEFAULT_API_BASE_URL,
        "timeout": API_TIMEOUT,
        "token": "",
    },
    "storage": {
        "data_dir": DEFAULT_DATA_DIR,
        "passphrase_protected": False,
    },
    "background": {
        "workers": BACKGROUND_WORKERS,
        "queue_size": BACKGROUND_QUEUE_SIZE,
    },
    "signaling": {
        "answer_timeout": CALL_ANSWER_TIMEOUT,
        "connection_timeout": CALL_CONNECTION_TIMEOUT,
    },
    "logging": {
        "level": "INFO",
        "file_logging": False,
        "console_logging": True,
    },
}


@dataclass(frozen=True)
class ApiSettings:
    base_url: str
    timeout: float
    token: Optional[str]


@dataclass(frozen=True)
class BackgroundSettings:
    workers: int
    queue_size: int


@dataclass(frozen=True)
class SignalingSettings:
    answer_timeout: float
    connection_timeout: float


def _coerce(raw: str, like: Any) -> Any:
    """Convert an environment string to the type of the value it replaces."""
    if isinstance(like, bool):
        return raw.strip().lower() in ("true", "1", "yes", "on")
    if isinstance(like, int):
        return int(raw)
    if isinstance(like, float):
        return float(raw)
    return raw


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class Config:
    """
    Layered groupcrypt settings.

    Attributes:
        config_path: TOML file the settings were read from and are saved to
        data: Merged settings, one dict per section
    """

    def __init__(self, config_path: Optional[Path] = None):
        if config_path is None:
            config_path = Path(DEFAULT_DATA_DIR).expanduser() / CONFIG_FILENAME
        self.config_path = Path(config_path)

        data = copy.deepcopy(DEFAULT_CONFIG)
        file_data = self._read_file()
        if file_data:
            data = _deep_merge(data, file_data)
        self.data = self._apply_env_overrides(data)
        self.validate()

    def _read_file(self) -> Dict[str, Any]:
        """Parsed TOML file, or an empty dict when there is no file yet."""
        if not self.config_path.exists():
            return {}
        try:
            with open(self.config_path, "rb") as f:
                return tomllib.load(f)
        except OSError as e:
            raise ConfigError(
                ErrorCode.E701_CONFIG_LOAD_FAILED,
                f"Cannot read {self.config_path}: {e}",
                {"path": str(self.config_path)},
            ) from e
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(
                ErrorCode.E704_CONFIG_PARSE_ERROR,
                f"Invalid TOML in {self.config_path}: {e}",
                {"path": str(self.config_path)},
            ) from e

    def _apply_env_overrides(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply GROUPCRYPT_<SECTION>_<KEY> variables, e.g.
        GROUPCRYPT_API_BASE_URL=https://chat.example.org/api.

        Only keys that already exist are overridable. A value that does not
        convert to the existing type is logged and skipped.
        """
        for section, settings in data.items():
            if not isinstance(settings, dict):
                continue
            for key, current in settings.items():
                env_var = f"{ENV_PREFIX}_{section.upper()}_{key.upper()}"
                raw = os.environ.get(env_var)
                if raw is None:
                    continue
                try:
                    settings[key] = _coerce(raw, current)
                except ValueError:
                    logger.warning(
                        f"Ignoring {env_var}={raw!r}: expected {type(current).__name__}"
                    )
        return data

    def validate(self) -> None:
        """
        Check value ranges across all sections.

        Raises:
            ConfigError: E703 listing every offending setting
        """
        problems: List[str] = []
        if not str(self.get("api", "base_url", "")).strip():
            problems.append("api.base_url must not be empty")
        for section, key in (
            ("api", "timeout"),
            ("signaling", "answer_timeout"),
            ("signaling", "connection_timeout"),
        ):
            value = self.get(section, key)
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
                problems.append(f"{section}.{key} must be a positive number")
        for key in ("workers", "queue_size"):
            value = self.get("background", key)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                problems.append(f"background.{key} must be an integer >= 1")
        if str(self.get("logging", "level", "")).upper() not in LOG_LEVELS:
            problems.append(f"logging.level must be one of {', '.join(LOG_LEVELS)}")

        if problems:
            raise ConfigError(
                ErrorCode.E703_CONFIG_INVALID,
                "Invalid configuration: " + "; ".join(problems),
                {"path": str(self.config_path), "problems": problems},
            )

    def get(self, section: str, key: str, default: Any = None) -> Any:
        return self.data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        self.data.setdefault(section, {})[key] = value

    # Typed views

    @property
    def data_dir(self) -> Path:
        return Path(self.get("storage", "data_dir", DEFAULT_DATA_DIR)).expanduser()

    @property
    def passphrase_protected(self) -> bool:
        return bool(self.get("storage", "passphrase_protected", False))

    @property
    def api(self) -> ApiSettings:
        return ApiSettings(
            base_url=str(self.get("api", "base_url")),
            timeout=float(self.get("api", "timeout")),
            token=self.get("api", "token") or None,
        )

    @property
    def background(self) -> BackgroundSettings:
        return BackgroundSettings(
            workers=int(self.get("background", "workers")),
            queue_size=int(self.get("background", "queue_size")),
        )

    @property
    def signaling(self) -> SignalingSettings:
        return SignalingSettings(
            answer_timeout=float(self.get("signaling", "answer_timeout")),
            connection_timeout=float(self.get("signaling", "connection_timeout")),
        )

    # Persistence

    def save(self) -> None:
        """
        Write the current settings back to ``config_path``.

        Raises:
            ConfigError: E702 if the file cannot be written
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w", encoding="utf-8") as f:
                self._write_toml(f)
        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Cannot write {self.config_path}: {e}",
                {"path": str(self.config_path)},
            ) from e

    def _write_toml(self, out: TextIO) -> None:
        # Flat sections of scalars only; nothing else is ever stored
        for section, settings in self.data.items():
            if not isinstance(settings, dict):
                continue
            out.write(f"[{section}]\n")
            for key, value in settings.items():
                if isinstance(value, bool):
                    out.write(f"{key} = {'true' if value else 'false'}\n")
                elif isinstance(value, (int, float)):
                    out.write(f"{key} = {value!r}\n")
                elif isinstance(value, str):
                    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
                    out.write(f'{key} = "{escaped}"\n')
            out.write("\n")

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self.data)
