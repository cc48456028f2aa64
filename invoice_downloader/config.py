"""
CONFIG.PY: SINGLE SOURCE OF TRUTH (SSOT)

This module is the ONLY place allowed to read environment variables.

SECRET_KEY is required and has no default: it encrypts the credential file.
Every other setting falls back to a documented default rooted at DATA_DIR.
If a variable is present but invalid, the system MUST fail early.

Config is loaded ONCE (on first use) and cached in a single frozen Config
object. No dynamic reload. No direct env reads outside this module.

To use a config value, import:

    from invoice_downloader.config import get_config

Do not access os.getenv directly from any other module.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv


# Determine project root correctly (directory containing the top-level package)
PROJECT_ROOT = Path(__file__).resolve().parents[1]

# Load variables from .env if it exists; OS env overrides these automatically
load_dotenv(PROJECT_ROOT / ".env")


logger = logging.getLogger(__name__)

LAUNCH_STRATEGIES = ("persistent", "cdp", "managed")

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded."""


def _require_env(key: str) -> str:
    value = os.getenv(key)
    if value is None:
        message = f"Missing required environment variable: {key}"
        logger.error(message)
        raise ConfigError(message)
    stripped = value.strip()
    if not stripped:
        message = f"Environment variable {key} cannot be blank"
        logger.error(message)
        raise ConfigError(message)
    return stripped


def _optional_env(key: str, default: str) -> str:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip()


def _parse_bool(value: str, *, key: str) -> bool:
    normalized = value.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    message = f"Config key {key} must be a boolean string; got {value!r}"
    logger.error(message)
    raise ConfigError(message)


def _parse_int(value: str, *, key: str, minimum: int = 0) -> int:
    try:
        parsed = int(value.strip())
    except (TypeError, ValueError):
        message = f"Config key {key} must be an integer; got {value!r}"
        logger.error(message)
        raise ConfigError(message)
    if parsed < minimum:
        message = f"Config key {key} must be >= {minimum}; got {parsed}"
        logger.error(message)
        raise ConfigError(message)
    return parsed


def _parse_list(value: str) -> list[str]:
    if not value:
        return []
    tokens = re.split(r"[,\n]", value)
    return [token.strip() for token in tokens if token and token.strip()]


def _parse_launch_order(value: str, *, key: str) -> tuple[str, ...]:
    order = tuple(token.lower() for token in _parse_list(value))
    if not order:
        message = f"Config key {key} cannot be blank"
        logger.error(message)
        raise ConfigError(message)
    unknown = [name for name in order if name not in LAUNCH_STRATEGIES]
    if unknown:
        message = f"Config key {key} has unknown strategies: {', '.join(unknown)}"
        logger.error(message)
        raise ConfigError(message)
    return order


def _resolve_dir(value: str, default: Path) -> Path:
    if not value:
        return default
    return Path(value).expanduser().resolve()


@dataclass(slots=True, frozen=True)
class Config:
    secret_key: str
    run_env: str

    data_dir: Path
    profiles_dir: Path
    invoice_storage_path: Path
    screenshots_dir: Path
    credentials_file: Path
    database_url: str
    json_log_file: str

    browser_headless: bool
    browser_timeout_ms: int
    browser_channel: str
    browser_executable: str
    browser_cdp_url: str
    browser_launch_order: tuple[str, ...]

    login_poll_interval_ms: int
    run_timeout_seconds: int

    @classmethod
    def load_from_env(cls) -> Config:
        secret_key = _require_env("SECRET_KEY")
        data_dir = _resolve_dir(_optional_env("DATA_DIR", ""), PROJECT_ROOT / "data")

        default_db = f"sqlite+aiosqlite:///{data_dir / 'invoices.db'}"
        database_url = _optional_env("DATABASE_URL", "") or default_db

        return cls(
            secret_key=secret_key,
            run_env=_optional_env("RUN_ENV", "local") or "local",
            data_dir=data_dir,
            profiles_dir=_resolve_dir(_optional_env("PROFILES_DIR", ""), data_dir / "profiles"),
            invoice_storage_path=_resolve_dir(
                _optional_env("INVOICE_STORAGE_PATH", ""), data_dir / "invoices"
            ),
            screenshots_dir=_resolve_dir(
                _optional_env("SCREENSHOTS_DIR", ""), data_dir / "screenshots"
            ),
            credentials_file=_resolve_dir(
                _optional_env("CREDENTIALS_FILE", ""), data_dir / "credentials.enc"
            ),
            database_url=database_url,
            json_log_file=_optional_env("JSON_LOG_FILE", ""),
            browser_headless=_parse_bool(
                _optional_env("BROWSER_HEADLESS", "true"), key="BROWSER_HEADLESS"
            ),
            browser_timeout_ms=_parse_int(
                _optional_env("BROWSER_TIMEOUT_MS", "30000"), key="BROWSER_TIMEOUT_MS", minimum=1
            ),
            browser_channel=_optional_env("BROWSER_CHANNEL", ""),
            browser_executable=_optional_env("BROWSER_EXECUTABLE", ""),
            browser_cdp_url=_optional_env("BROWSER_CDP_URL", ""),
            browser_launch_order=_parse_launch_order(
                _optional_env("BROWSER_LAUNCH_ORDER", ",".join(LAUNCH_STRATEGIES)),
                key="BROWSER_LAUNCH_ORDER",
            ),
            login_poll_interval_ms=_parse_int(
                _optional_env("LOGIN_POLL_INTERVAL_MS", "1000"),
                key="LOGIN_POLL_INTERVAL_MS",
                minimum=1,
            ),
            run_timeout_seconds=_parse_int(
                _optional_env("RUN_TIMEOUT_SECONDS", "900"), key="RUN_TIMEOUT_SECONDS", minimum=1
            ),
        )


@lru_cache(maxsize=1)
def get_config() -> Config:
    return Config.load_from_env()
