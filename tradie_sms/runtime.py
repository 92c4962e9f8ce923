"""
🧠 Tradie SMS Runtime Core
--------------------------
Centralized utilities for logging, retries, time handling,
phone normalization, and environment introspection.
"""

from __future__ import annotations
import logging
import os
import re
import sys
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, TypeVar

T = TypeVar("T")

# Internal state flags
_LOGGING_CONFIGURED = False
_GLOBAL_HOOK_INSTALLED = False
_CORE_ENV_LOGGED = False
_PHONE_SEPARATORS = re.compile(r"[\s\-().]+")


# ────────────────────────────────────────────────
# ENV MASKING + LOGGING CONFIG
# ────────────────────────────────────────────────
def _mask_env_value(value: Optional[str]) -> str:
    """Mask sensitive env values (API keys, tokens, etc.)."""
    if not value:
        return "<missing>"
    trimmed = value.strip()
    if len(trimmed) <= 4:
        return "*" * len(trimmed)
    if len(trimmed) <= 8:
        return f"{trimmed[:2]}...{trimmed[-2:]}"
    return f"{trimmed[:4]}...{trimmed[-4:]}"


def _normalize_level(value: int | str | None) -> int:
    """Normalize string or int log level."""
    if value is None:
        env_level = os.getenv("SMS_LOG_LEVEL")
        if env_level:
            value = env_level
        else:
            return logging.INFO
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: int | str | None = None) -> None:
    """Initialize root logging configuration once."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    logging.basicConfig(
        level=_normalize_level(level),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    _LOGGING_CONFIGURED = True
    _log_core_env()


def get_logger(name: str = "tradie_sms") -> logging.Logger:
    """Return module-specific logger."""
    if not _LOGGING_CONFIGURED:
        configure_logging()
    return logging.getLogger(name)


# ────────────────────────────────────────────────
# GLOBAL EXCEPTION HOOK
# ────────────────────────────────────────────────
def install_global_exception_hook() -> None:
    """Install a catch-all hook so uncaught errors land in the log stream."""
    global _GLOBAL_HOOK_INSTALLED
    if _GLOBAL_HOOK_INSTALLED:
        return

    def _hook(exc_type, exc, tb):
        logger = get_logger("uncaught")
        logger.error("Uncaught exception (%s): %s", exc_type.__name__, exc, exc_info=(exc_type, exc, tb))

    sys.excepthook = _hook
    _GLOBAL_HOOK_INSTALLED = True


# ────────────────────────────────────────────────
# CORE ENV LOGGING
# ────────────────────────────────────────────────
def _log_core_env() -> None:
    """Logs masked environment variables for observability."""
    global _CORE_ENV_LOGGED
    if _CORE_ENV_LOGGED:
        return
    logger = logging.getLogger("env")

    base = os.getenv("AIRTABLE_BASE_ID") or "<missing>"
    redis_tcp = os.getenv("REDIS_URL") or os.getenv("UPSTASH_REDIS_URL")
    upstash_rest = os.getenv("UPSTASH_REDIS_REST_URL")

    logger.info(
        "Core env summary:\n"
        "• Airtable Key=%s | Base=%s | ForceInMemory=%s\n"
        "• Gateway SID=%s | From=%s | Simulate=%s\n"
        "• RedisTCP=%s | UpstashREST=%s | BusinessTZ=%s | APP_ENV=%s",
        _mask_env_value(os.getenv("AIRTABLE_API_KEY")),
        base,
        os.getenv("SMS_FORCE_IN_MEMORY", "0"),
        _mask_env_value(os.getenv("TWILIO_ACCOUNT_SID")),
        os.getenv("TWILIO_PHONE_NUMBER") or "<missing>",
        os.getenv("SMS_SIMULATE", "false"),
        bool(redis_tcp),
        bool(upstash_rest),
        os.getenv("BUSINESS_TZ", "Australia/Sydney"),
        os.getenv("APP_ENV", "development"),
    )
    _CORE_ENV_LOGGED = True


# ────────────────────────────────────────────────
# TIME UTILITIES
# ────────────────────────────────────────────────
def utc_now() -> datetime:
    """Return UTC datetime (always timezone-aware)."""
    return datetime.now(timezone.utc)


def iso_now() -> str:
    """Return ISO8601 UTC timestamp (Z suffix)."""
    return to_iso(utc_now())


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_datetime(value) -> Optional[datetime]:
    """Parse ISO strings / datetimes into aware UTC datetimes. Garbage → None."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ────────────────────────────────────────────────
# PHONE UTILITIES
# ────────────────────────────────────────────────
def normalize_phone(value: str | None, country_code: str = "61", trunk_prefix: str = "0") -> str:
    """
    Canonicalize a phone number to international form.

    Total function: it never raises, and it is idempotent on its own output.
        "0412 345 678"  -> "+61412345678"
        "61412345678"   -> "+61412345678"
        "+61412345678"  -> "+61412345678"
        ""/None         -> ""
    """
    if value is None:
        return ""
    compact = _PHONE_SEPARATORS.sub("", str(value))
    if not compact:
        return ""
    if compact.startswith("+"):
        return compact
    if trunk_prefix and compact.startswith(trunk_prefix):
        return f"+{country_code}{compact[len(trunk_prefix):]}"
    if country_code and compact.startswith(country_code):
        compact = compact[len(country_code):]
    return f"+{country_code}{compact}"


# ────────────────────────────────────────────────
# RETRY UTILITIES
# ────────────────────────────────────────────────
def retry(
    func: Callable[[], T],
    *,
    retries: int = 3,
    base_delay: float = 0.5,
    backoff: float = 2.0,
    exceptions: Iterable[type[BaseException]] = (Exception,),
    logger: Optional[logging.Logger] = None,
) -> T:
    """Retry a callable with exponential backoff."""
    log = logger or get_logger(__name__)
    exceptions = tuple(exceptions)
    attempt = 0
    while True:
        try:
            return func()
        except exceptions as exc:
            if attempt >= retries:
                log.error("Retry exhausted after %s attempts: %s", attempt + 1, exc, exc_info=exc)
                raise
            delay = base_delay * (backoff ** attempt)
            log.warning("Retryable error (%s/%s): %s — sleeping %.2fs", attempt + 1, retries + 1, exc, delay)
            time.sleep(delay)
            attempt += 1
