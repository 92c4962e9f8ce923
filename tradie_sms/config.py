from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from functools import lru_cache
from typing import Dict, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from tradie_sms.errors import ConfigError

# -----------------------------
# .env Loader
# -----------------------------
try:
    from dotenv import load_dotenv

    BASE_DIR = os.path.dirname(os.path.abspath(__file__))
    ENV_PATH = os.path.join(BASE_DIR, "..", ".env")
    load_dotenv(dotenv_path=ENV_PATH, override=False)
except ImportError:
    pass

# -----------------------------
# Env helpers
# -----------------------------
def env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, default))
    except (TypeError, ValueError):
        return default


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(key)
    return v if (v and str(v).strip() != "") else default


# -----------------------------
# Scheduler cadences
# -----------------------------
# name -> (interval seconds, startup stagger seconds)
DEFAULT_SCHEDULE: Dict[str, Tuple[int, int]] = {
    "reminders": (60 * 60, 10),
    "recurring_documents": (60 * 60, 20),
    "trial_expiry": (6 * 60 * 60, 30),
    "automation_rules": (15 * 60, 40),
    "archival": (24 * 60 * 60, 50),
    "sms_automation": (15 * 60, 60),
    "billing_reminders": (24 * 60 * 60, 70),
    "installment_reminders": (24 * 60 * 60, 80),
    "pending_reconciliation": (10 * 60, 90),
}


def _schedule_from_env() -> Dict[str, Tuple[int, int]]:
    out: Dict[str, Tuple[int, int]] = {}
    for name, (interval, stagger) in DEFAULT_SCHEDULE.items():
        key = name.upper()
        out[name] = (
            env_int(f"SCHEDULE_{key}_INTERVAL_SEC", interval),
            env_int(f"SCHEDULE_{key}_STAGGER_SEC", stagger),
        )
    return out


# -----------------------------
# Settings Object
# -----------------------------
@dataclass(frozen=True)
class Settings:
    APP_ENV: str
    AIRTABLE_API_KEY: Optional[str]
    AIRTABLE_BASE_ID: Optional[str]
    FORCE_IN_MEMORY: bool
    TWILIO_ACCOUNT_SID: Optional[str]
    TWILIO_AUTH_TOKEN: Optional[str]
    TWILIO_PHONE_NUMBER: Optional[str]
    TWILIO_API_BASE: str
    GATEWAY_TIMEOUT_SEC: int
    SMS_SIMULATE: bool
    DEFAULT_COUNTRY_CODE: str
    TRUNK_PREFIX: str
    BUSINESS_TZ: str
    QUOTE_FOLLOW_UP_DAYS: int
    INVOICE_OVERDUE_DAYS: int
    PENDING_STALE_MINUTES: int
    ARCHIVE_AFTER_DAYS: int
    WEBHOOK_TOKEN: Optional[str]
    CRON_TOKEN: Optional[str]
    REDIS_URL: Optional[str]
    REDIS_TLS: bool
    UPSTASH_REST_URL: Optional[str]
    UPSTASH_REST_TOKEN: Optional[str]
    SCHEDULER_ENABLED: bool
    SCHEDULE: Dict[str, Tuple[int, int]] = field(default_factory=dict)

    @property
    def is_production(self) -> bool:
        return self.APP_ENV.lower() in ("prod", "production")

    @property
    def gateway_configured(self) -> bool:
        return bool(self.TWILIO_ACCOUNT_SID and self.TWILIO_AUTH_TOKEN and self.TWILIO_PHONE_NUMBER)


@lru_cache(maxsize=1)
def settings() -> Settings:
    return Settings(
        APP_ENV=env_str("APP_ENV", "development"),
        AIRTABLE_API_KEY=env_str("AIRTABLE_API_KEY"),
        AIRTABLE_BASE_ID=env_str("AIRTABLE_BASE_ID"),
        FORCE_IN_MEMORY=env_bool("SMS_FORCE_IN_MEMORY"),
        TWILIO_ACCOUNT_SID=env_str("TWILIO_ACCOUNT_SID"),
        TWILIO_AUTH_TOKEN=env_str("TWILIO_AUTH_TOKEN"),
        TWILIO_PHONE_NUMBER=env_str("TWILIO_PHONE_NUMBER"),
        TWILIO_API_BASE=env_str("TWILIO_API_BASE", "https://api.twilio.com/2010-04-01"),
        GATEWAY_TIMEOUT_SEC=env_int("GATEWAY_TIMEOUT_SEC", 15),
        SMS_SIMULATE=env_bool("SMS_SIMULATE"),
        DEFAULT_COUNTRY_CODE=env_str("DEFAULT_COUNTRY_CODE", "61"),
        TRUNK_PREFIX=env_str("TRUNK_PREFIX", "0"),
        BUSINESS_TZ=env_str("BUSINESS_TZ", "Australia/Sydney"),
        QUOTE_FOLLOW_UP_DAYS=env_int("QUOTE_FOLLOW_UP_DAYS", 3),
        INVOICE_OVERDUE_DAYS=env_int("INVOICE_OVERDUE_DAYS", 1),
        PENDING_STALE_MINUTES=env_int("PENDING_STALE_MINUTES", 15),
        ARCHIVE_AFTER_DAYS=env_int("ARCHIVE_AFTER_DAYS", 90),
        WEBHOOK_TOKEN=env_str("WEBHOOK_TOKEN"),
        CRON_TOKEN=env_str("CRON_TOKEN"),
        REDIS_URL=env_str("REDIS_URL") or env_str("UPSTASH_REDIS_URL"),
        REDIS_TLS=env_bool("REDIS_TLS", False),
        UPSTASH_REST_URL=env_str("UPSTASH_REDIS_REST_URL"),
        UPSTASH_REST_TOKEN=env_str("UPSTASH_REDIS_REST_TOKEN"),
        SCHEDULER_ENABLED=env_bool("SCHEDULER_ENABLED", True),
        SCHEDULE=_schedule_from_env(),
    )


def reload_settings() -> Settings:
    settings.cache_clear()
    return settings()


def validate_startup(s: Optional[Settings] = None) -> Settings:
    """Fail fast on configuration the process cannot run with."""
    s = s or settings()
    if s.SMS_SIMULATE and s.is_production:
        raise ConfigError("SMS_SIMULATE is not allowed when APP_ENV=production")
    business_tz(s)
    for name, (interval, stagger) in s.SCHEDULE.items():
        if interval <= 0 or stagger < 0:
            raise ConfigError(f"Invalid schedule for {name}: interval={interval} stagger={stagger}")
    return s


# -----------------------------
# Time helpers
# -----------------------------
def business_tz(s: Optional[Settings] = None) -> tzinfo:
    s = s or settings()
    try:
        return ZoneInfo(s.BUSINESS_TZ)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown BUSINESS_TZ {s.BUSINESS_TZ!r}") from exc


def local_now(now: Optional[datetime] = None) -> datetime:
    return (now or datetime.now(timezone.utc)).astimezone(business_tz())
