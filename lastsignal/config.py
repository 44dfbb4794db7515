# SPDX-License-Identifier: BUSL-1.1
# Copyright (c) 2026 pyoneerC. All rights reserved.
"""
Application configuration loaded from environment variables
with sensible defaults for development.
"""
import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Check-in defaults (nullable user settings fall back to these)
CHECKIN_DEFAULT_INTERVAL_HOURS = 168
CHECKIN_DEFAULT_ATTEMPTS = 3
CHECKIN_DEFAULT_ATTEMPT_INTERVAL_HOURS = 72

CHECKIN_MIN_INTERVAL_HOURS = 24
CHECKIN_MAX_INTERVAL_HOURS = 8760
CHECKIN_MIN_ATTEMPTS = 1
CHECKIN_MAX_ATTEMPTS = 10
CHECKIN_MIN_ATTEMPT_INTERVAL_HOURS = 1
CHECKIN_MAX_ATTEMPT_INTERVAL_HOURS = 720

# Trusted contact
TRUSTED_CONTACT_DEFAULT_PAUSE_DURATION_HOURS = 168
TRUSTED_CONTACT_MIN_PAUSE_DURATION_HOURS = 24
TRUSTED_CONTACT_MAX_PAUSE_DURATION_HOURS = 2160
TRUSTED_CONTACT_TOKEN_TTL_HOURS = 72

# Token lifetimes
MAGIC_LINK_TTL_MINUTES = 15
INVITE_TOKEN_TTL_DAYS = 7


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str
    app_base_url: str
    mail_from_email: str
    mail_from_name: str
    resend_api_key: str | None
    posthog_api_key: str | None
    posthog_host: str
    cron_secret: str | None
    log_level: str
    # Confirming a check-in after delivery returns the user to active.
    # Product policy switch, see DESIGN.md.
    allow_checkin_after_delivery: bool = True

    def url_for(self, path: str) -> str:
        return f"{self.app_base_url.rstrip('/')}/{path.lstrip('/')}"


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./lastsignal.db"),
        app_base_url=os.getenv("APP_BASE_URL", "http://localhost:8000"),
        mail_from_email=os.getenv("MAIL_FROM_EMAIL", "noreply@lastsignal.app"),
        mail_from_name=os.getenv("MAIL_FROM_NAME", "LastSignal"),
        resend_api_key=os.getenv("RESEND_API_KEY") or None,
        posthog_api_key=os.getenv("POSTHOG_API_KEY") or None,
        posthog_host=os.getenv("POSTHOG_HOST", "https://us.i.posthog.com"),
        cron_secret=os.getenv("CRON_SECRET") or None,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        allow_checkin_after_delivery=_env_bool("ALLOW_CHECKIN_AFTER_DELIVERY", True),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, read once."""
    return load_settings()
