"""Startup configuration.

validate_config() checks that all required environment variables are set
before the server accepts calls. It runs from bot.py at startup so that a
missing key causes a clear startup failure rather than a mid-call crash.
load_settings() reads everything else into a frozen Settings record.
"""

import os
import sys
import logging
from dataclasses import dataclass

from clinicdesk.cache import DEFAULT_TTL_SECONDS
from clinicdesk.date_parser import DEFAULT_TIMEZONE
from clinicdesk.name_matching import DEFAULT_THRESHOLD, DEFAULT_TYPO_DISTANCE
from clinicdesk.retry import DEFAULT_POLICY

logger = logging.getLogger(__name__)

REQUIRED_VARS = [
    "SCHEDULER_BASE_URL",
    "SCHEDULER_API_KEY",
    "OPENAI_API_KEY",
    "PUBLIC_BASE_URL",
]

OPTIONAL_VARS = [
    "SCHEDULER_BUSINESS_ID",
    "SCHEDULER_PRACTITIONER_ID",
    "SCHEDULER_APPOINTMENT_TYPE_ID",
    "CLINIC_NAME",
    "CLINIC_TIMEZONE",
    "CLINIC_KNOWLEDGE_FILE",
    "TENANT_ID",
    "ALERTS_WEBHOOK_URL",
    "NOTIFY_WEBHOOK_URL",
    "WEBHOOK_SECRET",
    "LOG_LEVEL",
]


def validate_config() -> None:
    """Validate environment variables at startup.

    Exits the process with a clear error if any required variable is missing
    or empty. Logs warnings for missing optional variables.
    """
    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]

    if missing:
        print(
            f"\nFATAL: Missing required environment variables:\n"
            f"  {', '.join(missing)}\n"
            f"\nSet them in .env (local) or in the deployment's secrets.\n",
            file=sys.stderr,
        )
        sys.exit(1)

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            logger.warning("Optional env var %s is not set", var)


@dataclass(frozen=True)
class Settings:
    scheduler_base_url: str
    scheduler_api_key: str
    openai_api_key: str
    public_base_url: str
    openai_model: str = "gpt-4o-mini"
    business_id: str | None = None
    practitioner_id: str | None = None
    appointment_type_id: str | None = None
    clinic_name: str = "the clinic"
    knowledge_file: str = ""
    timezone: str = DEFAULT_TIMEZONE
    tenant_id: str = "default"
    cache_ttl_seconds: float = DEFAULT_TTL_SECONDS
    name_similarity_threshold: float = DEFAULT_THRESHOLD
    name_typo_distance: int = DEFAULT_TYPO_DISTANCE
    retry_max_attempts: int = DEFAULT_POLICY.max_attempts
    retry_base_delay: float = DEFAULT_POLICY.base_delay
    http_timeout: float = 10.0
    alerts_webhook_url: str = ""
    notify_webhook_url: str = ""
    webhook_secret: str = ""
    log_level: str = "INFO"


def _float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, value, default)
        return default


def load_settings() -> Settings:
    """Read Settings from the environment. Call validate_config() first."""
    return Settings(
        scheduler_base_url=os.getenv("SCHEDULER_BASE_URL", "").rstrip("/"),
        scheduler_api_key=os.getenv("SCHEDULER_API_KEY", ""),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        public_base_url=os.getenv("PUBLIC_BASE_URL", "").rstrip("/"),
        openai_model=os.getenv("OPENAI_MODEL") or "gpt-4o-mini",
        business_id=os.getenv("SCHEDULER_BUSINESS_ID") or None,
        practitioner_id=os.getenv("SCHEDULER_PRACTITIONER_ID") or None,
        appointment_type_id=os.getenv("SCHEDULER_APPOINTMENT_TYPE_ID") or None,
        clinic_name=os.getenv("CLINIC_NAME") or "the clinic",
        knowledge_file=os.getenv("CLINIC_KNOWLEDGE_FILE", ""),
        timezone=os.getenv("CLINIC_TIMEZONE") or DEFAULT_TIMEZONE,
        tenant_id=os.getenv("TENANT_ID") or "default",
        cache_ttl_seconds=_float("AVAILABILITY_CACHE_TTL", DEFAULT_TTL_SECONDS),
        name_similarity_threshold=_float("NAME_SIMILARITY_THRESHOLD", DEFAULT_THRESHOLD),
        name_typo_distance=int(_float("NAME_TYPO_DISTANCE", DEFAULT_TYPO_DISTANCE)),
        retry_max_attempts=int(_float("RETRY_MAX_ATTEMPTS", DEFAULT_POLICY.max_attempts)),
        retry_base_delay=_float("RETRY_BASE_DELAY", DEFAULT_POLICY.base_delay),
        http_timeout=_float("HTTP_TIMEOUT", 10.0),
        alerts_webhook_url=os.getenv("ALERTS_WEBHOOK_URL", ""),
        notify_webhook_url=os.getenv("NOTIFY_WEBHOOK_URL", ""),
        webhook_secret=os.getenv("WEBHOOK_SECRET", ""),
        log_level=os.getenv("LOG_LEVEL") or "INFO",
    )
