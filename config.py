import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s value %r; using %s", name, raw, default)
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "synchro"
    port: int = 8000
    log_level: str = "INFO"
    user_cache_ttl_seconds: int = 300
    outbox_interval_seconds: int = 15
    outbox_max_attempts: int = 5
    outbox_batch_size: int = 50
    reconcile_interval_seconds: int = 300
    app_base_url: str = "http://localhost:3000"
    email_from: str = "Synchro Team <noreply@synchro.local>"
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_starttls: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            database_name=os.getenv("DATABASE_NAME", cls.database_name),
            port=_int_env("PORT", cls.port),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            user_cache_ttl_seconds=_int_env("USER_CACHE_TTL_SECONDS", cls.user_cache_ttl_seconds),
            outbox_interval_seconds=_int_env("OUTBOX_INTERVAL_SECONDS", cls.outbox_interval_seconds),
            outbox_max_attempts=_int_env("OUTBOX_MAX_ATTEMPTS", cls.outbox_max_attempts),
            outbox_batch_size=_int_env("OUTBOX_BATCH_SIZE", cls.outbox_batch_size),
            reconcile_interval_seconds=_int_env("RECONCILE_INTERVAL_SECONDS", cls.reconcile_interval_seconds),
            app_base_url=os.getenv("APP_BASE_URL", cls.app_base_url).rstrip("/"),
            email_from=os.getenv("EMAIL_FROM", cls.email_from),
            smtp_host=os.getenv("SMTP_HOST") or None,
            smtp_port=_int_env("SMTP_PORT", cls.smtp_port),
            smtp_user=os.getenv("SMTP_USER") or None,
            smtp_password=os.getenv("SMTP_PASSWORD") or None,
            smtp_starttls=_bool_env("SMTP_STARTTLS", cls.smtp_starttls),
        )
