import logging
from functools import lru_cache

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

# All customer-facing scheduling and ERP watermarks are anchored here.
BUSINESS_TIMEZONE = "America/Denver"


class Settings(BaseSettings):
    APP_ENV: str = "development"
    DATABASE_URL: str = "postgresql+asyncpg://postgres:postgres@db:5432/willcall"

    # Database connection pool (tune per environment via env vars)
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_TIMEOUT: int = 30

    # Notification worker
    NOTIFICATIONS_WORKER_INTERVAL_MS: int = 60000
    NOTIFICATIONS_CAP: int = 10
    NOTIFICATIONS_BATCH_SIZE: int = 50
    NOTIFICATIONS_REMINDER_TERMINAL_STATUSES: str = "NoShow,Completed,Cancelled"
    NOTIFICATIONS_ONE_DAY_REMINDER: str = "same_time"  # "same_time" or "business_day_9am"
    NOTIFICATIONS_TEST_EMAIL: str = ""
    NOTIFICATIONS_TEST_PHONE: str = ""

    # No-show sweep run window (business-local)
    NO_SHOW_SWEEP_HOUR: int = 17
    NO_SHOW_SWEEP_MINUTE: int = 15
    NO_SHOW_SWEEP_WINDOW_MINUTES: int = 30

    # Links
    FRONTEND_URL: str = ""
    BACKEND_URL: str = ""

    # Twilio (SMS)
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_FROM_NUMBER: str = ""

    # Microsoft Graph (email)
    MS_GRAPH_TENANT_ID: str = ""
    MS_GRAPH_CLIENT_ID: str = ""
    MS_GRAPH_CLIENT_SECRET: str = ""
    MS_GRAPH_FROM_EMAIL: str = ""

    # Acumatica ERP
    ACUMATICA_BASE_URL: str = ""
    ACUMATICA_CLIENT_ID: str = ""
    ACUMATICA_CLIENT_SECRET: str = ""
    ACUMATICA_USERNAME: str = ""
    ACUMATICA_PASSWORD: str = ""
    ACUMATICA_ENDPOINT: str = "CustomEndpoint/24.200.001"
    ACU_PAGE_SIZE: int = 250
    ACU_MAX_PAGES: int = 50

    model_config = {"env_file": "../.env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def worker_interval_seconds(self) -> float:
        return self.NOTIFICATIONS_WORKER_INTERVAL_MS / 1000

    @property
    def reminder_terminal_statuses(self) -> frozenset[str]:
        return frozenset(
            s.strip() for s in self.NOTIFICATIONS_REMINDER_TERMINAL_STATUSES.split(",") if s.strip()
        )


@lru_cache()
def get_settings() -> Settings:
    settings = Settings()

    if settings.NOTIFICATIONS_CAP < 1:
        raise RuntimeError(
            f"FATAL: NOTIFICATIONS_CAP must be a positive integer, got {settings.NOTIFICATIONS_CAP}"
        )
    if settings.NOTIFICATIONS_WORKER_INTERVAL_MS < 1000:
        raise RuntimeError(
            "FATAL: NOTIFICATIONS_WORKER_INTERVAL_MS must be at least 1000 "
            f"(got {settings.NOTIFICATIONS_WORKER_INTERVAL_MS})"
        )
    if settings.NOTIFICATIONS_ONE_DAY_REMINDER not in ("same_time", "business_day_9am"):
        raise RuntimeError(
            "FATAL: NOTIFICATIONS_ONE_DAY_REMINDER must be 'same_time' or 'business_day_9am' "
            f"(got {settings.NOTIFICATIONS_ONE_DAY_REMINDER!r})"
        )

    if settings.is_production:
        if not settings.FRONTEND_URL:
            logger.warning(
                "FRONTEND_URL not set; appointment links in notifications will be relative."
            )
        if settings.NOTIFICATIONS_TEST_EMAIL or settings.NOTIFICATIONS_TEST_PHONE:
            logger.warning(
                "NOTIFICATIONS_TEST_EMAIL/NOTIFICATIONS_TEST_PHONE are set in production "
                "and will be ignored."
            )

    return settings


def clear_settings_cache() -> None:
    """Clear the cached Settings so the next call to ``get_settings()``
    re-reads environment variables.
    """
    get_settings.cache_clear()
