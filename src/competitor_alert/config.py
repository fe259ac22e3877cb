import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)


@dataclass
class AppConfig:
    data_dir: Path = Path("data")
    serper_api_key: str = ""
    search_endpoint: str = "https://google.serper.dev/search"
    search_locale: str = "en"
    search_country: str = "us"
    search_retries: int = 3
    search_timeout_seconds: float = 20.0
    monthly_quota: int = 1000
    scheduler_interval_seconds: float = 60.0
    pacing_delay_seconds: float = 0.1
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_pass: str = ""
    from_email: str = ""
    app_url: str = "http://localhost:5000"
    webhook_timeout_seconds: float = 10.0
    log_level: str = "INFO"

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_user and self.smtp_pass)

    @property
    def sender_address(self) -> str:
        return self.from_email or self.smtp_user


def _env_path(name: str, default: Path) -> Path:
    value = os.getenv(name)
    if not value:
        return default
    return Path(value)


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return value if value else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Invalid integer value for %s: %s", name, value)
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Invalid number value for %s: %s", name, value)
        return default


def load_config() -> AppConfig:
    """Load configuration from defaults and optional .env overrides."""
    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path)

    defaults = AppConfig()

    return AppConfig(
        data_dir=_env_path("DATA_DIR", defaults.data_dir),
        serper_api_key=_env_str(
            "SERPER_API_KEY", _env_str("SERPER_TOKEN", defaults.serper_api_key)
        ),
        search_endpoint=_env_str("SEARCH_ENDPOINT", defaults.search_endpoint),
        search_locale=_env_str("SEARCH_LOCALE", defaults.search_locale),
        search_country=_env_str("SEARCH_COUNTRY", defaults.search_country),
        search_retries=_env_int("SEARCH_RETRIES", defaults.search_retries),
        search_timeout_seconds=_env_float(
            "SEARCH_TIMEOUT_SECONDS", defaults.search_timeout_seconds
        ),
        monthly_quota=_env_int("MONTHLY_QUOTA", defaults.monthly_quota),
        scheduler_interval_seconds=_env_float(
            "SCHEDULER_INTERVAL_SECONDS", defaults.scheduler_interval_seconds
        ),
        pacing_delay_seconds=_env_float(
            "PACING_DELAY_SECONDS", defaults.pacing_delay_seconds
        ),
        smtp_host=_env_str("SMTP_HOST", defaults.smtp_host),
        smtp_port=_env_int("SMTP_PORT", defaults.smtp_port),
        smtp_user=_env_str("SMTP_USER", defaults.smtp_user),
        smtp_pass=_env_str("SMTP_PASS", defaults.smtp_pass),
        from_email=_env_str("FROM_EMAIL", defaults.from_email),
        app_url=_env_str("APP_URL", defaults.app_url),
        webhook_timeout_seconds=_env_float(
            "WEBHOOK_TIMEOUT_SECONDS", defaults.webhook_timeout_seconds
        ),
        log_level=_env_str("LOG_LEVEL", defaults.log_level).upper(),
    )
