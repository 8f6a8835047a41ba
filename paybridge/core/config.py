import logging
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_API_VERSION: Optional[str] = None

    # Billing periods, in days
    DEFAULT_CURRENCY: str = "usd"
    BILLING_PERIOD_DAYS: int = Field(30, gt=0)
    PRORATION_TOTAL_DAYS: int = Field(30, gt=0)  # fixed month, not the calendar period
    DEFAULT_TRIAL_DAYS: int = Field(14, gt=0)

    # Health monitor
    WEBHOOK_FAILURE_WINDOW_HOURS: int = Field(24, gt=0)
    RECENT_ERRORS_LIMIT: int = Field(5, ge=0)

    ALLOWED_ORIGINS: str = "http://localhost:3000"  # comma-separated


settings = Settings()

REQUIRED_KEYS = ("DATABASE_URL", "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET")


def config_problems(cfg) -> List[str]:
    """Human-readable problems with `cfg`; names keys, never values."""
    problems = []
    missing = [key for key in REQUIRED_KEYS if not getattr(cfg, key, None)]
    if missing:
        problems.append(f"Missing required configuration: {', '.join(missing)}")

    database_url = getattr(cfg, "DATABASE_URL", None)
    if database_url and "://" not in database_url:
        problems.append("DATABASE_URL is not a URL")

    secret = getattr(cfg, "STRIPE_SECRET_KEY", None)
    if secret and not secret.startswith(("sk_", "rk_")):
        problems.append("STRIPE_SECRET_KEY does not look like a Stripe secret key")

    if cfg.PRORATION_TOTAL_DAYS <= 0 or cfg.BILLING_PERIOD_DAYS <= 0:
        problems.append("PRORATION_TOTAL_DAYS and BILLING_PERIOD_DAYS must be positive")
    return problems


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Check configuration at startup.

    Strict mode raises RuntimeError listing every problem; otherwise each
    problem is logged as a warning.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("paybridge")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    problems = config_problems(cfg)
    if problems and strict_mode:
        raise RuntimeError("; ".join(problems))
    for problem in problems:
        log.warning(problem)
    return True
