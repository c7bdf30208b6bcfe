import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    AUTO_CREATE_TABLES: bool = True

    # Admin access (X-Admin-Key header)
    ADMIN_KEY: Optional[str] = None

    # Payments
    CURRENCY: str = "INR"
    PAYMENT_CAPTURE_MAX_ATTEMPTS: int = 5
    PAYMENT_CAPTURE_BASE_DELAY: float = 0.5

    # Ledger consumption
    LEDGER_MAX_CAS_ATTEMPTS: int = 3
    LEDGER_CONSUME_RETRY_ATTEMPTS: int = 3
    LEDGER_CONSUME_RETRY_BASE_DELAY: float = 0.05

    # Grants
    FREE_TRIAL_PLAN_ID: str = "lite_check"

    # Grant reconciliation (captured payments whose grant write failed)
    RECONCILE_MAX_ATTEMPTS: int = 10
    RECONCILE_BATCH_LIMIT: int = 50
    RECONCILE_POLL_INTERVAL_SECONDS: int = 30

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("creditledger")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "ADMIN_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.LEDGER_MAX_CAS_ATTEMPTS < 1:
        message = "LEDGER_MAX_CAS_ATTEMPTS must be at least 1"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
