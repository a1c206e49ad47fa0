"""
Configuration
=============
Immutable settings for the order relay, built once from the environment
and passed to every collaborator (database, payment gateway, manufacturer
client, reconciliation loop).
"""

import os
from dataclasses import dataclass
from typing import Optional, Tuple


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> Tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    """Runtime configuration. Construct with ``Settings.from_env()``."""

    # Server
    env: str = "development"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    cors_origins: Tuple[str, ...] = ("*",)
    public_base_url: str = "http://localhost:8000"

    # Database (None -> in-memory store)
    database_url: Optional[str] = None
    db_min_pool_size: int = 1
    db_max_pool_size: int = 10

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance: int = 300
    payment_gateway_timeout: float = 15.0
    checkout_allowed_countries: Tuple[str, ...] = ("US", "CA", "GB", "FR", "DE")

    # Manufacturer
    manufacturer_api_url: str = ""
    manufacturer_api_key: str = ""
    manufacturer_webhook_secret: str = ""
    manufacturer_timeout: float = 15.0

    # Reconciliation sweep
    reconciliation_enabled: bool = False
    reconciliation_interval: int = 300
    reconciliation_paid_threshold: int = 10
    reconciliation_pending_threshold: int = 1440
    reconciliation_batch_size: int = 10
    reconciliation_max_attempts: int = 3

    @property
    def debug(self) -> bool:
        return self.env == "development"

    @property
    def manufacturer_notify_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/webhooks/manufacturer"

    @classmethod
    def from_env(cls) -> "Settings":
        port = int(os.getenv("PORT", "8000"))
        return cls(
            env=os.getenv("ENV", "development"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=port,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cors_origins=_env_list("CORS_ORIGINS", "*"),
            public_base_url=os.getenv("PUBLIC_BASE_URL", f"http://localhost:{port}"),
            database_url=os.getenv("DATABASE_URL") or None,
            db_min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "1")),
            db_max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "10")),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
            stripe_webhook_tolerance=int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300")),
            payment_gateway_timeout=float(os.getenv("PAYMENT_GATEWAY_TIMEOUT", "15")),
            checkout_allowed_countries=_env_list("CHECKOUT_ALLOWED_COUNTRIES", "US,CA,GB,FR,DE"),
            manufacturer_api_url=os.getenv("MANUFACTURER_API_URL", ""),
            manufacturer_api_key=os.getenv("MANUFACTURER_API_KEY", ""),
            manufacturer_webhook_secret=os.getenv("MANUFACTURER_WEBHOOK_SECRET", ""),
            manufacturer_timeout=float(os.getenv("MANUFACTURER_TIMEOUT", "15")),
            reconciliation_enabled=_env_bool("RECONCILIATION_ENABLED"),
            reconciliation_interval=int(os.getenv("RECONCILIATION_INTERVAL", "300")),
            reconciliation_paid_threshold=int(os.getenv("RECONCILIATION_PAID_THRESHOLD", "10")),
            reconciliation_pending_threshold=int(os.getenv("RECONCILIATION_PENDING_THRESHOLD", "1440")),
            reconciliation_batch_size=int(os.getenv("RECONCILIATION_BATCH_SIZE", "10")),
            reconciliation_max_attempts=int(os.getenv("RECONCILIATION_MAX_ATTEMPTS", "3")),
        )
