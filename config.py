import logging
import os
from typing import List, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_JWT_SECRET = "your-super-secret-jwt-key-change-this-in-production"


class Settings(BaseModel):
    database_url: str = "sqlite:///./storelite.db"
    port: int = 8080

    jwt_secret: str = DEFAULT_JWT_SECRET
    jwt_expiry_hours: int = 24
    jwt_issuer: str = "ecommerce-api"
    jwt_audience: List[str] = ["ecommerce-web", "ecommerce-mobile"]
    bcrypt_rounds: int = 12

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from: str = ""

    payment_webhook_secret: Optional[str] = None
    bank_name: str = "Ngân hàng TMCP Á Châu (ACB)"
    bank_account_number: str = "1234567890"
    bank_account_name: str = "CONG TY TNHH E-COMMERCE"

    cart_sweep_interval_seconds: int = 6 * 60 * 60
    order_sweep_interval_seconds: int = 15 * 60
    enable_schedulers: bool = True

    log_level: str = "INFO"
    cors_origins: List[str] = ["*"]


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %s", name, raw, default)
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    host = os.getenv("DB_HOST")
    if not host:
        return Settings.model_fields["database_url"].default
    user = os.getenv("DB_USER", "postgres")
    password = os.getenv("DB_PASSWORD", "")
    port = os.getenv("DB_PORT", "5432")
    name = os.getenv("DB_NAME", "storelite")
    sslmode = os.getenv("DB_SSLMODE", "disable")
    return f"postgresql+psycopg2://{user}:{password}@{host}:{port}/{name}?sslmode={sslmode}"


def load_settings() -> Settings:
    """Build settings from the process environment."""
    secret = os.getenv("JWT_SECRET") or DEFAULT_JWT_SECRET
    if secret == DEFAULT_JWT_SECRET:
        logger.warning("JWT_SECRET is not set; using the development secret")

    smtp_username = os.getenv("SMTP_USERNAME", "")
    origins = os.getenv("CORS_ORIGINS", "*")

    return Settings(
        database_url=_database_url(),
        port=_int_env("PORT", 8080),
        jwt_secret=secret,
        jwt_expiry_hours=_int_env("JWT_EXPIRY_HOURS", 24),
        jwt_issuer=os.getenv("JWT_ISSUER") or Settings.model_fields["jwt_issuer"].default,
        bcrypt_rounds=_int_env("BCRYPT_ROUNDS", 12),
        smtp_host=os.getenv("SMTP_HOST", ""),
        smtp_port=_int_env("SMTP_PORT", 587),
        smtp_username=smtp_username,
        smtp_password=os.getenv("SMTP_PASSWORD", ""),
        smtp_from=os.getenv("SMTP_FROM") or smtp_username,
        payment_webhook_secret=os.getenv("PAYMENT_WEBHOOK_SECRET") or None,
        bank_name=os.getenv("BANK_NAME", Settings.model_fields["bank_name"].default),
        bank_account_number=os.getenv("BANK_ACCOUNT_NUMBER", Settings.model_fields["bank_account_number"].default),
        bank_account_name=os.getenv("BANK_ACCOUNT_NAME", Settings.model_fields["bank_account_name"].default),
        cart_sweep_interval_seconds=_int_env("CART_SWEEP_INTERVAL_SECONDS", 6 * 60 * 60),
        order_sweep_interval_seconds=_int_env("ORDER_SWEEP_INTERVAL_SECONDS", 15 * 60),
        enable_schedulers=_bool_env("ENABLE_SCHEDULERS", True),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
    )
