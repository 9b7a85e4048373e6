"""
Runtime settings, read from environment variables.

Plans and rules live in config/memberships.json (see loader.py); this module
only covers deployment concerns: where data lives, gateway credentials,
grace period and tax defaults.
"""

import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///memberships.db"
DEFAULT_CONFIG_PATH = "config/memberships.json"
DEFAULT_GRACE_PERIOD_DAYS = 3
DEFAULT_CURRENCY = "USD"
DEFAULT_GATEWAY_TIMEOUT_SECONDS = 30.0
DEFAULT_ACCESS_CACHE_TTL_SECONDS = 300


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    redis_url: Optional[str] = None
    memberships_config_path: str = DEFAULT_CONFIG_PATH
    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS
    currency: str = DEFAULT_CURRENCY
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_api_base: Optional[str] = None
    gateway_timeout_seconds: float = DEFAULT_GATEWAY_TIMEOUT_SECONDS
    manual_payment_instructions: Optional[str] = None
    tax_name: Optional[str] = None
    tax_rate: Decimal = Decimal("0")
    access_cache_ttl_seconds: int = DEFAULT_ACCESS_CACHE_TTL_SECONDS

    def __post_init__(self) -> None:
        if self.grace_period_days < 0:
            raise ValueError("grace_period_days must not be negative")
        if self.gateway_timeout_seconds <= 0:
            raise ValueError("gateway_timeout_seconds must be positive")
        if self.tax_rate < 0:
            raise ValueError("tax_rate must not be negative")
        object.__setattr__(self, "currency", self.currency.strip().upper() or DEFAULT_CURRENCY)


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer setting, using default", extra={"setting": key, "default": default})
        return default


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid numeric setting, using default", extra={"setting": key, "default": default})
        return default


def _decimal(env: Mapping[str, str], key: str) -> Decimal:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return Decimal("0")
    try:
        return Decimal(raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"{key} must be a decimal number, got {raw!r}") from exc


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from ``env`` (defaults to os.environ)."""
    env = os.environ if env is None else env
    return Settings(
        database_url=env.get("DATABASE_URL") or DEFAULT_DATABASE_URL,
        redis_url=env.get("REDIS_URL") or None,
        memberships_config_path=env.get("MEMBERSHIPS_CONFIG_PATH") or DEFAULT_CONFIG_PATH,
        grace_period_days=_int(env, "MEMBERSHIP_GRACE_PERIOD_DAYS", DEFAULT_GRACE_PERIOD_DAYS),
        currency=env.get("MEMBERSHIP_CURRENCY") or DEFAULT_CURRENCY,
        stripe_secret_key=env.get("STRIPE_SECRET_KEY") or None,
        stripe_webhook_secret=env.get("STRIPE_WEBHOOK_SECRET") or None,
        stripe_api_base=env.get("STRIPE_API_BASE") or None,
        gateway_timeout_seconds=_float(env, "GATEWAY_TIMEOUT_SECONDS", DEFAULT_GATEWAY_TIMEOUT_SECONDS),
        manual_payment_instructions=env.get("MANUAL_PAYMENT_INSTRUCTIONS") or None,
        tax_name=env.get("TAX_NAME") or None,
        tax_rate=_decimal(env, "TAX_RATE"),
        access_cache_ttl_seconds=_int(env, "ACCESS_CACHE_TTL_SECONDS", DEFAULT_ACCESS_CACHE_TTL_SECONDS),
    )
