"""Payment gateway and ledger configuration helpers."""
from __future__ import annotations

import math
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

from .lifecycle import LateFeePolicy

SUPPORTED_GATEWAYS = {"stripe", "sandbox"}
DEFAULT_STRIPE_API_VERSION = "2024-12-18.acacia"


@dataclass(frozen=True)
class PaymentsConfig:
    """Configuration for the payment orchestrator and webhook reconciler."""

    gateway_name: str
    stripe_secret_key: Optional[str]
    webhook_secret: str
    stripe_api_version: str
    gateway_timeout_seconds: float
    webhook_tolerance_seconds: int
    default_currency: str
    late_fee_policy: LateFeePolicy


@dataclass(frozen=True)
class AuthConfig:
    secret_key: str
    algorithm: str
    token_ttl_minutes: int


@dataclass(frozen=True)
class DatabaseConfig:
    host: str
    port: int
    dbname: str
    user: str
    password: str
    connect_timeout: int

    def as_connect_kwargs(self) -> dict:
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.dbname,
            "user": self.user,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
        }


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _to_decimal(value: Optional[str], *, default: Decimal) -> Decimal:
    if value is None or value == "":
        return default
    try:
        return Decimal(value)
    except InvalidOperation as exc:
        raise ValueError(f"Expected decimal value, got {value!r}") from exc


def load_payments_config(env: Optional[Mapping[str, str]] = None) -> PaymentsConfig:
    """Load :class:`PaymentsConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    gateway_name = (env_mapping.get("PAYMENTS_GATEWAY") or "sandbox").strip().lower()
    if gateway_name not in SUPPORTED_GATEWAYS:
        raise ValueError(f"PAYMENTS_GATEWAY must be one of {sorted(SUPPORTED_GATEWAYS)}, got {gateway_name!r}")

    stripe_secret_key = env_mapping.get("STRIPE_SECRET_KEY") or None
    if gateway_name == "stripe" and not stripe_secret_key:
        raise ValueError("STRIPE_SECRET_KEY is required when PAYMENTS_GATEWAY=stripe")

    webhook_secret = env_mapping.get("STRIPE_WEBHOOK_SECRET") or ""
    if gateway_name == "stripe" and not webhook_secret:
        raise ValueError("STRIPE_WEBHOOK_SECRET is required when PAYMENTS_GATEWAY=stripe")
    if not webhook_secret:
        webhook_secret = "whsec_sandbox"

    timeout = _to_float(env_mapping.get("STRIPE_TIMEOUT_SECONDS"), default=10.0)
    if timeout <= 0:
        raise ValueError("STRIPE_TIMEOUT_SECONDS must be positive")

    tolerance = max(0, _to_int(env_mapping.get("WEBHOOK_TOLERANCE_SECONDS"), default=300))

    grace_days = _to_int(env_mapping.get("LATE_FEE_GRACE_DAYS"), default=5)
    rate = _to_decimal(env_mapping.get("LATE_FEE_RATE"), default=Decimal("0.05"))
    if grace_days < 0 or rate < 0:
        raise ValueError("LATE_FEE_GRACE_DAYS and LATE_FEE_RATE must be non-negative")

    currency = (env_mapping.get("DEFAULT_CURRENCY") or "usd").strip().lower()
    if len(currency) != 3:
        raise ValueError(f"DEFAULT_CURRENCY must be a 3-letter code, got {currency!r}")

    return PaymentsConfig(
        gateway_name=gateway_name,
        stripe_secret_key=stripe_secret_key,
        webhook_secret=webhook_secret,
        stripe_api_version=env_mapping.get("STRIPE_API_VERSION") or DEFAULT_STRIPE_API_VERSION,
        gateway_timeout_seconds=timeout,
        webhook_tolerance_seconds=tolerance,
        default_currency=currency,
        late_fee_policy=LateFeePolicy(grace_days=grace_days, rate=rate),
    )


def load_auth_config(env: Optional[Mapping[str, str]] = None) -> AuthConfig:
    env_mapping = os.environ if env is None else env
    return AuthConfig(
        secret_key=env_mapping.get("JWT_SECRET_KEY", "dev-secret-change-me"),
        algorithm=env_mapping.get("JWT_ALGORITHM", "HS256"),
        token_ttl_minutes=_to_int(env_mapping.get("JWT_EXP_MINUTES"), default=60 * 24 * 7),
    )


def load_database_config(env: Optional[Mapping[str, str]] = None) -> DatabaseConfig:
    env_mapping = os.environ if env is None else env
    connect_timeout = _to_float(env_mapping.get("DB_CONNECT_TIMEOUT"), default=5.0)
    if connect_timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return DatabaseConfig(
        host=env_mapping.get("DB_HOST", "127.0.0.1"),
        port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        dbname=env_mapping.get("DB_NAME", "estatepay"),
        user=env_mapping.get("DB_USER", "estatepay"),
        password=env_mapping.get("DB_PASSWORD", "estatepay"),
        connect_timeout=int(math.ceil(connect_timeout)),
    )


__all__ = [
    "AuthConfig",
    "DatabaseConfig",
    "PaymentsConfig",
    "load_auth_config",
    "load_database_config",
    "load_payments_config",
]
