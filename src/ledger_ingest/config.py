"""Configuration via environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import date

from dotenv import load_dotenv

load_dotenv()

DEFAULT_FALLBACK_RATES: dict[str, float] = {
    "USD": 1.0,
    "EUR": 1.1,
    "MAD": 10.0,
    "GBP": 1.3,
    "TND": 3.1,
}

DEFAULT_EMERGENCY_RATES: dict[str, float] = {
    "MAD_USD": 0.1,
    "USD_MAD": 10.0,
    "TND_USD": 0.32,
    "USD_TND": 3.1,
    "EUR_USD": 1.1,
    "USD_EUR": 0.91,
}


@dataclass(frozen=True)
class CurrencyConfig:
    """Rate tables and date window used by the currency engine."""

    fallback_rates: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_FALLBACK_RATES)
    )
    emergency_rates: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_EMERGENCY_RATES)
    )
    min_rate_date: date = date(2024, 1, 1)
    default_currency: str = "USD"


@dataclass(frozen=True)
class DuplicateConfig:
    """Duplicate detection thresholds."""

    amount_tolerance: float = 0.01


@dataclass(frozen=True)
class WorkerConfig:
    """Worker pool sizing and external call limits."""

    pool_size: int = 10
    queue_capacity: int = 100
    rate_lookup_timeout: float = 5.0


def get_database_url() -> str:
    """Return the DATABASE_URL from the environment."""
    url = os.environ.get("DATABASE_URL")
    if not url:
        msg = "DATABASE_URL environment variable is required"
        raise ValueError(msg)
    return url


def get_currency_config() -> CurrencyConfig:
    """Build currency configuration from environment variables.

    Optional: RATE_MIN_DATE (ISO date, default 2024-01-01),
    DEFAULT_CURRENCY (default USD)
    """
    min_date_str = os.environ.get("RATE_MIN_DATE", "2024-01-01")
    try:
        min_rate_date = date.fromisoformat(min_date_str)
    except ValueError:
        msg = f"RATE_MIN_DATE must be an ISO date, got {min_date_str!r}"
        raise ValueError(msg) from None

    default_currency = os.environ.get("DEFAULT_CURRENCY", "USD").strip().upper()

    return CurrencyConfig(
        min_rate_date=min_rate_date,
        default_currency=default_currency or "USD",
    )


def get_duplicate_config() -> DuplicateConfig:
    """Build duplicate detection configuration.

    Optional: DUPLICATE_AMOUNT_TOLERANCE (fraction of the amount, default 0.01)
    """
    tolerance = _float_env("DUPLICATE_AMOUNT_TOLERANCE", 0.01)
    if tolerance < 0:
        msg = "DUPLICATE_AMOUNT_TOLERANCE must not be negative"
        raise ValueError(msg)
    return DuplicateConfig(amount_tolerance=tolerance)


def get_worker_config() -> WorkerConfig:
    """Build worker pool configuration from environment variables.

    Optional: WORKER_POOL_SIZE (default 10), WORKER_QUEUE_CAPACITY
    (default 100), RATE_LOOKUP_TIMEOUT in seconds (default 5.0)
    """
    pool_size = _int_env("WORKER_POOL_SIZE", 10)
    queue_capacity = _int_env("WORKER_QUEUE_CAPACITY", 100)
    timeout = _float_env("RATE_LOOKUP_TIMEOUT", 5.0)

    invalid = []
    if pool_size < 1:
        invalid.append("WORKER_POOL_SIZE")
    if queue_capacity < 1:
        invalid.append("WORKER_QUEUE_CAPACITY")
    if timeout <= 0:
        invalid.append("RATE_LOOKUP_TIMEOUT")

    if invalid:
        msg = f"Environment variables must be positive: {', '.join(invalid)}"
        raise ValueError(msg)

    return WorkerConfig(
        pool_size=pool_size,
        queue_capacity=queue_capacity,
        rate_lookup_timeout=timeout,
    )


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        msg = f"{name} must be an integer, got {raw!r}"
        raise ValueError(msg) from None


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        msg = f"{name} must be a number, got {raw!r}"
        raise ValueError(msg) from None
