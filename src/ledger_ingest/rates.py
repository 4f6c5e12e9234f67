"""Exchange rate sources and the ordered resolver chain used for lookups."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Protocol

from ledger_ingest.db import get_connection
from ledger_ingest.models import ExchangeRate

if TYPE_CHECKING:
    from datetime import date

    import psycopg

logger = logging.getLogger(__name__)

BASE_CURRENCY = "USD"

Resolver = Callable[[str, "date"], "ExchangeRate | None"]


class ExchangeRateSource(Protocol):
    """Read-only provider of USD-based daily exchange rates."""

    def get_rate(self, currency_code: str, on: date) -> ExchangeRate | None: ...


class PostgresRateSource:
    """ExchangeRateSource backed by the ``exchange_rates`` table.

    Each lookup opens a connection bounded by ``timeout`` seconds; the
    statement timeout surfaces as a psycopg error.
    """

    _QUERY = (
        "SELECT currency_code, base_currency, rate, date FROM exchange_rates"
        " WHERE currency_code = %s AND date = %s LIMIT 1"
    )

    def __init__(
        self,
        connect: Callable[[], psycopg.Connection[Any]] | None = None,
        *,
        timeout: float | None = None,
    ) -> None:
        self.timeout = timeout
        self._connect = connect or (lambda: get_connection(timeout=timeout))

    def get_rate(self, currency_code: str, on: date) -> ExchangeRate | None:
        with self._connect() as conn:
            row = conn.execute(self._QUERY, (currency_code, on)).fetchone()
        if row is None:
            return None
        return ExchangeRate(
            currency_code=row["currency_code"],
            base_currency=row.get("base_currency") or BASE_CURRENCY,
            rate=float(row["rate"]),
            date=row["date"],
        )


def live_resolver(source: ExchangeRateSource) -> Resolver:
    """Wrap a rate source so that any failure reads as 'unavailable'."""

    def resolve(currency_code: str, on: date) -> ExchangeRate | None:
        try:
            rate = source.get_rate(currency_code, on)
        except Exception:
            logger.warning(
                "Rate lookup failed for %s on %s, treating as unavailable",
                currency_code,
                on,
                exc_info=True,
            )
            return None
        if rate is None:
            logger.warning("No exchange rate found for %s on %s", currency_code, on)
        return rate

    return resolve


def static_resolver(table: Mapping[str, float], default: float = 1.0) -> Resolver:
    """Synthesize a USD-based rate from a fixed per-currency table."""

    def resolve(currency_code: str, on: date) -> ExchangeRate:
        rate = table.get(currency_code.upper(), default)
        logger.info("Using fallback rate for %s: %s", currency_code, rate)
        return ExchangeRate(
            currency_code=currency_code,
            base_currency=BASE_CURRENCY,
            rate=rate,
            date=on,
        )

    return resolve


def resolve_rate(
    resolvers: Sequence[Resolver], currency_code: str, on: date
) -> ExchangeRate | None:
    """Return the first rate produced by ``resolvers``, tried in order."""
    for resolver in resolvers:
        rate = resolver(currency_code, on)
        if rate is not None:
            return rate
    return None


def combine_rates(
    source: str, target: str, source_rate: float, target_rate: float
) -> float:
    """Cross two USD-based rates into a source-to-target conversion rate."""
    if source == BASE_CURRENCY:
        return target_rate
    if target == BASE_CURRENCY:
        return 1.0 / source_rate
    return target_rate / source_rate


def emergency_rate(
    source: str | None,
    target: str | None,
    table: Mapping[str, float],
    default: float = 1.0,
) -> float:
    """Last-resort pairwise rate keyed ``SRC_TGT``."""
    key = f"{source}_{target}".upper()
    rate = table.get(key, default)
    logger.warning("Using emergency rate for %s: %s", key, rate)
    return rate
