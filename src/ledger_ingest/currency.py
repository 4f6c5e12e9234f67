"""Resolve a document's conversion rate once and apply it to its entries."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import date, timedelta
from typing import TYPE_CHECKING, Any

from ledger_ingest.currency_codes import normalize_currency_code
from ledger_ingest.models import ConversionContext
from ledger_ingest.parsing import parse_amount, round_half_up
from ledger_ingest.rates import (
    BASE_CURRENCY,
    combine_rates,
    emergency_rate,
    resolve_rate,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from ledger_ingest.config import CurrencyConfig
    from ledger_ingest.models import Document
    from ledger_ingest.rates import Resolver

logger = logging.getLogger(__name__)


class RateUnavailableError(LookupError):
    """No resolver in the chain produced a rate."""


class CurrencyEngine:
    """Currency resolution and entry conversion for one document at a time.

    Holds no per-document state; the document passed in is the only thing
    mutated.
    """

    def __init__(
        self,
        resolvers: Sequence[Resolver],
        config: CurrencyConfig,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.resolvers = list(resolvers)
        self.config = config
        self.today = today

    def effective_date(self, on: date | None) -> date:
        """Clamp a transaction date into the window where rates exist."""
        today = self.today()
        if on is None or on >= today:
            return today - timedelta(days=1)
        if on < self.config.min_rate_date:
            return self.config.min_rate_date
        return on

    def resolve(
        self,
        document: Document,
        source: str | None,
        target: str | None,
        transaction_date: date | None,
    ) -> ConversionContext:
        """Resolve the conversion for ``document`` and record it on the document."""
        normalized_source = normalize_currency_code(source)
        normalized_target = normalize_currency_code(target)

        if normalized_source is None or normalized_target is None:
            self.apply_default_currency(document, target)
            return ConversionContext(
                source_currency=normalized_source,
                target_currency=document.converted_currency,
                rate=1.0,
            )

        if normalized_source == normalized_target:
            document.exchange_rate = 1.0
            document.converted_currency = normalized_target
            logger.info(
                "Document %s: same currency %s, no conversion needed",
                document.id,
                normalized_source,
            )
            return ConversionContext(
                source_currency=normalized_source,
                target_currency=normalized_target,
                rate=1.0,
            )

        on = self.effective_date(transaction_date)
        rate = self._conversion_rate(normalized_source, normalized_target, on)

        document.exchange_rate = rate
        document.converted_currency = normalized_target
        document.exchange_rate_date = on

        logger.info(
            "Document %s: applied conversion %s -> %s, rate %s, date %s",
            document.id,
            normalized_source,
            normalized_target,
            rate,
            on,
        )
        return ConversionContext(
            source_currency=normalized_source,
            target_currency=normalized_target,
            rate=rate,
            rate_date=on,
        )

    def apply_default_currency(self, document: Document, currency: str | None) -> None:
        """Book the document in ``currency`` (or the default) without conversion."""
        normalized = normalize_currency_code(currency) or self.config.default_currency
        document.converted_currency = normalized
        document.exchange_rate = 1.0
        logger.info("Document %s: applied default currency %s", document.id, normalized)

    def usd_rate(self, currency: str | None, on: date | None) -> float | None:
        """Units of ``currency`` per USD on ``on``, or None when unknown."""
        code = normalize_currency_code(currency)
        if code is None:
            return None
        if code == BASE_CURRENCY:
            return 1.0
        try:
            rate = resolve_rate(self.resolvers, code, self.effective_date(on))
        except Exception:
            logger.warning("Could not resolve USD rate for %s", code, exc_info=True)
            return None
        return rate.rate if rate is not None else None

    def convert_entries(self, entries: Any, context: ConversionContext) -> Any:
        """Apply ``context`` to every entry, returning new entries.

        The input is returned as-is when there is nothing to convert.
        """
        if not _needs_conversion(context) or not isinstance(entries, list):
            return entries

        converted = [self._convert_entry(entry, context) for entry in entries]
        logger.info(
            "Converted %d entries %s -> %s at rate %s",
            len(converted),
            context.source_currency,
            context.target_currency,
            context.rate,
        )
        return converted

    def convert_document_entries(self, entries: Any, document: Document) -> Any:
        """Convert ``entries`` with the conversion already resolved on ``document``."""
        context = ConversionContext.from_document(document)
        if not _needs_conversion(context):
            return entries
        usd_rate = self.usd_rate(context.source_currency, context.rate_date)
        context = ConversionContext.from_document(document, usd_rate=usd_rate)
        return self.convert_entries(entries, context)

    def _conversion_rate(self, source: str, target: str, on: date) -> float:
        try:
            source_rate = self._lookup(source, on)
            target_rate = self._lookup(target, on)
            return combine_rates(source, target, source_rate, target_rate)
        except Exception:
            logger.error(
                "Error calculating %s -> %s rate for %s, using emergency fallback",
                source,
                target,
                on,
                exc_info=True,
            )
            return emergency_rate(source, target, self.config.emergency_rates)

    def _lookup(self, currency: str, on: date) -> float:
        rate = resolve_rate(self.resolvers, currency, on)
        if rate is None:
            msg = f"no exchange rate for {currency} on {on}"
            raise RateUnavailableError(msg)
        return rate.rate

    def _convert_entry(self, entry: Any, context: ConversionContext) -> Any:
        if not isinstance(entry, Mapping):
            return entry

        converted = dict(entry)
        if converted.get("isTransactionGroup") is True and isinstance(
            converted.get("entries"), list
        ):
            converted["entries"] = [
                self._convert_entry(nested, context) for nested in converted["entries"]
            ]
            return converted

        rate = float(context.rate or 0.0)
        debit = parse_amount(entry, "DebitAmt")
        credit = parse_amount(entry, "CreditAmt")

        converted["OriginalDebitAmt"] = round_half_up(debit)
        converted["OriginalCreditAmt"] = round_half_up(credit)
        converted["OriginalDevise"] = context.source_currency
        converted["DebitAmt"] = round_half_up(debit * rate)
        converted["CreditAmt"] = round_half_up(credit * rate)
        converted["Devise"] = context.target_currency
        converted["ExchangeRate"] = context.rate
        if context.rate_date is not None:
            converted["ExchangeRateDate"] = context.rate_date.isoformat()

        if context.usd_rate:
            converted["UsdDebitAmt"] = round_half_up(debit / context.usd_rate)
            converted["UsdCreditAmt"] = round_half_up(credit / context.usd_rate)

        return converted


def _needs_conversion(context: ConversionContext) -> bool:
    return (
        context.source_currency is not None
        and context.target_currency is not None
        and context.source_currency != context.target_currency
        and context.rate is not None
        and context.rate != 1.0
    )
