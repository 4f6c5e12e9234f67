"""Assemble the output record for a processed document."""

from __future__ import annotations

import logging
import re
import time
import uuid
from collections.abc import Mapping
from datetime import date
from typing import TYPE_CHECKING, Any

from ledger_ingest.currency_codes import normalize_currency_code
from ledger_ingest.models import (
    AccountRef,
    ConversionContext,
    EcritureRecord,
    FactureData,
    JournalRef,
    LineRecord,
    NormalizedResponse,
    PieceRecord,
)
from ledger_ingest.normalizer import find_entries
from ledger_ingest.parsing import (
    extract_string,
    format_standard_date,
    parse_amount,
    parse_date,
    parse_number,
)

if TYPE_CHECKING:
    from ledger_ingest.currency import CurrencyEngine
    from ledger_ingest.models import Document

logger = logging.getLogger(__name__)


class NoEntriesError(ValueError):
    """The response holds no ledger entries, so no record can be built."""


def is_group(entry: Any) -> bool:
    """True for a transaction group carrying a nested ``entries`` array."""
    return isinstance(entry, Mapping) and isinstance(entry.get("entries"), list)


def header_entry(entries: list[Any]) -> Any:
    """The entry that carries invoice-level fields."""
    first = entries[0]
    if is_group(first) and first["entries"]:
        return first["entries"][0]
    return first


def largest_amount(entries: Any) -> float:
    """Largest single debit or credit, including entries nested in groups."""
    largest = 0.0
    for entry in entries or []:
        nested = entry["entries"] if is_group(entry) else [entry]
        for item in nested:
            largest = max(largest, _line_amount(item))
    return largest


def is_balanced(record: PieceRecord) -> bool:
    """Whether every ecriture's debits equal its credits, to the cent."""
    for ecriture in record.ecritures:
        debit = sum(line.debit for line in ecriture.lines)
        credit = sum(line.credit for line in ecriture.lines)
        if round(debit * 100) != round(credit * 100):
            return False
    return True


def build_facture_data(
    entry: Any,
    context: ConversionContext | None = None,
    *,
    today: date | None = None,
) -> FactureData:
    """Invoice-level fields from the header entry.

    Conversion fields come from the entry itself when it was converted,
    otherwise from ``context``.
    """
    try:
        tax_rate = _tax_rate(entry)
        total_ttc, total_ht, total_tva = _totals(entry, tax_rate)

        devise = None
        original_currency = None
        converted_currency = None
        if "Devise" in entry:
            devise = normalize_currency_code(extract_string(entry, "Devise", None))
            original_currency = devise
        if "OriginalDevise" in entry:
            original_currency = normalize_currency_code(
                extract_string(entry, "OriginalDevise", None)
            )
        raw_converted = extract_string(
            entry, "ConvertedDevise", extract_string(entry, "Devise", None)
        )
        if raw_converted is not None:
            converted_currency = normalize_currency_code(raw_converted)

        exchange_rate = None
        exchange_rate_date = None
        if "ExchangeRate" in entry:
            exchange_rate = parse_amount(entry, "ExchangeRate")
        elif context is not None and context.rate is not None:
            exchange_rate = context.rate
            converted_currency = context.target_currency or converted_currency

        raw_rate_date = extract_string(entry, "ExchangeRateDate", None)
        if raw_rate_date is not None:
            try:
                exchange_rate_date = date.fromisoformat(raw_rate_date)
            except ValueError:
                logger.debug("Invalid ExchangeRateDate %r", raw_rate_date)
        elif context is not None:
            exchange_rate_date = context.rate_date

        invoice_date = None
        raw_date = extract_string(entry, "Date", None)
        if raw_date is not None:
            invoice_date = parse_date(raw_date, today=today)

        return FactureData(
            invoice_number=_invoice_number(entry),
            invoice_date=invoice_date,
            total_ttc=total_ttc,
            total_ht=total_ht,
            total_tva=total_tva,
            tax_rate=tax_rate,
            devise=devise,
            original_currency=original_currency,
            converted_currency=converted_currency,
            exchange_rate=exchange_rate,
            exchange_rate_date=exchange_rate_date,
            converted_total_ttc=_scaled(total_ttc, exchange_rate),
            converted_total_ht=_scaled(total_ht, exchange_rate),
            converted_total_tva=_scaled(total_tva, exchange_rate),
        )
    except Exception:
        logger.error("Error building invoice data", exc_info=True)
        return FactureData(invoice_number=f"ERROR-{_millis()}", devise="USD")


def build_ecritures(entries: Any, *, today: date | None = None) -> list[EcritureRecord]:
    """Group entries into ledger entries.

    Transaction groups each become one ecriture. Otherwise all entries form a
    single ecriture dated at the earliest entry.
    """
    if not isinstance(entries, list) or not entries:
        logger.warning("No ecritures data available")
        return []

    if any(is_group(entry) for entry in entries):
        ecritures = []
        for entry in entries:
            if is_group(entry):
                if not entry["entries"]:
                    logger.warning("Skipping empty transaction group")
                    continue
                ecritures.append(_group_ecriture(entry, today=today))
            else:
                ecritures.append(
                    _ecriture([entry], entry, _entry_date(entry, today), today=today)
                )
        return ecritures

    dated = [(_entry_date(entry, today), entry) for entry in entries]
    earliest, journal_entry = min(dated, key=lambda pair: pair[0])
    return [_ecriture(entries, journal_entry, earliest, today=today)]


def build_line(entry: Any, *, today: date | None = None) -> LineRecord:
    """One ledger line from an entry, tolerant of missing fields."""
    debit = parse_amount(entry, "DebitAmt")
    credit = parse_amount(entry, "CreditAmt")

    rate_date = None
    raw_rate_date = extract_string(entry, "ExchangeRateDate", None)
    raw_line_date = extract_string(entry, "Date", None)
    if raw_rate_date is not None:
        rate_date = parse_date(raw_rate_date, today=today)
    elif raw_line_date is not None:
        rate_date = parse_date(raw_line_date, today=today)

    return LineRecord(
        label=extract_string(entry, "EcritLib", "Unknown Entry"),
        debit=debit,
        credit=credit,
        account=AccountRef(
            account=extract_string(entry, "CompteNum", "0000"),
            label=extract_string(entry, "CompteLib", "Unknown Account"),
        ),
        original_debit=_original(entry, "OriginalDebitAmt", debit),
        original_credit=_original(entry, "OriginalCreditAmt", credit),
        converted_debit=debit,
        converted_credit=credit,
        original_currency=extract_string(entry, "OriginalDevise", None),
        converted_currency=extract_string(entry, "Devise", "USD"),
        exchange_rate=parse_amount(entry, "ExchangeRate"),
        exchange_rate_date=rate_date,
        usd_debit=parse_amount(entry, "UsdDebitAmt"),
        usd_credit=parse_amount(entry, "UsdCreditAmt"),
    )


class RecordAssembler:
    """Builds the PieceRecord for a document from its normalized response."""

    def __init__(self, engine: CurrencyEngine) -> None:
        self.engine = engine

    def assemble(self, document: Document, normalized: Any) -> PieceRecord:
        """Assemble the record for ``document``.

        Raises NoEntriesError when the response has no entries. Any other
        failure degrades to a minimal record.
        """
        payload = (
            normalized.as_payload()
            if isinstance(normalized, NormalizedResponse)
            else normalized
        )
        entries = find_entries(payload)
        if not isinstance(entries, list) or not entries:
            logger.error("Document %s: no valid ecritures array found", document.id)
            msg = f"No valid ecritures array found for document {document.id}"
            raise NoEntriesError(msg)

        try:
            return self._populate(document, entries)
        except Exception:
            logger.error(
                "Document %s: error assembling record, returning minimal record",
                document.id,
                exc_info=True,
            )
            return PieceRecord(
                id=document.id,
                filename=document.filename,
                dossier_id=document.dossier.id,
            )

    def _populate(self, document: Document, entries: list[Any]) -> PieceRecord:
        today = self.engine.today()
        header = header_entry(entries)
        converted = self.engine.convert_document_entries(entries, document)
        context = _document_context(document)

        original = document.original_document
        record = PieceRecord(
            id=document.id,
            filename=document.filename,
            dossier_id=document.dossier.id,
            original_filename=document.original_filename,
            type=document.type,
            status=document.status,
            upload_date=document.upload_date,
            amount=largest_amount(converted),
            dossier_name=document.dossier.name,
            dossier_currency=document.dossier.currency,
            is_forced=document.is_forced,
            is_duplicate=document.is_duplicate,
            original_piece_id=original.id if original is not None else None,
            original_piece_name=original.display_name if original is not None else None,
            ai_currency=document.ai_currency,
            ai_amount=document.ai_amount,
            original_currency=document.ai_currency,
            converted_currency=document.converted_currency,
            exchange_rate=document.exchange_rate,
            exchange_rate_date=document.exchange_rate_date,
            facture_data=build_facture_data(header, context, today=today),
            ecritures=build_ecritures(converted, today=today),
        )

        if not is_balanced(record):
            logger.warning("Document %s: ecritures are not balanced", document.id)
        return record


def _document_context(document: Document) -> ConversionContext | None:
    if document.exchange_rate is None:
        return None
    return ConversionContext.from_document(document)


def _group_ecriture(group: Mapping[str, Any], *, today: date | None) -> EcritureRecord:
    nested = group["entries"]
    first = nested[0]
    raw_date = extract_string(first, "Date", None) or extract_string(group, "Date", "")
    return _ecriture(
        nested, first, format_standard_date(raw_date, today=today), today=today
    )


def _ecriture(
    entries: list[Any], journal_entry: Any, entry_date: Any, *, today: date | None
) -> EcritureRecord:
    if isinstance(entry_date, date):
        entry_date = entry_date.strftime("%d/%m/%Y")
    return EcritureRecord(
        unique_entry_number=str(uuid.uuid4()),
        entry_date=entry_date,
        journal=JournalRef(
            name=extract_string(journal_entry, "JournalCode", "Unknown"),
            type=extract_string(journal_entry, "JournalLib", "Unknown"),
        ),
        lines=[build_line(entry, today=today) for entry in entries],
    )


def _entry_date(entry: Any, today: date | None) -> date:
    return parse_date(extract_string(entry, "Date", None), today=today)


def _invoice_number(entry: Any) -> str:
    facture_num = extract_string(entry, "FactureNum", None)
    if facture_num:
        return facture_num

    label = extract_string(entry, "EcritLib", "") or ""
    if "Facture" in label:
        after = label.split("Facture", 1)[1]
        tokens = re.sub(r"[^a-zA-Z0-9]", " ", after).split()
        if tokens:
            return tokens[0]

    return f"BANK-{_millis()}"


def _tax_rate(entry: Any) -> float | None:
    value = entry.get("TVARate")
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)

    digits = re.sub(r"[^0-9.]", "", str(value).strip())
    if not digits:
        return None
    try:
        return float(digits)
    except ValueError:
        logger.debug("Unparsable TVARate %r", value)
        return None


def _totals(
    entry: Any, tax_rate: float | None
) -> tuple[float, float | None, float | None]:
    if "TotalTTC" in entry:
        total_ttc = parse_amount(entry, "TotalTTC")
    else:
        total_ttc = _line_amount(entry)

    total_ht = None
    if "TotalHT" in entry:
        total_ht = parse_amount(entry, "TotalHT")
    elif tax_rate is not None:
        total_ht = total_ttc / (1 + tax_rate / 100)

    total_tva = total_ttc - total_ht if total_ht is not None else None
    return total_ttc, total_ht, total_tva


def _line_amount(entry: Any) -> float:
    return max(parse_amount(entry, "DebitAmt"), parse_amount(entry, "CreditAmt"))


def _original(entry: Any, field: str, fallback: float) -> float:
    if isinstance(entry, Mapping) and entry.get(field) is not None:
        return parse_number(entry[field])
    return fallback


def _scaled(amount: float | None, rate: float | None) -> float | None:
    if amount is None or rate is None:
        return None
    return amount * rate


def _millis() -> int:
    return int(time.time() * 1000)
