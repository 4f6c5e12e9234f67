"""Domain and output record models for ledger ingestion."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class DocumentStatus(str, Enum):
    """Processing lifecycle of an uploaded document."""

    UPLOADED = "UPLOADED"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    REJECTED = "REJECTED"


@dataclass
class Dossier:
    """Grouping a document belongs to."""

    id: int
    name: str
    currency: str | None = None


@dataclass
class Document:
    """An uploaded accounting document and its extracted currency data.

    Mutated by the currency engine and the duplicate detector while a single
    worker owns it.
    """

    id: int
    filename: str
    dossier: Dossier
    original_filename: str | None = None
    type: str | None = None
    status: DocumentStatus = DocumentStatus.UPLOADED
    upload_date: date | None = None
    amount: float | None = None
    file_hash: str | None = None
    ai_amount: float | None = None
    ai_currency: str | None = None
    converted_currency: str | None = None
    exchange_rate: float | None = None
    exchange_rate_date: date | None = None
    is_duplicate: bool = False
    is_forced: bool = False
    original_document: Document | None = field(default=None, repr=False)

    @property
    def display_name(self) -> str:
        return self.original_filename or self.filename


@dataclass(frozen=True)
class ExchangeRate:
    """Rate of one currency against a base currency on a given day."""

    currency_code: str
    rate: float
    date: date
    base_currency: str = "USD"


@dataclass(frozen=True)
class ConversionContext:
    """Currency conversion resolved once for a document."""

    source_currency: str | None
    target_currency: str | None
    rate: float | None
    rate_date: date | None = None
    usd_rate: float | None = None

    @classmethod
    def from_document(
        cls, document: Document, *, usd_rate: float | None = None
    ) -> ConversionContext:
        return cls(
            source_currency=document.ai_currency,
            target_currency=document.converted_currency,
            rate=document.exchange_rate,
            rate_date=document.exchange_rate_date,
            usd_rate=usd_rate,
        )


@dataclass
class NormalizedResponse:
    """Canonical shape of an AI response: a flat entry list plus its class.

    ``entries`` is normally a list. An invoice response whose embedded JSON has
    no entries key is carried through as the parsed value itself.
    """

    entries: Any
    is_bank_statement: bool

    def as_payload(self) -> dict[str, Any]:
        return {"ecritures": self.entries, "isBankStatement": self.is_bank_statement}


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True)


class AccountRef(_Record):
    """Ledger account referenced by a line."""

    account: str
    label: str


class JournalRef(_Record):
    """Journal an entry is booked in."""

    name: str
    type: str


class LineRecord(_Record):
    """One debit/credit line of a ledger entry."""

    label: str
    debit: float = 0.0
    credit: float = 0.0
    account: AccountRef
    original_debit: float = 0.0
    original_credit: float = 0.0
    converted_debit: float = 0.0
    converted_credit: float = 0.0
    original_currency: str | None = None
    converted_currency: str | None = None
    exchange_rate: float = 0.0
    exchange_rate_date: date | None = None
    usd_debit: float = 0.0
    usd_credit: float = 0.0


class EcritureRecord(_Record):
    """A ledger entry grouping one or more lines."""

    unique_entry_number: str
    entry_date: str
    journal: JournalRef
    lines: list[LineRecord] = Field(default_factory=list)


class FactureData(_Record):
    """Invoice-level fields taken from the header entry."""

    invoice_number: str
    invoice_date: date | None = None
    total_ttc: float | None = None
    total_ht: float | None = None
    total_tva: float | None = None
    tax_rate: float | None = None
    devise: str | None = None
    original_currency: str | None = None
    converted_currency: str | None = None
    exchange_rate: float | None = None
    exchange_rate_date: date | None = None
    converted_total_ttc: float | None = None
    converted_total_ht: float | None = None
    converted_total_tva: float | None = None


class PieceRecord(_Record):
    """Assembled record for a processed document."""

    id: int
    filename: str
    dossier_id: int
    original_filename: str | None = None
    type: str | None = None
    status: DocumentStatus | None = None
    upload_date: date | datetime | None = None
    amount: float | None = None
    dossier_name: str | None = None
    dossier_currency: str | None = None
    is_forced: bool | None = None
    is_duplicate: bool | None = None
    original_piece_id: int | None = None
    original_piece_name: str | None = None
    ai_currency: str | None = None
    ai_amount: float | None = None
    original_currency: str | None = None
    converted_currency: str | None = None
    exchange_rate: float | None = None
    exchange_rate_date: date | None = None
    facture_data: FactureData | None = None
    ecritures: list[EcritureRecord] = Field(default_factory=list)

    @property
    def is_minimal(self) -> bool:
        """True for the degraded record built when assembly failed."""
        return self.facture_data is None and not self.ecritures
