"""Shared test fixtures."""

from __future__ import annotations

from datetime import date

import pytest

from ledger_ingest.assembler import RecordAssembler
from ledger_ingest.config import CurrencyConfig, DuplicateConfig
from ledger_ingest.currency import CurrencyEngine
from ledger_ingest.duplicates import DuplicateDetector
from ledger_ingest.models import Document, Dossier
from ledger_ingest.pipeline import DocumentProcessor
from ledger_ingest.rates import static_resolver

TODAY = date(2025, 6, 15)


class InMemoryDocumentRepository:
    """DocumentRepository over a plain list, for detector tests."""

    def __init__(self, documents: list[Document] | None = None) -> None:
        self.documents = list(documents or [])

    def add(self, document: Document) -> Document:
        self.documents.append(document)
        return document

    def find_by_filename(self, filename: str, exclude_id: int) -> Document | None:
        for document in self.documents:
            if document.filename == filename and document.id != exclude_id:
                return document
        return None

    def find_by_file_hash(self, file_hash: str) -> list[Document]:
        return [d for d in self.documents if d.file_hash == file_hash]

    def find_similar_ai_data(
        self,
        dossier_id: int,
        min_amount: float,
        max_amount: float,
        currency: str,
        upload_date: date,
    ) -> list[Document]:
        return [
            d
            for d in self.documents
            if d.dossier.id == dossier_id
            and d.ai_amount is not None
            and min_amount <= d.ai_amount <= max_amount
            and d.ai_currency == currency
            and d.upload_date == upload_date
            and not d.is_duplicate
        ]


@pytest.fixture
def dossier() -> Dossier:
    """Provide a USD dossier."""
    return Dossier(id=7, name="Acme SARL", currency="USD")


@pytest.fixture
def document(dossier: Dossier) -> Document:
    """Provide a freshly uploaded document."""
    return Document(
        id=101,
        filename="invoice-2025-001.pdf",
        original_filename="Invoice 001.pdf",
        dossier=dossier,
        type="invoice",
        upload_date=date(2025, 6, 10),
    )


@pytest.fixture
def currency_config() -> CurrencyConfig:
    return CurrencyConfig()


@pytest.fixture
def engine(currency_config: CurrencyConfig) -> CurrencyEngine:
    """Offline engine pinned to a fixed 'today'."""
    return CurrencyEngine(
        [static_resolver(currency_config.fallback_rates)],
        currency_config,
        today=lambda: TODAY,
    )


@pytest.fixture
def repository() -> InMemoryDocumentRepository:
    return InMemoryDocumentRepository()


@pytest.fixture
def detector(repository: InMemoryDocumentRepository) -> DuplicateDetector:
    return DuplicateDetector(repository, DuplicateConfig())


@pytest.fixture
def assembler(engine: CurrencyEngine) -> RecordAssembler:
    return RecordAssembler(engine)


@pytest.fixture
def processor(
    engine: CurrencyEngine,
    detector: DuplicateDetector,
    assembler: RecordAssembler,
) -> DocumentProcessor:
    return DocumentProcessor(engine, detector, assembler)
