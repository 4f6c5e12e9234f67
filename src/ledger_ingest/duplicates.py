"""Duplicate detection over previously ingested documents."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol

from ledger_ingest.db import get_connection
from ledger_ingest.models import Document, DocumentStatus, Dossier

if TYPE_CHECKING:
    from datetime import date

    import psycopg

    from ledger_ingest.config import DuplicateConfig

logger = logging.getLogger(__name__)

# Float error in the band edges; far below a cent.
_BAND_SLACK = 1e-6


class DocumentRepository(Protocol):
    """Read access to stored documents needed for duplicate checks."""

    def find_by_filename(
        self, filename: str, exclude_id: int
    ) -> Document | None: ...

    def find_by_file_hash(self, file_hash: str) -> list[Document]: ...

    def find_similar_ai_data(
        self,
        dossier_id: int,
        min_amount: float,
        max_amount: float,
        currency: str,
        upload_date: date,
    ) -> list[Document]: ...


class PostgresDocumentRepository:
    """DocumentRepository over the ``pieces`` and ``dossiers`` tables."""

    _SELECT = (
        "SELECT p.id, p.filename, p.original_filename, p.type, p.status,"
        " p.upload_date, p.amount, p.file_hash, p.ai_amount, p.ai_currency,"
        " p.converted_currency, p.exchange_rate, p.exchange_rate_date,"
        " p.is_duplicate, p.is_forced,"
        " d.id AS dossier_id, d.name AS dossier_name, d.currency AS dossier_currency"
        " FROM pieces p JOIN dossiers d ON d.id = p.dossier_id"
    )

    def __init__(
        self, connect: Callable[[], psycopg.Connection[Any]] | None = None
    ) -> None:
        self._connect = connect or get_connection

    def find_by_filename(self, filename: str, exclude_id: int) -> Document | None:
        rows = self._fetch(
            f"{self._SELECT} WHERE p.filename = %s AND p.id <> %s"
            " ORDER BY p.id LIMIT 1",
            (filename, exclude_id),
        )
        return rows[0] if rows else None

    def find_by_file_hash(self, file_hash: str) -> list[Document]:
        return self._fetch(
            f"{self._SELECT} WHERE p.file_hash = %s ORDER BY p.id", (file_hash,)
        )

    def find_similar_ai_data(
        self,
        dossier_id: int,
        min_amount: float,
        max_amount: float,
        currency: str,
        upload_date: date,
    ) -> list[Document]:
        return self._fetch(
            f"{self._SELECT} WHERE p.dossier_id = %s"
            " AND p.ai_amount BETWEEN %s AND %s"
            " AND p.ai_currency = %s"
            " AND p.upload_date = %s"
            " AND p.is_duplicate = false"
            " ORDER BY p.id",
            (dossier_id, min_amount, max_amount, currency, upload_date),
        )

    def _fetch(self, query: str, params: tuple[Any, ...]) -> list[Document]:
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_document(row) for row in rows]

    @staticmethod
    def _row_to_document(row: dict[str, Any]) -> Document:
        return Document(
            id=row["id"],
            filename=row["filename"],
            dossier=Dossier(
                id=row["dossier_id"],
                name=row["dossier_name"],
                currency=row.get("dossier_currency"),
            ),
            original_filename=row.get("original_filename"),
            type=row.get("type"),
            status=DocumentStatus(row.get("status") or DocumentStatus.UPLOADED),
            upload_date=row.get("upload_date"),
            amount=row.get("amount"),
            file_hash=row.get("file_hash"),
            ai_amount=row.get("ai_amount"),
            ai_currency=row.get("ai_currency"),
            converted_currency=row.get("converted_currency"),
            exchange_rate=row.get("exchange_rate"),
            exchange_rate_date=row.get("exchange_rate_date"),
            is_duplicate=bool(row.get("is_duplicate")),
            is_forced=bool(row.get("is_forced")),
        )


class DuplicateDetector:
    """Classify a document as a duplicate using short-circuited checks.

    Checks, in order: identical filename, identical content hash, then the
    same AI amount (within tolerance), currency and upload date in the same
    dossier.
    """

    def __init__(self, repository: DocumentRepository, config: DuplicateConfig) -> None:
        self.repository = repository
        self.config = config

    def find_original(self, document: Document) -> Document | None:
        """Return the document this one duplicates, or None. Never raises."""
        if document.is_forced:
            logger.info("Document %s is forced, skipping duplicate checks", document.id)
            return None
        if not document.filename:
            return None

        try:
            return (
                self._by_filename(document)
                or self._by_file_hash(document)
                or self._by_ai_data(document)
            )
        except Exception:
            logger.error(
                "Duplicate check failed for document %s, treating as unique",
                document.id,
                exc_info=True,
            )
            return None

    def is_duplicate(self, document: Document) -> bool:
        return self.find_original(document) is not None

    def mark_duplicate(self, document: Document, original: Document) -> None:
        """Flag ``document`` as a duplicate of ``original``."""
        document.is_duplicate = True
        document.original_document = original
        logger.info("Marked document %s as duplicate of %s", document.id, original.id)

    def _by_filename(self, document: Document) -> Document | None:
        existing = self.repository.find_by_filename(document.filename, document.id)
        if existing is not None:
            logger.warning(
                "Duplicate by filename: %s matches document %s",
                document.filename,
                existing.id,
            )
            return existing
        return None

    def _by_file_hash(self, document: Document) -> Document | None:
        if not document.file_hash:
            return None
        for existing in self.repository.find_by_file_hash(document.file_hash):
            if existing.id != document.id:
                logger.warning(
                    "Duplicate by file hash: document %s matches %s",
                    document.id,
                    existing.id,
                )
                return existing
        return None

    def _by_ai_data(self, document: Document) -> Document | None:
        if (
            document.ai_amount is None
            or document.ai_currency is None
            or document.upload_date is None
        ):
            return None

        margin = abs(document.ai_amount) * self.config.amount_tolerance + _BAND_SLACK
        matches = self.repository.find_similar_ai_data(
            document.dossier.id,
            document.ai_amount - margin,
            document.ai_amount + margin,
            document.ai_currency,
            document.upload_date,
        )
        for existing in matches:
            if existing.id != document.id:
                logger.warning(
                    "Duplicate by AI data: document %s matches %s (%s %s on %s)",
                    document.id,
                    existing.id,
                    document.ai_amount,
                    document.ai_currency,
                    document.upload_date,
                )
                return existing
        return None
