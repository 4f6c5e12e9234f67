"""Tests for ledger_ingest.duplicates."""

from __future__ import annotations

from datetime import date
from typing import Any
from unittest.mock import MagicMock

import pytest
from conftest import InMemoryDocumentRepository

from ledger_ingest.config import DuplicateConfig
from ledger_ingest.duplicates import DuplicateDetector, PostgresDocumentRepository
from ledger_ingest.models import Document, DocumentStatus, Dossier

UPLOADED = date(2025, 6, 10)


def _doc(doc_id: int, dossier: Dossier, **kwargs: Any) -> Document:
    kwargs.setdefault("filename", f"file-{doc_id}.pdf")
    kwargs.setdefault("upload_date", UPLOADED)
    return Document(id=doc_id, dossier=dossier, **kwargs)


class TestFilenameCheck:
    """Tests for the filename check."""

    def test_same_filename_other_document(
        self,
        detector: DuplicateDetector,
        repository: InMemoryDocumentRepository,
        dossier: Dossier,
    ) -> None:
        existing = repository.add(_doc(1, dossier, filename="scan.pdf"))
        candidate = _doc(2, dossier, filename="scan.pdf")

        assert detector.find_original(candidate) is existing
        assert detector.is_duplicate(candidate)

    def test_same_filename_same_document_is_not_duplicate(
        self,
        detector: DuplicateDetector,
        repository: InMemoryDocumentRepository,
        dossier: Dossier,
    ) -> None:
        candidate = repository.add(_doc(1, dossier, filename="scan.pdf"))
        assert not detector.is_duplicate(candidate)

    def test_own_row_listed_first(
        self,
        detector: DuplicateDetector,
        repository: InMemoryDocumentRepository,
        dossier: Dossier,
    ) -> None:
        candidate = repository.add(_doc(2, dossier, filename="a.pdf"))
        existing = repository.add(_doc(1, dossier, filename="a.pdf"))

        assert detector.find_original(candidate) is existing

    def test_missing_filename_short_circuits(
        self, repository: InMemoryDocumentRepository, dossier: Dossier
    ) -> None:
        repo = MagicMock(wraps=repository)
        detector = DuplicateDetector(repo, DuplicateConfig())

        assert not detector.is_duplicate(_doc(1, dossier, filename=""))
        repo.find_by_filename.assert_not_called()


class TestFileHashCheck:
    """Tests for the content hash check."""

    def test_same_hash(
        self,
        detector: DuplicateDetector,
        repository: InMemoryDocumentRepository,
        dossier: Dossier,
    ) -> None:
        existing = repository.add(_doc(1, dossier, file_hash="abc123"))
        candidate = _doc(2, dossier, file_hash="abc123")

        assert detector.find_original(candidate) is existing

    def test_hash_only_matches_self(
        self,
        detector: DuplicateDetector,
        repository: InMemoryDocumentRepository,
        dossier: Dossier,
    ) -> None:
        candidate = repository.add(_doc(1, dossier, file_hash="abc123"))
        assert not detector.is_duplicate(candidate)

    def test_hash_not_computed_is_skipped(
        self, repository: InMemoryDocumentRepository, dossier: Dossier
    ) -> None:
        repo = MagicMock(wraps=repository)
        detector = DuplicateDetector(repo, DuplicateConfig())

        detector.is_duplicate(_doc(2, dossier))

        repo.find_by_file_hash.assert_not_called()


class TestAiDataCheck:
    """Tests for the extracted-data check."""

    def test_amount_within_tolerance(
        self,
        detector: DuplicateDetector,
        repository: InMemoryDocumentRepository,
        dossier: Dossier,
    ) -> None:
        existing = repository.add(
            _doc(1, dossier, ai_amount=1005.0, ai_currency="MAD")
        )
        candidate = _doc(2, dossier, ai_amount=1000.0, ai_currency="MAD")

        assert detector.find_original(candidate) is existing

    @pytest.mark.parametrize(
        ("amount", "expected"),
        [(1010.0, True), (990.0, True), (1010.01, False), (989.99, False)],
    )
    def test_tolerance_boundary(
        self,
        detector: DuplicateDetector,
        repository: InMemoryDocumentRepository,
        dossier: Dossier,
        amount: float,
        expected: bool,
    ) -> None:
        repository.add(_doc(1, dossier, ai_amount=amount, ai_currency="MAD"))
        candidate = _doc(2, dossier, ai_amount=1000.0, ai_currency="MAD")

        assert detector.is_duplicate(candidate) is expected

    @pytest.mark.parametrize("factor", [1.01, 0.99])
    def test_band_edges_hold_for_any_amount(
        self, dossier: Dossier, factor: float
    ) -> None:
        for cents in range(1, 200_001, 7):
            amount = cents / 100
            repository = InMemoryDocumentRepository()
            detector = DuplicateDetector(repository, DuplicateConfig())
            repository.add(
                _doc(1, dossier, ai_amount=amount * factor, ai_currency="MAD")
            )
            candidate = _doc(2, dossier, ai_amount=amount, ai_currency="MAD")

            assert detector.is_duplicate(candidate), amount

    def test_one_cent_past_band_edge(self, dossier: Dossier) -> None:
        for cents in range(1, 200_001, 7):
            amount = cents / 100
            repository = InMemoryDocumentRepository()
            detector = DuplicateDetector(repository, DuplicateConfig())
            outside = amount * 1.01 + 0.01
            repository.add(_doc(1, dossier, ai_amount=outside, ai_currency="MAD"))
            candidate = _doc(2, dossier, ai_amount=amount, ai_currency="MAD")

            assert not detector.is_duplicate(candidate), amount

    def test_currency_must_match(
        self,
        detector: DuplicateDetector,
        repository: InMemoryDocumentRepository,
        dossier: Dossier,
    ) -> None:
        repository.add(_doc(1, dossier, ai_amount=1000.0, ai_currency="EUR"))
        candidate = _doc(2, dossier, ai_amount=1000.0, ai_currency="MAD")

        assert not detector.is_duplicate(candidate)

    def test_upload_date_must_match(
        self,
        detector: DuplicateDetector,
        repository: InMemoryDocumentRepository,
        dossier: Dossier,
    ) -> None:
        repository.add(
            _doc(
                1,
                dossier,
                ai_amount=1000.0,
                ai_currency="MAD",
                upload_date=date(2025, 6, 11),
            )
        )
        candidate = _doc(2, dossier, ai_amount=1000.0, ai_currency="MAD")

        assert not detector.is_duplicate(candidate)

    def test_other_dossier_ignored(
        self,
        detector: DuplicateDetector,
        repository: InMemoryDocumentRepository,
        dossier: Dossier,
    ) -> None:
        other = Dossier(id=8, name="Other", currency="MAD")
        repository.add(_doc(1, other, ai_amount=1000.0, ai_currency="MAD"))
        candidate = _doc(2, dossier, ai_amount=1000.0, ai_currency="MAD")

        assert not detector.is_duplicate(candidate)

    @pytest.mark.parametrize(
        "missing", ["ai_amount", "ai_currency", "upload_date"]
    )
    def test_required_fields(
        self,
        detector: DuplicateDetector,
        repository: InMemoryDocumentRepository,
        dossier: Dossier,
        missing: str,
    ) -> None:
        repository.add(_doc(1, dossier, ai_amount=1000.0, ai_currency="MAD"))
        candidate = _doc(2, dossier, ai_amount=1000.0, ai_currency="MAD")
        setattr(candidate, missing, None)

        assert not detector.is_duplicate(candidate)

    def test_self_excluded(
        self,
        detector: DuplicateDetector,
        repository: InMemoryDocumentRepository,
        dossier: Dossier,
    ) -> None:
        candidate = repository.add(
            _doc(1, dossier, ai_amount=1000.0, ai_currency="MAD")
        )
        assert not detector.is_duplicate(candidate)

    def test_custom_tolerance(
        self, repository: InMemoryDocumentRepository, dossier: Dossier
    ) -> None:
        config = DuplicateConfig(amount_tolerance=0.05)
        detector = DuplicateDetector(repository, config)
        repository.add(_doc(1, dossier, ai_amount=1040.0, ai_currency="MAD"))
        candidate = _doc(2, dossier, ai_amount=1000.0, ai_currency="MAD")

        assert detector.is_duplicate(candidate)


class TestDetectorBehaviour:
    """Tests for forced documents, errors and marking."""

    def test_forced_document_is_never_duplicate(
        self,
        detector: DuplicateDetector,
        repository: InMemoryDocumentRepository,
        dossier: Dossier,
    ) -> None:
        repository.add(_doc(1, dossier, filename="scan.pdf"))
        candidate = _doc(2, dossier, filename="scan.pdf", is_forced=True)

        assert not detector.is_duplicate(candidate)

    def test_repository_error_is_not_duplicate(self, dossier: Dossier) -> None:
        repo = MagicMock()
        repo.find_by_filename.side_effect = RuntimeError("database down")
        detector = DuplicateDetector(repo, DuplicateConfig())

        assert not detector.is_duplicate(_doc(1, dossier))

    def test_checks_short_circuit(self, dossier: Dossier) -> None:
        existing = _doc(1, dossier, filename="scan.pdf")
        repo = MagicMock()
        repo.find_by_filename.return_value = existing
        detector = DuplicateDetector(repo, DuplicateConfig())

        candidate = _doc(2, dossier, filename="scan.pdf", file_hash="h")
        assert detector.find_original(candidate) is existing

        repo.find_by_file_hash.assert_not_called()
        repo.find_similar_ai_data.assert_not_called()

    def test_mark_duplicate(
        self, detector: DuplicateDetector, dossier: Dossier
    ) -> None:
        original = _doc(1, dossier)
        duplicate = _doc(2, dossier)

        detector.mark_duplicate(duplicate, original)

        assert duplicate.is_duplicate is True
        assert duplicate.original_document is original


def _connection(rows: list[dict[str, Any]]) -> MagicMock:
    conn = MagicMock()
    conn.__enter__.return_value = conn
    conn.execute.return_value.fetchall.return_value = rows
    return conn


def _row(**overrides: Any) -> dict[str, Any]:
    row: dict[str, Any] = {
        "id": 5,
        "filename": "scan.pdf",
        "original_filename": "Scan.pdf",
        "type": "invoice",
        "status": "PROCESSED",
        "upload_date": UPLOADED,
        "amount": 1000.0,
        "file_hash": None,
        "ai_amount": 1000.0,
        "ai_currency": "MAD",
        "converted_currency": "USD",
        "exchange_rate": 0.1,
        "exchange_rate_date": date(2025, 6, 9),
        "is_duplicate": False,
        "is_forced": False,
        "dossier_id": 7,
        "dossier_name": "Acme SARL",
        "dossier_currency": "USD",
    }
    row.update(overrides)
    return row


class TestPostgresDocumentRepository:
    """Tests for PostgresDocumentRepository."""

    def test_find_by_filename(self) -> None:
        conn = _connection([_row()])
        repo = PostgresDocumentRepository(lambda: conn)

        document = repo.find_by_filename("scan.pdf", 9)

        assert document is not None
        assert document.id == 5
        assert document.status is DocumentStatus.PROCESSED
        assert document.dossier == Dossier(id=7, name="Acme SARL", currency="USD")
        query, params = conn.execute.call_args.args
        assert "p.filename = %s AND p.id <> %s" in query
        assert params == ("scan.pdf", 9)

    def test_find_by_filename_no_match(self) -> None:
        repo = PostgresDocumentRepository(lambda: _connection([]))
        assert repo.find_by_filename("scan.pdf", 9) is None

    def test_find_by_file_hash(self) -> None:
        conn = _connection([_row(file_hash="h"), _row(id=6, file_hash="h")])
        repo = PostgresDocumentRepository(lambda: conn)

        documents = repo.find_by_file_hash("h")

        assert [d.id for d in documents] == [5, 6]

    def test_find_similar_ai_data_uses_inclusive_band(self) -> None:
        conn = _connection([_row()])
        repo = PostgresDocumentRepository(lambda: conn)

        documents = repo.find_similar_ai_data(7, 990.0, 1010.0, "MAD", UPLOADED)

        assert len(documents) == 1
        query, params = conn.execute.call_args.args
        assert "BETWEEN %s AND %s" in query
        assert params == (7, 990.0, 1010.0, "MAD", UPLOADED)
