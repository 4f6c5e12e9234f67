"""Per-document processing pipeline and the bounded batch runner."""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ledger_ingest.assembler import NoEntriesError, header_entry, largest_amount
from ledger_ingest.currency_codes import (
    is_placeholder_currency,
    normalize_currency_code,
)
from ledger_ingest.models import DocumentStatus, NormalizedResponse
from ledger_ingest.normalizer import find_entries, normalize_response
from ledger_ingest.parsing import extract_string, parse_date, parse_embedded_json

if TYPE_CHECKING:
    from collections.abc import Iterable

    from ledger_ingest.assembler import RecordAssembler
    from ledger_ingest.config import WorkerConfig
    from ledger_ingest.currency import CurrencyEngine
    from ledger_ingest.duplicates import DuplicateDetector
    from ledger_ingest.models import ConversionContext, Document, PieceRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessingJob:
    """One document and the AI response to process for it."""

    document: Document
    raw_response: Any
    is_bank_statement: bool = False


@dataclass(frozen=True)
class ProcessingOutcome:
    """Result of processing one document."""

    document: Document
    status: DocumentStatus
    record: PieceRecord | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is DocumentStatus.PROCESSED


class DocumentProcessor:
    """Runs normalization, extraction, duplicate checks and assembly.

    Without a detector, duplicate checks are skipped.
    """

    def __init__(
        self,
        engine: CurrencyEngine,
        detector: DuplicateDetector | None,
        assembler: RecordAssembler,
    ) -> None:
        self.engine = engine
        self.detector = detector
        self.assembler = assembler

    def extract_document_data(
        self, document: Document, normalized: Any, dossier_currency: str | None
    ) -> ConversionContext | None:
        """Set the AI amount and currency on ``document`` and resolve its rate."""
        payload = (
            normalized.as_payload()
            if isinstance(normalized, NormalizedResponse)
            else normalized
        )
        entries = find_entries(payload)
        if not isinstance(entries, list) or not entries:
            logger.warning(
                "Document %s: no entries to extract, applying dossier currency",
                document.id,
            )
            self.engine.apply_default_currency(document, dossier_currency)
            return None

        header = header_entry(entries)
        document.ai_amount = largest_amount(entries)

        raw_currency = extract_string(header, "Devise", None)
        if is_placeholder_currency(raw_currency):
            document.ai_currency = None
        else:
            document.ai_currency = normalize_currency_code(raw_currency)

        raw_date = extract_string(header, "Date", None)
        if raw_date is not None:
            transaction_date = parse_date(raw_date, today=self.engine.today())
        else:
            transaction_date = document.upload_date

        logger.info(
            "Document %s: extracted amount %s %s dated %s",
            document.id,
            document.ai_amount,
            document.ai_currency,
            transaction_date,
        )
        return self.engine.resolve(
            document, document.ai_currency, dossier_currency, transaction_date
        )

    def process(
        self, document: Document, raw_response: Any, *, is_bank_statement: bool
    ) -> ProcessingOutcome:
        """Process one document end to end. Failures end in REJECTED."""
        document.status = DocumentStatus.PROCESSING
        try:
            return self._process(document, raw_response, is_bank_statement)
        except NoEntriesError as exc:
            return self._reject(document, str(exc))
        except Exception as exc:
            logger.error("Document %s: processing failed", document.id, exc_info=True)
            return self._reject(document, f"processing failed: {exc}")

    def _process(
        self, document: Document, raw_response: Any, is_bank_statement: bool
    ) -> ProcessingOutcome:
        if isinstance(raw_response, str):
            try:
                raw_response = parse_embedded_json(raw_response)
            except json.JSONDecodeError as exc:
                return self._reject(document, f"AI response is not valid JSON: {exc}")

        result = normalize_response(raw_response, is_bank_statement=is_bank_statement)
        if not result.ok:
            logger.warning(
                "Document %s: normalization failed, continuing with the raw response",
                document.id,
            )

        self.extract_document_data(document, result.payload, document.dossier.currency)

        if self.detector is not None:
            original = self.detector.find_original(document)
            if original is not None:
                self.detector.mark_duplicate(document, original)

        record = self.assembler.assemble(document, result.payload)
        document.status = DocumentStatus.PROCESSED
        logger.info("Document %s processed", document.id)
        return ProcessingOutcome(
            document=document,
            status=document.status,
            record=record.model_copy(update={"status": document.status}),
        )

    @staticmethod
    def _reject(document: Document, reason: str) -> ProcessingOutcome:
        document.status = DocumentStatus.REJECTED
        logger.error("Document %s rejected: %s", document.id, reason)
        return ProcessingOutcome(
            document=document, status=document.status, error=reason
        )


def process_batch(
    jobs: Iterable[ProcessingJob],
    processor: DocumentProcessor,
    config: WorkerConfig,
) -> list[ProcessingOutcome]:
    """Process jobs on a bounded worker pool, returning outcomes in job order.

    At most ``config.queue_capacity`` jobs are submitted but unfinished at any
    time; submission blocks until a slot frees up.
    """
    slots = threading.BoundedSemaphore(config.queue_capacity)

    def run(job: ProcessingJob) -> ProcessingOutcome:
        try:
            return processor.process(
                job.document, job.raw_response, is_bank_statement=job.is_bank_statement
            )
        finally:
            slots.release()

    futures = []
    with ThreadPoolExecutor(
        max_workers=config.pool_size, thread_name_prefix="ledger-ingest"
    ) as executor:
        for job in jobs:
            slots.acquire()
            futures.append(executor.submit(run, job))

    outcomes = [future.result() for future in futures]
    processed = sum(1 for outcome in outcomes if outcome.ok)
    logger.info(
        "Batch finished: %d processed, %d rejected",
        processed,
        len(outcomes) - processed,
    )
    return outcomes
