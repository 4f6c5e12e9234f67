"""CLI entry point for ledger-ingest."""

from __future__ import annotations

import json
import logging
from datetime import date
from pathlib import Path
from typing import Any

import click

from ledger_ingest.assembler import RecordAssembler
from ledger_ingest.config import (
    get_currency_config,
    get_duplicate_config,
    get_worker_config,
)
from ledger_ingest.currency import CurrencyEngine
from ledger_ingest.duplicates import DuplicateDetector, PostgresDocumentRepository
from ledger_ingest.models import Document, Dossier
from ledger_ingest.normalizer import normalize_response
from ledger_ingest.parsing import DateParseError, parse_date_strict, parse_embedded_json
from ledger_ingest.pipeline import DocumentProcessor
from ledger_ingest.rates import PostgresRateSource, live_resolver, static_resolver


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Ledger ingest: turn AI extraction output into ledger records."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--bank", is_flag=True, help="Treat the response as a bank statement.")
def normalize(file: Path, bank: bool) -> None:
    """Print the canonical payload for an AI response file."""
    result = normalize_response(_load_response(file), is_bank_statement=bank)
    click.echo(json.dumps(result.payload, indent=2, ensure_ascii=False))
    if not result.ok:
        click.echo("Could not normalize response; original input shown.", err=True)
        raise SystemExit(1)


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--bank", is_flag=True, help="Treat the response as a bank statement.")
@click.option("--currency", required=True, help="Dossier currency (ISO code).")
@click.option("--filename", default=None, help="Document filename (default: FILE).")
@click.option("--dossier-id", type=int, default=1, show_default=True)
@click.option("--offline", is_flag=True, help="Use only the static fallback rates.")
def process(
    file: Path,
    bank: bool,
    currency: str,
    filename: str | None,
    dossier_id: int,
    offline: bool,
) -> None:
    """Process an AI response file and print the assembled record."""
    engine = _build_engine(offline)
    detector = None
    if not offline:
        repository = PostgresDocumentRepository()
        detector = DuplicateDetector(repository, get_duplicate_config())
    processor = DocumentProcessor(engine, detector, RecordAssembler(engine))

    document = Document(
        id=0,
        filename=filename or file.name,
        original_filename=file.name,
        dossier=Dossier(id=dossier_id, name=f"dossier-{dossier_id}", currency=currency),
        upload_date=date.today(),
    )
    outcome = processor.process(document, _load_response(file), is_bank_statement=bank)

    if outcome.record is None:
        click.echo(f"Rejected: {outcome.error}", err=True)
        raise SystemExit(1)
    click.echo(outcome.record.model_dump_json(indent=2))


@cli.command()
@click.argument("source")
@click.argument("target")
@click.argument("on", metavar="DATE")
@click.option("--offline", is_flag=True, help="Use only the static fallback rates.")
def rate(source: str, target: str, on: str, offline: bool) -> None:
    """Print the conversion rate from SOURCE to TARGET on DATE."""
    try:
        transaction_date = parse_date_strict(on)
    except DateParseError as exc:
        raise click.BadParameter(str(exc), param_hint="DATE") from exc

    engine = _build_engine(offline)
    scratch = Document(id=0, filename="", dossier=Dossier(id=0, name=""))
    context = engine.resolve(scratch, source, target, transaction_date)

    rate_date = context.rate_date.isoformat() if context.rate_date else "-"
    click.echo(
        f"{context.source_currency} -> {context.target_currency}: "
        f"{context.rate} (rate date {rate_date})"
    )


def _build_engine(offline: bool) -> CurrencyEngine:
    config = get_currency_config()
    fallback = static_resolver(config.fallback_rates)
    if offline:
        return CurrencyEngine([fallback], config)

    source = PostgresRateSource(timeout=get_worker_config().rate_lookup_timeout)
    return CurrencyEngine([live_resolver(source), fallback], config)


def _load_response(file: Path) -> Any:
    text = file.read_text(encoding="utf-8")
    try:
        return parse_embedded_json(text)
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"{file} is not valid JSON: {exc}") from exc
