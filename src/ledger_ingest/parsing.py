"""Tolerant accessors for the semi-structured values returned by the AI service."""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Mapping
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

logger = logging.getLogger(__name__)

# Tried in order by the lenient parser.
DATE_FORMATS = (
    "%d/%m/%Y",
    "%Y-%m-%d",
    "%d-%m-%Y",
    "%Y-%d-%m",
)

STANDARD_DATE_FORMAT = "%d/%m/%Y"


class DateParseError(ValueError):
    """Raised by the strict parser when no accepted format matches."""


def parse_number(value: Any) -> float:
    """Parse a bare value as a float, returning 0.0 when it cannot be read.

    Comma decimal separators are accepted ("100,50" -> 100.5). NaN and
    infinities read as 0.0.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return 0.0
        try:
            number = float(text.replace(",", "."))
        except ValueError:
            logger.debug("Unparsable number: %r", value)
            return 0.0

    if not math.isfinite(number):
        logger.debug("Non-finite number: %r", value)
        return 0.0
    return number


def parse_amount(node: Any, field: str) -> float:
    """Return the numeric value of ``node[field]``, or 0.0 if absent or invalid."""
    if not isinstance(node, Mapping):
        return 0.0
    value = node.get(field)
    if value is None:
        logger.debug("Field %s not found or is null", field)
        return 0.0
    return parse_number(value)


def extract_string(node: Any, field: str, default: str | None) -> str | None:
    """Return the trimmed string value of ``node[field]`` or ``default``."""
    if not isinstance(node, Mapping):
        return default
    value = node.get(field)
    if value is None:
        return default
    text = _as_text(value).strip()
    return text or default


def parse_date(text: str | None, *, today: date | None = None) -> date:
    """Parse a date leniently, falling back to today when nothing matches."""
    fallback = today or date.today()
    if text is None or not str(text).strip():
        logger.warning("Date string is null or empty, using current date")
        return fallback

    candidate = str(text).strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(candidate, fmt).date()
        except ValueError:
            continue

    logger.warning("Could not parse date: %s. Using current date.", text)
    return fallback


def parse_date_strict(text: str) -> date:
    """Parse an ISO or dd/MM/yyyy date, raising DateParseError otherwise."""
    candidate = text.strip() if text else ""
    try:
        return date.fromisoformat(candidate)
    except ValueError:
        pass
    try:
        return datetime.strptime(candidate, STANDARD_DATE_FORMAT).date()
    except ValueError:
        msg = f"Cannot parse date {text!r}. Expected formats: yyyy-MM-dd or dd/MM/yyyy"
        raise DateParseError(msg) from None


def format_standard_date(text: str | None, *, today: date | None = None) -> str:
    """Render a leniently parsed date as dd/MM/yyyy."""
    return parse_date(text, today=today).strftime(STANDARD_DATE_FORMAT)


def strip_code_fences(text: str | None) -> str:
    """Remove a single markdown code fence wrapped around embedded JSON."""
    if text is None:
        return ""

    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[len("```json") :].strip()
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:].strip()

    if cleaned.endswith("```"):
        cleaned = cleaned[:-3].strip()

    return cleaned


def parse_embedded_json(text: Any) -> Any:
    """Decode JSON carried as a string inside another JSON document."""
    return json.loads(strip_code_fences(_as_text(text)))


def round_half_up(value: float, places: int = 2) -> float:
    """Round half away from zero to ``places`` decimals."""
    quantum = Decimal(1).scaleb(-places)
    try:
        return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return value


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (Mapping, list)):
        return json.dumps(value)
    return str(value)
