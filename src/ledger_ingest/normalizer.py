"""Normalize the divergent AI response shapes into one canonical payload.

Bank statements arrive as transaction groups nested inside an embedded JSON
string; invoices arrive either embedded or with entries at the root. Both
normalize to ``{"ecritures": [...], "isBankStatement": bool}``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from ledger_ingest.models import NormalizedResponse
from ledger_ingest.parsing import parse_embedded_json

logger = logging.getLogger(__name__)


class NormalizationError(ValueError):
    """An AI response that cannot be turned into ledger entries."""


@dataclass(frozen=True)
class NormalizationResult:
    """Outcome of normalizing one response.

    On failure ``normalized`` is None and ``payload`` is the untouched input.
    """

    payload: Any
    normalized: NormalizedResponse | None

    @property
    def ok(self) -> bool:
        return self.normalized is not None


def normalize_response(raw: Any, *, is_bank_statement: bool) -> NormalizationResult:
    """Normalize ``raw`` for its document class. Never raises."""
    normalize = _normalize_bank if is_bank_statement else _normalize_invoice
    try:
        entries = normalize(raw)
    except NormalizationError as exc:
        logger.warning(
            "Could not normalize %s response: %s", _kind(is_bank_statement), exc
        )
        return NormalizationResult(payload=raw, normalized=None)
    except Exception:
        logger.error(
            "Unexpected error normalizing %s response",
            _kind(is_bank_statement),
            exc_info=True,
        )
        return NormalizationResult(payload=raw, normalized=None)

    normalized = NormalizedResponse(
        entries=entries, is_bank_statement=is_bank_statement
    )
    return NormalizationResult(payload=normalized.as_payload(), normalized=normalized)


def find_entries(payload: Any) -> Any:
    """Locate the entries of a (normalized or raw) payload, or None.

    Lookup order: the ``ecritures`` field, an array root, then the embedded
    ``outputText`` JSON.
    """
    if isinstance(payload, Mapping) and "ecritures" in payload:
        return payload["ecritures"]
    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping) and payload.get("outputText") is not None:
        try:
            parsed = parse_embedded_json(payload["outputText"])
        except (json.JSONDecodeError, TypeError):
            logger.warning("outputText is not valid JSON", exc_info=True)
            return None
        return _find_in_parsed(parsed)

    logger.warning("No ecritures found in payload")
    return None


def flatten_groups(groups: list[Any]) -> list[Any]:
    """Concatenate the ``entries`` of every transaction group, in order."""
    flattened: list[Any] = []
    for group in groups:
        if isinstance(group, Mapping) and isinstance(group.get("entries"), list):
            flattened.extend(group["entries"])
    return flattened


def _normalize_bank(raw: Any) -> list[Any]:
    if not isinstance(raw, Mapping) or raw.get("outputText") is None:
        msg = "no outputText in bank statement response"
        raise NormalizationError(msg)

    parsed = _parse_output_text(raw["outputText"])
    groups = parsed.get("Ecritures") if isinstance(parsed, Mapping) else None
    if not isinstance(groups, list):
        msg = "no Ecritures array in bank statement outputText"
        raise NormalizationError(msg)

    entries = flatten_groups(groups)
    if not entries:
        msg = "no entries found in bank statement transaction groups"
        raise NormalizationError(msg)

    logger.info(
        "Normalized bank statement: %d entries from %d transaction groups",
        len(entries),
        len(groups),
    )
    return entries


def _normalize_invoice(raw: Any) -> Any:
    if not isinstance(raw, Mapping):
        msg = "invoice response is not an object"
        raise NormalizationError(msg)

    if raw.get("outputText") is not None:
        parsed = _parse_output_text(raw["outputText"])
        if isinstance(parsed, Mapping):
            if "ecritures" in parsed:
                return parsed["ecritures"]
            if "Ecritures" in parsed:
                return parsed["Ecritures"]
        if isinstance(parsed, list):
            return parsed
        logger.warning(
            "No ecritures key in invoice outputText, using parsed value as entries"
        )
        return parsed

    for key in ("ecritures", "Ecritures"):
        if key in raw:
            return raw[key]

    msg = "no outputText or ecritures in invoice response"
    raise NormalizationError(msg)


def _parse_output_text(output_text: Any) -> Any:
    try:
        return parse_embedded_json(output_text)
    except json.JSONDecodeError as exc:
        msg = f"outputText is not valid JSON: {exc}"
        raise NormalizationError(msg) from exc


def _find_in_parsed(parsed: Any) -> Any:
    if not isinstance(parsed, Mapping):
        return None
    if "ecritures" in parsed:
        return parsed["ecritures"]
    if "Ecritures" not in parsed:
        logger.warning("No ecritures found in outputText")
        return None

    ecritures = parsed["Ecritures"]
    if isinstance(ecritures, list) and ecritures:
        first = ecritures[0]
        if isinstance(first, Mapping) and "entries" in first:
            return flatten_groups(ecritures)
        if isinstance(first, list) and first:
            nested_first = first[0]
            if isinstance(nested_first, Mapping) and "entries" in nested_first:
                return [
                    entry
                    for outer in ecritures
                    if isinstance(outer, list)
                    for entry in flatten_groups(outer)
                ]
    return ecritures


def _kind(is_bank_statement: bool) -> str:
    return "bank statement" if is_bank_statement else "invoice"
