"""Map currency symbols and names returned by the AI service to ISO codes."""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

_ALIASES: dict[str, tuple[str, ...]] = {
    "USD": (
        "$",
        "USD$",
        "US$",
        "DOLLAR",
        "DOLLARS",
        "US DOLLAR",
        "US DOLLARS",
        "UNITED STATES DOLLAR",
    ),
    "EUR": ("€", "EUR€", "EU€", "EURO", "EUROS"),
    "GBP": ("£", "GBP£", "UK£", "POUND", "POUNDS", "BRITISH POUND"),
    "JPY": ("¥", "JPY¥", "JP¥", "YEN"),
    "MAD": ("DH", "MAD", "DIRHAM", "DIRHAMS", "MOROCCAN DIRHAM"),
    "DZD": ("DA", "DZD", "DINAR", "DINARS", "ALGERIAN DINAR"),
    "XOF": ("CFA", "XOF", "FRANC", "FRANCS", "CFA FRANC"),
}

_ALIAS_TO_CODE = {
    alias: code for code, aliases in _ALIASES.items() for alias in aliases
}

# Substring hints for free text such as "Montant en dirhams".
_HINTS = (
    ("USD", ("USD", "DOLLAR")),
    ("EUR", ("EUR", "EURO")),
    ("MAD", ("MAD", "DIRHAM")),
)

_ISO_CODE = re.compile(r"^[A-Z]{3}$")

_PLACEHOLDERS = frozenset({"NAN", "NULL", "UNDEFINED", "N/A", "NONE", "UNKNOWN"})


def normalize_currency_code(value: str | None) -> str | None:
    """Return the ISO-4217 code for a currency symbol, name or code.

    Blank input gives None. Unrecognized 3-letter codes pass through and any
    other unrecognized text defaults to USD.
    """
    if value is None or not value.strip():
        return None

    normalized = value.strip().upper()

    code = _ALIAS_TO_CODE.get(normalized)
    if code is not None:
        return code

    if _ISO_CODE.match(normalized):
        return normalized

    for code, hints in _HINTS:
        if any(hint in normalized for hint in hints):
            logger.info("Extracted %s from: %r", code, value)
            return code

    logger.warning("Unrecognized currency code/symbol: %r, defaulting to USD", value)
    return "USD"


def is_placeholder_currency(value: str | None) -> bool:
    """True for empty values and the filler tokens the AI emits for 'unknown'."""
    if value is None or not value.strip():
        return True
    return value.strip().upper() in _PLACEHOLDERS
