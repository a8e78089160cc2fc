"""Address clean-up helpers that turn property addresses into map search queries.

Every function here is pure and total: unexpected input yields an empty string
(or ``None`` for the optional helpers) rather than an exception, because the
capture pipeline treats a poor query as "try the next strategy", not as an error.
"""

from __future__ import annotations

import re
from typing import Any

__all__ = [
    "LONG_ADDRESS_THRESHOLD",
    "NOISY_TOKENS",
    "normalize_address",
    "structured_address",
    "street_only_address",
    "focused_address",
]

LONG_ADDRESS_THRESHOLD = 80
NOISY_TOKENS = ("Community Board", "Civic Center")
BOROUGHS = ("Manhattan", "Brooklyn", "Queens", "Bronx", "Staten Island")
DEFAULT_CITY = "New York"

_NUMBER_AND_STREET = re.compile(r"^(\d+)[,\s]+([^,]+)")
_COMMUNITY_BOARD = re.compile(r"Community Board \d+,?")
_CIVIC_CENTER = re.compile(r"Civic Center,?")
_WHITESPACE = re.compile(r"\s+")
_DOUBLE_COMMA = re.compile(r",\s*,")
_ZIP_CODE = re.compile(r"\b\d{5}\b")
_STREET_ONLY = re.compile(r"^(\d+[^,]+)")
_LEADING_NUMBER = re.compile(r"^\s*(\d+)")
_NAME_AFTER_NUMBER = re.compile(r"^\s*\d+\s*[,\s]+([^,]+)")


def _coerce(address: Any) -> str:
    if address is None:
        return ""
    if not isinstance(address, str):
        try:
            address = str(address)
        except Exception:  # pragma: no cover - exotic __str__ implementations
            return ""
    return address


def _split(address: str) -> list[str]:
    return [part.strip() for part in address.split(",")]


def normalize_address(address: Any, *, long_threshold: int = LONG_ADDRESS_THRESHOLD) -> str:
    """Return a search-optimized version of ``address``.

    Rules, first match wins:

    1. ``"<number> <street>, ..."`` collapses to ``"<number> <street>"``.
    2. Addresses carrying administrative noise (community boards, civic center
       labels) keep only their first two comma-separated segments.
    3. Addresses longer than ``long_threshold`` keep their first segment.
    4. Anything else is stripped of noise tokens and whitespace-normalized.
    """

    text = _coerce(address)
    if not text:
        return ""

    match = _NUMBER_AND_STREET.match(text)
    if match and match.group(1) and match.group(2).strip():
        return f"{match.group(1)} {match.group(2).strip()}"

    if any(token in text for token in NOISY_TOKENS):
        parts = _split(text)
        if len(parts) >= 2:
            return _WHITESPACE.sub(" ", f"{parts[0]} {parts[1]}").strip()

    if len(text) > long_threshold:
        parts = _split(text)
        if len(parts) >= 2:
            return parts[0]

    cleaned = _COMMUNITY_BOARD.sub("", text)
    cleaned = _CIVIC_CENTER.sub("", cleaned)
    cleaned = _WHITESPACE.sub(" ", cleaned)
    cleaned = _DOUBLE_COMMA.sub(",", cleaned)
    return cleaned.strip()


def structured_address(address: Any) -> str:
    """Rebuild ``address`` as ``"<street>, <area> <zip>"`` for place-detail URLs."""

    text = _coerce(address)
    if not text.strip():
        return ""
    parts = _split(text)
    street = parts[0]
    area = DEFAULT_CITY
    for part in parts:
        if any(borough in part for borough in BOROUGHS):
            area = part
            break
    structured = f"{street}, {area}" if street else area
    zip_match = _ZIP_CODE.search(text)
    if zip_match:
        structured += f" {zip_match.group(0)}"
    return structured


def street_only_address(address: Any) -> str | None:
    """Return the leading ``"<number><street>"`` run (up to the first comma)."""

    match = _STREET_ONLY.match(_coerce(address))
    if not match:
        return None
    return match.group(1).strip() or None


def focused_address(address: Any) -> str | None:
    """Return ``"<number> <street name>"`` or ``None`` when either piece is missing."""

    text = _coerce(address)
    number = _LEADING_NUMBER.match(text)
    name = _NAME_AFTER_NUMBER.match(text)
    if not number or not name or not name.group(1).strip():
        return None
    return f"{number.group(1)} {name.group(1).strip()}"
