"""Normalization functions for RaceHero API documents.

All functions accept loosely-typed JSON values and return the appropriate
Python type or None.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: Any) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None.

    Non-string scalars are converted with str() first.
    """
    if value is None:
        return None
    v = str(value).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: parse_api_ts
# ---------------------------------------------------------------------------

def parse_api_ts(value: Any) -> datetime | None:
    """Parse an ISO-8601 API timestamp.  Trailing 'Z' is read as UTC.

    Returns None for blanks and unparseable values.
    """
    v = trim(value)
    if v is None:
        return None
    if v.endswith("Z"):
        v = v[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(v)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Rule 3: parse_numeric
# ---------------------------------------------------------------------------

def parse_numeric(value: Any) -> Decimal | None:
    """Parse a decimal from a JSON number or string, returning None on failure."""
    if isinstance(value, bool):
        return None
    v = trim(value)
    if v is None:
        return None
    try:
        return Decimal(v)
    except InvalidOperation:
        return None


def parse_int(value: Any) -> int | None:
    """Parse an integer; '12', 12 and 12.0 all give 12."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    num = parse_numeric(value)
    if num is None or not num.is_finite() or num != num.to_integral_value():
        return None
    return int(num)


# ---------------------------------------------------------------------------
# Helpers: nested document access
# ---------------------------------------------------------------------------

def as_list(value: Any) -> list[Any]:
    """Return value when it is a list, otherwise an empty list."""
    return value if isinstance(value, list) else []


def sub(document: dict[str, Any] | None, key: str) -> dict[str, Any]:
    """Return document[key] when it is a dict, otherwise an empty dict."""
    if not isinstance(document, dict):
        return {}
    value = document.get(key)
    return value if isinstance(value, dict) else {}


# ---------------------------------------------------------------------------
# URL helpers
# ---------------------------------------------------------------------------

def csv_url(results_url: str | None) -> str | None:
    """Derive the CSV download URL for a run from its results_url."""
    v = trim(results_url)
    if v is None:
        return None
    return f"{v}.csv"
