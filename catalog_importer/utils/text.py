"""String helpers for slugs, dictionary keys and numeric CSV cells."""

from __future__ import annotations

import math
import re

_WHITESPACE = re.compile(r"\s+")
_NON_SLUG = re.compile(r"[^\w\-]+")
_DASH_RUNS = re.compile(r"\-\-+")


def slugify(text: str) -> str:
    """Lower-case, dash-separated slug used for product and category URLs."""
    slug = str(text).lower().strip()
    slug = _WHITESPACE.sub("-", slug)
    slug = _NON_SLUG.sub("", slug)
    return _DASH_RUNS.sub("-", slug)


def name_key(name: str) -> str:
    """Key for case-insensitive exact name matching."""
    return name.strip().lower()


def parse_number(value: str | None) -> float | None:
    """Return the numeric value of a CSV cell, or None when it is not a number."""
    if value is None:
        return None
    try:
        number = float(value.strip())
    except ValueError:
        return None
    if math.isnan(number):
        return None
    return number


def parse_int(value: str | None) -> int | None:
    number = parse_number(value)
    if number is None or math.isinf(number) or not number.is_integer():
        return None
    return int(number)


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def split_values(value: str | None) -> list[str]:
    """Split a comma separated cell into trimmed, non-empty fragments."""
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]
