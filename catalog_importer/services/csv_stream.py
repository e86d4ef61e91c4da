"""Pull-based CSV row streaming for batch ingestion.

Rows are read one at a time from an open handle so memory use does not grow
with file size. The iterator owns no database state: the caller decides where
each row's transaction begins and ends.
"""

from __future__ import annotations

import csv
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

from catalog_importer.core.errors import CsvFormatError

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = [
    "product_name",
    "product_description",
    "product_sku",
    "cost_price",
    "regular_price",
    "sale_price",
    "discount_percentage",
    "discount_label",
    "minimum_price",
    "wholesale_minimum_qty",
    "wholesale_discount_percentage",
]


@dataclass(frozen=True)
class SourceRow:
    """One data row with its 1-based position among the file's data rows."""

    index: int
    fields: dict[str, str]


def validate_headers(headers: list[str] | None) -> list[str]:
    """Ensure the header row carries every required product column."""
    if not headers:
        raise CsvFormatError("CSV file appears to be empty or has no header row")
    normalized = [(header or "").strip() for header in headers]
    missing = [column for column in REQUIRED_COLUMNS if column not in normalized]
    if missing:
        raise CsvFormatError(f"Missing required column(s): {', '.join(missing)}")
    return normalized


def _is_blank(values: list[str]) -> bool:
    return all(not (value or "").strip() for value in values)


def iter_rows(handle: TextIO, start_after: int = 0) -> Iterator[SourceRow]:
    """Yield data rows as ordered field maps, skipping blank lines.

    Rows whose index is ``<= start_after`` are read past without being
    yielded, which is how a resumed batch avoids re-processing rows.
    """
    reader = csv.reader(handle)
    try:
        headers = validate_headers(next(reader, None))
        index = 0
        for values in reader:
            if _is_blank(values):
                continue
            index += 1
            if index <= start_after:
                continue
            fields = {
                header: (values[position].strip() if position < len(values) else "")
                for position, header in enumerate(headers)
                if header
            }
            yield SourceRow(index=index, fields=fields)
    except UnicodeDecodeError as e:
        raise CsvFormatError(f"File encoding error: {str(e)}") from e
    except csv.Error as e:
        raise CsvFormatError(f"CSV parsing error: {str(e)}") from e


@contextmanager
def open_csv(file_path: str | Path) -> Iterator[TextIO]:
    """Open a stored CSV for streaming (UTF-8, optional BOM, quoted newlines)."""
    path = Path(file_path)
    try:
        handle = path.open("r", encoding="utf-8-sig", newline="")
    except FileNotFoundError as e:
        raise CsvFormatError(f"CSV file not found: {path}") from e
    except PermissionError as e:
        raise CsvFormatError(f"Permission denied reading file: {path}") from e
    try:
        yield handle
    finally:
        handle.close()


def count_rows(file_path: str | Path) -> int:
    """Return the number of non-blank data rows in the CSV (excluding headers)."""
    with open_csv(file_path) as handle:
        total = sum(1 for _ in iter_rows(handle))
    logger.debug(f"Counted {total} data rows in {file_path}")
    return total
