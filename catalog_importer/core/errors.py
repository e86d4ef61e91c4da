"""Exceptions raised inside the batch engine and converted to results at its edge."""

from __future__ import annotations

from collections.abc import Iterable


class BatchError(Exception):
    """Base class for engine failures that map onto a result code."""

    code = "BATCH_ERROR"


class BatchNotFoundError(BatchError):
    code = "BATCH_NOT_FOUND"

    def __init__(self, batch_id: str):
        super().__init__(f"Batch upload with ID {batch_id} not found")
        self.batch_id = batch_id


class InvalidTransitionError(BatchError):
    """Requested action is not allowed from the batch's current status."""

    code = "INVALID_BATCH_STATE"

    def __init__(self, action: str, current: str, allowed: Iterable[str]):
        self.action = action
        self.current = current
        self.allowed = sorted(allowed)
        super().__init__(
            f"Cannot {action} batch in {current} status. "
            f"Batch must be in one of these states: {', '.join(self.allowed)}"
        )


class BatchFileMissingError(BatchError):
    """Stored CSV is not attached to the batch or is gone from storage."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


class RetryLimitReachedError(BatchError):
    code = "RETRY_LIMIT_REACHED"


class CatalogNotFoundError(BatchError):
    code = "CATALOG_NOT_FOUND"

    def __init__(self, catalog_id: int):
        super().__init__(f"Catalog with ID {catalog_id} not found")
        self.catalog_id = catalog_id


class InvalidFilterError(BatchError):
    """Log filter names a type or severity that does not exist."""

    code = "INVALID_FILTER"


class CsvFormatError(ValueError):
    """CSV cannot be read as a product catalog (empty, bad header, bad encoding)."""
