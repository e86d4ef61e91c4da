"""Status, error-type and severity vocabularies shared by models and services."""

from __future__ import annotations

import enum


class BatchStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAUSED = "paused"
    RESUMABLE = "resumable"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Statuses in which a worker loop is allowed to keep pulling rows.
RUNNING_STATUSES = frozenset({BatchStatus.PROCESSING, BatchStatus.RETRYING})


class ErrorType(str, enum.Enum):
    VALIDATION = "validation"
    PROCESSING = "processing"
    SYSTEM = "system"


class Severity(str, enum.Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
