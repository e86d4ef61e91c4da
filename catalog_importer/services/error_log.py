"""Append-only batch error log plus the operator-facing reports built on it."""

from __future__ import annotations

import csv
import io
import logging

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from catalog_importer.core.enums import ErrorType, Severity
from catalog_importer.core.errors import InvalidFilterError
from catalog_importer.db.models.batch_row_error import BatchRowError

logger = logging.getLogger(__name__)

REPORT_COLUMNS = ["row", "field", "type", "severity", "message", "created_at"]


def log_batch_error(
    session: Session,
    batch_id: str,
    message: str,
    *,
    type: ErrorType = ErrorType.VALIDATION,
    severity: Severity = Severity.ERROR,
    row: int | None = None,
    field: str | None = None,
) -> BatchRowError:
    """Stage one log entry; it is committed with the caller's unit of work."""
    entry = BatchRowError(
        batch_id=batch_id,
        row=row,
        field=field,
        type=ErrorType(type).value,
        severity=Severity(severity).value,
        message=message,
    )
    session.add(entry)
    return entry


def log_audit(session: Session, batch_id: str, message: str) -> BatchRowError:
    """Record an operator/lifecycle event, kept apart from data-quality issues by severity."""
    logger.info(f"Batch {batch_id}: {message}")
    return log_batch_error(
        session, batch_id, message, type=ErrorType.SYSTEM, severity=Severity.INFO
    )


def _filter_value(enum, value) -> str:
    try:
        return enum(value).value
    except ValueError:
        choices = ", ".join(member.value for member in enum)
        raise InvalidFilterError(
            f"Unknown {enum.__name__} filter {value!r}; expected one of: {choices}"
        ) from None


def list_errors(
    session: Session,
    batch_id: str,
    *,
    type: ErrorType | str | None = None,
    severity: Severity | str | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> list[BatchRowError]:
    query = select(BatchRowError).where(BatchRowError.batch_id == batch_id)
    if type:
        query = query.where(BatchRowError.type == _filter_value(ErrorType, type))
    if severity:
        query = query.where(BatchRowError.severity == _filter_value(Severity, severity))
    query = query.order_by(BatchRowError.id).offset(offset)
    if limit is not None:
        query = query.limit(limit)
    return list(session.scalars(query).all())


def clear_errors(session: Session, batch_id: str) -> int:
    """Delete every entry for the batch (used when a retry starts a fresh log)."""
    result = session.execute(delete(BatchRowError).where(BatchRowError.batch_id == batch_id))
    return result.rowcount or 0


def summarize_errors(session: Session, batch_id: str) -> dict[str, dict[str, int]]:
    """Count entries per type and severity, e.g. ``{"validation": {"error": 3}}``."""
    rows = session.execute(
        select(BatchRowError.type, BatchRowError.severity, func.count(BatchRowError.id))
        .where(BatchRowError.batch_id == batch_id)
        .group_by(BatchRowError.type, BatchRowError.severity)
    ).all()
    summary: dict[str, dict[str, int]] = {}
    for error_type, severity, count in rows:
        summary.setdefault(error_type, {})[severity] = count
    return summary


def row_error_details(session: Session, batch_id: str, limit: int) -> list[dict]:
    """Blocking row-level errors grouped by row, for failed operation results."""
    entries = session.scalars(
        select(BatchRowError)
        .where(
            BatchRowError.batch_id == batch_id,
            BatchRowError.severity == Severity.ERROR.value,
            BatchRowError.row.is_not(None),
        )
        .order_by(BatchRowError.row, BatchRowError.id)
    )
    grouped: dict[int, list[dict]] = {}
    for entry in entries:
        if entry.row not in grouped:
            if len(grouped) >= limit:
                break
            grouped[entry.row] = []
        grouped[entry.row].append(
            {"field": entry.field, "message": entry.message, "type": entry.type}
        )
    return [{"row": row, "errors": errors} for row, errors in grouped.items()]


def export_errors_csv(session: Session, batch_id: str) -> str:
    """Render the batch's log as CSV for download."""
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(REPORT_COLUMNS)
    for entry in list_errors(session, batch_id):
        writer.writerow(
            [
                entry.row if entry.row is not None else "",
                entry.field or "",
                entry.type,
                entry.severity,
                entry.message,
                entry.created_at.isoformat() if entry.created_at else "",
            ]
        )
    return buffer.getvalue()
