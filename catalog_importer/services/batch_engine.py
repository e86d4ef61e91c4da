"""Batch ingestion engine: lifecycle state machine and the per-row loop.

A batch is processed by a single worker strictly in file order. Each row is
validated, then its reference data is resolved and committed, then its
product and attribute links are written in their own transaction together
with the batch counters. The persisted counters are the resume cursor.

Pause and cancel requests are plain status writes; the running loop checks
the batch's status and run token between rows and stops when either no
longer belongs to it.
"""

from __future__ import annotations

import functools
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from catalog_importer.core.config import Settings, get_settings
from catalog_importer.core.enums import (
    RUNNING_STATUSES,
    BatchStatus,
    ErrorType,
    Severity,
)
from catalog_importer.core.errors import (
    BatchError,
    BatchFileMissingError,
    BatchNotFoundError,
    CatalogNotFoundError,
    InvalidTransitionError,
    RetryLimitReachedError,
)
from catalog_importer.db.models.batch_job import BatchJob
from catalog_importer.db.models.batch_row_error import BatchRowError
from catalog_importer.db.models.catalog import Catalog
from catalog_importer.db.session import SessionLocal
from catalog_importer.services import error_log, progress_tracker
from catalog_importer.services.attribute_processor import AttributeProcessor
from catalog_importer.services.batch_progress import BatchProgress
from catalog_importer.services.csv_stream import SourceRow, count_rows, iter_rows, open_csv
from catalog_importer.services.entity_resolver import EntityResolver
from catalog_importer.services.product_writer import build_product, insert_product
from catalog_importer.services.results import OperationResult
from catalog_importer.services.row_validator import RowValidator
from catalog_importer.services.template_generator import generate_template_csv
from catalog_importer.storage.file_storage import (
    ALLOWED_EXTENSIONS,
    UploadTooLargeError,
    delete_upload,
    save_upload,
    upload_exists,
)

logger = logging.getLogger(__name__)

# Source statuses accepted by each operator action.
ALLOWED_SOURCES: dict[str, frozenset[BatchStatus]] = {
    "attach a file to": frozenset({BatchStatus.PENDING}),
    "start": frozenset({BatchStatus.PENDING}),
    "pause": frozenset({BatchStatus.PROCESSING}),
    "resume": frozenset({BatchStatus.PAUSED, BatchStatus.RESUMABLE}),
    "retry": frozenset({BatchStatus.FAILED}),
    "cancel": frozenset({BatchStatus.PENDING, BatchStatus.PROCESSING, BatchStatus.PAUSED}),
}

# Every edge of the lifecycle graph, operator-driven or loop-driven.
TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.PENDING: frozenset({BatchStatus.PROCESSING, BatchStatus.CANCELLED}),
    BatchStatus.PROCESSING: frozenset(
        {BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.PAUSED, BatchStatus.CANCELLED}
    ),
    BatchStatus.PAUSED: frozenset(
        {BatchStatus.PROCESSING, BatchStatus.RESUMABLE, BatchStatus.CANCELLED}
    ),
    BatchStatus.RESUMABLE: frozenset({BatchStatus.PROCESSING}),
    BatchStatus.FAILED: frozenset({BatchStatus.RETRYING}),
    BatchStatus.RETRYING: frozenset({BatchStatus.COMPLETED, BatchStatus.FAILED}),
    BatchStatus.COMPLETED: frozenset(),
    BatchStatus.CANCELLED: frozenset(),
}

TIMESTAMP_FIELDS = {
    BatchStatus.PAUSED: "paused_at",
    BatchStatus.COMPLETED: "completed_at",
    BatchStatus.CANCELLED: "canceled_at",
    BatchStatus.FAILED: "failed_at",
    BatchStatus.RETRYING: "started_at",
}

Dispatcher = Callable[[str, str], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def operation(action: str):
    """Convert engine exceptions raised by a public operation into a failed result."""

    def decorator(method):
        @functools.wraps(method)
        def wrapper(self, *args, **kwargs) -> OperationResult:
            try:
                return method(self, *args, **kwargs)
            except InvalidTransitionError as exc:
                logger.warning(str(exc))
                return OperationResult.fail(
                    exc.code,
                    str(exc),
                    details={"current": exc.current, "allowed": exc.allowed},
                )
            except BatchError as exc:
                logger.warning(f"Failed to {action} batch: {exc}")
                return OperationResult.fail(exc.code, str(exc))
            except SQLAlchemyError as exc:
                logger.error(f"Database error trying to {action} batch: {exc}", exc_info=True)
                return OperationResult.fail(
                    "STORE_UNAVAILABLE",
                    f"Failed to {action} batch upload",
                    details=str(exc),
                )

        return wrapper

    return decorator


class BatchEngine:
    """Owns batch lifecycle operations.

    ``dispatcher`` hands long-running work (start, resume, retry) to a
    background worker; without one the loop runs inline and the operation
    returns the run's final result.
    """

    def __init__(
        self,
        session_factory: sessionmaker | Callable[[], Session] | None = None,
        *,
        settings: Settings | None = None,
        dispatcher: Dispatcher | None = None,
        uploads_dir: Path | None = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.settings = settings or get_settings()
        self.dispatcher = dispatcher
        self.uploads_dir = uploads_dir

    # ------------------------------------------------------------------
    # State machine helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _load(session: Session, batch_id: str) -> BatchJob:
        job = session.get(BatchJob, batch_id)
        if job is None:
            raise BatchNotFoundError(batch_id)
        return job

    @staticmethod
    def _require(job: BatchJob, action: str) -> None:
        allowed = ALLOWED_SOURCES[action]
        if job.status not in allowed:
            raise InvalidTransitionError(action, job.status, [status.value for status in allowed])

    @staticmethod
    def _transition(job: BatchJob, target: BatchStatus) -> None:
        current = BatchStatus(job.status)
        if target not in TRANSITIONS[current]:
            sources = [status.value for status, targets in TRANSITIONS.items() if target in targets]
            raise InvalidTransitionError(f"move to {target.value}", current.value, sources)
        job.status = target.value
        timestamp_field = TIMESTAMP_FIELDS.get(target)
        if timestamp_field:
            setattr(job, timestamp_field, _now())

    def _require_file(self, session: Session, job: BatchJob, action: str) -> None:
        """Fail the operation (and log a SYSTEM entry) when the stored CSV is unusable."""
        if not job.file_path:
            code, message = "FILE_PATH_MISSING", "No CSV file associated with this batch"
        elif not upload_exists(job.file_path):
            code, message = "FILE_NOT_FOUND", "CSV file no longer exists on the server"
        else:
            return
        error_log.log_batch_error(
            session,
            job.id,
            f"Cannot {action} batch: {message}",
            type=ErrorType.SYSTEM,
            severity=Severity.ERROR,
        )
        session.commit()
        raise BatchFileMissingError(code, message)

    def _cleanup_file(self, job: BatchJob) -> None:
        if self.settings.delete_file_on_terminal and job.file_path:
            delete_upload(job.file_path)

    @staticmethod
    def _snapshot(session: Session, job: BatchJob) -> BatchJob:
        """Reload the job so it stays readable after the session closes."""
        session.refresh(job)
        return job

    def _launch(self, batch_id: str, run_token: str) -> OperationResult:
        if self.dispatcher is None:
            return self.run(batch_id, run_token)
        try:
            self.dispatcher(batch_id, run_token)
        except Exception as exc:
            logger.error(f"Could not queue batch {batch_id}: {exc}", exc_info=True)
            return self._fail_dispatch(batch_id, run_token, exc)
        with self.session_factory() as session:
            return OperationResult.ok(self._load(session, batch_id), message="Batch queued for processing")

    def _fail_dispatch(self, batch_id: str, run_token: str, exc: Exception) -> OperationResult:
        """No worker will pick the run up, so the batch must not stay running."""
        with self.session_factory() as session:
            job = self._load(session, batch_id)
            error_log.log_batch_error(
                session,
                batch_id,
                f"Failed to queue batch for processing: {exc}",
                type=ErrorType.SYSTEM,
                severity=Severity.ERROR,
            )
            if job.status in RUNNING_STATUSES and job.run_token == run_token:
                self._transition(job, BatchStatus.FAILED)
                job.run_token = None
                job.error_message = f"Failed to queue batch for processing: {exc}"
                error_log.log_audit(session, batch_id, "Batch failed: it could not be queued")
            session.commit()
            return OperationResult.fail(
                "DISPATCH_FAILED",
                "Failed to queue batch for processing",
                details=str(exc),
                data=self._snapshot(session, job),
            )

    # ------------------------------------------------------------------
    # Batch CRUD
    # ------------------------------------------------------------------

    @operation("create")
    def create_batch(
        self,
        name: str,
        *,
        description: str | None = None,
        catalog_id: int | None = None,
        max_retries: int | None = None,
        meta: dict | None = None,
    ) -> OperationResult:
        if not name or not name.strip():
            return OperationResult.fail("MISSING_BATCH_NAME", "Batch name is required")
        with self.session_factory() as session:
            if catalog_id is not None and session.get(Catalog, catalog_id) is None:
                raise CatalogNotFoundError(catalog_id)
            job = BatchJob(
                name=name.strip(),
                description=description,
                catalog_id=catalog_id,
                status=BatchStatus.PENDING.value,
                max_retries=self.settings.default_max_retries if max_retries is None else max_retries,
                meta=meta or {},
            )
            session.add(job)
            session.flush()
            error_log.log_audit(session, job.id, "Batch created")
            session.commit()
            return OperationResult.ok(self._snapshot(session, job))

    @operation("attach a file to")
    def attach_file(self, batch_id: str, file_obj: BinaryIO, filename: str | None) -> OperationResult:
        if file_obj is None:
            return OperationResult.fail("NO_FILE_UPLOADED", "No file uploaded")
        if Path(filename or "").suffix.lower() not in ALLOWED_EXTENSIONS:
            return OperationResult.fail("INVALID_FILE_TYPE", "Only CSV uploads are supported")
        with self.session_factory() as session:
            job = self._load(session, batch_id)
            self._require(job, "attach a file to")
            try:
                stored_path = save_upload(
                    file_obj,
                    filename,
                    target_dir=self.uploads_dir,
                    max_bytes=self.settings.max_upload_bytes,
                )
            except UploadTooLargeError as exc:
                return OperationResult.fail("FILE_TOO_LARGE", str(exc))

            previous = job.file_path
            job.file_path = str(stored_path)
            job.original_filename = filename
            error_log.log_audit(session, job.id, f"File {filename} attached")
            session.commit()
            if previous and previous != job.file_path:
                delete_upload(previous)
            return OperationResult.ok(self._snapshot(session, job))

    @operation("fetch")
    def get_batch(self, batch_id: str) -> OperationResult:
        with self.session_factory() as session:
            return OperationResult.ok(self._load(session, batch_id))

    @operation("list")
    def list_batches(self, *, status: str | None = None, limit: int = 50) -> OperationResult:
        with self.session_factory() as session:
            query = select(BatchJob)
            if status:
                query = query.where(BatchJob.status == status)
            query = query.order_by(BatchJob.created_at.desc(), BatchJob.id).limit(limit)
            return OperationResult.ok(list(session.scalars(query).all()))

    @operation("list errors of")
    def list_errors(
        self,
        batch_id: str,
        *,
        type: str | None = None,
        severity: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> OperationResult:
        with self.session_factory() as session:
            self._load(session, batch_id)
            entries = error_log.list_errors(
                session, batch_id, type=type, severity=severity, limit=limit, offset=offset
            )
            return OperationResult.ok(entries)

    @operation("summarize errors of")
    def error_summary(self, batch_id: str) -> OperationResult:
        with self.session_factory() as session:
            self._load(session, batch_id)
            return OperationResult.ok(error_log.summarize_errors(session, batch_id))

    @operation("export errors of")
    def export_errors(self, batch_id: str) -> OperationResult:
        with self.session_factory() as session:
            self._load(session, batch_id)
            return OperationResult.ok(error_log.export_errors_csv(session, batch_id))

    @operation("delete")
    def delete_batch(self, batch_id: str) -> OperationResult:
        with self.session_factory() as session:
            job = self._load(session, batch_id)
            file_path = job.file_path
            session.execute(delete(BatchRowError).where(BatchRowError.batch_id == batch_id))
            session.delete(job)
            session.commit()
        delete_upload(file_path)
        progress_tracker.clear_progress(batch_id)
        logger.info(f"Deleted batch {batch_id}")
        return OperationResult.ok(None, message="Batch deleted")

    @operation("generate a template for")
    def generate_template(self, catalog_id: int | None = None) -> OperationResult:
        with self.session_factory() as session:
            content, catalog_name = generate_template_csv(session, catalog_id)
        return OperationResult.ok({"content": content, "catalog_name": catalog_name})

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    @operation("start")
    def start(self, batch_id: str) -> OperationResult:
        with self.session_factory() as session:
            job = self._load(session, batch_id)
            self._require(job, "start")
            self._require_file(session, job, "start")
            run_token = str(uuid.uuid4())
            BatchProgress().apply_to(job)
            self._transition(job, BatchStatus.PROCESSING)
            job.started_at = _now()
            job.run_token = run_token
            error_log.log_audit(session, job.id, "Batch processing started")
            session.commit()
        return self._launch(batch_id, run_token)

    @operation("pause")
    def pause(self, batch_id: str) -> OperationResult:
        with self.session_factory() as session:
            job = self._load(session, batch_id)
            self._require(job, "pause")
            processed = job.processed_records or 0
            self._transition(job, BatchStatus.PAUSED)
            job.last_processed_row = max(job.last_processed_row or 0, processed)
            error_log.log_audit(session, job.id, f"Batch was manually paused at row {processed}")
            session.commit()
            progress_tracker.publish_progress(
                job.id, processed, job.total_records or 0, status=BatchStatus.PAUSED.value
            )
            return OperationResult.ok(self._snapshot(session, job))

    @operation("resume")
    def resume(self, batch_id: str) -> OperationResult:
        with self.session_factory() as session:
            job = self._load(session, batch_id)
            self._require(job, "resume")
            self._require_file(session, job, "resume")
            cursor = max(job.last_processed_row or 0, job.processed_records or 0)
            run_token = str(uuid.uuid4())
            self._transition(job, BatchStatus.PROCESSING)
            job.last_processed_row = cursor
            job.resumed_at = _now()
            job.run_token = run_token
            error_log.log_audit(session, job.id, f"Batch is being resumed from row {cursor}")
            session.commit()
        return self._launch(batch_id, run_token)

    @operation("retry")
    def retry(self, batch_id: str) -> OperationResult:
        with self.session_factory() as session:
            job = self._load(session, batch_id)
            self._require(job, "retry")
            if (job.retry_count or 0) >= job.max_retries:
                raise RetryLimitReachedError(
                    f"Batch {batch_id} has already been retried {job.retry_count} times "
                    f"(limit {job.max_retries})"
                )
            self._require_file(session, job, "retry")
            cleared = error_log.clear_errors(session, job.id)
            logger.info(f"Cleared {cleared} previous log entries for batch {batch_id}")

            run_token = str(uuid.uuid4())
            job.retry_count = (job.retry_count or 0) + 1
            BatchProgress().apply_to(job)
            job.error_message = None
            job.run_token = run_token
            self._transition(job, BatchStatus.RETRYING)
            error_log.log_audit(session, job.id, f"Starting retry attempt #{job.retry_count}")
            session.commit()
        return self._launch(batch_id, run_token)

    @operation("cancel")
    def cancel(self, batch_id: str) -> OperationResult:
        with self.session_factory() as session:
            job = self._load(session, batch_id)
            self._require(job, "cancel")
            previous = job.status
            self._transition(job, BatchStatus.CANCELLED)
            job.run_token = None
            error_log.log_audit(
                session, job.id, f"Batch was manually cancelled while in {previous} state"
            )
            session.commit()
            self._cleanup_file(job)
            progress_tracker.publish_progress(
                job.id,
                job.processed_records or 0,
                job.total_records or 0,
                status=BatchStatus.CANCELLED.value,
            )
            return OperationResult.ok(self._snapshot(session, job))

    # ------------------------------------------------------------------
    # Processing loop
    # ------------------------------------------------------------------

    def run(self, batch_id: str, run_token: str) -> OperationResult:
        """Stream the batch's file from its cursor to the end (or until halted).

        Never raises: a failure escaping the loop is logged as a SYSTEM entry
        and moves the batch to ``failed``.
        """
        session = self.session_factory()
        progress = BatchProgress()
        try:
            job = self._load(session, batch_id)
            if job.run_token != run_token or job.status not in RUNNING_STATUSES:
                return OperationResult.fail(
                    "BATCH_HALTED",
                    f"Batch {batch_id} is not running under this worker (status {job.status})",
                    data=job,
                )
            file_path = job.file_path
            progress = BatchProgress.from_job(job).with_total(count_rows(file_path))
            progress.apply_to(job)
            session.commit()
            logger.info(
                f"Processing batch {batch_id} from row {progress.last_processed_row} "
                f"of {progress.total_records}"
            )
            self._publish(batch_id, progress, BatchStatus.PROCESSING.value)

            halted = None
            with open_csv(file_path) as handle:
                for source_row in iter_rows(handle, start_after=progress.last_processed_row):
                    halted = self._halt_reason(session, batch_id, run_token)
                    if halted:
                        break
                    progress = self.process_row(session, job, source_row, progress)
                    if progress.processed_records % self.settings.progress_publish_every == 0:
                        self._publish(batch_id, progress, BatchStatus.PROCESSING.value)

            halted = halted or self._halt_reason(session, batch_id, run_token)
            if halted:
                return self._acknowledge_halt(session, batch_id, run_token, progress, halted)
            return self._finish(session, job, run_token, progress)
        except BatchNotFoundError as exc:
            return OperationResult.fail(exc.code, str(exc))
        except Exception as exc:
            logger.error(f"Batch {batch_id} failed during processing: {exc}", exc_info=True)
            session.rollback()
            return self._fail_run(session, batch_id, run_token, exc)
        finally:
            session.close()

    def process_row(
        self,
        session: Session,
        job: BatchJob,
        source_row: SourceRow,
        progress: BatchProgress,
    ) -> BatchProgress:
        """Validate and write one row; return the progress including it.

        Reference data resolved for the row is committed before the product
        write, so a category created here survives even if the product insert
        fails. Only the product and its attribute links are rolled back.
        """
        batch_id = job.id
        row_index = source_row.index
        fields = source_row.fields

        validation = RowValidator(session, default_catalog_id=job.catalog_id).validate(fields)
        for issue in validation.issues:
            error_log.log_batch_error(
                session,
                batch_id,
                issue.message,
                type=issue.type,
                severity=issue.severity,
                row=row_index,
                field=issue.field,
            )
        if not validation.is_valid:
            progress = progress.record_failure(row_index)
            progress.apply_to(job)
            session.commit()
            return progress
        if validation.issues:
            session.commit()

        try:
            refs = EntityResolver(session).resolve_row(fields, job.catalog_id)
            session.commit()

            product = insert_product(session, build_product(fields, refs, batch_id))
            AttributeProcessor(session).apply(product.id, fields, self.settings.attribute_prefix)
            progress = progress.record_success(row_index)
            progress.apply_to(job)
            session.commit()
        except Exception as exc:
            session.rollback()
            message = str(exc).splitlines()[0] if str(exc) else exc.__class__.__name__
            logger.warning(f"Row {row_index} of batch {batch_id} failed to write: {message}")
            error_log.log_batch_error(
                session,
                batch_id,
                message,
                type=ErrorType.PROCESSING,
                severity=Severity.ERROR,
                row=row_index,
            )
            progress = progress.record_failure(row_index)
            progress.apply_to(job)
            session.commit()
        return progress

    @staticmethod
    def _halt_reason(session: Session, batch_id: str, run_token: str) -> str | None:
        """Why the loop must stop before the next row, or None to keep going."""
        row = session.execute(
            select(BatchJob.status, BatchJob.run_token).where(BatchJob.id == batch_id)
        ).one_or_none()
        if row is None:
            return "deleted"
        status, token = row
        if status not in RUNNING_STATUSES:
            return status
        if token != run_token:
            return "superseded"
        return None

    def _acknowledge_halt(
        self,
        session: Session,
        batch_id: str,
        run_token: str,
        progress: BatchProgress,
        reason: str,
    ) -> OperationResult:
        logger.info(f"Batch {batch_id} halted after row {progress.last_processed_row}: {reason}")
        if reason == "deleted":
            return OperationResult.fail("BATCH_HALTED", f"Batch {batch_id} was deleted")

        job = self._load(session, batch_id)
        if job.status == BatchStatus.PAUSED.value and job.run_token == run_token:
            job.last_processed_row = max(job.last_processed_row or 0, progress.last_processed_row)
            self._transition(job, BatchStatus.RESUMABLE)
            error_log.log_audit(
                session,
                batch_id,
                f"Worker stopped after row {job.last_processed_row}; batch is resumable",
            )
            session.commit()
            self._publish(batch_id, progress, BatchStatus.RESUMABLE.value)
        return OperationResult.fail(
            "BATCH_HALTED",
            f"Processing halted ({reason}) after row {progress.last_processed_row}",
            data=self._snapshot(session, job),
        )

    def _finish(
        self, session: Session, job: BatchJob, run_token: str, progress: BatchProgress
    ) -> OperationResult:
        # Any failed row fails the batch, however many rows succeeded.
        succeeded = progress.error_count == 0
        final_status = BatchStatus.COMPLETED if succeeded else BatchStatus.FAILED
        try:
            self._transition(job, final_status)
        except InvalidTransitionError:
            # Paused or cancelled after the last halt check.
            batch_id = job.id
            session.rollback()
            reason = self._halt_reason(session, batch_id, run_token) or job.status
            return self._acknowledge_halt(session, batch_id, run_token, progress, reason)
        if not succeeded:
            job.error_message = (
                f"{progress.error_count} of {progress.processed_records} rows failed"
            )
        error_log.log_audit(
            session,
            job.id,
            f"Processing finished with status {final_status.value}. Stats: "
            f"{progress.processed_records}/{progress.total_records} processed, "
            f"{progress.success_count} successful, {progress.error_count} errors.",
        )
        session.commit()
        self._publish(job.id, progress, final_status.value)
        logger.info(f"Batch {job.id} finished: {progress.as_dict()}")

        if succeeded:
            self._cleanup_file(job)
            return OperationResult.ok(self._snapshot(session, job))
        return OperationResult.fail(
            "BATCH_PROCESSING_ERRORS",
            "Batch processing completed with errors",
            details=error_log.row_error_details(
                session, job.id, self.settings.result_error_limit
            ),
            data=self._snapshot(session, job),
        )

    def _fail_run(
        self, session: Session, batch_id: str, run_token: str, exc: Exception
    ) -> OperationResult:
        """Record a SYSTEM failure and force a still-running batch into ``failed``."""
        try:
            job = session.get(BatchJob, batch_id)
            if job is None:
                return OperationResult.fail("BATCH_PROCESSING_FAILED", str(exc))
            error_log.log_batch_error(
                session,
                batch_id,
                f"System error: {exc}",
                type=ErrorType.SYSTEM,
                severity=Severity.ERROR,
            )
            if job.status in RUNNING_STATUSES and job.run_token == run_token:
                self._transition(job, BatchStatus.FAILED)
                job.error_message = str(exc)
                error_log.log_audit(session, batch_id, "Batch failed after a system error")
            session.commit()
            self._publish(batch_id, BatchProgress.from_job(job), job.status)
            return OperationResult.fail(
                "BATCH_PROCESSING_FAILED",
                "Failed to process CSV file",
                details=str(exc),
                data=self._snapshot(session, job),
            )
        except SQLAlchemyError as db_exc:
            logger.error(f"Could not record failure of batch {batch_id}: {db_exc}", exc_info=True)
            session.rollback()
            return OperationResult.fail("BATCH_PROCESSING_FAILED", str(exc), details=str(db_exc))

    @staticmethod
    def _publish(batch_id: str, progress: BatchProgress, status: str) -> None:
        progress_tracker.publish_progress(
            batch_id,
            progress.processed_records,
            progress.total_records,
            status=status,
            meta=progress.as_dict(),
        )
