"""Shared helpers for shaping batch responses."""
from __future__ import annotations

from fastapi import HTTPException, status
from fastapi.responses import JSONResponse

from catalog_importer.api.schemas.batch import BatchRead, ErrorBody, OperationResponse
from catalog_importer.db.models.batch_job import BatchJob
from catalog_importer.services.results import OperationResult

STATUS_BY_CODE = {
    "BATCH_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "CATALOG_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "INVALID_BATCH_STATE": status.HTTP_409_CONFLICT,
    "RETRY_LIMIT_REACHED": status.HTTP_409_CONFLICT,
    "FILE_PATH_MISSING": status.HTTP_409_CONFLICT,
    "FILE_NOT_FOUND": status.HTTP_409_CONFLICT,
    "NO_FILE_UPLOADED": status.HTTP_400_BAD_REQUEST,
    "INVALID_FILE_TYPE": status.HTTP_400_BAD_REQUEST,
    "MISSING_BATCH_NAME": status.HTTP_400_BAD_REQUEST,
    "INVALID_FILTER": status.HTTP_400_BAD_REQUEST,
    "FILE_TOO_LARGE": status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    "STORE_UNAVAILABLE": status.HTTP_503_SERVICE_UNAVAILABLE,
    "DISPATCH_FAILED": status.HTTP_503_SERVICE_UNAVAILABLE,
    "TEMPLATE_GENERATION_FAILED": status.HTTP_500_INTERNAL_SERVER_ERROR,
}
# The batch itself was processed; the outcome lives in the response body.
PROCESSED_CODES = {"BATCH_PROCESSING_ERRORS", "BATCH_PROCESSING_FAILED", "BATCH_HALTED"}


def serialize_batch(job: BatchJob, progress_payload: dict | None = None) -> BatchRead:
    """Combine DB state + cached progress snapshot into a response schema."""
    progress_payload = progress_payload or {}
    batch = BatchRead.model_validate(job)

    calculated_progress = progress_payload.get("progress")
    if calculated_progress is None and job.total_records:
        calculated_progress = (job.processed_records or 0) / job.total_records

    message = progress_payload.get("message")
    if not message:
        total_display = job.total_records if job.total_records else "?"
        message = f"Processed {job.processed_records or 0}/{total_display} rows"

    return batch.model_copy(update={"progress": calculated_progress, "message": message})


def raise_for_result(result: OperationResult) -> None:
    """Translate a failed result that should not produce a 200 into an HTTPException."""
    if result.success or result.code in PROCESSED_CODES:
        return
    raise HTTPException(
        status_code=STATUS_BY_CODE.get(result.code, status.HTTP_400_BAD_REQUEST),
        detail=result.error,
    )


def operation_response(result: OperationResult, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    """Render a lifecycle result, or raise when it maps to an HTTP error."""
    raise_for_result(result)
    batch = serialize_batch(result.data) if isinstance(result.data, BatchJob) else None
    payload = OperationResponse(
        success=result.success,
        message=result.message,
        batch=batch,
        error=ErrorBody(**result.error) if result.error else None,
    )
    return JSONResponse(status_code=status_code, content=payload.model_dump(mode="json"))
