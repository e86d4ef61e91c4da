"""Batch upload endpoints: create, attach a CSV, drive the lifecycle, inspect errors."""

from __future__ import annotations

import logging
import time

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Response, UploadFile, status
from fastapi.responses import JSONResponse

from catalog_importer.api.dependencies.db import get_batch_engine
from catalog_importer.api.routers.batch_helpers import (
    operation_response,
    raise_for_result,
    serialize_batch,
)
from catalog_importer.api.schemas.batch import BatchRead, BatchRowErrorRead
from catalog_importer.core.enums import ErrorType, Severity
from catalog_importer.services.batch_engine import BatchEngine
from catalog_importer.services.progress_tracker import fetch_progress

logger = logging.getLogger(__name__)

router = APIRouter()


def _csv_download(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post(
    "/",
    summary="Create a batch, optionally attaching and starting a CSV",
    status_code=status.HTTP_201_CREATED,
)
def create_batch(
    name: str = Form(...),
    description: str | None = Form(None),
    catalog_id: int | None = Form(None),
    max_retries: int | None = Form(None),
    start: bool = Form(True),
    file: UploadFile | None = File(None),
    engine: BatchEngine = Depends(get_batch_engine),
) -> JSONResponse:
    """Create a pending batch; with a file attached and ``start`` set it is queued at once."""
    result = engine.create_batch(
        name, description=description, catalog_id=catalog_id, max_retries=max_retries
    )
    raise_for_result(result)
    batch_id = result.data.id

    if file is not None and file.filename:
        attached = engine.attach_file(batch_id, file.file, file.filename)
        if not attached.success:
            engine.delete_batch(batch_id)
        raise_for_result(attached)
        result = attached
        if start:
            result = engine.start(batch_id)
    return operation_response(result, status_code=status.HTTP_201_CREATED)


@router.post("/{batch_id}/file", summary="Attach (or replace) the CSV of a pending batch")
def attach_file(
    batch_id: str,
    file: UploadFile = File(...),
    engine: BatchEngine = Depends(get_batch_engine),
) -> JSONResponse:
    return operation_response(engine.attach_file(batch_id, file.file, file.filename))


@router.get("/", summary="List batches newest first", response_model=list[BatchRead])
def list_batches(
    limit: int = Query(50, ge=1, le=500, description="Maximum number of batches to return"),
    status_filter: str | None = Query(None, alias="status", description="Filter by batch status"),
    engine: BatchEngine = Depends(get_batch_engine),
) -> list[BatchRead]:
    result = engine.list_batches(status=status_filter, limit=limit)
    raise_for_result(result)
    return [serialize_batch(job, fetch_progress(job.id)) for job in result.data]


@router.get("/template", summary="Download a CSV template")
def download_template(
    catalog_id: int | None = Query(None, description="Pre-fill the template for this catalog"),
    engine: BatchEngine = Depends(get_batch_engine),
) -> Response:
    result = engine.generate_template(catalog_id)
    if not result.success:
        logger.error(f"Template generation failed: {result.message}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "code": "TEMPLATE_GENERATION_FAILED",
                "message": "Failed to generate template. Please try again later.",
            },
        )
    label = (result.data["catalog_name"] or "generic").replace(" ", "_")
    return _csv_download(
        result.data["content"], f"product_upload_template_{label}_{int(time.time())}.csv"
    )


@router.get("/{batch_id}", summary="Fetch batch state and latest progress", response_model=BatchRead)
def get_batch(batch_id: str, engine: BatchEngine = Depends(get_batch_engine)) -> BatchRead:
    result = engine.get_batch(batch_id)
    raise_for_result(result)
    return serialize_batch(result.data, fetch_progress(batch_id))


@router.get(
    "/{batch_id}/errors",
    summary="List the batch's error log",
    response_model=list[BatchRowErrorRead],
)
def list_errors(
    batch_id: str,
    type: ErrorType | None = Query(None),
    severity: Severity | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    engine: BatchEngine = Depends(get_batch_engine),
) -> list[BatchRowErrorRead]:
    result = engine.list_errors(batch_id, type=type, severity=severity, limit=limit, offset=offset)
    raise_for_result(result)
    return [BatchRowErrorRead.model_validate(entry) for entry in result.data]


@router.get("/{batch_id}/errors/summary", summary="Count log entries by type and severity")
def error_summary(batch_id: str, engine: BatchEngine = Depends(get_batch_engine)) -> dict:
    result = engine.error_summary(batch_id)
    raise_for_result(result)
    return {"batch_id": batch_id, "summary": result.data}


@router.get("/{batch_id}/errors/export", summary="Download the error log as CSV")
def export_errors(batch_id: str, engine: BatchEngine = Depends(get_batch_engine)) -> Response:
    result = engine.export_errors(batch_id)
    raise_for_result(result)
    return _csv_download(result.data, f"batch_{batch_id}_errors.csv")


@router.post("/{batch_id}/start", summary="Start processing a pending batch")
def start_batch(batch_id: str, engine: BatchEngine = Depends(get_batch_engine)) -> JSONResponse:
    return operation_response(engine.start(batch_id))


@router.post("/{batch_id}/pause", summary="Pause a processing batch")
def pause_batch(batch_id: str, engine: BatchEngine = Depends(get_batch_engine)) -> JSONResponse:
    return operation_response(engine.pause(batch_id))


@router.post("/{batch_id}/resume", summary="Resume a paused batch from its cursor")
def resume_batch(batch_id: str, engine: BatchEngine = Depends(get_batch_engine)) -> JSONResponse:
    return operation_response(engine.resume(batch_id))


@router.post("/{batch_id}/retry", summary="Retry a failed batch from the first row")
def retry_batch(batch_id: str, engine: BatchEngine = Depends(get_batch_engine)) -> JSONResponse:
    return operation_response(engine.retry(batch_id))


@router.post("/{batch_id}/cancel", summary="Cancel a batch")
def cancel_batch(batch_id: str, engine: BatchEngine = Depends(get_batch_engine)) -> JSONResponse:
    return operation_response(engine.cancel(batch_id))


@router.delete("/{batch_id}", summary="Delete a batch, its log and its stored file")
def delete_batch(batch_id: str, engine: BatchEngine = Depends(get_batch_engine)) -> JSONResponse:
    return operation_response(engine.delete_batch(batch_id))
