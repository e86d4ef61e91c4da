"""Batch payloads returned by the API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class BatchRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str | None = None
    status: str = Field(..., description="pending|processing|paused|resumable|retrying|completed|failed|cancelled")
    catalog_id: int | None = None
    original_filename: str | None = None
    progress: float | None = Field(None, description="0-1 range for UI progress bars")
    message: str | None = None
    total_records: int = 0
    processed_records: int = 0
    success_count: int = 0
    error_count: int = 0
    last_processed_row: int = 0
    retry_count: int = 0
    max_retries: int = 0
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    paused_at: datetime | None = None
    resumed_at: datetime | None = None
    completed_at: datetime | None = None
    canceled_at: datetime | None = None
    failed_at: datetime | None = None
    meta: dict | None = None


class BatchRowErrorRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    row: int | None = None
    field: str | None = None
    type: str
    severity: str
    message: str
    created_at: datetime | None = None


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Any = None


class OperationResponse(BaseModel):
    """Envelope for lifecycle actions; ``success`` is false when rows failed."""

    success: bool
    message: str | None = None
    batch: BatchRead | None = None
    error: ErrorBody | None = None
