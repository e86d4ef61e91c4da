"""Track a CSV batch upload and its processing lifecycle."""

import uuid

from sqlalchemy import Column, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from catalog_importer.core.enums import BatchStatus
from catalog_importer.db.base import Base, JSONType


class BatchJob(Base):
    __tablename__ = "batch_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    description = Column(Text)
    status = Column(String(32), nullable=False, default=BatchStatus.PENDING.value, index=True)
    catalog_id = Column(Integer, ForeignKey("catalogs.id", ondelete="SET NULL"))

    # Stored upload
    file_path = Column(Text)
    original_filename = Column(String(255))

    # Progress counters; last_processed_row is the resume cursor
    total_records = Column(Integer, nullable=False, default=0)
    processed_records = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    last_processed_row = Column(Integer, nullable=False, default=0)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)

    # Identifies the worker run that currently owns the batch
    run_token = Column(String(36))
    error_message = Column(Text)
    meta = Column(JSONType)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    started_at = Column(DateTime(timezone=True))
    paused_at = Column(DateTime(timezone=True))
    resumed_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    canceled_at = Column(DateTime(timezone=True))
    failed_at = Column(DateTime(timezone=True))

    errors = relationship(
        "BatchRowError",
        back_populates="batch",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<BatchJob {self.id} {self.status} {self.processed_records}/{self.total_records}>"
