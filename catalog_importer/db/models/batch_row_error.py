"""Append-only per-row/per-operation issue log for a batch."""

from sqlalchemy import Column, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from catalog_importer.db.base import Base


class BatchRowError(Base):
    __tablename__ = "batch_row_errors"

    id = Column(Integer, primary_key=True)
    batch_id = Column(
        String(36),
        ForeignKey("batch_jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    row = Column(Integer)
    field = Column(String(255))
    type = Column(String(32), nullable=False)
    severity = Column(String(32), nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    batch = relationship("BatchJob", back_populates="errors")

    __table_args__ = (Index("ix_batch_row_errors_batch_row", "batch_id", "row"),)
