"""Immutable progress counters threaded through the row-processing loop."""

from __future__ import annotations

from dataclasses import dataclass, replace

from catalog_importer.db.models.batch_job import BatchJob


@dataclass(frozen=True)
class BatchProgress:
    total_records: int = 0
    processed_records: int = 0
    success_count: int = 0
    error_count: int = 0
    last_processed_row: int = 0

    @classmethod
    def from_job(cls, job: BatchJob) -> "BatchProgress":
        """Continue from the stored counters (additive across resume cycles)."""
        return cls(
            total_records=job.total_records or 0,
            processed_records=job.processed_records or 0,
            success_count=job.success_count or 0,
            error_count=job.error_count or 0,
            last_processed_row=job.last_processed_row or 0,
        )

    def with_total(self, total: int) -> "BatchProgress":
        return replace(self, total_records=max(total, self.processed_records))

    def record_success(self, row: int) -> "BatchProgress":
        return replace(
            self,
            processed_records=self.processed_records + 1,
            success_count=self.success_count + 1,
            last_processed_row=max(self.last_processed_row, row),
            total_records=max(self.total_records, self.processed_records + 1),
        )

    def record_failure(self, row: int) -> "BatchProgress":
        return replace(
            self,
            processed_records=self.processed_records + 1,
            error_count=self.error_count + 1,
            last_processed_row=max(self.last_processed_row, row),
            total_records=max(self.total_records, self.processed_records + 1),
        )

    def apply_to(self, job: BatchJob) -> None:
        job.total_records = self.total_records
        job.processed_records = self.processed_records
        job.success_count = self.success_count
        job.error_count = self.error_count
        job.last_processed_row = self.last_processed_row

    def as_dict(self) -> dict[str, int]:
        return {
            "total": self.total_records,
            "processed": self.processed_records,
            "success": self.success_count,
            "errors": self.error_count,
            "cursor": self.last_processed_row,
        }
