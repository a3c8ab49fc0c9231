from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


@dataclass
class ConversionJob:
    job_id: str
    original_filename: str
    input_path: Path
    input_format: str
    output_format: str
    created_at: datetime
    status: JobStatus = JobStatus.PROCESSING
    progress: int = 0
    output_path: Path | None = None
    error: str | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "jobId": self.job_id,
            "status": self.status.value,
            "progress": self.progress,
            "originalFilename": self.original_filename,
            "inputFormat": self.input_format,
            "outputFormat": self.output_format,
            "createdAt": self.created_at.isoformat(),
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.completed_at is not None:
            payload["completedAt"] = self.completed_at.isoformat()
        return payload
