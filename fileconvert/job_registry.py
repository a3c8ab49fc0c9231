from __future__ import annotations

import dataclasses
import threading
from datetime import datetime, timezone
from typing import Callable

from .errors import JobStateError, NotFoundError
from .models import ConversionJob, JobStatus, TERMINAL_STATUSES


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobRegistry:
    """In-memory store of conversion jobs and owner of their state machine.

    Every read returns a snapshot copy; every write goes through the registry
    lock, so progress callbacks, finalization and cancellation never lose
    each other's updates.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._jobs: dict[str, ConversionJob] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs

    def create(self, job: ConversionJob) -> ConversionJob:
        with self._lock:
            if job.job_id in self._jobs:
                raise ValueError(f"Job {job.job_id} already exists")
            self._jobs[job.job_id] = dataclasses.replace(job)
            return dataclasses.replace(job)

    def get(self, job_id: str) -> ConversionJob | None:
        with self._lock:
            record = self._jobs.get(job_id)
            return dataclasses.replace(record) if record else None

    def list_jobs(self, limit: int = 50) -> list[ConversionJob]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda x: x.created_at, reverse=True)
            return [dataclasses.replace(job) for job in jobs[: max(1, limit)]]

    def _require(self, job_id: str) -> ConversionJob:
        record = self._jobs.get(job_id)
        if record is None:
            raise NotFoundError(f"Job with ID {job_id} not found")
        return record

    def update(self, job_id: str, mutator: Callable[[ConversionJob], None]) -> ConversionJob:
        with self._lock:
            record = self._require(job_id)
            if record.is_terminal:
                raise JobStateError(f"Job is already {record.status.value}")
            mutator(record)
            return dataclasses.replace(record)

    def set_progress(self, job_id: str, progress: int) -> ConversionJob | None:
        """Record progress; returns the snapshot only when the value moved forward."""
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None or record.status != JobStatus.PROCESSING:
                return None
            value = max(0, min(int(progress), 100))
            if value <= record.progress:
                return None
            record.progress = value
            return dataclasses.replace(record)

    def finish(
        self,
        job_id: str,
        status: JobStatus,
        output_path=None,
        error: str | None = None,
    ) -> ConversionJob | None:
        """Move a processing job to a terminal status; the first terminal write wins."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status} is not a terminal status")
        with self._lock:
            record = self._require(job_id)
            if record.status != JobStatus.PROCESSING:
                return None
            record.status = status
            record.completed_at = _utcnow()
            if status == JobStatus.COMPLETED:
                record.progress = 100
                record.output_path = output_path
            elif status == JobStatus.FAILED:
                record.error = error or "Unknown error"
            return dataclasses.replace(record)

    def ensure_cancellable(self, job_id: str) -> ConversionJob:
        with self._lock:
            record = self._require(job_id)
            if record.is_terminal:
                raise JobStateError(f"Job is already {record.status.value}")
            return dataclasses.replace(record)

    def force_cancel(self, job_id: str) -> ConversionJob:
        # Overrides whatever terminal status a racing finalization may have written.
        with self._lock:
            record = self._require(job_id)
            record.status = JobStatus.CANCELLED
            record.error = None
            record.output_path = None
            record.completed_at = _utcnow()
            return dataclasses.replace(record)

    def expire(self, cutoff: datetime) -> list[ConversionJob]:
        removed: list[ConversionJob] = []
        with self._lock:
            for job_id, record in list(self._jobs.items()):
                if record.is_terminal and record.completed_at and record.completed_at < cutoff:
                    removed.append(self._jobs.pop(job_id))
        return removed
