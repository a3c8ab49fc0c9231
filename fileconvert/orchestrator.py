from __future__ import annotations

import logging
import shutil
import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

from . import formats
from .config import Settings
from .converters import Converter, default_converters
from .errors import CancellationError, ConversionError, NotFoundError, UnsupportedConversionError, ValidationError
from .events import ProgressBroadcaster
from .job_registry import JobRegistry
from .models import ConversionJob, JobStatus
from .processes import ProcessTable

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _sanitize_filename(name: str) -> str:
    clean = (name or "").strip().replace("\\", "_").replace("/", "_")
    clean = clean.replace("\n", "_").replace("\r", "_")
    return clean or "upload"


@dataclass
class CancelResult:
    job: ConversionJob
    process_killed: bool
    file_deleted: bool

    @property
    def message(self) -> str:
        if self.process_killed:
            return "Conversion cancelled successfully"
        return "Job marked as cancelled, but process was not found"


class ConversionService:
    """Wires a conversion request to a job, a converter, the registry and the broadcaster."""

    def __init__(
        self,
        settings: Settings,
        registry: JobRegistry | None = None,
        broadcaster: ProgressBroadcaster | None = None,
        processes: ProcessTable | None = None,
        converters: dict[str, Converter] | None = None,
    ):
        self.settings = settings
        self.settings.ensure_dirs()
        self.registry = registry or JobRegistry()
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self.processes = processes or ProcessTable()
        self.converters = converters or default_converters(settings)

        self.executor = ThreadPoolExecutor(max_workers=settings.max_workers, thread_name_prefix="convert")
        self._futures_lock = threading.RLock()
        self._job_futures: dict[str, Future] = {}
        self._progress_lock = threading.Lock()

    # uploads

    def save_upload(self, filename: str, data: bytes) -> dict[str, Any]:
        if not filename:
            raise ValidationError("No file uploaded")

        name = _sanitize_filename(filename)
        file_type = formats.detect_format(name)
        supported = formats.supported_input_formats()
        if file_type not in supported:
            raise ValidationError(
                f"Unsupported file format: {file_type or 'unknown'}. Supported formats: {', '.join(supported)}"
            )
        if not data:
            raise ValidationError("Uploaded file is empty")

        path = self.settings.upload_dir / f"{uuid4().hex}_{name}"
        path.write_bytes(data)
        logger.info("Uploaded %s as %s, size=%s bytes", name, path.name, len(data))
        return {
            "filename": path.name,
            "originalName": filename,
            "path": str(path),
            "size": len(data),
            "fileType": file_type,
            "possibleOutputFormats": formats.supported_output_formats(file_type),
        }

    # conversions

    def _resolve_upload(self, file_path: str) -> Path:
        path = Path(file_path).resolve()
        upload_root = self.settings.upload_dir.resolve()
        if upload_root not in path.parents:
            raise ValidationError("File path must point into the upload directory")
        if not path.is_file():
            raise NotFoundError("File not found")
        return path

    def start_conversion(
        self,
        file_path: str | None,
        output_format: str | None,
        options: dict | None = None,
        original_filename: str | None = None,
    ) -> ConversionJob:
        if not file_path or not output_format:
            raise ValidationError("File path and output format are required")
        if not isinstance(file_path, str) or not isinstance(output_format, str):
            raise ValidationError("File path and output format must be strings")
        if options is not None and not isinstance(options, dict):
            raise ValidationError("Options must be an object")
        if original_filename is not None and not isinstance(original_filename, str):
            raise ValidationError("Original filename must be a string")

        input_path = self._resolve_upload(file_path)
        output_format = output_format.strip().lower()
        input_format = formats.detect_format(input_path)
        if not formats.is_supported(input_format, output_format):
            raise UnsupportedConversionError(
                input_format, output_format, formats.supported_output_formats(input_format)
            )

        job = ConversionJob(
            job_id=str(uuid4()),
            original_filename=original_filename or input_path.name,
            input_path=input_path,
            input_format=input_format,
            output_format=output_format,
            created_at=_utcnow(),
            status=JobStatus.PROCESSING,
        )
        job = self.registry.create(job)
        logger.info("Job %s: %s -> %s started", job.job_id, input_path.name, output_format)

        with self._futures_lock:
            self._job_futures[job.job_id] = self.executor.submit(self._run_job, job.job_id, dict(options or {}))
        return job

    def _on_progress(self, job_id: str, progress: int) -> None:
        with self._progress_lock:
            updated = self.registry.set_progress(job_id, progress)
            if updated is not None:
                self.broadcaster.publish_progress(job_id, updated.progress)

    def _run_job(self, job_id: str, options: dict) -> None:
        try:
            finished = self._execute(job_id, options)
            if finished is not None:
                self.broadcaster.publish_status(job_id, finished.status.value)
        finally:
            with self._futures_lock:
                self._job_futures.pop(job_id, None)

    def _execute(self, job_id: str, options: dict) -> ConversionJob | None:
        job = self.registry.get(job_id)
        if job is None or job.is_terminal:
            return None

        family = formats.family_for(job.input_format)
        converter = self.converters.get(family) if family else None
        job_output_dir = self.settings.output_dir / job_id

        try:
            if converter is None:
                raise ConversionError(f"Conversion for format {job.input_format} is not implemented")
            output_path = converter(
                job.input_path,
                job.output_format,
                job_output_dir,
                options=options,
                progress_cb=lambda value: self._on_progress(job_id, value),
                runner=self.processes.runner(job_id),
            )
            finished = self.registry.finish(job_id, JobStatus.COMPLETED, output_path=Path(output_path))
            if finished is None:
                logger.info("Job %s finished after cancellation; discarding output", job_id)
                shutil.rmtree(job_output_dir, ignore_errors=True)
            else:
                logger.info("Job %s completed: %s", job_id, Path(output_path).name)
        except CancellationError:
            finished = self.registry.finish(job_id, JobStatus.CANCELLED)
            shutil.rmtree(job_output_dir, ignore_errors=True)
            logger.info("Job %s cancelled", job_id)
        except ConversionError as exc:
            finished = self.registry.finish(job_id, JobStatus.FAILED, error=str(exc))
            logger.warning("Job %s failed: %s", job_id, exc)
        except Exception as exc:
            finished = self.registry.finish(job_id, JobStatus.FAILED, error=str(exc) or type(exc).__name__)
            logger.exception("Job %s failed unexpectedly", job_id)
        finally:
            self.delete_file(job.input_path)
            self.processes.forget(job_id)
        return finished

    def cancel(self, job_id: str) -> CancelResult:
        job = self.registry.ensure_cancellable(job_id)

        process_killed = False
        with self._futures_lock:
            future = self._job_futures.get(job_id)
            # a job still waiting for a worker never spawns anything
            if future and future.cancel():
                self._job_futures.pop(job_id, None)
            else:
                process_killed = self.processes.kill(job_id)

        job = self.registry.force_cancel(job_id)
        # a completion that landed before the forced cancel leaves its artifact here
        shutil.rmtree(self.settings.output_dir / job_id, ignore_errors=True)
        self.broadcaster.publish_status(job_id, job.status.value)
        file_deleted = self.delete_file(job.input_path)
        logger.info("Job %s cancelled by request (process killed: %s)", job_id, process_killed)
        return CancelResult(job=job, process_killed=process_killed, file_deleted=file_deleted)

    def get_job(self, job_id: str) -> ConversionJob:
        job = self.registry.get(job_id)
        if job is None:
            raise NotFoundError(f"Job with ID {job_id} not found")
        return job

    def list_jobs(self, limit: int = 50) -> list[ConversionJob]:
        return self.registry.list_jobs(limit=limit)

    def wait(self, job_id: str, timeout: float | None = None) -> None:
        with self._futures_lock:
            future = self._job_futures.get(job_id)
        if future is None:
            return
        try:
            future.exception(timeout=timeout)
        except CancelledError:
            pass

    # housekeeping

    @staticmethod
    def delete_file(path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            logger.info("File not found for deletion: %s", path)
            return False
        except OSError:
            logger.exception("Error deleting file %s", path)
            return False
        logger.info("Deleted file: %s", path)
        return True

    def cleanup_expired(self) -> int:
        hours = self.settings.job_retention_hours
        if hours <= 0:
            return 0
        expired = self.registry.expire(_utcnow() - timedelta(hours=hours))
        output_root = self.settings.output_dir.resolve()
        for job in expired:
            self.processes.forget(job.job_id)
            job_dir = (output_root / job.job_id).resolve()
            # only ever delete inside the output directory
            if output_root in job_dir.parents:
                shutil.rmtree(job_dir, ignore_errors=True)
        return len(expired)

    def shutdown(self) -> None:
        killed = self.processes.kill_all()
        if killed:
            logger.info("Killed %s running conversions on shutdown", killed)
        self.executor.shutdown(wait=False, cancel_futures=True)
