from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager

from fastapi import Body, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse

from . import formats, tools
from .config import Settings
from .errors import NotFoundError, ServiceError
from .events import event_stream
from .models import JobStatus
from .orchestrator import ConversionService

logger = logging.getLogger(__name__)


def _cleanup_loop(service: ConversionService, stop: threading.Event) -> None:
    while not stop.wait(service.settings.cleanup_interval_seconds):
        try:
            removed = service.cleanup_expired()
            if removed:
                logger.info("Cleaned %s expired jobs", removed)
        except Exception:
            logger.exception("Job cleanup failed")


def create_app(settings: Settings | None = None, service: ConversionService | None = None) -> FastAPI:
    service = service or ConversionService(settings or Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        report = tools.check_dependencies()
        if report["missing_packages"]:
            logger.warning(
                "Missing optional tools %s; some conversions will use fallbacks. %s",
                ", ".join(report["missing_commands"]),
                tools.installation_hint(report["missing_packages"]),
            )
        stop = threading.Event()
        cleanup_thread = threading.Thread(target=_cleanup_loop, args=(service, stop), daemon=True)
        cleanup_thread.start()
        try:
            yield
        finally:
            stop.set()
            cleanup_thread.join(timeout=2)
            service.shutdown()

    app = FastAPI(title="File Converter", version="0.1.0", lifespan=lifespan)
    app.state.service = service

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/api/diagnostics")
    def diagnostics() -> JSONResponse:
        return JSONResponse(tools.get_diagnostics())

    @app.get("/api/formats")
    def supported_formats() -> JSONResponse:
        inputs = formats.supported_input_formats()
        return JSONResponse(
            {
                "inputFormats": inputs,
                "outputFormats": {fmt: formats.supported_output_formats(fmt) for fmt in inputs},
            }
        )

    @app.post("/api/upload")
    async def upload(file: UploadFile = File(...)) -> JSONResponse:
        if not file.filename:
            raise HTTPException(status_code=400, detail="Filename is missing")

        data = await file.read()
        limit = service.settings.upload_limit_bytes
        if len(data) > limit:
            raise HTTPException(
                status_code=413,
                detail=f"File is too large. Limit is {service.settings.max_upload_mb} MB",
            )

        uploaded = service.save_upload(file.filename, data)
        return JSONResponse({"success": True, "message": "File uploaded successfully", "file": uploaded})

    @app.post("/api/convert")
    def convert(payload: dict = Body(...)) -> JSONResponse:
        job = service.start_conversion(
            file_path=payload.get("filePath"),
            output_format=payload.get("outputFormat"),
            options=payload.get("options") or {},
            original_filename=payload.get("originalFilename"),
        )
        return JSONResponse({"success": True, "message": "Conversion started", "jobId": job.job_id})

    @app.get("/api/jobs")
    def list_jobs(limit: int = 20) -> JSONResponse:
        return JSONResponse({"items": [job.to_dict() for job in service.list_jobs(limit=limit)]})

    @app.get("/api/progress/{job_id}")
    def progress(job_id: str) -> JSONResponse:
        return JSONResponse(service.get_job(job_id).to_dict())

    @app.post("/api/cancel/{job_id}")
    def cancel(job_id: str) -> JSONResponse:
        result = service.cancel(job_id)
        return JSONResponse(
            {
                **result.job.to_dict(),
                "success": True,
                "message": result.message,
                "processKilled": result.process_killed,
                "fileDeleted": result.file_deleted,
            }
        )

    @app.get("/api/download/{job_id}")
    def download(job_id: str):
        job = service.get_job(job_id)
        if job.status != JobStatus.COMPLETED:
            return JSONResponse(
                {"success": False, "message": f"Conversion job is {job.status.value}", "progress": job.progress},
                status_code=400,
            )
        if not job.output_path or not job.output_path.exists():
            raise NotFoundError("Converted file not found")

        return FileResponse(
            path=job.output_path,
            filename=job.output_path.name,
            media_type=formats.content_type_for(job.output_path),
        )

    @app.get("/api/events")
    async def events(request: Request) -> StreamingResponse:
        return StreamingResponse(
            event_stream(service.broadcaster, service.settings.keepalive_seconds, request.is_disconnected),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    return app


app = create_app()
