import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from api.uploads import create_job_from_upload
from common import database, storage
from common.config import configure_logging, ensure_directories, settings
from common.errors import NotFound, NotReady, StoreError, ValidationError
from common.job_schema import Job, JobStatus
from worker.cleanup import recover_stalled_jobs
from worker.dispatcher import Dispatcher
from worker.scheduler import start_background_scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    ensure_directories()
    # A StoreError here aborts startup: the API must not serve without its database.
    database.init_db()
    recover_stalled_jobs()

    dispatcher = Dispatcher()
    app.state.dispatcher = dispatcher
    scheduler = start_background_scheduler(dispatcher) if settings.run_background_worker else None
    logger.info("%s started (%s)", settings.service_name, settings.environment)

    yield

    if scheduler is not None:
        scheduler.shutdown(wait=False)
    dispatcher.shutdown(wait=False)
    database.dispose()
    logger.info("%s shut down", settings.service_name)


app = FastAPI(
    title="Media Compression API",
    description="Upload images, video, audio or PDF files and download compressed versions.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


# ---------- Error mapping ----------

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(NotReady)
async def not_ready_handler(request: Request, exc: NotReady) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc), "status": exc.status})


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    logger.error("Job store error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": "Job store unavailable"})


# ---------- API endpoints ----------

@app.post("/api/compress")
def compress(
    file: Optional[UploadFile] = File(None),
    quality: Optional[str] = Form(None),
    output_format: Optional[str] = Form(None, alias="format"),
    width: Optional[str] = Form(None),
    height: Optional[str] = Form(None),
    bitrate: Optional[str] = Form(None),
    pdf_quality: Optional[str] = Form(None, alias="pdfQuality"),
    dpi: Optional[str] = Form(None),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    form = {
        "quality": quality,
        "format": output_format,
        "width": width,
        "height": height,
        "bitrate": bitrate,
        "pdfQuality": pdf_quality,
        "dpi": dpi,
    }
    job = create_job_from_upload(
        file.filename if file else None,
        file.file if file else None,
        form,
    )

    # Start right away instead of waiting for the next dispatcher tick.
    # If this races with a tick, the pending claim lets only one of them run it.
    try:
        dispatcher.submit(job.id)
    except Exception:
        logger.exception("Immediate dispatch of job %s failed; the next tick will pick it up", job.id)

    return {
        "success": True,
        "jobId": job.id,
        "fileId": job.external_id,
        "fileName": job.display_name,
        "fileType": job.media_kind.value,
        "originalSize": job.original_size,
        "status": "processing",
        "message": f"File uploaded. Compression started. Check /api/status/{job.external_id} for progress.",
    }


@app.get("/api/status/{file_id}")
def read_status(file_id: str):
    job = storage.get_latest_job(file_id)
    return job_status_payload(job)


@app.get("/api/download/{file_id}")
def download(file_id: str):
    job = storage.get_latest_job(file_id)
    if job.status != JobStatus.COMPLETED:
        raise NotReady("Compression not completed", status=job.status.value)
    path = Path(job.result_path) if job.result_path else None
    if path is None or not path.is_file():
        raise NotFound("Compressed file not found")
    return FileResponse(path, media_type="application/octet-stream", filename=job.display_name)


@app.get("/api/health")
def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": settings.service_name,
    }


def job_status_payload(job: Job) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "jobId": job.id,
        "fileId": job.external_id,
        "fileName": job.display_name,
        "fileType": job.media_kind.value,
        "status": job.status.value,
        "originalSize": job.original_size,
        "createdAt": _isoformat(job.created_at),
        "updatedAt": _isoformat(job.updated_at),
    }
    if job.status == JobStatus.COMPLETED:
        payload["compressedSize"] = job.compressed_size
        payload["compressionRatio"] = job.compression_ratio
    if job.status == JobStatus.FAILED:
        payload["error"] = job.error_message
    return payload


def _isoformat(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host=settings.host, port=settings.port)
