"""Export job control endpoints."""

import logging

from fastapi import APIRouter, status
from fastapi.responses import FileResponse, RedirectResponse

from lemona_export.api.deps import Orchestrator
from lemona_export.exceptions import ExportError, JobNotCompletedError
from lemona_export.schemas.export import (
    CancelExportResponse,
    ExportRequest,
    JobListResponse,
    JobStatusResponse,
    StartExportResponse,
)
from lemona_export.services.export_job import JobStatus
from lemona_export.services.storage_service import VIDEO_CONTENT_TYPE, LocalStorageService

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/start", response_model=StartExportResponse)
async def start_export(request: ExportRequest, orchestrator: Orchestrator) -> StartExportResponse:
    """
    Validate a timeline and start exporting it.

    Returns immediately with the job id; poll /status/{job_id} for progress.
    """
    job = orchestrator.submit(request)
    return StartExportResponse(job_id=job.id, message="Export job started")


@router.get("/status/{job_id}", response_model=JobStatusResponse)
async def get_export_status(job_id: str, orchestrator: Orchestrator) -> JobStatusResponse:
    job = orchestrator.status(job_id)
    return JobStatusResponse(job=job.to_response())


@router.delete("/cancel/{job_id}", response_model=CancelExportResponse)
async def cancel_export(job_id: str, orchestrator: Orchestrator) -> CancelExportResponse:
    if not orchestrator.cancel(job_id):
        raise ExportError(
            f"Export job {job_id} has already finished",
            code="CONFLICT",
            status_code=status.HTTP_409_CONFLICT,
        )
    return CancelExportResponse(success=True, message="Export cancellation requested")


@router.get("/jobs", response_model=JobListResponse)
async def list_export_jobs(orchestrator: Orchestrator) -> JobListResponse:
    return JobListResponse(jobs=[job.to_summary() for job in orchestrator.list_jobs()])


@router.get("/download/{job_id}")
async def download_export(job_id: str, orchestrator: Orchestrator) -> RedirectResponse:
    """Redirect to the signed URL of a completed export."""
    job = orchestrator.get_job(job_id)
    if job.status != JobStatus.COMPLETED or not job.download_url:
        raise JobNotCompletedError(f"Export job {job_id} is {job.status.value}")
    return RedirectResponse(job.download_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@router.get("/files/{storage_key:path}")
async def serve_local_file(storage_key: str, orchestrator: Orchestrator) -> FileResponse:
    """Serve artifacts stored by LocalStorageService (development only)."""
    storage = orchestrator.storage
    if not isinstance(storage, LocalStorageService):
        raise ExportError("Not found", code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)

    path = storage.get_file_path(storage_key)
    if not path.is_file():
        raise ExportError(f"File not found: {storage_key}", code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)
    return FileResponse(path, media_type=VIDEO_CONTENT_TYPE, filename=path.name)
