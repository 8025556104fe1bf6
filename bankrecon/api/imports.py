"""
/api/v1 import endpoints.
Upload, poll, confirm/reject, cancel and delete statement import jobs.
"""

import structlog
from fastapi import APIRouter, Depends, File, Query, Response, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from bankrecon.dependencies import get_artifact_store, get_db, verify_api_key
from bankrecon.pipeline.intake import create_import_job
from bankrecon.pipeline.orchestrator import get_job_status
from bankrecon.review.queue import cancel_job, confirm_job, delete_job, reject_job
from bankrecon.schemas.jobs import ImportUploadResponse, JobStatusResponse, ProcessPendingResponse
from bankrecon.storage.artifact_store import ArtifactStore

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["imports"], dependencies=[Depends(verify_api_key)])


@router.post(
    "/accounts/{account_id}/imports",
    response_model=ImportUploadResponse,
    status_code=status.HTTP_201_CREATED,
)
async def upload_statement(
    account_id: str,
    file: UploadFile = File(...),
    overwrite: bool = Query(False),
    session: AsyncSession = Depends(get_db),
    store: ArtifactStore = Depends(get_artifact_store),
):
    """Upload a CSV, CAMT.053 XML or PDF statement for import."""
    file_bytes = await file.read()
    job = await create_import_job(
        session,
        store,
        account_id,
        file_bytes,
        file.filename or "statement",
        overwrite=overwrite,
        content_type=file.content_type,
    )

    # Enqueue for background processing
    try:
        from bankrecon.worker.jobs import enqueue_import
        enqueue_import(str(job.job_id))
    except Exception as enqueue_err:
        # Redis unavailable: the job stays PENDING and the pool picks it up
        logger.warning("enqueue_failed", job_id=str(job.job_id), error=str(enqueue_err))

    return ImportUploadResponse(
        job_id=str(job.job_id),
        account_id=str(job.account_id),
        file_name=job.original_filename,
        file_format=job.file_format,
        file_size_bytes=job.file_size_bytes,
        file_checksum=job.file_checksum,
        status=job.status,
        advisories=job.advisories_json or [],
    )


@router.get("/imports/{job_id}", response_model=JobStatusResponse)
async def import_status(job_id: str, session: AsyncSession = Depends(get_db)):
    """Poll an import job."""
    return await get_job_status(session, job_id)


@router.post("/imports/{job_id}/confirm", response_model=JobStatusResponse)
async def confirm_import(job_id: str, session: AsyncSession = Depends(get_db)):
    await confirm_job(session, job_id)
    return await get_job_status(session, job_id)


@router.post("/imports/{job_id}/reject", response_model=JobStatusResponse)
async def reject_import(job_id: str, session: AsyncSession = Depends(get_db)):
    await reject_job(session, job_id)
    return await get_job_status(session, job_id)


@router.post("/imports/{job_id}/cancel", response_model=JobStatusResponse)
async def cancel_import(job_id: str, session: AsyncSession = Depends(get_db)):
    await cancel_job(session, job_id)
    return await get_job_status(session, job_id)


@router.delete("/imports/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_import(
    job_id: str,
    session: AsyncSession = Depends(get_db),
    store: ArtifactStore = Depends(get_artifact_store),
):
    """204 when the job is gone; 202 when a running job will be removed once it stops."""
    deleted = await delete_job(session, store, job_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT if deleted else status.HTTP_202_ACCEPTED)


@router.post("/imports/process-pending", response_model=ProcessPendingResponse)
async def process_pending(limit: int = Query(20, ge=1, le=200)):
    """Process PENDING jobs inline, bounded by MAX_CONCURRENT_JOBS. Bypasses the queue."""
    from bankrecon.worker.pool import WorkerPool

    results = await WorkerPool().drain_pending(limit=limit)
    return ProcessPendingResponse(
        processed=len(results),
        job_ids=[r["job_id"] for r in results],
    )
