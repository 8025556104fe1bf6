"""
Upload intake: size -> format -> checksum -> duplicate check -> store -> PENDING job.
"""

import uuid
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bankrecon.models.enums import JobStatus
from bankrecon.models.tables import BankAccount, ImportJob
from bankrecon.observability.metrics import duplicate_uploads_total, import_jobs_created_total
from bankrecon.pipeline.errors import AccountNotFound, DuplicateUpload
from bankrecon.pipeline.format_router import detect_format
from bankrecon.pipeline.job_state import is_terminal
from bankrecon.pipeline.persistence import delete_statement, get_statement_for_job
from bankrecon.pipeline.reconciliation import SqlInvoiceGateway
from bankrecon.storage.artifact_store import ArtifactStore
from bankrecon.storage.paths import file_checksum, import_file_path

logger = structlog.get_logger(__name__)

OVERWRITE_ADVISORY = "DUPLICATE_UPLOAD_OVERWRITTEN"


async def find_active_job(session: AsyncSession, account_id: uuid.UUID, checksum: str) -> Optional[ImportJob]:
    result = await session.execute(
        select(ImportJob).where(
            ImportJob.account_id == account_id,
            ImportJob.file_checksum == checksum,
            ImportJob.is_superseded.is_(False),
        )
    )
    return result.scalar_one_or_none()


async def supersede_job(session: AsyncSession, job: ImportJob) -> None:
    """
    Retire a previous upload of the same file. Its statement rows go; a job still in
    flight is asked to cancel. Locked (confirmed) statements cannot be overwritten.
    """
    statement = await get_statement_for_job(session, job.job_id)
    if statement is not None:
        await delete_statement(session, statement, SqlInvoiceGateway(session))

    job.is_superseded = True
    if not is_terminal(job.status):
        job.cancel_requested = True
    # The unique active-checksum index must see the old row retired before the new insert
    await session.flush()
    logger.info("import_job_superseded", job_id=str(job.job_id), status=job.status)


async def create_import_job(
    session: AsyncSession,
    store: ArtifactStore,
    account_id: str,
    file_bytes: bytes,
    file_name: str,
    overwrite: bool = False,
    content_type: Optional[str] = None,
) -> ImportJob:
    """
    Validate an upload and create its PENDING import job.

    Raises:
        OversizedFile, UnsupportedFormat: from the format router
        AccountNotFound: unknown bank account
        DuplicateUpload: same checksum already imported and overwrite not requested
        TransactionLocked: overwrite of a confirmed statement
    """
    file_format = detect_format(file_bytes, file_name, content_type)
    checksum = file_checksum(file_bytes)
    account_uuid = uuid.UUID(str(account_id))

    account = await session.get(BankAccount, account_uuid)
    if account is None:
        raise AccountNotFound(f"Bank account {account_id} not found")

    advisories = []
    existing = await find_active_job(session, account_uuid, checksum)
    if existing is not None:
        if not overwrite:
            duplicate_uploads_total.labels(resolution="rejected").inc()
            raise DuplicateUpload(str(existing.job_id), checksum)
        await supersede_job(session, existing)
        duplicate_uploads_total.labels(resolution="overwritten").inc()
        advisories.append({
            "code": OVERWRITE_ADVISORY,
            "message": f"Replaced earlier upload (job {existing.job_id})",
            "previous_job_id": str(existing.job_id),
        })

    job_id = uuid.uuid4()
    storage_path = import_file_path(str(account_uuid), str(job_id), file_name)
    store.save_bytes(storage_path, file_bytes)

    job = ImportJob(
        job_id=job_id,
        account_id=account_uuid,
        file_checksum=checksum,
        original_filename=file_name,
        storage_path=storage_path,
        file_size_bytes=len(file_bytes),
        file_format=file_format.value,
        status=JobStatus.PENDING.value,
        advisories_json=advisories or None,
    )
    session.add(job)
    await session.commit()

    import_jobs_created_total.labels(file_format=file_format.value).inc()
    logger.info(
        "import_job_created",
        job_id=str(job_id),
        account_id=str(account_uuid),
        file_format=file_format.value,
        size_bytes=len(file_bytes),
        checksum=checksum[:12],
        overwrite=existing is not None,
    )
    return job
