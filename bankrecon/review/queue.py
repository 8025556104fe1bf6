"""
Review queue management: potential duplicates flagged by dedup, acceptance
(confirm / reject) of finished import jobs, cancellation and deletion.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bankrecon.models.enums import JobAcceptance, JobStatus, ReviewStatus
from bankrecon.models.tables import ImportJob, PotentialDuplicate
from bankrecon.pipeline.dedup import transaction_from_incoming
from bankrecon.pipeline.errors import DuplicateNotFound, InvalidStateTransition, JobNotFound
from bankrecon.pipeline.job_state import assert_acceptance, assert_transition, is_terminal
from bankrecon.pipeline.persistence import delete_statement, get_statement_for_job
from bankrecon.pipeline.reconciliation import InvoiceGateway, SqlInvoiceGateway
from bankrecon.schemas.transactions import IncomingTransaction
from bankrecon.storage.artifact_store import ArtifactStore

logger = structlog.get_logger(__name__)


# ─── Potential duplicates ────────────────────────────────────

async def get_pending_duplicates(
    session: AsyncSession,
    account_id: str,
    limit: int = 50,
    offset: int = 0,
) -> list[PotentialDuplicate]:
    """Pending potential duplicates, most similar first."""
    result = await session.execute(
        select(PotentialDuplicate)
        .where(
            PotentialDuplicate.account_id == uuid.UUID(str(account_id)),
            PotentialDuplicate.status == ReviewStatus.PENDING.value,
        )
        .order_by(PotentialDuplicate.similarity.desc(), PotentialDuplicate.created_at)
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def resolve_duplicate(
    session: AsyncSession,
    duplicate_id: str,
    is_duplicate: bool,
) -> PotentialDuplicate:
    """
    Close a review item. Marking it new inserts the held-back row as a transaction.
    """
    item = await session.get(PotentialDuplicate, uuid.UUID(str(duplicate_id)))
    if item is None:
        raise DuplicateNotFound(f"Potential duplicate {duplicate_id} not found")
    if item.status != ReviewStatus.PENDING.value:
        raise InvalidStateTransition(item.status, "RESOLVED")

    if is_duplicate:
        item.status = ReviewStatus.RESOLVED_DUPLICATE.value
    else:
        row = IncomingTransaction.model_validate(item.candidate_json)
        tx = transaction_from_incoming(item.account_id, row, item.source)
        session.add(tx)
        item.status = ReviewStatus.RESOLVED_NEW.value
        item.resolved_transaction_id = tx.transaction_id
    item.resolved_at = datetime.now(timezone.utc)
    await session.flush()

    logger.info(
        "duplicate_resolved",
        duplicate_id=str(duplicate_id),
        is_duplicate=is_duplicate,
        resolved_transaction_id=str(item.resolved_transaction_id) if item.resolved_transaction_id else None,
    )
    return item


async def get_review_queue_stats(session: AsyncSession, account_id: str) -> dict:
    result = await session.execute(
        select(PotentialDuplicate.status, func.count(PotentialDuplicate.duplicate_id))
        .where(PotentialDuplicate.account_id == uuid.UUID(str(account_id)))
        .group_by(PotentialDuplicate.status)
    )
    stats = {row[0]: row[1] for row in result.all()}
    return {
        "pending": stats.get(ReviewStatus.PENDING.value, 0),
        "resolved_duplicate": stats.get(ReviewStatus.RESOLVED_DUPLICATE.value, 0),
        "resolved_new": stats.get(ReviewStatus.RESOLVED_NEW.value, 0),
        "total": sum(stats.values()),
    }


# ─── Job acceptance ──────────────────────────────────────────

async def _job(session: AsyncSession, job_id: str) -> ImportJob:
    job = await session.get(ImportJob, uuid.UUID(str(job_id)))
    if job is None:
        raise JobNotFound(f"Import job {job_id} not found")
    return job


async def confirm_job(session: AsyncSession, job_id: str) -> ImportJob:
    """Accept the import: the statement becomes immutable."""
    job = await _job(session, job_id)
    job.acceptance = assert_acceptance(job.status, job.acceptance, JobAcceptance.CONFIRMED.value)
    statement = await get_statement_for_job(session, job.job_id)
    if statement is not None:
        statement.is_locked = True
    await session.flush()
    logger.info("import_job_confirmed", job_id=str(job_id))
    return job


async def reject_job(session: AsyncSession, job_id: str) -> ImportJob:
    """Reject the import: its statement, pages and transactions are removed."""
    job = await _job(session, job_id)
    job.acceptance = assert_acceptance(job.status, job.acceptance, JobAcceptance.REJECTED.value)
    statement = await get_statement_for_job(session, job.job_id)
    if statement is not None:
        await delete_statement(session, statement, SqlInvoiceGateway(session))
    await session.flush()
    logger.info("import_job_rejected", job_id=str(job_id))
    return job


async def cancel_job(session: AsyncSession, job_id: str) -> ImportJob:
    """
    A PENDING job fails immediately. A PROCESSING job is flagged and stops at its next
    tier checkpoint. Finished jobs cannot be cancelled.
    """
    job = await _job(session, job_id)
    if is_terminal(job.status):
        raise InvalidStateTransition(job.status, "CANCELLED")
    job.cancel_requested = True
    if job.status == JobStatus.PENDING.value:
        job.status = assert_transition(job.status, JobStatus.FAILED.value)
        job.failure_reason = "Cancelled by user"
        job.finished_at = datetime.now(timezone.utc)
    await session.flush()
    logger.info("import_job_cancel_requested", job_id=str(job_id), status=job.status)
    return job


async def purge_job(
    session: AsyncSession,
    store: ArtifactStore,
    job: ImportJob,
    gateway: Optional[InvoiceGateway] = None,
) -> None:
    """Remove a job with its statement data and stored file. Locked statements stay."""
    statement = await get_statement_for_job(session, job.job_id)
    if statement is not None:
        await delete_statement(session, statement, gateway or SqlInvoiceGateway(session))
    store.delete_job_artifacts(str(job.account_id), str(job.job_id))
    await session.execute(delete(ImportJob).where(ImportJob.job_id == job.job_id))
    await session.flush()
    logger.info("import_job_deleted", job_id=str(job.job_id), status=job.status)


async def delete_job(session: AsyncSession, store: ArtifactStore, job_id: str) -> bool:
    """
    Delete a job. Returns True when it is gone now.

    A PROCESSING job is only flagged: its worker stops at the next tier checkpoint, records
    FAILED and then removes it. Returns False in that case.
    """
    result = await session.execute(
        select(ImportJob).where(ImportJob.job_id == uuid.UUID(str(job_id))).with_for_update()
    )
    job = result.scalar_one_or_none()
    if job is None:
        raise JobNotFound(f"Import job {job_id} not found")

    if job.status == JobStatus.PROCESSING.value:
        job.cancel_requested = True
        job.delete_requested = True
        await session.flush()
        logger.info("import_job_delete_requested", job_id=str(job_id))
        return False

    await purge_job(session, store, job)
    return True
