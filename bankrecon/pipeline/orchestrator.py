"""
Job orchestrator: drives one import job from PENDING to a terminal state.

    claim -> load file -> dispatch by format -> persist -> reconcile

XML goes to the CAMT parser (Tier 1). PDF pages go through the text/vision ladder.
CSV rows go through dedup straight into the ledger. Cancellation is checked before every
tier. Any job-level error ends the job FAILED with a readable reason and writes nothing.

Each finished PDF page is staged on the job row as it resolves. A resumed job reuses the
staged pages and only sends the rest to the models. A running job renews heartbeat_at;
another worker may take it over only after JOB_LEASE_SECONDS without a heartbeat.
"""

import asyncio
import time
import traceback
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bankrecon.config import settings
from bankrecon.engines.base import ExtractionEngine
from bankrecon.engines.llm_engine import build_text_engine, build_vision_engines
from bankrecon.engines.pdf_text import extract_page_texts, has_text_layer
from bankrecon.models.database import async_session_factory
from bankrecon.models.enums import FileFormat, JobStatus, PageStatus, TierType
from bankrecon.models.tables import BankAccount, ImportJob, StatementPage
from bankrecon.observability.logging import bind_job_context
from bankrecon.observability.metrics import import_job_duration_seconds, import_jobs_finished_total
from bankrecon.pipeline.camt_parser import parse_camt
from bankrecon.pipeline.csv_parser import parse_csv
from bankrecon.pipeline.dedup import import_csv_rows
from bankrecon.pipeline.errors import JobCancelled, JobNotFound, PipelineError
from bankrecon.pipeline.job_state import assert_transition
from bankrecon.pipeline.persistence import (
    build_parsed_statement,
    derive_job_status,
    derive_tier_used,
    get_statement_for_job,
    persist_statement,
)
from bankrecon.pipeline.reconciliation import InvoiceGateway, SqlInvoiceGateway, run_reconciliation
from bankrecon.pipeline.renderer import render_page_png
from bankrecon.pipeline.tiers import checkpoint, resolve_pages
from bankrecon.review.queue import purge_job
from bankrecon.schemas.contracts import ResolvedPage
from bankrecon.schemas.jobs import JobStatusResponse
from bankrecon.storage.artifact_store import ArtifactStore

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncSession]


def lease_expired(now: Optional[datetime] = None):
    """SQL condition: no heartbeat within JOB_LEASE_SECONDS."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=settings.JOB_LEASE_SECONDS)
    return or_(ImportJob.heartbeat_at.is_(None), ImportJob.heartbeat_at < cutoff)


def staged_pages(job: ImportJob) -> dict[int, ResolvedPage]:
    pages = (ResolvedPage.model_validate(p) for p in job.page_results_json or [])
    return {p.page_number: p for p in pages}


class ImportPipeline:
    """
    Processes a single import job end to end.
    Engines are injectable so tests and the worker pool can share or stub them.
    """

    def __init__(
        self,
        store: Optional[ArtifactStore] = None,
        text_engine: Optional[ExtractionEngine] = None,
        vision_engines: Optional[list[ExtractionEngine]] = None,
        session_factory: SessionFactory = async_session_factory,
        gateway_factory: Callable[[AsyncSession], InvoiceGateway] = SqlInvoiceGateway,
    ):
        self.store = store or ArtifactStore(root=settings.ARTIFACT_ROOT)
        self.text_engine = text_engine or build_text_engine()
        self.vision_engines = vision_engines if vision_engines is not None else build_vision_engines()
        self.session_factory = session_factory
        self.gateway_factory = gateway_factory

    async def process(self, job_id: str, resume: bool = False) -> dict:
        """
        Claim and run a job. Returns a summary dict.
        resume=True also takes over a PROCESSING job whose lease has expired.
        """
        started_at = time.time()

        async with self.session_factory() as session:
            job = await self._claim(session, job_id, resume)
            if job is None:
                current = await session.get(ImportJob, uuid.UUID(job_id))
                status = current.status if current is not None else None
                logger.info("job_not_claimed", job_id=job_id, status=status)
                return {"job_id": job_id, "status": status, "claimed": False}

            bind_job_context(job_id, str(job.account_id))
            logger.info("job_started", file_format=job.file_format, resume=resume)

            heartbeat = asyncio.create_task(self._heartbeat(job.job_id))
            try:
                await self._execute(session, job)
            finally:
                heartbeat.cancel()

            duration = time.time() - started_at
            import_job_duration_seconds.labels(file_format=job.file_format).observe(duration)
            import_jobs_finished_total.labels(status=job.status, tier_used=job.tier_used or "NONE").inc()
            logger.info(
                "job_completed",
                status=job.status,
                tier_used=job.tier_used,
                pages_processed=job.pages_processed,
                pages_failed=job.pages_failed,
                duration_ms=int(duration * 1000),
            )
            summary = {
                "job_id": job_id,
                "status": job.status,
                "tier_used": job.tier_used,
                "pages_processed": job.pages_processed,
                "pages_failed": job.pages_failed,
                "claimed": True,
            }

            # Deleted while it was running
            await session.refresh(job)
            if job.delete_requested:
                await purge_job(session, self.store, job, self.gateway_factory(session))
                await session.commit()
                summary["deleted"] = True
            return summary

    async def _execute(self, session: AsyncSession, job: ImportJob) -> None:
        try:
            await asyncio.wait_for(
                self._run(session, job),
                timeout=settings.JOB_TIMEOUT_SECONDS,
            )
        except JobCancelled:
            await self._fail_job(session, job, "Cancelled by user")
        except asyncio.TimeoutError:
            await self._fail_job(
                session, job, f"Job timed out after {settings.JOB_TIMEOUT_SECONDS} seconds"
            )
        except PipelineError as e:
            await self._fail_job(session, job, e.message, error_code=e.error_code)
        except Exception as e:
            error_msg = f"{type(e).__name__}: {e}"
            logger.error("job_failed_unexpectedly", error=error_msg, traceback=traceback.format_exc())
            await self._fail_job(session, job, error_msg)
            raise

    # ─── Stages ───────────────────────────────────────────────

    async def _run(self, session: AsyncSession, job: ImportJob) -> None:
        job_id = str(job.job_id)
        cancel_check = self._cancel_check(job.job_id)

        existing = await get_statement_for_job(session, job.job_id)
        if existing is not None:
            # Statement and job status commit together, so only a legacy row lands here
            await self._finalise_from_statement(session, job)
            return

        data = self.store.load_bytes(job.storage_path)
        await checkpoint(job_id, cancel_check)

        if job.file_format == FileFormat.CSV.value:
            await self._run_csv(session, job, data)
            return

        if job.file_format == FileFormat.XML.value:
            parsed = parse_camt(data)
        else:
            parsed = await self._run_pdf(session, job, data, cancel_check)

        await checkpoint(job_id, cancel_check)
        # The statement rows replace the staged pages
        job.page_results_json = None
        await persist_statement(session, job, parsed)
        await self._reconcile(session, job)

    async def _run_pdf(self, session: AsyncSession, job: ImportJob, data: bytes, cancel_check):
        job_id = str(job.job_id)
        page_texts = await asyncio.to_thread(extract_page_texts, data)
        logger.info("pdf_text_extracted", pages=len(page_texts))
        scanned = [i + 1 for i, text in enumerate(page_texts) if not has_text_layer(text)]
        if scanned:
            # Text tier will most likely fail these and hand them to vision
            logger.info("pages_without_text_layer", pages=scanned)

        staged = staged_pages(job)
        if staged:
            logger.info("staged_pages_reused", pages=sorted(staged))
        stage_lock = asyncio.Lock()

        async def render(page_number: int) -> bytes:
            return await asyncio.to_thread(render_page_png, data, page_number)

        async def stage(page: ResolvedPage) -> None:
            async with stage_lock:
                staged[page.page_number] = page
                await self._save_staged(job.job_id, list(staged.values()))

        pages: list[ResolvedPage] = await resolve_pages(
            job_id,
            page_texts,
            self.text_engine,
            self.vision_engines,
            render=render,
            cancel_check=cancel_check,
            resolved=dict(staged),
            on_resolved=stage,
        )
        account = await session.get(BankAccount, job.account_id)
        return build_parsed_statement(pages, currency=account.currency if account else "EUR")

    async def _run_csv(self, session: AsyncSession, job: ImportJob, data: bytes) -> None:
        rows = parse_csv(data)
        result = await import_csv_rows(
            session, str(job.account_id), job.original_filename, rows,
            gateway=self.gateway_factory(session),
        )
        job.status = assert_transition(job.status, JobStatus.VERIFIED.value)
        job.tier_used = TierType.CSV.value
        job.finished_at = datetime.now(timezone.utc)
        if result.flagged:
            job.advisories_json = list(job.advisories_json or []) + [{
                "code": "POTENTIAL_DUPLICATES",
                "message": f"{result.flagged} rows queued for duplicate review",
            }]
        await session.commit()
        logger.info("csv_job_imported", inserted=result.inserted, skipped=result.skipped,
                    flagged=result.flagged, deduplicated=result.deduplicated)

    async def _reconcile(self, session: AsyncSession, job: ImportJob) -> None:
        """Runs after the statement is committed; a failure here never fails the job."""
        try:
            await run_reconciliation(session, str(job.account_id), self.gateway_factory(session))
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error("post_import_reconciliation_failed", error=str(e),
                         traceback=traceback.format_exc())

    async def _finalise_from_statement(self, session: AsyncSession, job: ImportJob) -> None:
        statement = await get_statement_for_job(session, job.job_id)
        result = await session.execute(
            select(StatementPage).where(StatementPage.statement_id == statement.statement_id)
        )
        pages = [
            ResolvedPage(page_number=p.page_number, status=p.status, tier_used=p.tier_used)
            for p in result.scalars().all()
        ]
        job.status = assert_transition(job.status, derive_job_status(pages))
        job.tier_used = derive_tier_used(pages)
        job.pages_processed = len(pages)
        job.pages_failed = sum(1 for p in pages if p.status == PageStatus.FAILED.value)
        job.finished_at = datetime.now(timezone.utc)
        await session.commit()
        logger.info("job_finalised_from_statement", status=job.status)

    # ─── Helpers ──────────────────────────────────────────────

    async def _claim(self, session: AsyncSession, job_id: str, resume: bool) -> Optional[ImportJob]:
        """
        Atomic PENDING -> PROCESSING. With resume, a PROCESSING job is taken over only when
        its lease has expired, so a live worker keeps its job.
        """
        job_uuid = uuid.UUID(job_id)
        now = datetime.now(timezone.utc)
        result = await session.execute(
            update(ImportJob)
            .where(ImportJob.job_id == job_uuid, ImportJob.status == JobStatus.PENDING.value)
            .values(status=JobStatus.PROCESSING.value, started_at=now, heartbeat_at=now)
            .returning(ImportJob.job_id)
        )
        claimed = result.scalar_one_or_none() is not None

        if not claimed and resume:
            result = await session.execute(
                update(ImportJob)
                .where(
                    ImportJob.job_id == job_uuid,
                    ImportJob.status == JobStatus.PROCESSING.value,
                    ImportJob.is_superseded.is_(False),
                    lease_expired(now),
                )
                .values(heartbeat_at=now)
                .returning(ImportJob.job_id)
            )
            claimed = result.scalar_one_or_none() is not None
            if claimed:
                logger.info("job_resumed", job_id=job_id)
        await session.commit()

        if not claimed:
            return None
        job = await session.get(ImportJob, job_uuid)
        if job is None:
            raise JobNotFound(f"Import job {job_id} not found")
        await session.refresh(job)
        return job

    def _cancel_check(self, job_uuid: uuid.UUID):
        async def cancel_requested() -> bool:
            async with self.session_factory() as check:
                job = await check.get(ImportJob, job_uuid)
                # A deleted row cancels too
                return job is None or bool(job.cancel_requested)
        return cancel_requested

    async def _save_staged(self, job_uuid: uuid.UUID, pages: list[ResolvedPage]) -> None:
        async with self.session_factory() as staging:
            job = await staging.get(ImportJob, job_uuid)
            if job is None:
                return
            job.page_results_json = [
                p.model_dump(mode="json") for p in sorted(pages, key=lambda p: p.page_number)
            ]
            job.heartbeat_at = datetime.now(timezone.utc)
            await staging.commit()
        logger.debug("page_staged", pages=len(pages))

    async def _heartbeat(self, job_uuid: uuid.UUID) -> None:
        """Renew the lease until cancelled."""
        while True:
            await asyncio.sleep(settings.JOB_HEARTBEAT_SECONDS)
            try:
                async with self.session_factory() as beat:
                    await beat.execute(
                        update(ImportJob)
                        .where(ImportJob.job_id == job_uuid)
                        .values(heartbeat_at=datetime.now(timezone.utc))
                    )
                    await beat.commit()
            except Exception as e:
                # A missed beat only shortens the lease
                logger.warning("job_heartbeat_failed", error=str(e))

    async def _fail_job(self, session: AsyncSession, job: ImportJob, reason: str,
                        error_code: str = "ERR_PIPELINE") -> None:
        """Mark the job FAILED. Nothing from this run is kept."""
        await session.rollback()
        await session.refresh(job)
        job.status = assert_transition(job.status, JobStatus.FAILED.value)
        job.failure_reason = reason[:1000]
        job.finished_at = datetime.now(timezone.utc)
        await session.commit()
        logger.warning("job_failed", error_code=error_code, reason=reason)


async def get_job_status(session: AsyncSession, job_id: str) -> JobStatusResponse:
    """Pull-only status for pollers."""
    job = await session.get(ImportJob, uuid.UUID(job_id))
    if job is None:
        raise JobNotFound(f"Import job {job_id} not found")
    statement = await get_statement_for_job(session, job.job_id)
    return JobStatusResponse(
        job_id=str(job.job_id),
        status=job.status,
        tier_used=job.tier_used,
        pages_processed=job.pages_processed,
        pages_failed=job.pages_failed,
        failure_reason=job.failure_reason,
        acceptance=job.acceptance,
        advisories=job.advisories_json or [],
        statement_id=str(statement.statement_id) if statement else None,
        created_at=job.created_at,
        finished_at=job.finished_at,
    )
