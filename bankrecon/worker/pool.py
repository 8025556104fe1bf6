"""
Bounded asyncio worker pool.

Drains PENDING jobs from the job table with at most MAX_CONCURRENT_JOBS in flight, and on
start-up resumes jobs a dead worker left in PROCESSING (heartbeat older than the lease).
Jobs of different accounts run fully in parallel; statement writes serialise per account
inside persistence.
"""

import asyncio
from typing import Optional

import structlog
from sqlalchemy import select

from bankrecon.config import settings
from bankrecon.models.database import async_session_factory
from bankrecon.models.enums import JobStatus
from bankrecon.models.tables import ImportJob
from bankrecon.observability.metrics import worker_jobs_active
from bankrecon.pipeline.orchestrator import ImportPipeline, lease_expired

logger = structlog.get_logger(__name__)


class WorkerPool:

    def __init__(
        self,
        pipeline: Optional[ImportPipeline] = None,
        max_concurrent_jobs: Optional[int] = None,
        session_factory=async_session_factory,
    ):
        self.pipeline = pipeline or ImportPipeline(session_factory=session_factory)
        self.max_concurrent_jobs = max_concurrent_jobs or settings.MAX_CONCURRENT_JOBS
        self.session_factory = session_factory
        self._semaphore = asyncio.Semaphore(self.max_concurrent_jobs)
        self._in_flight: set[str] = set()

    async def _job_ids(self, status: JobStatus, limit: int) -> list[str]:
        conditions = [ImportJob.status == status.value, ImportJob.is_superseded.is_(False)]
        if status == JobStatus.PROCESSING:
            # Jobs with a live heartbeat still belong to another worker
            conditions.append(lease_expired())
        async with self.session_factory() as session:
            result = await session.execute(
                select(ImportJob.job_id)
                .where(*conditions)
                .order_by(ImportJob.created_at)
                .limit(limit)
            )
            return [str(job_id) for job_id in result.scalars().all()]

    async def _run_one(self, job_id: str, resume: bool) -> dict:
        async with self._semaphore:
            worker_jobs_active.inc()
            try:
                return await self.pipeline.process(job_id, resume=resume)
            except Exception as e:
                # The pipeline has already recorded FAILED; keep the pool alive
                logger.error("pool_job_crashed", job_id=job_id, error=str(e))
                return {"job_id": job_id, "status": JobStatus.FAILED.value, "error": str(e)}
            finally:
                worker_jobs_active.dec()
                self._in_flight.discard(job_id)

    async def process_batch(self, job_ids: list[str], resume: bool = False) -> list[dict]:
        fresh = [j for j in job_ids if j not in self._in_flight]
        self._in_flight.update(fresh)
        return list(await asyncio.gather(*(self._run_one(j, resume) for j in fresh)))

    async def resume_interrupted(self) -> list[dict]:
        job_ids = await self._job_ids(JobStatus.PROCESSING, limit=1000)
        if job_ids:
            logger.info("resuming_interrupted_jobs", count=len(job_ids))
        return await self.process_batch(job_ids, resume=True)

    async def drain_pending(self, limit: int = 100) -> list[dict]:
        """Process PENDING jobs until none are left (or limit reached)."""
        job_ids = await self._job_ids(JobStatus.PENDING, limit=limit)
        return await self.process_batch(job_ids)

    async def run_forever(self) -> None:
        await self.resume_interrupted()
        while True:
            results = await self.drain_pending(limit=self.max_concurrent_jobs * 4)
            if not results:
                await asyncio.sleep(settings.POOL_POLL_INTERVAL_SECONDS)
