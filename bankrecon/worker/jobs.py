"""
RQ job functions for the statement import pipeline.
These are the entry points that the worker calls.
"""

import asyncio

import structlog
from redis import Redis
from rq import Queue

from bankrecon.config import settings

logger = structlog.get_logger(__name__)


def get_queue() -> Queue:
    """Get the import job queue."""
    conn = Redis.from_url(settings.REDIS_URL)
    return Queue(settings.QUEUE_NAME, connection=conn)


def enqueue_import(job_id: str) -> str:
    """
    Enqueue an import job for processing.
    Returns the RQ job ID.
    """
    q = get_queue()
    rq_job = q.enqueue(
        process_import_job,
        job_id,
        # Headroom over the pipeline's own timeout so it can record FAILED first
        job_timeout=settings.JOB_TIMEOUT_SECONDS + 60,
        result_ttl=86400,
        failure_ttl=604800,
    )
    logger.info("job_enqueued", job_id=job_id, rq_job_id=rq_job.id)
    return rq_job.id


def process_import_job(job_id: str) -> dict:
    """
    Main job function: run one import job through the pipeline.
    This runs inside the RQ worker process.
    """
    try:
        return asyncio.run(_process_import_async(job_id))
    except Exception as e:
        logger.error("rq_job_failed", job_id=job_id, error=str(e))
        raise


async def _process_import_async(job_id: str) -> dict:
    from bankrecon.models.database import engine
    from bankrecon.pipeline.orchestrator import ImportPipeline

    try:
        return await ImportPipeline().process(job_id)
    finally:
        # Pooled connections belong to this event loop
        await engine.dispose()
