"""
/api/v1/queue endpoints.
RQ queue statistics for the import worker.
"""

from fastapi import APIRouter, Depends, HTTPException
from redis import Redis
from rq import Queue, Worker

from bankrecon.config import settings
from bankrecon.dependencies import verify_api_key
from bankrecon.schemas.jobs import QueueStats

router = APIRouter(prefix="/api/v1/queue", tags=["queue"], dependencies=[Depends(verify_api_key)])


def _get_redis() -> Redis:
    return Redis.from_url(settings.REDIS_URL)


@router.get("/stats", response_model=QueueStats)
async def queue_stats():
    """Get current queue statistics."""
    try:
        conn = _get_redis()
        q = Queue(settings.QUEUE_NAME, connection=conn)
        workers = Worker.all(connection=conn)

        return QueueStats(
            queue_name=settings.QUEUE_NAME,
            queued=len(q),
            started=q.started_job_registry.count,
            finished=q.finished_job_registry.count,
            failed=q.failed_job_registry.count,
            deferred=q.deferred_job_registry.count,
            workers=len(workers),
        )
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Queue unavailable: {e}")
