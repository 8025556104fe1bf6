"""
Worker entry points.

    python -m bankrecon.worker.runner          RQ worker on QUEUE_NAME
    python -m bankrecon.worker.runner --pool   in-process asyncio pool polling the job table
"""

import argparse
import asyncio

import structlog
from redis import Redis
from rq import Worker

from bankrecon.config import settings
from bankrecon.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


def run_rq_worker() -> None:
    conn = Redis.from_url(settings.REDIS_URL)
    worker = Worker(
        queues=[settings.QUEUE_NAME],
        connection=conn,
        name=f"import-worker-{settings.APP_VERSION}",
    )
    logger.info("rq_worker_starting", queue=settings.QUEUE_NAME)
    worker.work(with_scheduler=False)


def main():
    parser = argparse.ArgumentParser(description="Statement import worker")
    parser.add_argument("--pool", action="store_true", help="poll the job table instead of RQ")
    args = parser.parse_args()

    setup_logging()

    if args.pool:
        from bankrecon.worker.pool import WorkerPool

        asyncio.run(WorkerPool().run_forever())
    else:
        run_rq_worker()


if __name__ == "__main__":
    main()
