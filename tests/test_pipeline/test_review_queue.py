"""
Tests for job deletion from the review queue.
"""

import asyncio
import uuid

import pytest

from bankrecon.pipeline.errors import JobNotFound
from bankrecon.review.queue import delete_job
from bankrecon.storage.artifact_store import ArtifactStore


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def store(tmp_path):
    return ArtifactStore(root=str(tmp_path))


class TestDeleteJob:

    def test_running_job_is_flagged(self, fake_session, account, job_factory, store):
        job = job_factory(account)
        store.save_bytes(job.storage_path, b"%PDF-1.4 izvod")
        session = fake_session([job], {"import_jobs": [[job]]})

        assert run(delete_job(session, store, str(job.job_id))) is False

        assert job.cancel_requested
        assert job.delete_requested
        assert store.exists(job.storage_path)
        assert len(session.executed_on("import_jobs")) == 1

    def test_finished_job_is_removed(self, fake_session, account, job_factory, store):
        job = job_factory(account, status="FAILED")
        store.save_bytes(job.storage_path, b"%PDF-1.4 izvod")
        session = fake_session([job], {"import_jobs": [[job]]})

        assert run(delete_job(session, store, str(job.job_id))) is True

        removal = session.executed_on("import_jobs")[1]
        assert removal.is_delete
        assert not store.exists(job.storage_path)

    def test_unknown_job(self, fake_session, store):
        with pytest.raises(JobNotFound):
            run(delete_job(fake_session(results={"import_jobs": [[]]}), store, str(uuid.uuid4())))
