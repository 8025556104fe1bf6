"""
Tests for driving an import job end to end over an in-memory session.
"""

import asyncio
import uuid

import pytest

from bankrecon.engines.base import ExtractionSchemaViolation, ProviderUnavailable
from bankrecon.engines.stub_engine import StubEngine
from bankrecon.models.tables import Statement, Transaction
from bankrecon.pipeline import orchestrator
from bankrecon.pipeline.errors import JobCancelled, JobNotFound
from bankrecon.pipeline.orchestrator import ImportPipeline, get_job_status, staged_pages
from bankrecon.pipeline.tiers import resolve_page
from bankrecon.storage.artifact_store import ArtifactStore


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def store(tmp_path):
    return ArtifactStore(root=str(tmp_path))


@pytest.fixture
def two_page_pdf(monkeypatch):
    monkeypatch.setattr(orchestrator, "extract_page_texts", lambda data: ["prva stranica", "druga stranica"])
    monkeypatch.setattr(orchestrator, "render_page_png", lambda data, page_number: b"png")


@pytest.fixture
def first_page(balanced_candidate):
    """1000 -> 1200."""
    return balanced_candidate


@pytest.fixture
def second_page(candidate_factory):
    """1200 -> 1300."""
    return candidate_factory("1200.00", "1300.00", ("INCOMING", "100.00"))


@pytest.fixture
def stored_job(account, job_factory, store):
    job = job_factory(account)
    store.save_bytes(job.storage_path, b"%PDF-1.4 izvod")
    return job


def claimed(job, **scripts):
    """Scripts for a claim that succeeds on the first UPDATE."""
    results = {"import_jobs": [[job.job_id]], "statements": [[], [], []]}
    results.update(scripts)
    return results


@pytest.fixture
def pipeline(store, fake_gateway):
    def build(session, text, vision=None):
        return ImportPipeline(
            store,
            text_engine=text,
            vision_engines=vision if vision is not None else [],
            session_factory=lambda: session,
            gateway_factory=lambda s: fake_gateway,
        )
    return build


class TestProcess:

    def test_every_page_verified(self, pipeline, fake_session, account, stored_job, two_page_pdf,
                                 first_page, second_page):
        session = fake_session([account, stored_job], claimed(stored_job))
        text = StubEngine(responses={1: first_page, 2: second_page})

        summary = run(pipeline(session, text).process(str(stored_job.job_id)))

        assert summary["status"] == "VERIFIED"
        assert summary["pages_processed"] == 2
        assert stored_job.tier_used == "TEXT_LLM"
        assert stored_job.page_results_json is None
        statement = session.added(Statement)[0]
        assert (statement.opening_balance, statement.closing_balance) == (first_page.page_start_balance,
                                                                          second_page.page_end_balance)
        assert len(session.added(Transaction)) == 3
        assert account.next_sequence_number == 2

    def test_one_failed_page_needs_review(self, pipeline, fake_session, account, stored_job, two_page_pdf,
                                          first_page, candidate_factory):
        broken = candidate_factory("1200.00", "1350.00", ("INCOMING", "100.00"))
        session = fake_session([account, stored_job], claimed(stored_job))
        text = StubEngine(responses={1: first_page, 2: broken})
        vision = StubEngine(default=broken, name="vision", images=True)

        summary = run(pipeline(session, text, [vision]).process(str(stored_job.job_id)))

        assert summary["status"] == "NEEDS_REVIEW"
        assert summary["pages_failed"] == 1
        assert [c.page_number for c in vision.calls] == [2]
        assert vision.calls[0].image_png == b"png"

    def test_nothing_usable_fails(self, pipeline, fake_session, account, stored_job, two_page_pdf):
        session = fake_session([account, stored_job], claimed(stored_job))
        text = StubEngine(default=ExtractionSchemaViolation("stub", "not json"))
        vision = StubEngine(default=ProviderUnavailable("vision", "down"), name="vision")

        summary = run(pipeline(session, text, [vision]).process(str(stored_job.job_id)))

        assert summary["status"] == "FAILED"
        assert stored_job.failure_reason == "No page of the statement could be extracted"
        assert session.added(Statement) == []
        assert session.rollbacks == 1

    def test_cancelled_job_fails_before_any_model_call(self, pipeline, fake_session, account, job_factory,
                                                       store, two_page_pdf, first_page):
        job = job_factory(account, cancel_requested=True)
        store.save_bytes(job.storage_path, b"%PDF-1.4 izvod")
        session = fake_session([account, job], claimed(job))
        text = StubEngine(default=first_page)

        summary = run(pipeline(session, text).process(str(job.job_id)))

        assert summary["status"] == "FAILED"
        assert job.failure_reason == "Cancelled by user"
        assert text.calls == []

    def test_finished_pages_are_staged(self, pipeline, fake_session, account, stored_job, two_page_pdf,
                                       first_page):
        session = fake_session([account, stored_job], claimed(stored_job))
        text = StubEngine(responses={1: first_page, 2: JobCancelled("cancelled mid-run")})

        run(pipeline(session, text).process(str(stored_job.job_id)))

        assert stored_job.status == "FAILED"
        assert list(staged_pages(stored_job)) == [1]
        assert staged_pages(stored_job)[1].candidate == first_page

    def test_resume_skips_staged_pages(self, pipeline, fake_session, account, stored_job, two_page_pdf,
                                       first_page, second_page):
        done = run(resolve_page(str(stored_job.job_id), 1, "prva stranica", StubEngine(default=first_page), []))
        stored_job.page_results_json = [done.model_dump(mode="json")]
        session = fake_session(
            [account, stored_job],
            claimed(stored_job, import_jobs=[[], [stored_job.job_id]]),
        )
        text = StubEngine(default=second_page)

        summary = run(pipeline(session, text).process(str(stored_job.job_id), resume=True))

        assert summary["status"] == "VERIFIED"
        assert [c.page_number for c in text.calls] == [2]
        takeover = session.executed_on("import_jobs")[1]
        assert "heartbeat_at" in str(takeover.whereclause)

    def test_live_lease_is_not_taken_over(self, pipeline, fake_session, account, stored_job, first_page):
        session = fake_session([account, stored_job], claimed(stored_job, import_jobs=[[], []]))
        text = StubEngine(default=first_page)

        summary = run(pipeline(session, text).process(str(stored_job.job_id), resume=True))

        assert summary == {"job_id": str(stored_job.job_id), "status": "PROCESSING", "claimed": False}
        assert text.calls == []

    def test_deleted_while_running(self, pipeline, fake_session, account, job_factory, store, two_page_pdf):
        job = job_factory(account, cancel_requested=True, delete_requested=True)
        store.save_bytes(job.storage_path, b"%PDF-1.4 izvod")
        session = fake_session([account, job], claimed(job))

        summary = run(pipeline(session, StubEngine()).process(str(job.job_id)))

        assert summary["status"] == "FAILED"
        assert summary["deleted"]
        assert len(session.executed_on("import_jobs")) == 2
        assert not store.exists(job.storage_path)


class TestGetJobStatus:

    def test_reports_statement(self, fake_session, account, job_factory):
        job = job_factory(account, status="VERIFIED", tier_used="TEXT_LLM", pages_processed=2)
        statement = Statement(statement_id=uuid.uuid4(), import_job_id=job.job_id)
        session = fake_session([job], {"statements": [[statement]]})

        status = run(get_job_status(session, str(job.job_id)))

        assert status.status == "VERIFIED"
        assert status.pages_processed == 2
        assert status.statement_id == str(statement.statement_id)
        assert status.advisories == []

    def test_without_statement(self, fake_session, account, job_factory):
        job = job_factory(account, status="FAILED", failure_reason="Cancelled by user")
        status = run(get_job_status(fake_session([job]), str(job.job_id)))
        assert status.statement_id is None
        assert status.failure_reason == "Cancelled by user"

    def test_unknown_job(self, fake_session):
        with pytest.raises(JobNotFound):
            run(get_job_status(fake_session(), str(uuid.uuid4())))
