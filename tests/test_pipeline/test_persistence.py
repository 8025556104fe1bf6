"""
Tests for statement derivation and the statement chain.
"""

import asyncio
import weakref
from datetime import date
from decimal import Decimal

import pytest

from bankrecon.models.tables import Statement
from bankrecon.pipeline import persistence
from bankrecon.pipeline.errors import MalformedStatement
from bankrecon.pipeline.persistence import (
    account_lock,
    assign_sequence,
    build_parsed_statement,
    check_chain_continuity,
    derive_job_status,
    derive_statement_meta,
    derive_tier_used,
    persist_statement,
)
from bankrecon.schemas.contracts import CandidateMetadata, ParsedStatement, ResolvedPage


def page(number, status="VERIFIED", candidate=None, tier="TEXT_LLM"):
    return ResolvedPage(page_number=number, status=status, tier_used=tier, candidate=candidate)


class TestChainContinuity:

    def test_first_statement_is_never_a_gap(self):
        assert not check_chain_continuity(None, None, 5, Decimal("100.00")).is_gap

    def test_continuous(self):
        assert not check_chain_continuity(4, Decimal("1380.00"), 5, Decimal("1380.00")).is_gap

    def test_within_tolerance(self):
        assert not check_chain_continuity(4, Decimal("1380.00"), 5, Decimal("1380.01")).is_gap

    def test_balance_break(self):
        result = check_chain_continuity(4, Decimal("1380.00"), 5, Decimal("1400.00"))
        assert result.is_gap
        assert "1380.00" in result.reason

    def test_sequence_skip(self):
        result = check_chain_continuity(4, Decimal("1380.00"), 7, Decimal("1380.00"))
        assert result.is_gap
        assert result.reason == "sequence 4 -> 7"

    def test_both_reasons(self):
        result = check_chain_continuity(4, Decimal("1.00"), 9, Decimal("2.00"))
        assert result.reason.count(";") == 1

    def test_assign_sequence(self):
        assert assign_sequence(12, 3) == 12
        assert assign_sequence(None, 3) == 3
        assert assign_sequence(0, 3) == 3


class TestStatementMeta:

    def test_boundaries_from_first_and_last_pages(self, candidate_factory):
        first = candidate_factory("1000.00", "1200.00", ("INCOMING", "250.00"), ("OUTGOING", "50.00"))
        middle = candidate_factory(None, None, ("INCOMING", "10.00"))
        last = candidate_factory("1210.00", "1300.00", ("INCOMING", "90.00"))
        meta = derive_statement_meta([page(3, candidate=last), page(1, candidate=first), page(2, candidate=middle)])
        assert meta.opening_balance == Decimal("1000.00")
        assert meta.closing_balance == Decimal("1300.00")
        assert meta.period_start == date(2025, 1, 10)
        assert meta.period_end == date(2025, 1, 11)
        assert meta.statement_date == date(2025, 1, 11)
        assert meta.sequence_number is None

    def test_no_balances_anywhere(self, candidate_factory):
        meta = derive_statement_meta([page(1, candidate=candidate_factory(None, None))], today=date(2025, 3, 1))
        assert meta.opening_balance == Decimal("0")
        assert meta.closing_balance == Decimal("0")
        assert meta.period_start == meta.period_end == date(2025, 3, 1)

    def test_metadata_carried(self, candidate_factory):
        candidate = candidate_factory("0", "0").model_copy(
            update={"metadata": CandidateMetadata(sequence_number=8, statement_date=date(2025, 2, 1))}
        )
        parsed = build_parsed_statement([page(1, candidate=candidate)], currency="HRK")
        assert parsed.sequence_number == 8
        assert parsed.statement_date == date(2025, 2, 1)
        assert parsed.currency == "HRK"


class TestJobStatus:

    def test_all_verified(self):
        assert derive_job_status([page(1), page(2)]) == "VERIFIED"

    def test_some_failed(self):
        assert derive_job_status([page(1), page(2, status="FAILED")]) == "NEEDS_REVIEW"

    def test_all_failed_without_rows(self):
        assert derive_job_status([page(1, status="FAILED"), page(2, status="FAILED")]) == "FAILED"

    def test_all_failed_with_rows_needs_review(self, candidate_factory):
        candidate = candidate_factory("0", "1", ("INCOMING", "5.00"))
        assert derive_job_status([page(1, status="FAILED", candidate=candidate)]) == "NEEDS_REVIEW"

    def test_no_pages(self):
        assert derive_job_status([]) == "FAILED"

    def test_highest_tier_wins(self):
        assert derive_tier_used([page(1), page(2, tier="VISION_LLM")]) == "VISION_LLM"
        assert derive_tier_used([page(1, tier="XML")]) == "XML"
        assert derive_tier_used([page(1, tier=None)]) is None


def statement_of(candidate, sequence_number=None, status="VERIFIED"):
    return ParsedStatement(
        sequence_number=sequence_number,
        opening_balance=candidate.page_start_balance,
        closing_balance=candidate.page_end_balance,
        pages=[page(1, status=status, candidate=candidate)],
    )


class TestPersistStatement:

    def test_continues_the_chain(self, fake_session, account, job_factory, balanced_candidate):
        job = job_factory(account)
        session = fake_session([account, job], {"statements": [[], []]})

        statement = asyncio.run(persist_statement(session, job, statement_of(balanced_candidate)))

        assert statement.sequence_number == 1
        assert not statement.is_gap_detected
        assert job.status == "VERIFIED"
        assert job.advisories_json is None
        assert account.current_balance == Decimal("1200.00")
        assert account.next_sequence_number == 2
        assert session.commits == 1

    def test_opening_break_is_flagged(self, fake_session, account, job_factory, candidate_factory):
        account.next_sequence_number = 5
        job = job_factory(account)
        previous = Statement(sequence_number=4, closing_balance=Decimal("1380.00"))
        session = fake_session([account, job], {"statements": [[previous], [4]]})
        parsed = statement_of(candidate_factory("1400.00", "1500.00", ("INCOMING", "100.00")), sequence_number=5)

        statement = asyncio.run(persist_statement(session, job, parsed))

        assert statement.is_gap_detected
        assert statement.previous_sequence_number == 4
        assert "1380.00" in statement.gap_reason
        assert job.status == "VERIFIED"
        assert [a["code"] for a in job.advisories_json] == ["WARN_SEQUENCE_GAP"]
        assert account.current_balance == Decimal("1500.00")

    def test_older_statement_keeps_current_balance(self, fake_session, account, job_factory, balanced_candidate):
        account.current_balance = Decimal("9000.00")
        job = job_factory(account)
        session = fake_session([account, job], {"statements": [[], [7]]})

        asyncio.run(persist_statement(session, job, statement_of(balanced_candidate, sequence_number=3)))

        assert account.current_balance == Decimal("9000.00")
        assert account.next_sequence_number == 4

    def test_nothing_extracted(self, fake_session, account, job_factory):
        job = job_factory(account)
        parsed = ParsedStatement(opening_balance=Decimal("0"), closing_balance=Decimal("0"),
                                 pages=[page(1, status="FAILED")])
        with pytest.raises(MalformedStatement):
            asyncio.run(persist_statement(fake_session([account, job]), job, parsed))


class TestAccountLock:

    def test_one_lock_per_account_within_a_loop(self):
        async def grab():
            return persistence._lock_for("a"), persistence._lock_for("a"), persistence._lock_for("b")

        first, again, other = asyncio.run(grab())
        assert first is again
        assert first is not other

    def test_fresh_lock_per_loop(self):
        async def grab():
            return persistence._lock_for("a")

        assert asyncio.run(grab()) is not asyncio.run(grab())
        assert isinstance(persistence._account_locks, weakref.WeakKeyDictionary)

    def test_writers_take_turns(self):
        order = []

        async def writer(name):
            async with account_lock("a"):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        async def both():
            await asyncio.gather(writer("x"), writer("y"))

        asyncio.run(both())
        assert order == ["x-in", "x-out", "y-in", "y-out"]
