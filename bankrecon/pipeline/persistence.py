"""
Persistence layer: write a resolved statement, its pages and transactions in one DB
transaction, and keep the per-account statement chain.

The chain is closing(N) == opening(N+1) within CHAIN_TOLERANCE and consecutive sequence
numbers. A break sets is_gap_detected and an advisory on the job; it never blocks the import.
Writes for one account are serialised by an in-process asyncio.Lock plus a row lock on the
BankAccount, so two workers cannot hand out the same sequence number. Dedup ingestion takes
the same pair of locks.
"""

import asyncio
import uuid
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import AsyncIterator, Optional, Sequence

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bankrecon.config import settings
from bankrecon.models.enums import JobStatus, MatchStatus, PageStatus, TierType, TransactionSource
from bankrecon.models.tables import BankAccount, ImportJob, Statement, StatementPage, Transaction
from bankrecon.observability.metrics import statement_gaps_total
from bankrecon.pipeline.auditor import to_decimal
from bankrecon.pipeline.errors import (
    AccountNotFound,
    MalformedStatement,
    SequenceGapDetected,
    TransactionLocked,
)
from bankrecon.pipeline.job_state import assert_transition
from bankrecon.schemas.contracts import ParsedStatement, ResolvedPage

logger = structlog.get_logger(__name__)

# Highest tier any page needed wins
TIER_RANK = [TierType.XML, TierType.CSV, TierType.TEXT_LLM, TierType.VISION_LLM]


@dataclass
class StatementMeta:
    opening_balance: Decimal
    closing_balance: Decimal
    period_start: date
    period_end: date
    statement_date: date
    sequence_number: Optional[int]


@dataclass
class ChainCheck:
    is_gap: bool
    reason: Optional[str] = None


# ─── Pure derivations ────────────────────────────────────────

def derive_statement_meta(pages: Sequence[ResolvedPage], today: Optional[date] = None) -> StatementMeta:
    """
    Statement header from resolved pages.

    Opening comes from the first page with a start balance (else 0), closing from the last
    page with an end balance (else the opening). The period spans the transaction dates.
    """
    ordered = sorted(pages, key=lambda p: p.page_number)
    candidates = [p.candidate for p in ordered if p.candidate is not None]

    opening = next(
        (c.page_start_balance for c in candidates if c.page_start_balance is not None),
        Decimal("0"),
    )
    closing = next(
        (c.page_end_balance for c in reversed(candidates) if c.page_end_balance is not None),
        opening,
    )

    dates = [t.booking_date for c in candidates for t in c.transactions]
    today = today or date.today()
    period_start = min(dates) if dates else today
    period_end = max(dates) if dates else today

    sequence_number = None
    statement_date = None
    for c in candidates:
        if c.metadata is None:
            continue
        if sequence_number is None and c.metadata.sequence_number:
            sequence_number = c.metadata.sequence_number
        if statement_date is None and c.metadata.statement_date:
            statement_date = c.metadata.statement_date

    return StatementMeta(
        opening_balance=to_decimal(opening),
        closing_balance=to_decimal(closing),
        period_start=period_start,
        period_end=period_end,
        statement_date=statement_date or period_end,
        sequence_number=sequence_number,
    )


def build_parsed_statement(pages: Sequence[ResolvedPage], currency: str = "EUR") -> ParsedStatement:
    meta = derive_statement_meta(pages)
    return ParsedStatement(
        sequence_number=meta.sequence_number,
        statement_date=meta.statement_date,
        period_start=meta.period_start,
        period_end=meta.period_end,
        opening_balance=meta.opening_balance,
        closing_balance=meta.closing_balance,
        currency=currency,
        pages=sorted(pages, key=lambda p: p.page_number),
    )


def assign_sequence(sequence_number: Optional[int], next_counter: int) -> int:
    """0 or missing means the bank did not number the statement: take the account counter."""
    return sequence_number if sequence_number else next_counter


def check_chain_continuity(
    previous_sequence: Optional[int],
    previous_closing: Optional[Decimal],
    sequence_number: int,
    opening_balance: Decimal,
    tolerance: Optional[Decimal] = None,
) -> ChainCheck:
    """Compare a new statement against its predecessor. No predecessor is never a gap."""
    if previous_sequence is None:
        return ChainCheck(is_gap=False)
    if tolerance is None:
        tolerance = Decimal(str(settings.CHAIN_TOLERANCE))

    reasons = []
    if sequence_number != previous_sequence + 1:
        reasons.append(f"sequence {previous_sequence} -> {sequence_number}")
    if previous_closing is not None:
        difference = abs(Decimal(previous_closing) - Decimal(opening_balance))
        if difference > tolerance:
            reasons.append(
                f"previous closing {previous_closing} != opening {opening_balance} (diff {difference})"
            )
    if reasons:
        return ChainCheck(is_gap=True, reason="; ".join(reasons))
    return ChainCheck(is_gap=False)


def _page_has_transactions(page: ResolvedPage) -> bool:
    return page.candidate is not None and bool(page.candidate.transactions)


def derive_job_status(pages: Sequence[ResolvedPage]) -> str:
    if not pages:
        return JobStatus.FAILED.value
    failed = [p for p in pages if p.status == PageStatus.FAILED.value]
    if len(failed) == len(pages) and not any(_page_has_transactions(p) for p in pages):
        return JobStatus.FAILED.value
    if failed:
        return JobStatus.NEEDS_REVIEW.value
    return JobStatus.VERIFIED.value


def derive_tier_used(pages: Sequence[ResolvedPage]) -> Optional[str]:
    used = {p.tier_used for p in pages if p.tier_used}
    for tier in reversed(TIER_RANK):
        if tier.value in used:
            return tier.value
    return None


# ─── Per-account serialisation ───────────────────────────────

# asyncio locks are bound to one loop; entries go away with their loop
_account_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[str, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


def _lock_for(account_id: str) -> asyncio.Lock:
    locks = _account_locks.setdefault(asyncio.get_running_loop(), {})
    return locks.setdefault(str(account_id), asyncio.Lock())


@asynccontextmanager
async def account_lock(account_id: str) -> AsyncIterator[None]:
    """In-process lock per (event loop, account)."""
    async with _lock_for(account_id):
        yield


async def lock_account(session: AsyncSession, account_id: uuid.UUID) -> BankAccount:
    """SELECT ... FOR UPDATE on the account row; held until the caller commits."""
    result = await session.execute(
        select(BankAccount).where(BankAccount.account_id == account_id).with_for_update()
    )
    account = result.scalar_one_or_none()
    if account is None:
        raise AccountNotFound(f"Bank account {account_id} not found")
    return account


# ─── Writes ──────────────────────────────────────────────────

async def _previous_statement(
    session: AsyncSession, account_id: uuid.UUID, sequence_number: int
) -> Optional[Statement]:
    result = await session.execute(
        select(Statement)
        .where(Statement.account_id == account_id, Statement.sequence_number < sequence_number)
        .order_by(Statement.sequence_number.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


def _append_advisory(job: ImportJob, advisory: dict) -> None:
    # Reassign so the JSONB column is flagged dirty
    job.advisories_json = list(job.advisories_json or []) + [advisory]


async def persist_statement(
    session: AsyncSession,
    job: ImportJob,
    parsed: ParsedStatement,
    currency: Optional[str] = None,
) -> Statement:
    """
    Write statement, pages and transactions, finish the job and commit.
    Raises MalformedStatement when no page produced anything to keep.
    """
    status = derive_job_status(parsed.pages)
    if status == JobStatus.FAILED.value:
        raise MalformedStatement("No page of the statement could be extracted")
    assert_transition(job.status, status)

    account_id = job.account_id
    async with account_lock(str(account_id)):
        account = await lock_account(session, account_id)

        sequence_number = assign_sequence(parsed.sequence_number, account.next_sequence_number)
        previous = await _previous_statement(session, account_id, sequence_number)
        chain = check_chain_continuity(
            previous.sequence_number if previous else None,
            previous.closing_balance if previous else None,
            sequence_number,
            parsed.opening_balance,
        )

        statement = Statement(
            account_id=account_id,
            import_job_id=job.job_id,
            statement_date=parsed.statement_date,
            period_start=parsed.period_start,
            period_end=parsed.period_end,
            sequence_number=sequence_number,
            previous_sequence_number=previous.sequence_number if previous else None,
            opening_balance=parsed.opening_balance,
            closing_balance=parsed.closing_balance,
            currency=currency or parsed.currency or account.currency,
            is_gap_detected=chain.is_gap,
            gap_reason=chain.reason,
        )
        session.add(statement)
        await session.flush()

        transaction_count = 0
        for page in parsed.pages:
            candidate = page.candidate
            page_row = StatementPage(
                statement_id=statement.statement_id,
                account_id=account_id,
                page_number=page.page_number,
                page_start_balance=candidate.page_start_balance if candidate else None,
                page_end_balance=candidate.page_end_balance if candidate else None,
                status=page.status,
                tier_used=page.tier_used,
                discrepancy=page.audit.discrepancy if page.audit else None,
                failure_reason=page.failure_reason,
                raw_text=page.raw_text,
            )
            session.add(page_row)
            await session.flush()

            for tx in candidate.transactions if candidate else []:
                session.add(Transaction(
                    account_id=account_id,
                    statement_id=statement.statement_id,
                    page_id=page_row.page_id,
                    external_id=tx.external_id,
                    booking_date=tx.booking_date,
                    value_date=tx.value_date,
                    direction=tx.direction,
                    amount=tx.amount,
                    currency=statement.currency,
                    counterparty_name=tx.payee,
                    counterparty_iban=tx.counterparty_iban,
                    description=tx.description or "",
                    reference=tx.reference,
                    source=TransactionSource.FILE_IMPORT.value,
                    match_status=MatchStatus.UNMATCHED.value,
                ))
                transaction_count += 1

        newest = await session.execute(
            select(func.max(Statement.sequence_number)).where(Statement.account_id == account_id)
        )
        if sequence_number >= (newest.scalar() or 0):
            account.current_balance = parsed.closing_balance
        account.next_sequence_number = max(account.next_sequence_number, sequence_number + 1)

        if chain.is_gap:
            gap = SequenceGapDetected(chain.reason)
            _append_advisory(job, {"code": gap.error_code, "message": gap.message})
            statement_gaps_total.inc()
            logger.warning(
                "statement_gap_detected",
                account_id=str(account_id),
                sequence_number=sequence_number,
                reason=chain.reason,
            )

        job.status = status
        job.tier_used = derive_tier_used(parsed.pages)
        job.pages_processed = len(parsed.pages)
        job.pages_failed = sum(1 for p in parsed.pages if p.status == PageStatus.FAILED.value)
        job.finished_at = datetime.now(timezone.utc)

        await session.commit()

    logger.info(
        "statement_persisted",
        job_id=str(job.job_id),
        statement_id=str(statement.statement_id),
        sequence_number=sequence_number,
        pages=len(parsed.pages),
        transactions=transaction_count,
        status=status,
        gap=chain.is_gap,
    )
    return statement


async def get_statement_for_job(session: AsyncSession, job_id: uuid.UUID) -> Optional[Statement]:
    result = await session.execute(select(Statement).where(Statement.import_job_id == job_id))
    return result.scalar_one_or_none()


async def delete_statement(session: AsyncSession, statement: Statement, gateway=None) -> int:
    """
    Remove a statement with its pages and transactions, reopening any invoice its
    transactions paid. Locked statements are immutable. Returns transactions removed.
    """
    if statement.is_locked:
        raise TransactionLocked(f"Statement {statement.statement_id} is locked")

    result = await session.execute(
        select(Transaction).where(Transaction.statement_id == statement.statement_id)
    )
    transactions = list(result.scalars().all())
    if gateway is not None:
        for tx in transactions:
            if tx.matched_invoice_id is not None:
                await gateway.mark_unpaid(str(tx.matched_invoice_id))

    await session.execute(delete(Transaction).where(Transaction.statement_id == statement.statement_id))
    await session.execute(delete(StatementPage).where(StatementPage.statement_id == statement.statement_id))
    await session.execute(delete(Statement).where(Statement.statement_id == statement.statement_id))
    await session.flush()

    logger.info(
        "statement_deleted",
        statement_id=str(statement.statement_id),
        transactions=len(transactions),
    )
    return len(transactions)
