"""
Deduplication engine for CSV imports and provider sync feeds.

Classification, first match wins:
  1. strict  same external id, or same (date, amount, direction) plus the same
             normalised reference or counterparty                      -> skipped
  2. fuzzy   same direction, dates within DEDUP_DATE_WINDOW_DAYS, amounts within
             DEDUP_AMOUNT_TOLERANCE, description similarity >= threshold -> flagged
  3. new                                                                 -> inserted

Rows accepted earlier in the same batch count as existing, so a file with the same row
twice inserts it once. Ingestion for one account runs under the account locks, so two
concurrent batches cannot both insert the same provider id.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bankrecon.config import settings
from bankrecon.models.enums import DedupOutcome, MatchStatus, ReviewStatus, TransactionSource
from bankrecon.models.tables import BankAccount, CsvImport, PotentialDuplicate, Transaction
from bankrecon.observability.metrics import dedup_outcomes_total
from bankrecon.pipeline.csv_parser import csv_checksum
from bankrecon.pipeline.persistence import account_lock, lock_account
from bankrecon.pipeline.reconciliation import InvoiceGateway, run_reconciliation
from bankrecon.pipeline.similarity import bigram_similarity, normalize_reference, normalize_text
from bankrecon.schemas.transactions import IncomingTransaction

logger = structlog.get_logger(__name__)


@dataclass
class DedupDecision:
    outcome: DedupOutcome
    existing: Optional[Transaction] = None
    similarity: float = 0.0
    rule: Optional[str] = None


@dataclass
class IngestResult:
    inserted: int = 0
    skipped: int = 0
    flagged: int = 0
    deduplicated: bool = False
    auto_matched: int = 0
    transaction_ids: list[str] = field(default_factory=list)


def _same_core(candidate: IncomingTransaction, row: Transaction) -> bool:
    return (
        candidate.booking_date == row.booking_date
        and Decimal(candidate.amount) == Decimal(row.amount)
        and candidate.direction == row.direction
    )


def strict_rule(candidate: IncomingTransaction, row: Transaction) -> Optional[str]:
    """Name of the strict rule the pair satisfies, or None."""
    if candidate.external_id and row.external_id and candidate.external_id == row.external_id:
        return "external_id"
    if not _same_core(candidate, row):
        return None
    reference = normalize_reference(candidate.reference)
    if reference and reference == normalize_reference(row.reference):
        return "reference"
    counterparty = normalize_text(candidate.counterparty_name)
    if counterparty and counterparty == normalize_text(row.counterparty_name):
        return "counterparty"
    return None


def classify(
    candidate: IncomingTransaction,
    existing: Sequence[Transaction],
    date_window_days: Optional[int] = None,
    amount_tolerance: Optional[Decimal] = None,
    similarity_threshold: Optional[float] = None,
) -> DedupDecision:
    """Pure classification of one incoming row against known rows."""
    if date_window_days is None:
        date_window_days = settings.DEDUP_DATE_WINDOW_DAYS
    if amount_tolerance is None:
        amount_tolerance = Decimal(str(settings.DEDUP_AMOUNT_TOLERANCE))
    if similarity_threshold is None:
        similarity_threshold = settings.DEDUP_SIMILARITY_THRESHOLD

    for row in existing:
        rule = strict_rule(candidate, row)
        if rule:
            return DedupDecision(DedupOutcome.STRICT_DUPLICATE, existing=row, similarity=100.0, rule=rule)

    best: Optional[DedupDecision] = None
    for row in existing:
        if candidate.direction != row.direction:
            continue
        if abs((candidate.booking_date - row.booking_date).days) > date_window_days:
            continue
        if abs(Decimal(candidate.amount) - Decimal(row.amount)) > amount_tolerance:
            continue
        similarity = bigram_similarity(candidate.description, row.description)
        if similarity >= similarity_threshold and (best is None or similarity > best.similarity):
            best = DedupDecision(DedupOutcome.FUZZY_DUPLICATE, existing=row, similarity=similarity,
                                 rule="fuzzy")
    return best or DedupDecision(DedupOutcome.NEW)


def transaction_from_incoming(
    account_id: uuid.UUID,
    row: IncomingTransaction,
    source: str,
) -> Transaction:
    # Explicit id so in-batch rows can be referenced before flush
    return Transaction(
        transaction_id=uuid.uuid4(),
        account_id=account_id,
        external_id=row.external_id,
        booking_date=row.booking_date,
        value_date=row.value_date,
        direction=row.direction,
        amount=row.amount,
        currency=row.currency,
        counterparty_name=row.counterparty_name,
        counterparty_iban=row.counterparty_iban,
        description=row.description or "",
        reference=row.reference,
        balance_after=row.balance_after,
        source=source,
        match_status=MatchStatus.UNMATCHED.value,
        confidence_score=0,
    )


async def _window_rows(
    session: AsyncSession, account_id: uuid.UUID, rows: Sequence[IncomingTransaction]
) -> list[Transaction]:
    window = timedelta(days=settings.DEDUP_DATE_WINDOW_DAYS)
    dates = [r.booking_date for r in rows]
    external_ids = [r.external_id for r in rows if r.external_id]

    condition = Transaction.booking_date.between(min(dates) - window, max(dates) + window)
    if external_ids:
        condition = condition | Transaction.external_id.in_(external_ids)
    result = await session.execute(
        select(Transaction).where(Transaction.account_id == account_id, condition)
    )
    return list(result.scalars().all())


async def _ingest(
    session: AsyncSession,
    account: BankAccount,
    rows: Sequence[IncomingTransaction],
    source: str,
) -> IngestResult:
    account_uuid = account.account_id
    result = IngestResult()
    if not rows:
        return result

    known = await _window_rows(session, account_uuid, rows)

    for row in rows:
        decision = classify(row, known)
        dedup_outcomes_total.labels(source=source, outcome=decision.outcome.value).inc()

        if decision.outcome == DedupOutcome.STRICT_DUPLICATE:
            result.skipped += 1
            logger.debug("dedup_strict_skip", rule=decision.rule,
                         existing_id=str(decision.existing.transaction_id))
        elif decision.outcome == DedupOutcome.FUZZY_DUPLICATE:
            session.add(PotentialDuplicate(
                account_id=account_uuid,
                existing_transaction_id=decision.existing.transaction_id,
                candidate_json=row.model_dump(mode="json"),
                source=source,
                similarity=Decimal(str(round(decision.similarity, 2))),
                status=ReviewStatus.PENDING.value,
            ))
            result.flagged += 1
        else:
            tx = transaction_from_incoming(account_uuid, row, source)
            session.add(tx)
            known.append(tx)
            result.inserted += 1
            result.transaction_ids.append(str(tx.transaction_id))

    if source == TransactionSource.PROVIDER_SYNC.value:
        account.last_sync_at = datetime.now(timezone.utc)

    await session.flush()
    logger.info(
        "transactions_ingested",
        account_id=str(account_uuid),
        source=source,
        inserted=result.inserted,
        skipped=result.skipped,
        flagged=result.flagged,
    )
    return result


async def ingest_transactions(
    session: AsyncSession,
    account_id: str,
    rows: Sequence[IncomingTransaction],
    source: str = TransactionSource.PROVIDER_SYNC.value,
) -> IngestResult:
    """
    Classify and write a batch. Strict duplicates are skipped, fuzzy ones queued as
    PotentialDuplicate for review. Batches for one account are serialised by the account
    row lock, which holds until the caller commits. Flushes; the caller commits.
    """
    account_uuid = uuid.UUID(str(account_id))
    async with account_lock(str(account_uuid)):
        account = await lock_account(session, account_uuid)
        return await _ingest(session, account, rows, source)


async def import_csv_rows(
    session: AsyncSession,
    account_id: str,
    file_name: str,
    rows: Sequence[IncomingTransaction],
    gateway: Optional[InvoiceGateway] = None,
) -> IngestResult:
    """
    Import parsed CSV rows, then update the account balance and reconcile. Commits.

    The same rows uploaded again write nothing: the result is flagged deduplicated and every
    row counts as a strict-duplicate skip.
    """
    account_uuid = uuid.UUID(str(account_id))
    checksum = csv_checksum(list(rows))
    source = TransactionSource.FILE_IMPORT.value

    async with account_lock(str(account_uuid)):
        account = await lock_account(session, account_uuid)

        seen = await session.execute(
            select(CsvImport).where(CsvImport.account_id == account_uuid, CsvImport.file_checksum == checksum)
        )
        if seen.scalar_one_or_none() is not None:
            # Same canonical rows as an earlier import
            dedup_outcomes_total.labels(source=source, outcome=DedupOutcome.STRICT_DUPLICATE.value).inc(len(rows))
            await session.commit()
            logger.info("csv_import_deduplicated", account_id=str(account_id), checksum=checksum[:12],
                        skipped=len(rows))
            return IngestResult(skipped=len(rows), deduplicated=True)

        result = await _ingest(session, account, rows, source)

        session.add(CsvImport(
            account_id=account_uuid,
            file_name=file_name,
            file_checksum=checksum,
            row_count=len(rows),
            inserted_count=result.inserted,
            skipped_count=result.skipped,
            flagged_count=result.flagged,
        ))

        last_balance = next((r.balance_after for r in reversed(rows) if r.balance_after is not None), None)
        if last_balance is not None:
            account.current_balance = last_balance

        if result.inserted:
            summary = await run_reconciliation(session, account_id, gateway)
            result.auto_matched = summary.auto_matched

        await session.commit()
    return result
