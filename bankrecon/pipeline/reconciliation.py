"""
Reconciliation engine: match unmatched incoming transactions to unpaid outbound invoices.

Scoring (capped at 100):
  reference    invoice number found in the reference/description, or vice versa  50
  amount       exact 40, within MATCH_AMOUNT_TOLERANCE_PERCENT 25
  date         closest of issue/due date: <= 3 days 10, <= 7 days 5
  counterparty buyer name bigram similarity >= MATCH_COUNTERPARTY_THRESHOLD      10

At or above AUTO_MATCH_THRESHOLD the transaction is auto-matched and the invoice marked
paid. Already matched transactions are never touched, so runs are idempotent.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Optional, Protocol, Sequence

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bankrecon.config import settings
from bankrecon.models.enums import Direction, MatchStatus
from bankrecon.models.tables import Invoice, Transaction
from bankrecon.observability.metrics import reconciliation_matches_total
from bankrecon.pipeline.errors import (
    ReconciliationBelowThreshold,
    TransactionLocked,
    TransactionNotFound,
)
from bankrecon.pipeline.similarity import bigram_similarity, normalize_reference

logger = structlog.get_logger(__name__)

REFERENCE_POINTS = 50
EXACT_AMOUNT_POINTS = 40
CLOSE_AMOUNT_POINTS = 25
NEAR_DATE_POINTS = 10
WEEK_DATE_POINTS = 5
COUNTERPARTY_POINTS = 10
MAX_SCORE = 100

MATCHED_STATES = (MatchStatus.AUTO_MATCHED.value, MatchStatus.MANUALLY_MATCHED.value)


@dataclass
class InvoiceRecord:
    invoice_id: str
    invoice_number: str
    total_amount: Decimal
    issue_date: date
    due_date: Optional[date] = None
    buyer_name: Optional[str] = None


@dataclass
class MatchScore:
    invoice: InvoiceRecord
    score: int
    breakdown: dict[str, int] = field(default_factory=dict)
    date_distance: Optional[int] = None


@dataclass
class MatchDecision:
    transaction: Transaction
    best: Optional[MatchScore]
    auto_match: bool


class InvoiceGateway(Protocol):
    """The invoicing module's side of reconciliation."""

    async def list_unpaid_outbound(self, account_id: str) -> list[InvoiceRecord]: ...

    async def mark_paid(self, invoice_id: str, paid_at: date) -> None: ...

    async def mark_unpaid(self, invoice_id: str) -> None: ...


class SqlInvoiceGateway:
    """InvoiceGateway over the mirrored invoices table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_unpaid_outbound(self, account_id: str) -> list[InvoiceRecord]:
        result = await self.session.execute(
            select(Invoice).where(
                Invoice.account_id == uuid.UUID(str(account_id)),
                Invoice.direction == "OUTBOUND",
                Invoice.paid_at.is_(None),
            )
        )
        return [
            InvoiceRecord(
                invoice_id=str(inv.invoice_id),
                invoice_number=inv.invoice_number,
                total_amount=inv.total_amount,
                issue_date=inv.issue_date,
                due_date=inv.due_date,
                buyer_name=inv.buyer_name,
            )
            for inv in result.scalars().all()
        ]

    async def mark_paid(self, invoice_id: str, paid_at: date) -> None:
        await self.session.execute(
            update(Invoice)
            .where(Invoice.invoice_id == uuid.UUID(str(invoice_id)))
            .values(paid_at=datetime.combine(paid_at, time.min, tzinfo=timezone.utc))
        )

    async def mark_unpaid(self, invoice_id: str) -> None:
        await self.session.execute(
            update(Invoice)
            .where(Invoice.invoice_id == uuid.UUID(str(invoice_id)))
            .values(paid_at=None)
        )


# ─── Pure scoring ────────────────────────────────────────────

def _reference_hit(transaction: Transaction, invoice_number: str) -> bool:
    target = normalize_reference(invoice_number)
    if not target:
        return False
    reference = normalize_reference(transaction.reference)
    description = normalize_reference(transaction.description)
    if target in reference or target in description:
        return True
    return bool(reference) and reference in target


def _date_distance(transaction: Transaction, invoice: InvoiceRecord) -> int:
    dates = [d for d in (invoice.issue_date, invoice.due_date) if d is not None]
    return min(abs((transaction.booking_date - d).days) for d in dates)


def score_match(
    transaction: Transaction,
    invoice: InvoiceRecord,
    amount_tolerance_percent: Optional[float] = None,
    counterparty_threshold: Optional[float] = None,
) -> MatchScore:
    """Score one transaction/invoice pair."""
    if amount_tolerance_percent is None:
        amount_tolerance_percent = settings.MATCH_AMOUNT_TOLERANCE_PERCENT
    if counterparty_threshold is None:
        counterparty_threshold = settings.MATCH_COUNTERPARTY_THRESHOLD

    breakdown: dict[str, int] = {}

    if _reference_hit(transaction, invoice.invoice_number):
        breakdown["reference"] = REFERENCE_POINTS

    amount = Decimal(transaction.amount)
    total = Decimal(invoice.total_amount)
    if amount == total:
        breakdown["amount"] = EXACT_AMOUNT_POINTS
    elif total != 0:
        deviation = abs(amount - total) / abs(total) * 100
        if deviation < Decimal(str(amount_tolerance_percent)):
            breakdown["amount"] = CLOSE_AMOUNT_POINTS

    distance = _date_distance(transaction, invoice)
    if distance <= 3:
        breakdown["date"] = NEAR_DATE_POINTS
    elif distance <= 7:
        breakdown["date"] = WEEK_DATE_POINTS

    if (
        transaction.counterparty_name
        and invoice.buyer_name
        and bigram_similarity(transaction.counterparty_name, invoice.buyer_name) >= counterparty_threshold
    ):
        breakdown["counterparty"] = COUNTERPARTY_POINTS

    return MatchScore(
        invoice=invoice,
        score=min(sum(breakdown.values()), MAX_SCORE),
        breakdown=breakdown,
        date_distance=distance,
    )


def rank_candidates(transaction: Transaction, invoices: Sequence[InvoiceRecord]) -> list[MatchScore]:
    """Non-zero scores, best first; ties by date distance, then invoice number."""
    scores = [score_match(transaction, inv) for inv in invoices]
    scores = [s for s in scores if s.score > 0]
    scores.sort(key=lambda s: (-s.score, s.date_distance, s.invoice.invoice_number))
    return scores


def _is_candidate(transaction: Transaction) -> bool:
    return (
        transaction.direction == Direction.INCOMING.value
        and (transaction.match_status or MatchStatus.UNMATCHED.value) == MatchStatus.UNMATCHED.value
    )


def select_matches(
    transactions: Sequence[Transaction],
    invoices: Sequence[InvoiceRecord],
    threshold: Optional[int] = None,
) -> list[MatchDecision]:
    """
    Decide matches for a batch. Transactions are taken in (date, id) order and each
    invoice is consumed by at most one auto-match.
    """
    if threshold is None:
        threshold = settings.AUTO_MATCH_THRESHOLD

    available = {inv.invoice_id: inv for inv in invoices}
    decisions = []
    ordered = sorted(
        (t for t in transactions if _is_candidate(t)),
        key=lambda t: (t.booking_date, str(t.transaction_id)),
    )
    for tx in ordered:
        ranked = rank_candidates(tx, list(available.values()))
        best = ranked[0] if ranked else None
        auto = best is not None and best.score >= threshold
        if auto:
            del available[best.invoice.invoice_id]
        decisions.append(MatchDecision(transaction=tx, best=best, auto_match=auto))
    return decisions


# ─── Ledger operations ───────────────────────────────────────

@dataclass
class ReconciliationSummary:
    evaluated: int = 0
    auto_matched: int = 0
    below_threshold: list[ReconciliationBelowThreshold] = field(default_factory=list)


async def run_reconciliation(
    session: AsyncSession,
    account_id: str,
    gateway: Optional[InvoiceGateway] = None,
    threshold: Optional[int] = None,
) -> ReconciliationSummary:
    """Match every UNMATCHED incoming transaction of the account. Caller commits."""
    if threshold is None:
        threshold = settings.AUTO_MATCH_THRESHOLD
    gateway = gateway or SqlInvoiceGateway(session)

    result = await session.execute(
        select(Transaction).where(
            Transaction.account_id == uuid.UUID(str(account_id)),
            Transaction.direction == Direction.INCOMING.value,
            Transaction.match_status == MatchStatus.UNMATCHED.value,
        )
    )
    transactions = list(result.scalars().all())
    summary = ReconciliationSummary(evaluated=len(transactions))
    if not transactions:
        return summary

    invoices = await gateway.list_unpaid_outbound(str(account_id))
    now = datetime.now(timezone.utc)

    for decision in select_matches(transactions, invoices, threshold):
        tx = decision.transaction
        if decision.auto_match:
            tx.match_status = MatchStatus.AUTO_MATCHED.value
            tx.matched_invoice_id = uuid.UUID(decision.best.invoice.invoice_id)
            tx.confidence_score = decision.best.score
            tx.matched_at = now
            tx.matched_by = "system"
            await gateway.mark_paid(decision.best.invoice.invoice_id, tx.booking_date)
            summary.auto_matched += 1
            reconciliation_matches_total.inc()
            logger.info(
                "transaction_auto_matched",
                transaction_id=str(tx.transaction_id),
                invoice_id=decision.best.invoice.invoice_id,
                score=decision.best.score,
                breakdown=decision.best.breakdown,
            )
        else:
            best_score = decision.best.score if decision.best else 0
            tx.confidence_score = best_score
            summary.below_threshold.append(
                ReconciliationBelowThreshold(str(tx.transaction_id), best_score, threshold)
            )

    await session.flush()
    logger.info(
        "reconciliation_completed",
        account_id=str(account_id),
        evaluated=summary.evaluated,
        auto_matched=summary.auto_matched,
        below_threshold=len(summary.below_threshold),
    )
    return summary


async def _load_transaction(session: AsyncSession, transaction_id: str) -> Transaction:
    tx = await session.get(Transaction, uuid.UUID(str(transaction_id)))
    if tx is None:
        raise TransactionNotFound(f"Transaction {transaction_id} not found")
    return tx


async def manual_match(
    session: AsyncSession,
    transaction_id: str,
    invoice_id: str,
    matched_by: str = "user",
    gateway: Optional[InvoiceGateway] = None,
) -> Transaction:
    gateway = gateway or SqlInvoiceGateway(session)
    tx = await _load_transaction(session, transaction_id)
    if tx.match_status in MATCHED_STATES:
        raise TransactionLocked(f"Transaction {transaction_id} is already matched; unmatch it first")

    tx.match_status = MatchStatus.MANUALLY_MATCHED.value
    tx.matched_invoice_id = uuid.UUID(str(invoice_id))
    tx.confidence_score = MAX_SCORE
    tx.matched_at = datetime.now(timezone.utc)
    tx.matched_by = matched_by
    await gateway.mark_paid(str(invoice_id), tx.booking_date)
    await session.flush()
    logger.info("transaction_manually_matched", transaction_id=str(transaction_id),
                invoice_id=str(invoice_id), matched_by=matched_by)
    return tx


async def unmatch(
    session: AsyncSession,
    transaction_id: str,
    gateway: Optional[InvoiceGateway] = None,
) -> Transaction:
    """Clear the invoice link, reopen the invoice and return to UNMATCHED."""
    gateway = gateway or SqlInvoiceGateway(session)
    tx = await _load_transaction(session, transaction_id)
    if tx.matched_invoice_id is not None:
        await gateway.mark_unpaid(str(tx.matched_invoice_id))
    tx.match_status = MatchStatus.UNMATCHED.value
    tx.matched_invoice_id = None
    tx.confidence_score = 0
    tx.matched_at = None
    tx.matched_by = None
    await session.flush()
    logger.info("transaction_unmatched", transaction_id=str(transaction_id))
    return tx


async def ignore_transaction(session: AsyncSession, transaction_id: str) -> Transaction:
    tx = await _load_transaction(session, transaction_id)
    if tx.match_status in MATCHED_STATES:
        raise TransactionLocked(f"Transaction {transaction_id} is matched; unmatch it first")
    tx.match_status = MatchStatus.IGNORED.value
    await session.flush()
    return tx


def assert_mutable(transaction: Transaction, changes: dict) -> None:
    """Amount and date are frozen while the transaction is matched."""
    frozen = {"amount", "booking_date"} & changes.keys()
    if frozen and transaction.match_status in MATCHED_STATES:
        raise TransactionLocked(
            f"Transaction {transaction.transaction_id} is matched; "
            f"unmatch it before changing {', '.join(sorted(frozen))}"
        )


def update_transaction_fields(transaction: Transaction, **changes) -> Transaction:
    assert_mutable(transaction, changes)
    for name, value in changes.items():
        setattr(transaction, name, value)
    return transaction
