"""
Tests for invoice matching.
"""

import asyncio
import uuid
from datetime import date
from decimal import Decimal

import pytest

from bankrecon.pipeline.errors import TransactionLocked
from bankrecon.pipeline.reconciliation import (
    InvoiceRecord,
    assert_mutable,
    rank_candidates,
    run_reconciliation,
    score_match,
    select_matches,
    update_transaction_fields,
)


def invoice(number="INV-2025-007", amount="500.00", issued=date(2025, 1, 12), **kwargs):
    return InvoiceRecord(
        invoice_id=str(uuid.uuid4()),
        invoice_number=number,
        total_amount=Decimal(amount),
        issue_date=issued,
        **kwargs,
    )


class FakeGateway:
    def __init__(self, invoices):
        self.invoices = invoices
        self.paid = {}

    async def list_unpaid_outbound(self, account_id):
        return [inv for inv in self.invoices if inv.invoice_id not in self.paid]

    async def mark_paid(self, invoice_id, paid_on):
        self.paid[invoice_id] = paid_on

    async def mark_unpaid(self, invoice_id):
        self.paid.pop(invoice_id, None)


class FakeResult:
    def __init__(self, rows):
        self.rows = rows

    def scalars(self):
        return self

    def all(self):
        return self.rows


class FakeSession:
    """Returns the unmatched incoming rows the query would select."""

    def __init__(self, rows):
        self.rows = rows
        self.flushed = 0

    async def execute(self, statement):
        return FakeResult([r for r in self.rows if r.direction == "INCOMING" and r.match_status == "UNMATCHED"])

    async def flush(self):
        self.flushed += 1


class TestScoreMatch:

    def test_reference_amount_and_date(self, ledger_row):
        tx = ledger_row(reference="INV-2025-007", amount=Decimal("500.00"), booking_date=date(2025, 1, 14))
        result = score_match(tx, invoice())
        assert result.breakdown == {"reference": 50, "amount": 40, "date": 10}
        assert result.score == 100

    def test_reference_found_in_description(self, ledger_row):
        tx = ledger_row(description="Placanje racuna inv 2025 007", amount=Decimal("1.00"),
                        booking_date=date(2024, 6, 1))
        assert score_match(tx, invoice()).breakdown == {"reference": 50}

    def test_reference_contained_in_invoice_number(self, ledger_row):
        tx = ledger_row(reference="2025-007", amount=Decimal("1.00"), booking_date=date(2024, 6, 1))
        assert score_match(tx, invoice()).breakdown == {"reference": 50}

    def test_close_amount(self, ledger_row):
        tx = ledger_row(amount=Decimal("104.99"), booking_date=date(2024, 6, 1))
        assert score_match(tx, invoice(amount="100.00")).breakdown == {"amount": 25}

    def test_exactly_five_percent_scores_nothing(self, ledger_row):
        tx = ledger_row(amount=Decimal("105.00"), booking_date=date(2024, 6, 1))
        assert score_match(tx, invoice(amount="100.00")).score == 0

    def test_week_window(self, ledger_row):
        tx = ledger_row(amount=Decimal("1.00"), booking_date=date(2025, 1, 19))
        assert score_match(tx, invoice()).breakdown == {"date": 5}

    def test_due_date_counts(self, ledger_row):
        tx = ledger_row(amount=Decimal("1.00"), booking_date=date(2025, 2, 11))
        result = score_match(tx, invoice(due_date=date(2025, 2, 10)))
        assert result.breakdown == {"date": 10}
        assert result.date_distance == 1

    def test_counterparty(self, ledger_row):
        tx = ledger_row(amount=Decimal("1.00"), counterparty_name="KUPAC D.O.O.", booking_date=date(2024, 6, 1))
        assert score_match(tx, invoice(buyer_name="Kupac d.o.o.")).breakdown == {"counterparty": 10}


class TestSelectMatches:

    def test_auto_match_above_threshold(self, ledger_row):
        tx = ledger_row(reference="INV-2025-007", amount=Decimal("500.00"), booking_date=date(2025, 1, 14))
        decisions = select_matches([tx], [invoice()])
        assert decisions[0].auto_match
        assert decisions[0].best.score >= 80

    def test_below_threshold_is_reported(self, ledger_row):
        tx = ledger_row(amount=Decimal("500.00"), booking_date=date(2025, 1, 14))
        decision = select_matches([tx], [invoice()])[0]
        assert not decision.auto_match
        assert decision.best.score == 50

    def test_matched_and_outgoing_are_skipped(self, ledger_row):
        matched = ledger_row(reference="INV-2025-007", amount=Decimal("500.00"), match_status="AUTO_MATCHED")
        outgoing = ledger_row(reference="INV-2025-007", amount=Decimal("500.00"), direction="OUTGOING")
        assert select_matches([matched, outgoing], [invoice()]) == []

    def test_invoice_consumed_once(self, ledger_row):
        early = ledger_row(reference="INV-2025-007", amount=Decimal("500.00"), booking_date=date(2025, 1, 13))
        late = ledger_row(reference="INV-2025-007", amount=Decimal("500.00"), booking_date=date(2025, 1, 14))
        decisions = select_matches([late, early], [invoice()])
        assert [d.transaction for d in decisions] == [early, late]
        assert [d.auto_match for d in decisions] == [True, False]

    def test_ties_prefer_closer_date(self, ledger_row):
        tx = ledger_row(reference="INV", amount=Decimal("500.00"), booking_date=date(2025, 1, 14))
        near = invoice(number="INV-B", issued=date(2025, 1, 13))
        far = invoice(number="INV-A", issued=date(2025, 1, 11))
        ranked = rank_candidates(tx, [far, near])
        assert ranked[0].invoice is near

    def test_zero_scores_filtered(self, ledger_row):
        tx = ledger_row(amount=Decimal("1.00"), booking_date=date(2020, 1, 1))
        assert rank_candidates(tx, [invoice()]) == []


class TestRunReconciliation:

    def test_marks_match_and_invoice(self, ledger_row):
        tx = ledger_row(reference="INV-2025-007", amount=Decimal("500.00"), booking_date=date(2025, 1, 14))
        inv = invoice()
        gateway = FakeGateway([inv])
        session = FakeSession([tx])

        summary = asyncio.run(run_reconciliation(session, str(tx.account_id), gateway))

        assert summary.auto_matched == 1
        assert tx.match_status == "AUTO_MATCHED"
        assert tx.matched_invoice_id == uuid.UUID(inv.invoice_id)
        assert tx.matched_by == "system"
        assert gateway.paid == {inv.invoice_id: date(2025, 1, 14)}

    def test_second_run_is_a_no_op(self, ledger_row):
        tx = ledger_row(reference="INV-2025-007", amount=Decimal("500.00"), booking_date=date(2025, 1, 14))
        gateway = FakeGateway([invoice()])
        session = FakeSession([tx])

        asyncio.run(run_reconciliation(session, str(tx.account_id), gateway))
        again = asyncio.run(run_reconciliation(session, str(tx.account_id), gateway))

        assert again.evaluated == 0
        assert again.auto_matched == 0

    def test_below_threshold_keeps_best_score(self, ledger_row):
        tx = ledger_row(amount=Decimal("500.00"), booking_date=date(2025, 1, 14))
        summary = asyncio.run(run_reconciliation(FakeSession([tx]), str(tx.account_id), FakeGateway([invoice()])))
        assert tx.match_status == "UNMATCHED"
        assert tx.confidence_score == 50
        assert summary.below_threshold[0].best_score == 50


class TestMutability:

    def test_matched_amount_is_frozen(self, ledger_row):
        tx = ledger_row(match_status="MANUALLY_MATCHED")
        with pytest.raises(TransactionLocked):
            assert_mutable(tx, {"amount": Decimal("1.00")})

    def test_matched_description_is_editable(self, ledger_row):
        tx = ledger_row(match_status="AUTO_MATCHED")
        update_transaction_fields(tx, description="corrected")
        assert tx.description == "corrected"

    def test_unmatched_amount_is_editable(self, ledger_row):
        tx = update_transaction_fields(ledger_row(), amount=Decimal("7.00"))
        assert tx.amount == Decimal("7.00")
