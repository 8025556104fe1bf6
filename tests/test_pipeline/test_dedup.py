"""
Tests for duplicate classification.
"""

import uuid
from datetime import date
from decimal import Decimal

from bankrecon.models.enums import DedupOutcome
from bankrecon.pipeline.dedup import classify, strict_rule, transaction_from_incoming


class TestStrictRules:

    def test_same_external_id(self, incoming, ledger_row):
        existing = ledger_row(external_id="TX-1", booking_date=date(2024, 12, 1), amount=Decimal("1.00"))
        decision = classify(incoming(external_id="TX-1"), [existing])
        assert decision.outcome == DedupOutcome.STRICT_DUPLICATE
        assert decision.rule == "external_id"
        assert decision.existing is existing

    def test_same_reference_after_normalisation(self, incoming, ledger_row):
        existing = ledger_row(direction="OUTGOING", amount=Decimal("120.00"), reference="inv 0042")
        decision = classify(incoming(reference="INV-0042"), [existing])
        assert decision.outcome == DedupOutcome.STRICT_DUPLICATE
        assert decision.rule == "reference"

    def test_same_counterparty(self, incoming, ledger_row):
        existing = ledger_row(direction="OUTGOING", amount=Decimal("120.00"), counterparty_name="Najmodavac  d.o.o.")
        assert strict_rule(incoming(counterparty_name="najmodavac d.o.o."), existing) == "counterparty"

    def test_different_direction_is_not_strict(self, incoming, ledger_row):
        existing = ledger_row(direction="INCOMING", amount=Decimal("120.00"), reference="INV-0042")
        assert strict_rule(incoming(reference="INV-0042"), existing) is None


class TestFuzzy:

    def test_similar_description_within_window(self, incoming, ledger_row):
        existing = ledger_row(
            direction="OUTGOING",
            amount=Decimal("120.00"),
            booking_date=date(2025, 1, 8),
            description="Najam ureda sijecanj",
        )
        decision = classify(incoming(description="Najam ureda - sijecanj"), [existing])
        assert decision.outcome == DedupOutcome.FUZZY_DUPLICATE
        assert decision.similarity >= 70.0

    def test_outside_date_window(self, incoming, ledger_row):
        existing = ledger_row(
            direction="OUTGOING",
            amount=Decimal("120.00"),
            booking_date=date(2025, 1, 7),
            description="Najam ureda",
        )
        assert classify(incoming(description="Najam ureda"), [existing]).outcome == DedupOutcome.NEW

    def test_amount_tolerance(self, incoming, ledger_row):
        close = ledger_row(direction="OUTGOING", amount=Decimal("120.01"), description="Najam ureda")
        far = ledger_row(direction="OUTGOING", amount=Decimal("120.02"), description="Najam ureda")
        candidate = incoming(description="Najam ureda")
        assert classify(candidate, [close]).outcome == DedupOutcome.FUZZY_DUPLICATE
        assert classify(candidate, [far]).outcome == DedupOutcome.NEW

    def test_best_match_wins(self, incoming, ledger_row):
        weaker = ledger_row(direction="OUTGOING", amount=Decimal("120.00"), description="Najam ureda veljaca")
        stronger = ledger_row(direction="OUTGOING", amount=Decimal("120.00"), description="Najam ureda")
        decision = classify(incoming(description="Najam ureda"), [weaker, stronger])
        assert decision.existing is stronger
        assert decision.similarity == 100.0

    def test_strict_beats_fuzzy(self, incoming, ledger_row):
        fuzzy = ledger_row(direction="OUTGOING", amount=Decimal("120.00"), description="Najam")
        strict = ledger_row(direction="OUTGOING", amount=Decimal("120.00"), reference="INV-0042")
        decision = classify(incoming(description="Najam", reference="INV-0042"), [fuzzy, strict])
        assert decision.outcome == DedupOutcome.STRICT_DUPLICATE


class TestBatch:

    def test_same_row_twice_inserts_once(self, incoming):
        account_id = uuid.uuid4()
        row = incoming(reference="INV-0042")
        known = []
        outcomes = []
        for candidate in (row, row):
            decision = classify(candidate, known)
            outcomes.append(decision.outcome)
            if decision.outcome == DedupOutcome.NEW:
                known.append(transaction_from_incoming(account_id, candidate, "FILE_IMPORT"))
        assert outcomes == [DedupOutcome.NEW, DedupOutcome.STRICT_DUPLICATE]

    def test_reimport_of_ingested_row(self, incoming):
        row = incoming(reference="INV-0042", description="Najam")
        stored = transaction_from_incoming(None, row, "FILE_IMPORT")
        assert stored.amount == Decimal("120.00")
        assert stored.match_status == "UNMATCHED"
        assert classify(row, [stored]).outcome == DedupOutcome.STRICT_DUPLICATE

    def test_new_row(self, incoming, ledger_row):
        assert classify(incoming(), [ledger_row()]).outcome == DedupOutcome.NEW
