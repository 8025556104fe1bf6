"""
Mathematical auditor - deterministic page balance check.

calculated_closing = opening + sum(incoming) - sum(outgoing)

A page is VERIFIED only when the calculated closing is within tolerance of the closing
balance printed on the page. All arithmetic is Decimal; floats are converted via str().
The auditor returns a verdict and never touches page state.
"""

from decimal import Decimal
from typing import Iterable, Optional, Union

from bankrecon.config import settings
from bankrecon.models.enums import AuditVerdict
from bankrecon.pipeline.errors import MathMismatch, MissingPageBalances
from bankrecon.schemas.contracts import AuditResult, CandidateTransaction, PageCandidate

Number = Union[Decimal, int, float, str]


def to_decimal(value: Optional[Number]) -> Optional[Decimal]:
    """Convert to Decimal without passing through binary floating point."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def default_tolerance() -> Decimal:
    return to_decimal(settings.BALANCE_TOLERANCE)


def calculate_closing(
    opening: Number,
    transactions: Iterable[CandidateTransaction],
) -> Decimal:
    """Opening balance plus incoming minus outgoing."""
    total = to_decimal(opening)
    for tx in transactions:
        total += tx.signed_amount
    return total


def audit_page(
    page_number: int,
    opening: Optional[Number],
    transactions: Iterable[CandidateTransaction],
    closing: Optional[Number],
    tolerance: Optional[Number] = None,
) -> AuditResult:
    """
    Audit a single page.

    MISSING_BALANCES when either boundary balance is absent (no discrepancy).
    MATH_MISMATCH when |calculated - claimed| > tolerance; discrepancy = claimed - calculated.
    """
    tol = to_decimal(tolerance) if tolerance is not None else default_tolerance()
    opening_d = to_decimal(opening)
    closing_d = to_decimal(closing)

    if opening_d is None or closing_d is None:
        return AuditResult(
            verdict=AuditVerdict.MISSING_BALANCES.value,
            page_number=page_number,
            claimed_closing=closing_d,
            tolerance=tol,
        )

    calculated = calculate_closing(opening_d, transactions)
    discrepancy = closing_d - calculated

    verdict = AuditVerdict.VERIFIED if abs(discrepancy) <= tol else AuditVerdict.MATH_MISMATCH

    return AuditResult(
        verdict=verdict.value,
        page_number=page_number,
        calculated_closing=calculated,
        claimed_closing=closing_d,
        discrepancy=discrepancy,
        tolerance=tol,
    )


def audit_candidate(
    page_number: int,
    candidate: PageCandidate,
    tolerance: Optional[Number] = None,
) -> AuditResult:
    return audit_page(
        page_number,
        candidate.page_start_balance,
        candidate.transactions,
        candidate.page_end_balance,
        tolerance,
    )


def raise_for_audit(result: AuditResult) -> None:
    """Translate a failed verdict into the typed error (used for failure reasons)."""
    if result.verdict == AuditVerdict.MISSING_BALANCES.value:
        raise MissingPageBalances(result.page_number)
    if result.verdict == AuditVerdict.MATH_MISMATCH.value:
        raise MathMismatch(result.page_number, result.calculated_closing, result.claimed_closing)
