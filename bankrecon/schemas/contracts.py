"""
Core extraction contracts.

PageCandidate is THE schema every tier produces: the text model, the vision model and
the CAMT parser all end in this shape, and the auditor only ever reads it.
"""

from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class CandidateTransaction(BaseModel):
    """One transaction as returned by an extraction tier."""
    booking_date: date = Field(alias="date")
    direction: Literal["INCOMING", "OUTGOING"]
    amount: Decimal = Field(ge=0)
    payee: Optional[str] = None
    description: Optional[str] = None
    reference: Optional[str] = None
    counterparty_iban: Optional[str] = Field(default=None, alias="counterpartyIban")
    value_date: Optional[date] = Field(default=None, alias="valueDate")
    external_id: Optional[str] = Field(default=None, alias="externalId")

    model_config = {"populate_by_name": True}

    @field_validator("amount", mode="before")
    @classmethod
    def _absolute_amount(cls, v):
        # Models sometimes return signed outgoing amounts; direction carries the sign.
        if v is None:
            raise ValueError("amount is required")
        try:
            return abs(Decimal(str(v)))
        except InvalidOperation as e:
            raise ValueError(f"amount is not a number: {v!r}") from e

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.direction == "INCOMING" else -self.amount


class CandidateMetadata(BaseModel):
    sequence_number: Optional[int] = Field(default=None, alias="sequenceNumber")
    statement_date: Optional[date] = Field(default=None, alias="statementDate")

    model_config = {"populate_by_name": True}


class PageCandidate(BaseModel):
    """
    Fixed output schema for structured extraction.

    Balances are optional: a model that cannot see them must return null rather than
    invent a number, and the auditor reports MISSING_BALANCES.
    """
    transactions: list[CandidateTransaction] = []
    page_start_balance: Optional[Decimal] = Field(default=None, alias="pageStartBalance")
    page_end_balance: Optional[Decimal] = Field(default=None, alias="pageEndBalance")
    metadata: Optional[CandidateMetadata] = None

    model_config = {"populate_by_name": True}


class PageContext(BaseModel):
    """Everything a provider needs to extract one page."""
    job_id: str
    page_number: int
    raw_text: str = ""
    image_png: Optional[bytes] = None
    prior_candidate: Optional[PageCandidate] = None


class AuditResult(BaseModel):
    verdict: str  # AuditVerdict value
    page_number: int
    calculated_closing: Optional[Decimal] = None
    claimed_closing: Optional[Decimal] = None
    discrepancy: Optional[Decimal] = None
    tolerance: Decimal = Decimal("0.01")

    @property
    def is_verified(self) -> bool:
        return self.verdict == "VERIFIED"

    @property
    def difference(self) -> Optional[Decimal]:
        return abs(self.discrepancy) if self.discrepancy is not None else None


class ResolvedPage(BaseModel):
    """Outcome of running one page through the tier ladder."""
    page_number: int
    status: str  # PageStatus value
    tier_used: Optional[str] = None
    raw_text: str = ""
    candidate: Optional[PageCandidate] = None
    audit: Optional[AuditResult] = None
    failure_reason: Optional[str] = None


class ParsedStatement(BaseModel):
    """A whole statement ready for persistence."""
    sequence_number: Optional[int] = None
    statement_date: Optional[date] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    opening_balance: Decimal
    closing_balance: Decimal
    currency: str = "EUR"
    pages: list[ResolvedPage]
