"""
Transaction schemas: the canonical incoming row shape (CSV, provider sync)
and the API request/response models for the ledger.
"""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class IncomingTransaction(BaseModel):
    """
    One transaction arriving from a CSV export or a bank sync provider.
    amount is absolute; direction carries the sign.
    """
    external_id: Optional[str] = Field(default=None, alias="externalId")
    booking_date: date = Field(alias="date")
    value_date: Optional[date] = Field(default=None, alias="valueDate")
    direction: Literal["INCOMING", "OUTGOING"]
    amount: Decimal = Field(ge=0)
    currency: str = "EUR"
    counterparty_name: Optional[str] = Field(default=None, alias="counterpartyName")
    counterparty_iban: Optional[str] = Field(default=None, alias="counterpartyIban")
    description: Optional[str] = None
    reference: Optional[str] = None
    balance_after: Optional[Decimal] = Field(default=None, alias="balance")

    model_config = {"populate_by_name": True}

    @field_validator("amount", mode="before")
    @classmethod
    def _absolute_amount(cls, v):
        try:
            return abs(Decimal(str(v)))
        except InvalidOperation as e:
            raise ValueError(f"amount is not a number: {v!r}") from e

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.direction == "INCOMING" else -self.amount

    def canonical_line(self) -> str:
        """Stable one-line form used for batch checksums."""
        return "|".join([
            self.booking_date.isoformat(),
            self.direction,
            f"{self.amount:.2f}",
            self.external_id or "",
            self.reference or "",
            self.counterparty_name or "",
            self.description or "",
        ])


# ── Requests ─────────────────────────────────────────────────

class SyncIngestRequest(BaseModel):
    """Normalized feed from an open-banking sync provider."""
    transactions: list[IncomingTransaction]


class CsvRowsImportRequest(BaseModel):
    """Rows already parsed by the client-side CSV mapper."""
    file_name: str = Field(alias="fileName")
    rows: list[IncomingTransaction]

    model_config = {"populate_by_name": True}


class ManualMatchRequest(BaseModel):
    invoice_id: str
    matched_by: str = "user"


# ── Responses ────────────────────────────────────────────────

class TransactionResponse(BaseModel):
    """Single ledger transaction in API responses."""
    transaction_id: str
    statement_id: Optional[str] = None
    external_id: Optional[str] = None
    booking_date: date
    value_date: Optional[date] = None
    direction: str
    amount: Decimal
    currency: str = "EUR"
    counterparty_name: Optional[str] = None
    counterparty_iban: Optional[str] = None
    description: Optional[str] = None
    reference: Optional[str] = None
    balance_after: Optional[Decimal] = None
    source: str
    match_status: str
    matched_invoice_id: Optional[str] = None
    confidence_score: int = 0
    matched_at: Optional[datetime] = None
    matched_by: Optional[str] = None

    model_config = {"from_attributes": True}

    @field_validator("transaction_id", "statement_id", "matched_invoice_id", mode="before")
    @classmethod
    def _uuid_to_str(cls, v):
        return str(v) if v is not None else None


class TransactionListResponse(BaseModel):
    """Paginated transaction list."""
    transactions: list[TransactionResponse]
    total: int
    limit: int
    offset: int


class IngestResponse(BaseModel):
    inserted: int
    skipped: int
    flagged: int
    deduplicated: bool = False
    auto_matched: int = 0


class ReconcileResponse(BaseModel):
    evaluated: int
    auto_matched: int
    below_threshold: int
