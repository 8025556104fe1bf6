"""
SQLAlchemy ORM models.
Every row is scoped by account_id; tenancy middleware upstream filters on it.
"""

import uuid
from datetime import datetime, date
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    BigInteger,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    ForeignKey,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bankrecon.models.database import Base


# ────────────────────────────────────────────────────────────
# BANK ACCOUNTS
# ────────────────────────────────────────────────────────────
class BankAccount(Base):
    __tablename__ = "bank_accounts"

    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
        server_default=text("gen_random_uuid()")
    )
    iban: Mapped[Optional[str]] = mapped_column(String(34), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR", server_default="EUR")
    next_sequence_number: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1, server_default="1"
    )
    current_balance: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    import_jobs = relationship("ImportJob", back_populates="account", cascade="all, delete-orphan")
    statements = relationship("Statement", back_populates="account", cascade="all, delete-orphan")


# ────────────────────────────────────────────────────────────
# IMPORT JOBS
# ────────────────────────────────────────────────────────────
class ImportJob(Base):
    __tablename__ = "import_jobs"

    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
        server_default=text("gen_random_uuid()")
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("bank_accounts.account_id", ondelete="CASCADE"), nullable=False
    )
    file_checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    original_filename: Mapped[str] = mapped_column(Text, nullable=False)
    storage_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    file_format: Mapped[str] = mapped_column(String(8), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="PENDING", server_default="PENDING"
    )
    tier_used: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    pages_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    pages_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    acceptance: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    advisories_json: Mapped[Optional[list]] = mapped_column(JSONB, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    is_superseded: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    delete_requested: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    # Finished pages of an unpersisted PDF run, so a resumed job skips them
    page_results_json: Mapped[Optional[list]] = mapped_column(JSONB, nullable=True)
    heartbeat_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    account = relationship("BankAccount", back_populates="import_jobs")
    statement = relationship("Statement", back_populates="import_job", uselist=False)

    __table_args__ = (
        Index("idx_jobs_status", "status"),
        Index(
            "uq_jobs_account_checksum_active", "account_id", "file_checksum",
            unique=True, postgresql_where=text("is_superseded = FALSE"),
        ),
    )


# ────────────────────────────────────────────────────────────
# STATEMENTS
# ────────────────────────────────────────────────────────────
class Statement(Base):
    __tablename__ = "statements"

    statement_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
        server_default=text("gen_random_uuid()")
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("bank_accounts.account_id", ondelete="CASCADE"), nullable=False
    )
    import_job_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("import_jobs.job_id", ondelete="RESTRICT"), nullable=True
    )
    statement_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    period_start: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    period_end: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    # Back-reference by index, resolved by query
    previous_sequence_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    opening_balance: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    closing_balance: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR", server_default="EUR")
    is_gap_detected: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    gap_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_locked: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    account = relationship("BankAccount", back_populates="statements")
    import_job = relationship("ImportJob", back_populates="statement")
    pages = relationship("StatementPage", back_populates="statement", cascade="all, delete-orphan")
    transactions = relationship("Transaction", back_populates="statement", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("import_job_id", name="uq_statement_job"),
        Index("idx_statements_account_seq", "account_id", "sequence_number"),
    )


# ────────────────────────────────────────────────────────────
# STATEMENT PAGES
# ────────────────────────────────────────────────────────────
class StatementPage(Base):
    __tablename__ = "statement_pages"

    page_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
        server_default=text("gen_random_uuid()")
    )
    statement_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("statements.statement_id", ondelete="CASCADE"), nullable=False
    )
    account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    page_number: Mapped[int] = mapped_column(Integer, nullable=False)
    page_start_balance: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    page_end_balance: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="PENDING", server_default="PENDING"
    )
    tier_used: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    discrepancy: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    statement = relationship("Statement", back_populates="pages")

    __table_args__ = (
        UniqueConstraint("statement_id", "page_number", name="uq_page_statement_number"),
    )


# ────────────────────────────────────────────────────────────
# TRANSACTIONS
# ────────────────────────────────────────────────────────────
class Transaction(Base):
    __tablename__ = "transactions"

    transaction_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
        server_default=text("gen_random_uuid()")
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("bank_accounts.account_id", ondelete="CASCADE"), nullable=False
    )
    statement_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("statements.statement_id", ondelete="CASCADE"), nullable=True
    )
    page_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("statement_pages.page_id", ondelete="CASCADE"), nullable=True
    )
    external_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    value_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR", server_default="EUR")
    counterparty_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    counterparty_iban: Mapped[Optional[str]] = mapped_column(String(34), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    reference: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    balance_after: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    match_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="UNMATCHED", server_default="UNMATCHED"
    )
    matched_invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("invoices.invoice_id", ondelete="SET NULL"), nullable=True
    )
    confidence_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    matched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    matched_by: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    statement = relationship("Statement", back_populates="transactions")

    __table_args__ = (
        Index("idx_tx_account_date", "account_id", "booking_date"),
        # Ledger rows ingested through dedup; statement rows are scoped by their statement
        Index(
            "uq_tx_account_external", "account_id", "external_id", unique=True,
            postgresql_where=text("external_id IS NOT NULL AND statement_id IS NULL"),
        ),
        Index("idx_tx_match_status", "account_id", "match_status"),
    )

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.direction == "INCOMING" else -self.amount


# ────────────────────────────────────────────────────────────
# POTENTIAL DUPLICATES (review queue)
# ────────────────────────────────────────────────────────────
class PotentialDuplicate(Base):
    __tablename__ = "potential_duplicates"

    duplicate_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
        server_default=text("gen_random_uuid()")
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("bank_accounts.account_id", ondelete="CASCADE"), nullable=False
    )
    existing_transaction_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("transactions.transaction_id", ondelete="CASCADE"), nullable=False
    )
    candidate_json: Mapped[dict] = mapped_column(JSONB, nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    similarity: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="PENDING", server_default="PENDING"
    )
    resolved_transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    __table_args__ = (
        Index("idx_dupes_account_status", "account_id", "status"),
    )


# ────────────────────────────────────────────────────────────
# CSV IMPORTS (checksum ledger for row-level imports)
# ────────────────────────────────────────────────────────────
class CsvImport(Base):
    __tablename__ = "csv_imports"

    import_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
        server_default=text("gen_random_uuid()")
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("bank_accounts.account_id", ondelete="CASCADE"), nullable=False
    )
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    row_count: Mapped[int] = mapped_column(Integer, nullable=False)
    inserted_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    flagged_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    __table_args__ = (
        UniqueConstraint("account_id", "file_checksum", name="uq_csv_import_checksum"),
    )


# ────────────────────────────────────────────────────────────
# INVOICES (owned by the invoicing module; mirrored for matching)
# ────────────────────────────────────────────────────────────
class Invoice(Base):
    __tablename__ = "invoices"

    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
        server_default=text("gen_random_uuid()")
    )
    account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    invoice_number: Mapped[str] = mapped_column(Text, nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False, default="OUTBOUND")
    buyer_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_invoices_unpaid", "account_id", postgresql_where=text("paid_at IS NULL")),
    )
