"""
Shared test fixtures.
"""

import uuid
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.sql.dml import UpdateBase

from bankrecon.models.enums import FileFormat, JobStatus, MatchStatus, TransactionSource
from bankrecon.models.tables import BankAccount, ImportJob, Transaction
from bankrecon.schemas.contracts import CandidateTransaction, PageCandidate
from bankrecon.schemas.transactions import IncomingTransaction
from bankrecon.storage.paths import import_file_path


def make_candidate(opening, closing, *rows):
    """rows are (direction, amount) pairs dated in January 2025."""
    return PageCandidate(
        transactions=[
            CandidateTransaction(
                booking_date=date(2025, 1, 10 + i),
                direction=direction,
                amount=Decimal(amount),
                description=f"row {i}",
            )
            for i, (direction, amount) in enumerate(rows)
        ],
        page_start_balance=None if opening is None else Decimal(opening),
        page_end_balance=None if closing is None else Decimal(closing),
    )


def make_ledger_row(**overrides) -> Transaction:
    """Unsaved ledger transaction with every column the pure helpers read."""
    values = dict(
        transaction_id=uuid.uuid4(),
        account_id=uuid.uuid4(),
        external_id=None,
        booking_date=date(2025, 1, 10),
        direction="INCOMING",
        amount=Decimal("100.00"),
        currency="EUR",
        counterparty_name=None,
        description="",
        reference=None,
        source=TransactionSource.FILE_IMPORT.value,
        match_status=MatchStatus.UNMATCHED.value,
        confidence_score=0,
    )
    values.update(overrides)
    return Transaction(**values)


def make_incoming(**overrides) -> IncomingTransaction:
    values = dict(
        booking_date=date(2025, 1, 10),
        direction="OUTGOING",
        amount=Decimal("120.00"),
    )
    values.update(overrides)
    return IncomingTransaction(**values)


# ─── In-memory session ───────────────────────────────────────

def _apply_defaults(obj) -> None:
    """Client-side column defaults, as a flush would set them."""
    for column in obj.__table__.columns:
        if column.default is None or getattr(obj, column.key) is not None:
            continue
        if column.default.is_scalar:
            setattr(obj, column.key, column.default.arg)
        elif column.default.is_callable:
            setattr(obj, column.key, column.default.arg(None))


def _table_name(statement) -> str:
    if isinstance(statement, UpdateBase):
        return statement.table.name
    return statement.get_final_froms()[0].name


class FakeResult:
    def __init__(self, rows):
        self.rows = list(rows)

    def scalar_one_or_none(self):
        return self.rows[0] if self.rows else None

    scalar = scalar_one_or_none

    def scalars(self):
        return self

    def all(self):
        return self.rows


class FakeSession:
    """
    AsyncSession stand-in. Added objects live in memory and get() finds them by primary key.

    execute() looks at the table a statement targets. A table listed in `results` replays
    those row lists in call order and returns nothing once they run out; any other table
    returns every object stored for it, unfiltered. UPDATE and DELETE are recorded, never
    applied, so tests put rows in the state the statement would leave them in.
    """

    def __init__(self, objects=(), results=None):
        self.objects = []
        self.results = {table: list(rows) for table, rows in (results or {}).items()}
        self.executed = []
        self.commits = 0
        self.rollbacks = 0
        for obj in objects:
            self.add(obj)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def add(self, obj):
        _apply_defaults(obj)
        self.objects.append(obj)

    def added(self, model):
        return [obj for obj in self.objects if isinstance(obj, model)]

    def executed_on(self, table: str):
        return [statement for name, statement in self.executed if name == table]

    async def get(self, model, primary_key):
        key = model.__mapper__.primary_key[0].key
        return next((obj for obj in self.added(model) if getattr(obj, key) == primary_key), None)

    async def execute(self, statement):
        table = _table_name(statement)
        self.executed.append((table, statement))
        if table in self.results:
            script = self.results[table]
            return FakeResult(script.pop(0) if script else [])
        if isinstance(statement, UpdateBase):
            return FakeResult([])
        return FakeResult([obj for obj in self.objects if obj.__table__.name == table])

    async def flush(self):
        for obj in self.objects:
            _apply_defaults(obj)

    async def commit(self):
        await self.flush()
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1

    async def refresh(self, obj):
        pass


class FakeGateway:
    def __init__(self, invoices=()):
        self.invoices = list(invoices)
        self.paid = {}

    async def list_unpaid_outbound(self, account_id):
        return [inv for inv in self.invoices if inv.invoice_id not in self.paid]

    async def mark_paid(self, invoice_id, paid_on):
        self.paid[invoice_id] = paid_on

    async def mark_unpaid(self, invoice_id):
        self.paid.pop(invoice_id, None)


def make_account(**overrides) -> BankAccount:
    values = dict(account_id=uuid.uuid4(), currency="EUR", next_sequence_number=1)
    values.update(overrides)
    return BankAccount(**values)


def make_job(account: BankAccount, **overrides) -> ImportJob:
    """A job as the claim leaves it: PROCESSING."""
    job_id = overrides.pop("job_id", uuid.uuid4())
    file_name = overrides.pop("original_filename", "izvod.pdf")
    values = dict(
        job_id=job_id,
        account_id=account.account_id,
        file_checksum="0" * 64,
        original_filename=file_name,
        storage_path=import_file_path(str(account.account_id), str(job_id), file_name),
        file_size_bytes=32,
        file_format=FileFormat.PDF.value,
        status=JobStatus.PROCESSING.value,
    )
    values.update(overrides)
    return ImportJob(**values)


@pytest.fixture
def balanced_candidate():
    """1000 + 250 - 50 = 1200."""
    return make_candidate("1000.00", "1200.00", ("INCOMING", "250.00"), ("OUTGOING", "50.00"))


@pytest.fixture
def camt_xml():
    return b"""<?xml version="1.0" encoding="UTF-8"?>
<Document xmlns="urn:iso:std:iso:20022:tech:xsd:camt.053.001.02">
  <BkToCstmrStmt>
    <GrpHdr><MsgId>MSG-1</MsgId><CreDtTm>2025-01-31T18:00:00</CreDtTm></GrpHdr>
    <Stmt>
      <Id>STMT-2025-01</Id>
      <ElctrncSeqNb>12</ElctrncSeqNb>
      <LglSeqNb>7</LglSeqNb>
      <CreDtTm>2025-01-31T18:00:00</CreDtTm>
      <FrToDt><FrDtTm>2025-01-01T00:00:00</FrDtTm><ToDtTm>2025-01-31T23:59:59</ToDtTm></FrToDt>
      <Acct><Id><IBAN>HR1210010051863000160</IBAN></Id><Ccy>EUR</Ccy></Acct>
      <Bal>
        <Tp><CdOrPrtry><Cd>OPBD</Cd></CdOrPrtry></Tp>
        <Amt Ccy="EUR">1000.00</Amt>
        <CdtDbtInd>CRDT</CdtDbtInd>
        <Dt><Dt>2025-01-01</Dt></Dt>
      </Bal>
      <Bal>
        <Tp><CdOrPrtry><Cd>CLBD</Cd></CdOrPrtry></Tp>
        <Amt Ccy="EUR">1380.00</Amt>
        <CdtDbtInd>CRDT</CdtDbtInd>
        <Dt><Dt>2025-01-31</Dt></Dt>
      </Bal>
      <Ntry>
        <NtryRef>E1</NtryRef>
        <Amt Ccy="EUR">500.00</Amt>
        <CdtDbtInd>CRDT</CdtDbtInd>
        <BookgDt><Dt>2025-01-15</Dt></BookgDt>
        <ValDt><Dt>2025-01-15</Dt></ValDt>
        <AcctSvcrRef>BANK-REF-1</AcctSvcrRef>
        <NtryDtls><TxDtls>
          <Refs><EndToEndId>NOTPROVIDED</EndToEndId></Refs>
          <RltdPties>
            <Dbtr><Nm>Kupac d.o.o.</Nm></Dbtr>
            <DbtrAcct><Id><IBAN>HR6523400091110123456</IBAN></Id></DbtrAcct>
          </RltdPties>
          <RmtInf>
            <Ustrd>Placanje racuna INV-2025-007</Ustrd>
            <Strd><CdtrRefInf><Ref>HR00 2025-007</Ref></CdtrRefInf></Strd>
          </RmtInf>
        </TxDtls></NtryDtls>
      </Ntry>
      <Ntry>
        <Amt Ccy="EUR">120.00</Amt>
        <CdtDbtInd>DBIT</CdtDbtInd>
        <BookgDt><DtTm>2025-01-20T09:30:00</DtTm></BookgDt>
        <NtryDtls><TxDtls>
          <Refs><EndToEndId>E2E-42</EndToEndId></Refs>
          <RltdPties><Cdtr><Nm>Dobavljac d.d.</Nm></Cdtr></RltdPties>
        </TxDtls></NtryDtls>
        <AddtlNtryInf>Najam ureda</AddtlNtryInf>
      </Ntry>
    </Stmt>
  </BkToCstmrStmt>
</Document>
"""


@pytest.fixture
def candidate_factory():
    return make_candidate


@pytest.fixture
def ledger_row():
    return make_ledger_row


@pytest.fixture
def incoming():
    return make_incoming


@pytest.fixture
def account():
    return make_account()


@pytest.fixture
def job_factory():
    return make_job


@pytest.fixture
def fake_session():
    return FakeSession


@pytest.fixture
def fake_gateway():
    return FakeGateway()
