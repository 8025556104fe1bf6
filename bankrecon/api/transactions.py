"""
/api/v1 ledger endpoints: CSV row import, provider sync ingest, listing and reconciliation.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bankrecon.dependencies import get_db, get_invoice_gateway, verify_api_key
from bankrecon.models.enums import TransactionSource
from bankrecon.models.tables import Transaction
from bankrecon.pipeline.dedup import import_csv_rows, ingest_transactions
from bankrecon.pipeline.reconciliation import (
    InvoiceGateway,
    ignore_transaction,
    manual_match,
    run_reconciliation,
    unmatch,
)
from bankrecon.schemas.transactions import (
    CsvRowsImportRequest,
    IngestResponse,
    ManualMatchRequest,
    ReconcileResponse,
    SyncIngestRequest,
    TransactionListResponse,
    TransactionResponse,
)

router = APIRouter(prefix="/api/v1", tags=["transactions"], dependencies=[Depends(verify_api_key)])


@router.post("/accounts/{account_id}/transactions/csv", response_model=IngestResponse)
async def import_csv(
    account_id: str,
    body: CsvRowsImportRequest,
    session: AsyncSession = Depends(get_db),
    gateway: InvoiceGateway = Depends(get_invoice_gateway),
):
    """Import rows already mapped by the client. Re-sending the same rows is a no-op."""
    result = await import_csv_rows(session, account_id, body.file_name, body.rows, gateway)
    return IngestResponse(
        inserted=result.inserted,
        skipped=result.skipped,
        flagged=result.flagged,
        deduplicated=result.deduplicated,
        auto_matched=result.auto_matched,
    )


@router.post("/accounts/{account_id}/transactions/sync", response_model=IngestResponse)
async def ingest_sync(
    account_id: str,
    body: SyncIngestRequest,
    session: AsyncSession = Depends(get_db),
    gateway: InvoiceGateway = Depends(get_invoice_gateway),
):
    """Normalized feed from an open-banking provider."""
    result = await ingest_transactions(
        session, account_id, body.transactions, TransactionSource.PROVIDER_SYNC.value
    )
    summary = await run_reconciliation(session, account_id, gateway)
    return IngestResponse(
        inserted=result.inserted,
        skipped=result.skipped,
        flagged=result.flagged,
        auto_matched=summary.auto_matched,
    )


@router.get("/accounts/{account_id}/transactions", response_model=TransactionListResponse)
async def list_transactions(
    account_id: str,
    match_status: Optional[str] = Query(None),
    statement_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_db),
):
    query = select(Transaction).where(Transaction.account_id == uuid.UUID(account_id))
    if match_status:
        query = query.where(Transaction.match_status == match_status)
    if statement_id:
        query = query.where(Transaction.statement_id == uuid.UUID(statement_id))

    total = (await session.execute(select(func.count()).select_from(query.subquery()))).scalar() or 0
    result = await session.execute(
        query.order_by(Transaction.booking_date, Transaction.created_at).offset(offset).limit(limit)
    )
    return TransactionListResponse(
        transactions=[TransactionResponse.model_validate(t) for t in result.scalars().all()],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("/accounts/{account_id}/reconcile", response_model=ReconcileResponse)
async def reconcile(
    account_id: str,
    session: AsyncSession = Depends(get_db),
    gateway: InvoiceGateway = Depends(get_invoice_gateway),
):
    summary = await run_reconciliation(session, account_id, gateway)
    return ReconcileResponse(
        evaluated=summary.evaluated,
        auto_matched=summary.auto_matched,
        below_threshold=len(summary.below_threshold),
    )


@router.post("/transactions/{transaction_id}/match", response_model=TransactionResponse)
async def match_transaction(
    transaction_id: str,
    body: ManualMatchRequest,
    session: AsyncSession = Depends(get_db),
    gateway: InvoiceGateway = Depends(get_invoice_gateway),
):
    tx = await manual_match(session, transaction_id, body.invoice_id, body.matched_by, gateway)
    return TransactionResponse.model_validate(tx)


@router.post("/transactions/{transaction_id}/unmatch", response_model=TransactionResponse)
async def unmatch_transaction(
    transaction_id: str,
    session: AsyncSession = Depends(get_db),
    gateway: InvoiceGateway = Depends(get_invoice_gateway),
):
    tx = await unmatch(session, transaction_id, gateway)
    return TransactionResponse.model_validate(tx)


@router.post("/transactions/{transaction_id}/ignore", response_model=TransactionResponse)
async def ignore(transaction_id: str, session: AsyncSession = Depends(get_db)):
    tx = await ignore_transaction(session, transaction_id)
    return TransactionResponse.model_validate(tx)
