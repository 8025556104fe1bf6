"""
/api/v1 review endpoints: potential duplicates held back by dedup.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from bankrecon.dependencies import get_db, verify_api_key
from bankrecon.models.tables import PotentialDuplicate
from bankrecon.review.queue import get_pending_duplicates, get_review_queue_stats, resolve_duplicate
from bankrecon.schemas.jobs import DuplicateStats, PotentialDuplicateResponse, ResolveDuplicateRequest

router = APIRouter(prefix="/api/v1", tags=["review"], dependencies=[Depends(verify_api_key)])


def _to_response(item: PotentialDuplicate) -> PotentialDuplicateResponse:
    return PotentialDuplicateResponse(
        duplicate_id=str(item.duplicate_id),
        existing_transaction_id=str(item.existing_transaction_id),
        candidate=item.candidate_json,
        source=item.source,
        similarity=item.similarity,
        status=item.status,
        created_at=item.created_at,
    )


@router.get("/accounts/{account_id}/duplicates", response_model=list[PotentialDuplicateResponse])
async def list_duplicates(
    account_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_db),
):
    items = await get_pending_duplicates(session, account_id, limit=limit, offset=offset)
    return [_to_response(item) for item in items]


@router.get("/accounts/{account_id}/duplicates/stats", response_model=DuplicateStats)
async def duplicate_stats(account_id: str, session: AsyncSession = Depends(get_db)):
    return DuplicateStats(**await get_review_queue_stats(session, account_id))


@router.post("/duplicates/{duplicate_id}/resolve", response_model=PotentialDuplicateResponse)
async def resolve(
    duplicate_id: str,
    body: ResolveDuplicateRequest,
    session: AsyncSession = Depends(get_db),
):
    item = await resolve_duplicate(session, duplicate_id, body.is_duplicate)
    return _to_response(item)
