"""
FastAPI dependency injection.
Provides DB sessions, the artifact store, the invoice gateway and API key validation.
"""

from typing import AsyncIterator, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from bankrecon.config import settings
from bankrecon.models.database import get_session
from bankrecon.pipeline.reconciliation import InvoiceGateway, SqlInvoiceGateway
from bankrecon.storage.artifact_store import ArtifactStore

_artifact_store: Optional[ArtifactStore] = None


def get_artifact_store() -> ArtifactStore:
    global _artifact_store
    if _artifact_store is None:
        _artifact_store = ArtifactStore()
    return _artifact_store


async def get_db() -> AsyncIterator[AsyncSession]:
    """Yield an async DB session, committed when the request succeeds."""
    async for session in get_session():
        yield session


def get_invoice_gateway(session: AsyncSession = Depends(get_db)) -> InvoiceGateway:
    return SqlInvoiceGateway(session)


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Optional[str]:
    """
    Verify API key if configured.
    If API_KEY is not set, all requests are allowed (dev mode).
    """
    if settings.API_KEY is None:
        return None

    if x_api_key is None or x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return x_api_key
