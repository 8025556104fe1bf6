"""
Pydantic request/response schemas for the /api/v1/imports and review endpoints.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, field_validator


class ImportUploadResponse(BaseModel):
    """Response after uploading a statement file."""
    job_id: str
    account_id: str
    file_name: str
    file_format: str
    file_size_bytes: int
    file_checksum: str
    status: str
    advisories: list[dict[str, Any]] = []
    message: str = "Statement uploaded. Processing queued."


class JobStatusResponse(BaseModel):
    """Pull-only job status for pollers."""
    job_id: str
    status: str
    tier_used: Optional[str] = None
    pages_processed: int = 0
    pages_failed: int = 0
    failure_reason: Optional[str] = None
    acceptance: Optional[str] = None
    advisories: list[dict[str, Any]] = []
    statement_id: Optional[str] = None
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class ProcessPendingResponse(BaseModel):
    processed: int
    job_ids: list[str]


class PotentialDuplicateResponse(BaseModel):
    duplicate_id: str
    existing_transaction_id: str
    candidate: dict[str, Any]
    source: str
    similarity: Decimal
    status: str
    created_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("duplicate_id", "existing_transaction_id", mode="before")
    @classmethod
    def _uuid_to_str(cls, v):
        return str(v)


class ResolveDuplicateRequest(BaseModel):
    is_duplicate: bool


class QueueStats(BaseModel):
    queue_name: str
    queued: int
    started: int
    finished: int
    failed: int
    deferred: int
    workers: int


class DuplicateStats(BaseModel):
    pending: int
    resolved_duplicate: int
    resolved_new: int
    total: int
