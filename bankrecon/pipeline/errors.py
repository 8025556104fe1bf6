"""
Error taxonomy for the import and reconciliation pipeline.

Page-level errors (extraction, audit) are recovered by escalating to the next tier.
Job-level errors end in FAILED with a human-readable reason.
Advisory conditions (duplicate upload, sequence gap, below-threshold match) never block.
"""

from decimal import Decimal
from typing import Optional


class PipelineError(Exception):
    """Base class for every typed pipeline error."""

    error_code = "ERR_PIPELINE"

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        super().__init__(message)


# ── Intake ───────────────────────────────────────────────────

class UnsupportedFormat(PipelineError):
    error_code = "ERR_UNSUPPORTED_FORMAT"


class OversizedFile(PipelineError):
    error_code = "ERR_OVERSIZED_FILE"

    def __init__(self, size_bytes: int, limit_bytes: int):
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
        super().__init__(f"File too large: {size_bytes} bytes (limit {limit_bytes} bytes)")


class DuplicateUpload(PipelineError):
    """Same checksum already imported for this account. Recoverable via overwrite."""

    error_code = "ERR_DUPLICATE_UPLOAD"

    def __init__(self, existing_job_id: str, checksum: str):
        self.existing_job_id = existing_job_id
        self.checksum = checksum
        super().__init__(
            f"This file was already uploaded for this account (job {existing_job_id}). "
            "Re-upload with overwrite to replace it."
        )


class MalformedStatement(PipelineError):
    error_code = "ERR_MALFORMED_STATEMENT"


class CsvParseError(PipelineError):
    error_code = "ERR_CSV_PARSE"

    def __init__(self, message: str, field: Optional[str] = None, value: Optional[str] = None,
                 row_number: Optional[int] = None):
        self.field = field
        self.value = value
        self.row_number = row_number
        if row_number is not None:
            message = f"Row {row_number}: {message}"
        super().__init__(message)


# ── Page audit ───────────────────────────────────────────────

class MissingPageBalances(PipelineError):
    error_code = "ERR_MISSING_PAGE_BALANCES"

    def __init__(self, page_number: int):
        self.page_number = page_number
        super().__init__(f"Page {page_number}: opening or closing balance missing, cannot audit")


class MathMismatch(PipelineError):
    error_code = "ERR_MATH_MISMATCH"

    def __init__(self, page_number: int, expected: Decimal, claimed: Decimal):
        self.page_number = page_number
        self.expected = expected
        self.claimed = claimed
        self.discrepancy = claimed - expected
        super().__init__(
            f"Page {page_number}: computed closing {expected} but statement shows {claimed}"
        )


# ── Job lifecycle ────────────────────────────────────────────

class AccountNotFound(PipelineError):
    error_code = "ERR_ACCOUNT_NOT_FOUND"


class JobNotFound(PipelineError):
    error_code = "ERR_JOB_NOT_FOUND"


class InvalidStateTransition(PipelineError):
    error_code = "ERR_INVALID_TRANSITION"

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move job from {current} to {target}")


class JobCancelled(PipelineError):
    error_code = "ERR_JOB_CANCELLED"


# ── Ledger ───────────────────────────────────────────────────

class TransactionNotFound(PipelineError):
    error_code = "ERR_TRANSACTION_NOT_FOUND"


class DuplicateNotFound(PipelineError):
    error_code = "ERR_DUPLICATE_NOT_FOUND"


class TransactionLocked(PipelineError):
    error_code = "ERR_TRANSACTION_LOCKED"


class SequenceGapDetected(PipelineError):
    """Advisory: recorded on the statement, never raised out of persistence."""

    error_code = "WARN_SEQUENCE_GAP"


class ReconciliationBelowThreshold(PipelineError):
    """Advisory: the transaction stays unmatched for manual reconciliation."""

    error_code = "WARN_BELOW_THRESHOLD"

    def __init__(self, transaction_id: str, best_score: int, threshold: int):
        self.transaction_id = transaction_id
        self.best_score = best_score
        self.threshold = threshold
        super().__init__(
            f"Transaction {transaction_id}: best match {best_score} below threshold {threshold}"
        )
