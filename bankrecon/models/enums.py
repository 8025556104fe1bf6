"""
Python enums for status and classification columns.
Values are stored verbatim in the DB, so names and values MUST NOT change.
"""

from enum import Enum


class FileFormat(str, Enum):
    XML = "XML"
    PDF = "PDF"
    CSV = "CSV"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    VERIFIED = "VERIFIED"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    FAILED = "FAILED"


class JobAcceptance(str, Enum):
    """Application-level acceptance of a finished job. Not part of the extraction state machine."""
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"


class TierType(str, Enum):
    XML = "XML"
    CSV = "CSV"
    TEXT_LLM = "TEXT_LLM"
    VISION_LLM = "VISION_LLM"


class PageStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    NEEDS_VISION = "NEEDS_VISION"
    FAILED = "FAILED"


class Direction(str, Enum):
    INCOMING = "INCOMING"
    OUTGOING = "OUTGOING"


class TransactionSource(str, Enum):
    MANUAL = "MANUAL"
    FILE_IMPORT = "FILE_IMPORT"
    PROVIDER_SYNC = "PROVIDER_SYNC"


class MatchStatus(str, Enum):
    UNMATCHED = "UNMATCHED"
    AUTO_MATCHED = "AUTO_MATCHED"
    MANUALLY_MATCHED = "MANUALLY_MATCHED"
    IGNORED = "IGNORED"


class AuditVerdict(str, Enum):
    VERIFIED = "VERIFIED"
    MISSING_BALANCES = "MISSING_BALANCES"
    MATH_MISMATCH = "MATH_MISMATCH"


class DedupOutcome(str, Enum):
    STRICT_DUPLICATE = "STRICT_DUPLICATE"
    FUZZY_DUPLICATE = "FUZZY_DUPLICATE"
    NEW = "NEW"


class ReviewStatus(str, Enum):
    PENDING = "PENDING"
    RESOLVED_DUPLICATE = "RESOLVED_DUPLICATE"
    RESOLVED_NEW = "RESOLVED_NEW"
