"""
Path generation for uploaded statement files.
All paths are relative to ARTIFACT_ROOT and scoped by account.
"""

import hashlib
import re
from pathlib import Path

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def file_checksum(file_bytes: bytes) -> str:
    """SHA-256 hash of file content."""
    return hashlib.sha256(file_bytes).hexdigest()


def safe_file_name(file_name: str) -> str:
    """Strip directories and characters that do not belong in a storage key."""
    base = Path(file_name or "statement").name
    cleaned = _UNSAFE.sub("_", base).strip("._")
    return cleaned or "statement"


def import_file_path(account_id: str, job_id: str, file_name: str) -> str:
    """Path for the original uploaded statement file."""
    return f"{account_id}/imports/{job_id}/{safe_file_name(file_name)}"


def job_dir(account_id: str, job_id: str) -> str:
    return f"{account_id}/imports/{job_id}"


def ensure_parent_dirs(artifact_root: str, relative_path: str) -> Path:
    """Create parent directories and return the full absolute path."""
    full_path = Path(artifact_root) / relative_path
    full_path.parent.mkdir(parents=True, exist_ok=True)
    return full_path
