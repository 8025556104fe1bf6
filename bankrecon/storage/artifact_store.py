"""
Artifact store for uploaded statement files.
Local filesystem under ARTIFACT_ROOT; callers only ever see relative paths.
"""

import shutil
from pathlib import Path
from typing import Optional

import structlog

from bankrecon.config import settings
from bankrecon.storage.paths import ensure_parent_dirs, job_dir

logger = structlog.get_logger(__name__)


class ArtifactStore:
    """
    Save and load import files.
    All paths are relative to ARTIFACT_ROOT.
    """

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.ARTIFACT_ROOT)
        self.root.mkdir(parents=True, exist_ok=True)

    def save_bytes(self, relative_path: str, data: bytes) -> str:
        """Save raw bytes. Returns the relative path."""
        full_path = ensure_parent_dirs(str(self.root), relative_path)
        full_path.write_bytes(data)
        logger.info("artifact_saved", path=relative_path, size_bytes=len(data))
        return relative_path

    def load_bytes(self, relative_path: str) -> bytes:
        full_path = self.root / relative_path
        if not full_path.exists():
            raise FileNotFoundError(f"Artifact not found: {relative_path}")
        return full_path.read_bytes()

    def exists(self, relative_path: str) -> bool:
        return (self.root / relative_path).exists()

    def delete(self, relative_path: str) -> bool:
        """Delete an artifact. Returns True if it existed."""
        full_path = self.root / relative_path
        if full_path.exists():
            full_path.unlink()
            logger.info("artifact_deleted", path=relative_path)
            return True
        return False

    def delete_job_artifacts(self, account_id: str, job_id: str) -> int:
        """Delete every file stored for an import job. Returns count deleted."""
        directory = self.root / job_dir(account_id, job_id)
        if not directory.exists():
            return 0
        count = sum(1 for p in directory.rglob("*") if p.is_file())
        shutil.rmtree(directory)
        logger.info("job_artifacts_deleted", job_id=job_id, count=count)
        return count
