"""
Artifact store for uploaded sources, transient downloads and packaged archives.
Local filesystem under ARTIFACT_ROOT (a shared volume when several workers run).
"""

import shutil
import time
from pathlib import Path
from typing import Optional

import structlog

from app.config import settings
from app.storage.paths import ensure_parent_dirs

logger = structlog.get_logger(__name__)


class ArtifactStore:
    """
    Save, load and delete artifacts.
    All paths are relative to ARTIFACT_ROOT.
    """

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.ARTIFACT_ROOT)
        self.root.mkdir(parents=True, exist_ok=True)

    def save_bytes(self, relative_path: str, data: bytes) -> str:
        """Save raw bytes. Returns the relative path."""
        self._resolve(relative_path)
        full_path = ensure_parent_dirs(str(self.root), relative_path)
        full_path.write_bytes(data)
        logger.debug("artifact_saved", path=relative_path, size_bytes=len(data))
        return relative_path

    def load_bytes(self, relative_path: str) -> bytes:
        full_path = self._resolve(relative_path)
        if not full_path.is_file():
            raise FileNotFoundError(f"Artifact not found: {relative_path}")
        return full_path.read_bytes()

    def exists(self, relative_path: str) -> bool:
        return self._resolve(relative_path).exists()

    def delete(self, relative_path: str) -> bool:
        """Delete an artifact. Returns True if it existed."""
        full_path = self._resolve(relative_path)
        if full_path.is_file():
            full_path.unlink()
            logger.debug("artifact_deleted", path=relative_path)
            return True
        return False

    def delete_tree(self, relative_dir: str) -> int:
        """Delete a directory of artifacts. Returns count of files deleted."""
        target = self._resolve(relative_dir)
        if not target.is_dir():
            return 0
        count = sum(1 for p in target.rglob("*") if p.is_file())
        shutil.rmtree(target)
        logger.debug("artifact_tree_deleted", path=relative_dir, count=count)
        return count

    def writable_path(self, relative_path: str) -> Path:
        """Absolute path for a file about to be written, with its parent directories created."""
        self._resolve(relative_path)
        return ensure_parent_dirs(str(self.root), relative_path)

    def full_path(self, relative_path: str) -> Path:
        """Get the absolute filesystem path for an artifact."""
        return self._resolve(relative_path)

    def list_older_than(self, relative_dir: str, max_age_seconds: float) -> list[str]:
        """Files under `relative_dir` last modified more than `max_age_seconds` ago."""
        target = self._resolve(relative_dir)
        if not target.is_dir():
            return []
        cutoff = time.time() - max_age_seconds
        return [
            str(p.relative_to(self.root))
            for p in target.rglob("*")
            if p.is_file() and p.stat().st_mtime < cutoff
        ]

    def _resolve(self, relative_path: str) -> Path:
        full_path = (self.root / relative_path).resolve()
        if not full_path.is_relative_to(self.root.resolve()):
            raise ValueError(f"Path escapes artifact root: {relative_path}")
        return full_path
