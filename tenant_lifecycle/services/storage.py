"""
Path-addressable blob store for backup artifacts
"""

from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterator, Optional
import hashlib
import os
import shutil
import tempfile
import uuid

import structlog

from tenant_lifecycle.core.config import get_settings

logger = structlog.get_logger(__name__)

CHUNK_SIZE = 1024 * 1024


class LocalBackupStorage:
    """Artifacts live under <root>/<tenant_id>/<backup_id>/.

    Paths handed out to callers are relative to the root, so records stay
    valid if the root is moved.
    """

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or get_settings().BACKUP_STORAGE_ROOT)

    def backup_prefix(self, tenant_id: uuid.UUID, backup_id: uuid.UUID) -> str:
        return f"{tenant_id}/{backup_id}"

    def _resolve(self, path: str) -> Path:
        resolved = (self.root / path).resolve()
        if self.root.resolve() not in resolved.parents:
            raise ValueError(f"Artifact path escapes storage root: {path}")
        return resolved

    @contextmanager
    def open_write(self, path: str) -> Iterator[BinaryIO]:
        """Streamed write; the artifact only appears once fully written"""
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=".partial-")
        try:
            with os.fdopen(fd, "wb") as stream:
                yield stream
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    @contextmanager
    def open_read(self, path: str) -> Iterator[BinaryIO]:
        with open(self._resolve(path), "rb") as stream:
            yield stream

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    def size(self, path: str) -> int:
        return self._resolve(path).stat().st_size

    def sha256(self, path: str) -> str:
        digest = hashlib.sha256()
        with self.open_read(path) as stream:
            for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
                digest.update(chunk)
        return digest.hexdigest()

    def delete(self, path: str) -> None:
        target = self._resolve(path)
        if target.exists():
            target.unlink()

    def delete_backup(self, tenant_id: uuid.UUID, backup_id: uuid.UUID) -> None:
        """Remove every artifact of a backup; missing is not an error"""
        directory = self.root / self.backup_prefix(tenant_id, backup_id)
        if directory.exists():
            shutil.rmtree(directory)
        logger.debug("Backup artifacts deleted", tenant_id=str(tenant_id), backup_id=str(backup_id))

    def delete_tenant(self, tenant_id: uuid.UUID) -> None:
        directory = self.root / str(tenant_id)
        if directory.exists():
            shutil.rmtree(directory)
        logger.info("All backup artifacts deleted", tenant_id=str(tenant_id))
