"""Byte storage used for uploaded documents, artifacts and configurations."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class Storage(Protocol):
    """Reads and writes raw bytes by relative path."""

    def read_bytes(self, path: str) -> bytes: ...

    def write_bytes(self, path: str, data: bytes) -> None: ...

    def exists(self, path: str) -> bool: ...

    def delete(self, path: str) -> None: ...

    def list(self, prefix: str) -> list[str]: ...


class LocalFileStorage:
    """Storage rooted at a directory on the local filesystem."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def read_bytes(self, path: str) -> bytes:
        """Return the content stored at *path*.

        Raises:
            FileNotFoundError: If nothing is stored at *path*.
        """
        target = self._resolve(path)
        if not target.is_file():
            raise FileNotFoundError(f"File not found in storage: {path}")
        return target.read_bytes()

    def write_bytes(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.debug("Stored %d bytes at %s", len(data), target)

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def delete(self, path: str) -> None:
        self._resolve(path).unlink(missing_ok=True)

    def list(self, prefix: str) -> list[str]:
        """Return the relative paths of files stored under *prefix*, sorted."""
        base = self._resolve(prefix)
        if not base.is_dir():
            return []
        return sorted(p.relative_to(self.root).as_posix() for p in base.rglob("*") if p.is_file())

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise ValueError(f"Path escapes storage root: {path}")
        return target
