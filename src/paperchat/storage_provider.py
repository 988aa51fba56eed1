"""
File storage abstraction for library attachments and the JSON store.
Default implementation uses local filesystem; interface allows cloud backends later.
"""
from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from typing import Protocol


class FileStorageProvider(Protocol):
    @property
    def root(self) -> Path:
        ...

    def ensure_ready(self):
        ...

    def save_file(self, source_path: Path, destination_name: str) -> Path:
        ...

    def read_text(self, path: Path) -> str:
        ...

    def write_text_atomic(self, path: Path, content: str) -> None:
        ...


class LocalFileStorageProvider:
    def __init__(self, root: Path):
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def ensure_ready(self):
        self._root.mkdir(parents=True, exist_ok=True)

    def save_file(self, source_path: Path, destination_name: str) -> Path:
        """Copies a file under the root; ``destination_name`` may contain sub-directories."""
        self.ensure_ready()
        destination = self._root / str(destination_name)
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source_path, destination)
        return destination

    def read_text(self, path: Path) -> str:
        """Returns "" for a missing file."""
        target = Path(path)
        if not target.exists():
            return ""
        return target.read_text(encoding="utf-8", errors="replace")

    def write_text_atomic(self, path: Path, content: str) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
