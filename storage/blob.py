"""
Blob storage backing the context store.

Two implementations share the same small contract (``put``, ``get``,
``list``, ``delete``): an in-process dict and a directory on local disk.
Both are read-after-write consistent.
"""

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Iterable, List

logger = logging.getLogger(__name__)


class BlobNotFound(KeyError):
    pass


class InMemoryBlobStore:
    """Blob store kept in a dict; used by tests and when no directory is configured."""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, path: str, data: bytes) -> None:
        with self._lock:
            self._blobs[path] = bytes(data)

    def get(self, path: str) -> bytes:
        with self._lock:
            try:
                return self._blobs[path]
            except KeyError:
                raise BlobNotFound(path)

    def list(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(p for p in self._blobs if p.startswith(prefix))

    def delete(self, paths: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            for path in paths:
                if self._blobs.pop(path, None) is not None:
                    removed += 1
        return removed


class LocalBlobStore:
    """
    Blob store rooted at a local directory.

    Writes go to a temporary file in the target directory and are renamed
    into place, so a reader never observes a partial blob.
    """

    def __init__(self, root: str):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info("Local blob store at %s", self.root)

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root not in target.parents:
            raise ValueError(f"Blob path escapes storage root: {path}")
        return target

    def put(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def get(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except FileNotFoundError:
            raise BlobNotFound(path)

    def list(self, prefix: str = "") -> List[str]:
        paths = []
        for file in self.root.rglob("*"):
            if file.is_file() and not file.name.startswith(".tmp-"):
                relative = file.relative_to(self.root).as_posix()
                if relative.startswith(prefix):
                    paths.append(relative)
        return sorted(paths)

    def delete(self, paths: Iterable[str]) -> int:
        removed = 0
        for path in paths:
            target = self._resolve(path)
            try:
                target.unlink()
                removed += 1
            except FileNotFoundError:
                continue
        return removed
