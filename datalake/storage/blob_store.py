from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import BinaryIO, Protocol

from datalake.core.path_safety import PathSafetyError, resolve_under_root

logger = logging.getLogger(__name__)

_COPY_CHUNK_BYTES = 1024 * 1024
_META_SUFFIX = ".meta.json"


class BlobStoreError(RuntimeError):
    pass


class BlobNotFoundError(BlobStoreError):
    pass


class InvalidBlobPathError(BlobStoreError):
    pass


class BlobStore(Protocol):
    def put(self, path: str, stream: BinaryIO, size: int, content_type: str | None) -> str: ...

    def get(self, path: str) -> BinaryIO: ...

    def exists(self, path: str) -> bool: ...

    def delete(self, path: str) -> bool: ...


class LocalBlobStore:
    """Filesystem blob store rooted at ``root``.

    Objects are written to a temporary sibling and renamed into place, so readers
    never observe a partially written blob.
    """

    def __init__(self, root: Path):
        self._root = root.resolve(strict=False)
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, path: str) -> Path:
        try:
            return resolve_under_root(self._root, path)
        except PathSafetyError as exc:
            raise InvalidBlobPathError(f"Invalid object path {path!r}: {exc}") from exc

    def _meta_path(self, target: Path) -> Path:
        return target.with_name(target.name + _META_SUFFIX)

    def put(self, path: str, stream: BinaryIO, size: int, content_type: str | None) -> str:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".upload-", dir=target.parent)
            try:
                with os.fdopen(fd, "wb") as handle:
                    shutil.copyfileobj(stream, handle, _COPY_CHUNK_BYTES)
                os.replace(tmp_name, target)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
            self._meta_path(target).write_text(
                json.dumps({"content_type": content_type, "size": size}),
                encoding="utf-8",
            )
        except OSError as exc:
            logger.error("Blob store error while writing %s", path, exc_info=True)
            raise BlobStoreError(f"Failed to store {path}: {exc}") from exc
        logger.info("Stored blob at %s", path)
        return path

    def get(self, path: str) -> BinaryIO:
        target = self._resolve(path)
        try:
            return target.open("rb")
        except FileNotFoundError as exc:
            raise BlobNotFoundError(f"Blob not found: {path}") from exc
        except OSError as exc:
            raise BlobStoreError(f"Failed to read {path}: {exc}") from exc

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def delete(self, path: str) -> bool:
        target = self._resolve(path)
        if not target.is_file():
            return False
        target.unlink(missing_ok=True)
        self._meta_path(target).unlink(missing_ok=True)
        return True

    def content_type(self, path: str) -> str | None:
        meta_path = self._meta_path(self._resolve(path))
        if not meta_path.is_file():
            return None
        return json.loads(meta_path.read_text(encoding="utf-8")).get("content_type")
