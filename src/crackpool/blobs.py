from __future__ import annotations

import os
import time
import uuid
from collections.abc import Iterator
from pathlib import Path
from typing import BinaryIO

from .errors import StorageError

STAGING_DIRNAME = ".staging"


class BlobStore:
    """Content-addressed blob namespace on a local or mounted filesystem.

    Blobs live at ``<root>/<storage_key>``. Uploads are written to
    ``<root>/.staging/`` first and moved into place with ``os.replace``, which
    is atomic as long as the staging area shares the filesystem with the
    namespace. A reader therefore sees either no blob or a complete one.
    """

    def __init__(self, root: Path, read_retries: int = 3, retry_delay_seconds: float = 0.2) -> None:
        self.root = root
        self.staging = root / STAGING_DIRNAME
        self.read_retries = read_retries
        self.retry_delay_seconds = retry_delay_seconds
        self.root.mkdir(parents=True, exist_ok=True)
        self.staging.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"storage key escapes blob root: {key}")
        return path

    def new_staging_path(self) -> Path:
        return self.staging / f"{uuid.uuid4().hex}.part"

    def discard(self, staged: Path) -> None:
        staged.unlink(missing_ok=True)

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def commit(self, staged: Path, key: str) -> bool:
        """Move a staged file to ``key``. Returns False if the key already held a blob.

        Keys are content derived, so an existing blob already has the staged
        bytes and the staged copy is dropped instead of replacing it.
        """
        target = self.path_for(key)
        try:
            if target.is_file():
                self.discard(staged)
                return False
            target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(staged, target)
        except OSError as exc:
            self.discard(staged)
            raise StorageError(f"failed to commit blob {key}: {exc}") from exc
        return True

    def delete(self, key: str) -> bool:
        target = self.path_for(key)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(f"failed to delete blob {key}: {exc}") from exc
        return True

    def open(self, key: str) -> BinaryIO:
        last_error: OSError | None = None
        for attempt in range(self.read_retries):
            try:
                return self.path_for(key).open("rb")
            except FileNotFoundError:
                raise
            except OSError as exc:
                last_error = exc
                if attempt + 1 < self.read_retries:
                    time.sleep(self.retry_delay_seconds * (2**attempt))
        raise StorageError(f"failed to open blob {key}: {last_error}") from last_error

    def keys(self) -> Iterator[str]:
        for path in self.root.rglob("*"):
            if not path.is_file() or STAGING_DIRNAME in path.relative_to(self.root).parts:
                continue
            yield path.relative_to(self.root).as_posix()

    def staged_files(self, older_than_seconds: float = 0) -> list[Path]:
        cutoff = time.time() - older_than_seconds
        return [
            path
            for path in self.staging.iterdir()
            if path.is_file() and path.stat().st_mtime <= cutoff
        ]
