from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import BinaryIO, Union

from .app_logging import get_logger, log_with_fields
from .blobs import BlobStore
from .errors import DuplicateError, NotFoundError, StorageError
from .models import DuplicatePolicy, UploadResult, WordlistRecord
from .store import Store
from .utils import sanitize_filename, storage_key_for, utc_now_iso

Content = Union[BinaryIO, Iterable[bytes]]


def iter_chunks(content: Content, chunk_size: int) -> Iterable[bytes]:
    read = getattr(content, "read", None)
    if callable(read):
        return iter(lambda: read(chunk_size), b"")
    return content


class WordlistStore:
    def __init__(
        self,
        store: Store,
        blobs: BlobStore,
        *,
        duplicate_policy: DuplicatePolicy = DuplicatePolicy.REJECT,
        chunk_size: int = 1024 * 1024,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.blobs = blobs
        self.duplicate_policy = duplicate_policy
        self.chunk_size = chunk_size
        self.logger = logger or get_logger("wordlists")

    def _duplicate(self, record: WordlistRecord) -> UploadResult:
        if self.duplicate_policy == DuplicatePolicy.RETURN_EXISTING:
            return UploadResult(record=record, created=False)
        raise DuplicateError(record.checksum)

    def _stage(self, content: Content) -> tuple[Path, str, int]:
        staged = self.blobs.new_staging_path()
        hasher = hashlib.sha256()
        size = 0
        try:
            with staged.open("wb") as handle:
                for chunk in iter_chunks(content, self.chunk_size):
                    hasher.update(chunk)
                    handle.write(chunk)
                    size += len(chunk)
        except BaseException:
            self.blobs.discard(staged)
            raise
        return staged, hasher.hexdigest(), size

    def begin_upload(self, content: Content, filename: str | None = None) -> UploadResult:
        try:
            staged, checksum, size = self._stage(content)
        except OSError as exc:
            raise StorageError(f"failed to stage upload: {exc}") from exc

        try:
            existing = self.store.get_wordlist(checksum)
            if existing is not None:
                log_with_fields(self.logger, logging.INFO, "wordlist_duplicate", checksum=checksum)
                return self._duplicate(existing)

            record = WordlistRecord(
                checksum=checksum,
                name=sanitize_filename(filename, fallback=checksum),
                size=size,
                created_at=utc_now_iso(),
                storage_key=storage_key_for(checksum),
            )
            try:
                self.store.exclusive(lambda: self._commit_record(staged, record))
            except DuplicateError:
                winner = self.store.get_wordlist(checksum)
                log_with_fields(self.logger, logging.INFO, "wordlist_upload_race_lost", checksum=checksum)
                if winner is None:
                    raise
                return self._duplicate(winner)
        finally:
            self.blobs.discard(staged)

        log_with_fields(
            self.logger,
            logging.INFO,
            "wordlist_stored",
            checksum=checksum,
            name=record.name,
            size=size,
        )
        return UploadResult(record=record, created=True)

    def _commit_record(self, staged: Path, record: WordlistRecord) -> None:
        # Runs under the database write lock: sweep and remove cannot see
        # the committed blob until the row referencing it is visible too.
        if self.store.get_wordlist(record.checksum) is not None:
            raise DuplicateError(record.checksum)
        created = self.blobs.commit(staged, record.storage_key)
        try:
            self.store.insert_wordlist(record)
        except Exception:
            if created and self.store.get_wordlist(record.checksum) is None:
                self.blobs.delete(record.storage_key)
            log_with_fields(self.logger, logging.ERROR, "wordlist_insert_failed", checksum=record.checksum)
            raise

    def get(self, identifier: str) -> WordlistRecord:
        record = self.store.get_wordlist(identifier.lower())
        if record is None:
            raise NotFoundError("wordlist", identifier)
        return record

    def exists(self, identifier: str) -> bool:
        return self.store.get_wordlist(identifier.lower()) is not None

    def list(self) -> list[WordlistRecord]:
        return self.store.list_wordlists()

    def path_of(self, identifier: str) -> Path:
        return self.blobs.path_for(self.get(identifier).storage_key)

    def open(self, identifier: str) -> BinaryIO:
        record = self.get(identifier)
        try:
            return self.blobs.open(record.storage_key)
        except FileNotFoundError as exc:
            raise StorageError(f"blob missing for wordlist {record.checksum}") from exc

    def remove(self, identifier: str) -> WordlistRecord:
        """Delete the record, then its blob.

        If the blob cannot be deleted the record is still gone: the failure
        leaves an unreferenced blob behind, never a record without bytes,
        and ``sweep_orphans`` reclaims it later.
        """
        record = self.get(identifier)

        def delete_both() -> None:
            if not self.store.delete_wordlist(record.checksum):
                raise NotFoundError("wordlist", identifier)
            try:
                self.blobs.delete(record.storage_key)
            except StorageError as exc:
                log_with_fields(
                    self.logger,
                    logging.WARNING,
                    "wordlist_blob_leaked",
                    checksum=record.checksum,
                    storage_key=record.storage_key,
                    error=str(exc),
                )

        self.store.exclusive(delete_both)
        log_with_fields(self.logger, logging.INFO, "wordlist_removed", checksum=record.checksum)
        return record

    def _delete_if_unreferenced(self, key: str) -> bool:
        return self.store.get_wordlist(key) is None and self.blobs.delete(key)

    def sweep_orphans(self, staging_grace_seconds: float = 3600) -> list[str]:
        referenced = self.store.storage_keys()
        removed: list[str] = []
        for key in list(self.blobs.keys()):
            if key in referenced:
                continue
            if self.store.exclusive(lambda: self._delete_if_unreferenced(key)):
                removed.append(key)
        for staged in self.blobs.staged_files(older_than_seconds=staging_grace_seconds):
            self.blobs.discard(staged)
            removed.append(staged.relative_to(self.blobs.root).as_posix())
        if removed:
            log_with_fields(self.logger, logging.INFO, "orphans_swept", removed=removed)
        return removed
