from __future__ import annotations

import hashlib
import io
import sqlite3
import threading
import time
import unittest
from collections.abc import Callable, Iterator
from pathlib import Path
from tempfile import TemporaryDirectory

from crackpool.blobs import BlobStore
from crackpool.errors import DuplicateError, NotFoundError, StorageError
from crackpool.models import DuplicatePolicy, WordlistRecord
from crackpool.store import Store
from crackpool.wordlists import WordlistStore

WORDS = b"password\n123456\nletmein\n"
WORDS_SHA = hashlib.sha256(WORDS).hexdigest()


class BrokenInsertStore(Store):
    def insert_wordlist(self, record: WordlistRecord) -> None:
        raise sqlite3.OperationalError("database is locked")


class HookedBlobStore(BlobStore):
    """BlobStore that runs one-shot callbacks around commit and delete."""

    def __init__(self, root: Path) -> None:
        super().__init__(root, retry_delay_seconds=0)
        self.after_commit: Callable[[], None] | None = None
        self.before_delete: Callable[[], None] | None = None
        self.fail_deletes = False

    def commit(self, staged: Path, key: str) -> bool:
        created = super().commit(staged, key)
        if self.after_commit is not None:
            hook, self.after_commit = self.after_commit, None
            hook()
        return created

    def delete(self, key: str) -> bool:
        if self.before_delete is not None:
            hook, self.before_delete = self.before_delete, None
            hook()
        if self.fail_deletes:
            raise StorageError(f"failed to delete blob {key}: permission denied")
        return super().delete(key)


class WordlistStoreTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = TemporaryDirectory()
        self.root = Path(self._temp_dir.name)
        self.store = Store(self.root / "crackpool.db")
        self.store.init_schema()
        self.blobs = BlobStore(self.root / "blobs", retry_delay_seconds=0)
        self.wordlists = WordlistStore(self.store, self.blobs, chunk_size=4)

    def tearDown(self) -> None:
        self.store.close()
        self._temp_dir.cleanup()

    def _staged(self) -> list[Path]:
        return list(self.blobs.staging.iterdir())

    def test_upload_stores_content_by_checksum(self) -> None:
        result = self.wordlists.begin_upload(io.BytesIO(WORDS), "rockyou.txt")
        self.assertTrue(result.created)
        self.assertEqual(result.record.checksum, WORDS_SHA)
        self.assertEqual(result.record.size, len(WORDS))
        self.assertEqual(result.record.name, "rockyou.txt")
        self.assertEqual(result.record.storage_key, f"{WORDS_SHA[:2]}/{WORDS_SHA}")
        with self.wordlists.open(WORDS_SHA) as handle:
            self.assertEqual(handle.read(), WORDS)
        self.assertEqual(self.wordlists.path_of(WORDS_SHA).read_bytes(), WORDS)
        self.assertEqual(self._staged(), [])

    def test_iterable_content(self) -> None:
        result = self.wordlists.begin_upload(iter([b"pass", b"word\n"]))
        self.assertEqual(result.record.checksum, hashlib.sha256(b"password\n").hexdigest())
        self.assertEqual(result.record.name, result.record.checksum)

    def test_sequential_duplicate_is_rejected(self) -> None:
        self.wordlists.begin_upload(io.BytesIO(WORDS), "a.txt")
        with self.assertRaises(DuplicateError) as ctx:
            self.wordlists.begin_upload(io.BytesIO(WORDS), "b.txt")
        self.assertEqual(ctx.exception.checksum, WORDS_SHA)
        self.assertEqual(len(self.wordlists.list()), 1)
        self.assertEqual(list(self.blobs.keys()), [f"{WORDS_SHA[:2]}/{WORDS_SHA}"])
        self.assertEqual(self._staged(), [])

    def test_duplicate_returns_existing_when_configured(self) -> None:
        wordlists = WordlistStore(self.store, self.blobs, duplicate_policy=DuplicatePolicy.RETURN_EXISTING)
        first = wordlists.begin_upload(io.BytesIO(WORDS), "a.txt")
        second = wordlists.begin_upload(io.BytesIO(WORDS), "b.txt")
        self.assertFalse(second.created)
        self.assertEqual(second.record, first.record)

    def test_concurrent_uploads_store_once(self) -> None:
        barrier = threading.Barrier(8)
        created: list[str] = []
        duplicates: list[str] = []
        errors: list[BaseException] = []
        lock = threading.Lock()

        def upload() -> None:
            barrier.wait()
            try:
                result = self.wordlists.begin_upload(io.BytesIO(WORDS))
            except DuplicateError as exc:
                with lock:
                    duplicates.append(exc.checksum)
            except BaseException as exc:
                with lock:
                    errors.append(exc)
            else:
                with lock:
                    created.append(result.record.checksum)

        threads = [threading.Thread(target=upload) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(created, [WORDS_SHA])
        self.assertEqual(duplicates, [WORDS_SHA] * 7)
        self.assertEqual(len(self.store.list_wordlists()), 1)
        self.assertEqual(list(self.blobs.keys()), [f"{WORDS_SHA[:2]}/{WORDS_SHA}"])
        self.assertEqual(self._staged(), [])

    def test_failed_stream_leaves_nothing_behind(self) -> None:
        def broken() -> Iterator[bytes]:
            yield b"partial"
            raise OSError("connection reset")

        with self.assertRaises(StorageError):
            self.wordlists.begin_upload(broken())

        def interrupted() -> Iterator[bytes]:
            yield b"partial"
            raise RuntimeError("client went away")

        with self.assertRaises(RuntimeError):
            self.wordlists.begin_upload(interrupted())

        self.assertEqual(self._staged(), [])
        self.assertEqual(list(self.blobs.keys()), [])
        self.assertEqual(self.wordlists.list(), [])

    def test_metadata_failure_removes_committed_blob(self) -> None:
        store = BrokenInsertStore(self.root / "broken.db")
        store.init_schema()
        wordlists = WordlistStore(store, self.blobs)
        with self.assertRaises(sqlite3.OperationalError):
            wordlists.begin_upload(io.BytesIO(WORDS))
        self.assertEqual(list(self.blobs.keys()), [])
        self.assertEqual(self._staged(), [])
        store.close()

    def test_get_and_remove(self) -> None:
        self.wordlists.begin_upload(io.BytesIO(WORDS), "a.txt")
        self.assertEqual(self.wordlists.get(WORDS_SHA.upper()).checksum, WORDS_SHA)
        self.assertTrue(self.wordlists.exists(f"{WORDS_SHA[:2]}/{WORDS_SHA}"))

        removed = self.wordlists.remove(WORDS_SHA)
        self.assertEqual(removed.checksum, WORDS_SHA)
        self.assertFalse(self.wordlists.exists(WORDS_SHA))
        self.assertEqual(list(self.blobs.keys()), [])
        with self.assertRaises(NotFoundError):
            self.wordlists.get(WORDS_SHA)
        with self.assertRaises(NotFoundError):
            self.wordlists.remove(WORDS_SHA)

        # the same content can be uploaded again after removal
        self.assertTrue(self.wordlists.begin_upload(io.BytesIO(WORDS)).created)

    def test_sweep_orphans(self) -> None:
        self.wordlists.begin_upload(io.BytesIO(WORDS))
        orphan = "f" * 64
        orphan_path = self.blobs.path_for(f"ff/{orphan}")
        orphan_path.parent.mkdir(parents=True, exist_ok=True)
        orphan_path.write_bytes(b"leaked")
        staged = self.blobs.new_staging_path()
        staged.write_bytes(b"abandoned")

        removed = self.wordlists.sweep_orphans(staging_grace_seconds=0)
        self.assertIn(f"ff/{orphan}", removed)
        self.assertFalse(orphan_path.exists())
        self.assertFalse(staged.exists())
        self.assertEqual(list(self.blobs.keys()), [f"{WORDS_SHA[:2]}/{WORDS_SHA}"])

    def _second_process(self) -> tuple[Store, WordlistStore]:
        store = Store(self.root / "crackpool.db")
        return store, WordlistStore(
            store,
            BlobStore(self.root / "blobs", retry_delay_seconds=0),
            duplicate_policy=DuplicatePolicy.RETURN_EXISTING,
        )

    def _assert_records_have_bytes(self) -> None:
        for record in self.wordlists.list():
            with self.wordlists.open(record.checksum) as handle:
                self.assertEqual(hashlib.sha256(handle.read()).hexdigest(), record.checksum)

    def test_sweep_from_another_connection_waits_for_upload(self) -> None:
        other_store, other = self._second_process()
        blobs = HookedBlobStore(self.root / "blobs")
        uploader = WordlistStore(self.store, blobs)
        swept: list[str] = []
        sweeper = threading.Thread(target=lambda: swept.extend(other.sweep_orphans()))

        def sweep_between_blob_and_row() -> None:
            sweeper.start()
            time.sleep(0.3)

        blobs.after_commit = sweep_between_blob_and_row
        self.assertTrue(uploader.begin_upload(io.BytesIO(WORDS)).created)
        sweeper.join()
        other_store.close()

        self.assertEqual(swept, [])
        with self.wordlists.open(WORDS_SHA) as handle:
            self.assertEqual(handle.read(), WORDS)

    def test_upload_from_another_connection_during_remove(self) -> None:
        blobs = HookedBlobStore(self.root / "blobs")
        remover = WordlistStore(self.store, blobs)
        remover.begin_upload(io.BytesIO(WORDS))
        other_store, other = self._second_process()
        errors: list[BaseException] = []

        def upload() -> None:
            try:
                other.begin_upload(io.BytesIO(WORDS))
            except BaseException as exc:
                errors.append(exc)

        uploader = threading.Thread(target=upload)

        def upload_between_row_and_blob() -> None:
            uploader.start()
            time.sleep(0.3)

        blobs.before_delete = upload_between_row_and_blob
        remover.remove(WORDS_SHA)
        uploader.join()
        other_store.close()

        self.assertEqual(errors, [])
        self._assert_records_have_bytes()
        keys = list(self.blobs.keys())
        self.assertEqual(keys, [f"{WORDS_SHA[:2]}/{WORDS_SHA}"] if self.wordlists.exists(WORDS_SHA) else [])

        if not self.wordlists.exists(WORDS_SHA):
            self.assertTrue(self.wordlists.begin_upload(io.BytesIO(WORDS)).created)
        self._assert_records_have_bytes()

    def test_failed_blob_delete_leaks_blob_not_record(self) -> None:
        blobs = HookedBlobStore(self.root / "blobs")
        wordlists = WordlistStore(self.store, blobs)
        wordlists.begin_upload(io.BytesIO(WORDS))
        key = f"{WORDS_SHA[:2]}/{WORDS_SHA}"

        blobs.fail_deletes = True
        self.assertEqual(wordlists.remove(WORDS_SHA).checksum, WORDS_SHA)
        with self.assertRaises(NotFoundError):
            wordlists.get(WORDS_SHA)
        self.assertEqual(list(blobs.keys()), [key])

        blobs.fail_deletes = False
        self.assertEqual(wordlists.sweep_orphans(), [key])
        self.assertEqual(list(blobs.keys()), [])

    def test_blob_paths_stay_inside_root(self) -> None:
        with self.assertRaises(StorageError):
            self.blobs.path_for("../outside")


if __name__ == "__main__":
    unittest.main()
