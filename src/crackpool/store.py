from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any, TypeVar

from .errors import DuplicateError
from .models import ALLOWED_SOURCES, CrackJob, JobState, WordlistRecord
from .utils import utc_now_iso

T = TypeVar("T")


def _row_to_wordlist(row: sqlite3.Row) -> WordlistRecord:
    return WordlistRecord(
        checksum=row["checksum"],
        name=row["name"],
        size=int(row["size"]),
        created_at=row["created_at"],
        storage_key=row["storage_key"],
    )


def _row_to_job(row: sqlite3.Row) -> CrackJob:
    result_json = row["result_json"]
    return CrackJob(
        job_id=row["job_id"],
        hashes=json.loads(row["hashes_json"]),
        hash_type=int(row["hash_type"]),
        wordlist_checksum=row["wordlist_checksum"],
        state=JobState(row["state"]),
        worker_id=row["worker_id"],
        handle_token=row["handle_token"],
        result=json.loads(result_json) if result_json is not None else None,
        reason=row["reason"],
        created_at=row["created_at"],
        dispatched_at=row["dispatched_at"],
        finished_at=row["finished_at"],
        attempt_count=int(row["attempt_count"]),
        worker_hint=row["worker_hint"],
        last_attempt_at=row["last_attempt_at"],
        last_seen_at=row["last_seen_at"],
    )


class Store:
    def __init__(self, db_path: Path | str) -> None:
        self.db_path = db_path
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=30)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.lock = threading.RLock()
        self._exclusive_depth = 0

    def close(self) -> None:
        with self.lock:
            self.conn.close()

    def _commit(self) -> None:
        if not self._exclusive_depth:
            self.conn.commit()

    def exclusive(self, action: Callable[[], T]) -> T:
        """Run ``action`` while holding the database write lock.

        ``BEGIN IMMEDIATE`` takes sqlite's reserved lock before ``action``
        starts, so any other connection to the same file (another thread's
        Store or another process) waits until this one commits. Writes made
        inside ``action`` commit together, or roll back when it raises.
        Nested calls join the outer block.
        """
        with self.lock:
            if self._exclusive_depth:
                return action()
            if self.conn.in_transaction:
                self.conn.commit()
            self.conn.execute("BEGIN IMMEDIATE")
            self._exclusive_depth += 1
            try:
                value = action()
            except BaseException:
                self.conn.rollback()
                raise
            finally:
                self._exclusive_depth -= 1
            self.conn.commit()
            return value

    def init_schema(self) -> None:
        with self.lock:
            self.conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS wordlists (
                    checksum TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    size INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    storage_key TEXT NOT NULL UNIQUE
                );

                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    hashes_json TEXT NOT NULL,
                    hash_type INTEGER NOT NULL DEFAULT 0,
                    wordlist_checksum TEXT NOT NULL,
                    state TEXT NOT NULL,
                    worker_id TEXT,
                    handle_token TEXT,
                    result_json TEXT,
                    reason TEXT,
                    created_at TEXT NOT NULL,
                    dispatched_at TEXT,
                    finished_at TEXT,
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    worker_hint TEXT,
                    last_attempt_at TEXT,
                    last_seen_at TEXT
                );

                CREATE TABLE IF NOT EXISTS job_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    worker_id TEXT,
                    timestamp TEXT NOT NULL,
                    details_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_jobs_state_created_at
                    ON jobs(state, created_at);
                CREATE INDEX IF NOT EXISTS idx_job_events_job_timestamp
                    ON job_events(job_id, timestamp);
                """
            )
            self.conn.commit()

    # wordlists

    def insert_wordlist(self, record: WordlistRecord) -> None:
        with self.lock:
            try:
                self.conn.execute(
                    """
                    INSERT INTO wordlists(checksum, name, size, created_at, storage_key)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (record.checksum, record.name, record.size, record.created_at, record.storage_key),
                )
                self._commit()
            except sqlite3.IntegrityError as exc:
                if not self._exclusive_depth:
                    self.conn.rollback()
                raise DuplicateError(record.checksum) from exc

    def get_wordlist(self, identifier: str) -> WordlistRecord | None:
        with self.lock:
            row = self.conn.execute(
                "SELECT * FROM wordlists WHERE checksum = ? OR storage_key = ?",
                (identifier, identifier),
            ).fetchone()
        if row is None:
            return None
        return _row_to_wordlist(row)

    def list_wordlists(self) -> list[WordlistRecord]:
        with self.lock:
            rows = self.conn.execute(
                "SELECT * FROM wordlists ORDER BY created_at DESC, checksum"
            ).fetchall()
        return [_row_to_wordlist(row) for row in rows]

    def delete_wordlist(self, checksum: str) -> bool:
        with self.lock:
            cursor = self.conn.execute("DELETE FROM wordlists WHERE checksum = ?", (checksum,))
            self._commit()
        return cursor.rowcount > 0

    def storage_keys(self) -> set[str]:
        with self.lock:
            rows = self.conn.execute("SELECT storage_key FROM wordlists").fetchall()
        return {row["storage_key"] for row in rows}

    # jobs

    def add_event(
        self,
        job_id: str,
        event_type: str,
        details: dict[str, Any] | None = None,
        worker_id: str | None = None,
    ) -> None:
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO job_events(job_id, event_type, worker_id, timestamp, details_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (job_id, event_type, worker_id, utc_now_iso(), json.dumps(details or {}, sort_keys=True)),
            )
            self._commit()

    def list_events(self, job_id: str) -> list[dict[str, Any]]:
        with self.lock:
            rows = self.conn.execute(
                "SELECT * FROM job_events WHERE job_id = ? ORDER BY id",
                (job_id,),
            ).fetchall()
        return [
            {
                "event_type": row["event_type"],
                "worker_id": row["worker_id"],
                "timestamp": row["timestamp"],
                "details": json.loads(row["details_json"]),
            }
            for row in rows
        ]

    def insert_job(
        self,
        job_id: str,
        hashes: list[str],
        hash_type: int,
        wordlist_checksum: str,
        worker_hint: str | None = None,
    ) -> bool:
        with self.lock:
            cursor = self.conn.execute(
                """
                INSERT OR IGNORE INTO jobs(
                    job_id, hashes_json, hash_type, wordlist_checksum, state, created_at, attempt_count, worker_hint
                )
                VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    job_id,
                    json.dumps(hashes),
                    hash_type,
                    wordlist_checksum,
                    JobState.QUEUED.value,
                    utc_now_iso(),
                    worker_hint,
                ),
            )
            self._commit()
        return cursor.rowcount > 0

    def get_job(self, job_id: str) -> CrackJob | None:
        with self.lock:
            row = self.conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        if row is None:
            return None
        return _row_to_job(row)

    def list_jobs(self, states: Iterable[JobState] | None = None) -> list[CrackJob]:
        with self.lock:
            if states is None:
                rows = self.conn.execute("SELECT * FROM jobs ORDER BY created_at").fetchall()
            else:
                values = [state.value for state in states]
                placeholders = ", ".join("?" for _ in values)
                rows = self.conn.execute(
                    f"SELECT * FROM jobs WHERE state IN ({placeholders}) ORDER BY created_at",
                    values,
                ).fetchall()
        return [_row_to_job(row) for row in rows]

    def increment_attempts(self, job_id: str) -> None:
        with self.lock:
            self.conn.execute(
                "UPDATE jobs SET attempt_count = attempt_count + 1, last_attempt_at = ? WHERE job_id = ?",
                (utc_now_iso(), job_id),
            )
            self._commit()

    def touch_job(self, job_id: str, seen_at: str | None = None) -> None:
        """Record that the job's worker was last known alive at ``seen_at``."""
        with self.lock:
            self.conn.execute(
                "UPDATE jobs SET last_seen_at = ? WHERE job_id = ?",
                (seen_at or utc_now_iso(), job_id),
            )
            self._commit()

    def transition_job(
        self,
        job_id: str,
        state: JobState,
        *,
        worker_id: str | None = None,
        handle_token: str | None = None,
        result: dict[str, str] | None = None,
        reason: str | None = None,
        from_states: Iterable[JobState] | None = None,
    ) -> bool:
        """Move a job into ``state`` if its current state allows it.

        The source-state check and every attribute write happen in a single
        UPDATE, so a result is never visible without its terminal state and
        a terminal state is never overwritten. ``from_states`` narrows the
        allowed source states further. Returns False when the job's current
        state does not permit the transition.
        """
        allowed = ALLOWED_SOURCES[state]
        if from_states is not None:
            allowed = allowed & frozenset(from_states)
        if not allowed:
            return False
        sources = sorted(source.value for source in allowed)
        updates = ["state = ?"]
        values: list[object] = [state.value]
        if worker_id is not None:
            updates.append("worker_id = ?")
            values.append(worker_id)
        if handle_token is not None:
            updates.append("handle_token = ?")
            values.append(handle_token)
        if result is not None:
            updates.append("result_json = ?")
            values.append(json.dumps(result, sort_keys=True))
        if reason is not None:
            updates.append("reason = ?")
            values.append(reason)
        now = utc_now_iso()
        if state == JobState.DISPATCHED:
            updates.append("dispatched_at = ?")
            values.append(now)
            updates.append("last_seen_at = ?")
            values.append(now)
        elif state.terminal:
            updates.append("finished_at = ?")
            values.append(now)

        placeholders = ", ".join("?" for _ in sources)
        query = f"UPDATE jobs SET {', '.join(updates)} WHERE job_id = ? AND state IN ({placeholders})"
        with self.lock:
            cursor = self.conn.execute(query, [*values, job_id, *sources])
            self._commit()
        return cursor.rowcount > 0

    def summary_counts(self) -> dict[str, int]:
        with self.lock:
            rows = self.conn.execute("SELECT state, COUNT(*) AS count FROM jobs GROUP BY state").fetchall()
            wordlists = self.conn.execute("SELECT COUNT(*) AS count FROM wordlists").fetchone()
        output = {state.value: 0 for state in JobState}
        for row in rows:
            output[str(row["state"])] = int(row["count"])
        output["wordlists"] = int(wordlists["count"])
        return output
