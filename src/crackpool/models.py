from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class JobState(str, Enum):
    QUEUED = "queued"
    DISPATCHED = "dispatched"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})

# Source states each target state may be entered from.
ALLOWED_SOURCES: dict[JobState, frozenset[JobState]] = {
    JobState.DISPATCHED: frozenset({JobState.QUEUED}),
    JobState.RUNNING: frozenset({JobState.DISPATCHED, JobState.RUNNING}),
    JobState.COMPLETED: frozenset({JobState.DISPATCHED, JobState.RUNNING}),
    JobState.FAILED: frozenset({JobState.QUEUED, JobState.DISPATCHED, JobState.RUNNING}),
    JobState.CANCELLED: frozenset({JobState.QUEUED, JobState.DISPATCHED, JobState.RUNNING}),
}


class HealthState(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNREACHABLE = "unreachable"


class DuplicatePolicy(str, Enum):
    REJECT = "reject"
    RETURN_EXISTING = "return_existing"


@dataclass(slots=True, frozen=True)
class WordlistRecord:
    checksum: str
    name: str
    size: int
    created_at: str
    storage_key: str


@dataclass(slots=True, frozen=True)
class UploadResult:
    record: WordlistRecord
    created: bool


@dataclass(slots=True)
class ClusterWorker:
    worker_id: str
    address: str | None
    tags: tuple[str, ...] = ()
    health: HealthState = HealthState.UNKNOWN
    last_seen: str | None = None


@dataclass(slots=True)
class CrackJob:
    job_id: str
    hashes: list[str]
    hash_type: int
    wordlist_checksum: str
    state: JobState
    created_at: str
    worker_id: str | None = None
    handle_token: str | None = None
    result: dict[str, str] | None = None
    reason: str | None = None
    dispatched_at: str | None = None
    finished_at: str | None = None
    attempt_count: int = 0
    worker_hint: str | None = None
    last_attempt_at: str | None = None
    last_seen_at: str | None = None


@dataclass(slots=True, frozen=True)
class DispatchHandle:
    job_id: str
    worker_id: str
    backend: str
    token: str


@dataclass(slots=True)
class JobReport:
    state: JobState
    result: dict[str, str] | None = None
    reason: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
