from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterable
from typing import Any, TypeVar

from .app_logging import log_with_fields
from .backend import ClusterBackend
from .channel import validate_id
from .config import DispatchConfig
from .errors import (
    AlreadyTerminalError,
    CrackpoolError,
    DispatchError,
    InvalidTransitionError,
    NoCapacityError,
    NotFoundError,
)
from .models import ClusterWorker, CrackJob, DispatchHandle, HealthState, JobReport, JobState
from .store import Store
from .utils import age_seconds, parse_iso
from .wordlists import WordlistStore

NO_CAPACITY = "no capacity"
WORDLIST_MISSING = "wordlist missing"
CANCELLED_BY_CALLER = "cancelled by caller"
WORKER_LOST = "worker lost"

T = TypeVar("T")


class Dispatcher:
    def __init__(
        self,
        store: Store,
        wordlists: WordlistStore,
        backend: ClusterBackend,
        config: DispatchConfig,
        logger: logging.Logger,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.wordlists = wordlists
        self.backend = backend
        self.config = config
        self.logger = logger
        self.sleep = sleep
        self.handles: dict[str, DispatchHandle] = {}
        self.handles_lock = threading.Lock()

    def run_forever(self) -> None:
        while True:
            self.single_cycle()
            time.sleep(self.config.poll_interval_seconds)

    def run_once(self) -> None:
        self.single_cycle()

    def single_cycle(self) -> None:
        """Poll in-flight jobs, then give each queued job at most one attempt.

        Jobs recorded by an earlier process are picked up the same way, so a
        restarted dispatcher resumes where the last one stopped.
        """
        self.sync()
        for job in self.store.list_jobs([JobState.QUEUED]):
            try:
                self.dispatch_due(job)
            except (NoCapacityError, NotFoundError) as exc:
                log_with_fields(self.logger, logging.WARNING, "job_not_dispatched", job_id=job.job_id, error=str(exc))

    def backoff_seconds(self, attempt: int) -> float:
        return min(self.config.backoff_max_seconds, self.config.backoff_base_seconds * (2**attempt))

    def get(self, job_id: str) -> CrackJob:
        job = self.store.get_job(job_id)
        if job is None:
            raise NotFoundError("job", job_id)
        return job

    def list(self, state: JobState | None = None) -> list[CrackJob]:
        return self.store.list_jobs(None if state is None else [state])

    def cluster_status(self) -> dict[str, Any]:
        """Worker health and job counts for the whole cluster."""
        workers = self._discover()
        health = {state.value: 0 for state in HealthState}
        for worker in workers:
            health[worker.health.value] += 1
        counts = self.store.summary_counts()
        return {
            "backend": self.backend.name,
            "workers": health,
            "jobs": {state.value: counts.get(state.value, 0) for state in JobState},
            "wordlists": counts.get("wordlists", 0),
        }

    def submit(
        self,
        hashes: Iterable[str],
        wordlist: str,
        *,
        job_id: str | None = None,
        hash_type: int = 0,
        worker_hint: str | None = None,
        dispatch: bool = True,
    ) -> CrackJob:
        hash_list = [value.strip() for value in hashes if value and value.strip()]
        if not hash_list:
            raise ValueError("a job needs at least one hash")
        record = self.wordlists.get(wordlist)
        job_id = validate_id(job_id) if job_id else uuid.uuid4().hex

        if not self.store.insert_job(job_id, hash_list, hash_type, record.checksum, worker_hint):
            existing = self.get(job_id)
            log_with_fields(self.logger, logging.INFO, "duplicate_job_ignored", job_id=job_id)
            return existing

        self.store.add_event(job_id, "queued", {"wordlist": record.checksum, "hashes": len(hash_list)})
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_queued",
            job_id=job_id,
            wordlist=record.checksum,
            hashes=len(hash_list),
        )
        if not dispatch:
            return self.get(job_id)
        return self.dispatch(job_id, worker_hint=worker_hint)

    def _discover(self) -> list[ClusterWorker]:
        try:
            return self.backend.discover_workers()
        except (CrackpoolError, OSError) as exc:
            log_with_fields(self.logger, logging.WARNING, "worker_discovery_failed", error=str(exc))
            return []

    def _is_healthy(self, worker_id: str) -> bool:
        try:
            return self.backend.health_of(worker_id) == HealthState.HEALTHY
        except (CrackpoolError, OSError) as exc:
            log_with_fields(self.logger, logging.WARNING, "worker_health_failed", worker=worker_id, error=str(exc))
            return False

    def candidates(self, worker_hint: str | None = None) -> list[ClusterWorker]:
        """Healthy workers in dispatch order.

        Hinted workers (matching id or tag) come first, then the freshest
        ``last_seen``, then worker id so ties are deterministic.
        """

        def sort_key(worker: ClusterWorker) -> tuple[int, float, str]:
            hinted = worker_hint is not None and (worker.worker_id == worker_hint or worker_hint in worker.tags)
            try:
                seen = parse_iso(worker.last_seen)
            except ValueError:
                seen = None
            freshness = seen.timestamp() if seen is not None else float("-inf")
            return (0 if hinted else 1, -freshness, worker.worker_id)

        healthy = [worker for worker in self._discover() if worker.health == HealthState.HEALTHY]
        return sorted(healthy, key=sort_key)

    def _require_wordlist(self, job: CrackJob) -> None:
        if self.wordlists.exists(job.wordlist_checksum):
            return
        if self.store.transition_job(
            job.job_id,
            JobState.FAILED,
            reason=WORDLIST_MISSING,
            from_states=[JobState.QUEUED],
        ):
            self.store.add_event(job.job_id, "failed", {"reason": WORDLIST_MISSING})
        raise NotFoundError("wordlist", job.wordlist_checksum)

    def _try_workers(self, job: CrackJob, workers: list[ClusterWorker]) -> CrackJob | None:
        for worker in workers:
            if not self._is_healthy(worker.worker_id):
                continue
            try:
                handle = self.backend.dispatch(job, worker)
            except DispatchError as exc:
                self.store.add_event(job.job_id, "dispatch_failed", {"error": str(exc)}, worker_id=worker.worker_id)
                log_with_fields(
                    self.logger,
                    logging.WARNING,
                    "job_dispatch_failed",
                    job_id=job.job_id,
                    worker=worker.worker_id,
                    error=str(exc),
                )
                continue

            if self.store.transition_job(
                job.job_id,
                JobState.DISPATCHED,
                worker_id=worker.worker_id,
                handle_token=handle.token,
            ):
                with self.handles_lock:
                    self.handles[job.job_id] = handle
                self.store.add_event(job.job_id, "dispatched", {"token": handle.token}, worker_id=worker.worker_id)
                log_with_fields(
                    self.logger,
                    logging.INFO,
                    "job_dispatched",
                    job_id=job.job_id,
                    worker=worker.worker_id,
                    token=handle.token,
                )
                return self.get(job.job_id)

            current = self.get(job.job_id)
            if current.state == JobState.CANCELLED:
                # Cancelled while the dispatch was in flight.
                self._cancel_handle(handle)
                self._release(handle)
            return current
        return None

    def _attempt(self, job: CrackJob, worker_hint: str | None) -> CrackJob | None:
        self._require_wordlist(job)
        self.store.increment_attempts(job.job_id)
        dispatched = self._try_workers(job, self.candidates(worker_hint))
        if dispatched is None:
            log_with_fields(
                self.logger,
                logging.INFO,
                "no_worker_available",
                job_id=job.job_id,
                attempt=job.attempt_count + 1,
            )
        return dispatched

    def _give_up(self, job: CrackJob) -> CrackJob:
        if self.store.transition_job(job.job_id, JobState.FAILED, reason=NO_CAPACITY, from_states=[JobState.QUEUED]):
            self.store.add_event(job.job_id, "failed", {"reason": NO_CAPACITY, "attempts": job.attempt_count})
            log_with_fields(self.logger, logging.ERROR, "job_no_capacity", job_id=job.job_id)
            raise NoCapacityError(job.job_id, job.attempt_count)
        return self.get(job.job_id)

    def dispatch(self, job_id: str, worker_hint: str | None = None) -> CrackJob:
        """Dispatch a queued job now, backing off between attempts inline."""
        job = self.get(job_id)
        if job.state != JobState.QUEUED:
            return job
        hint = worker_hint or job.worker_hint

        attempted = False
        while job.attempt_count < self.config.max_attempts:
            if attempted:
                self.sleep(self.backoff_seconds(job.attempt_count - 1))
                job = self.get(job_id)
                if job.state != JobState.QUEUED:
                    return job
            attempted = True
            dispatched = self._attempt(job, hint)
            if dispatched is not None:
                return dispatched
            job = self.get(job_id)
        return self._give_up(job)

    def dispatch_due(self, job: CrackJob) -> CrackJob:
        """Make one attempt for a queued job whose backoff has elapsed.

        Backoff and exhaustion are read from the persisted ``attempt_count``
        and ``last_attempt_at``, so the polling loop never sleeps on a job.
        """
        if job.state != JobState.QUEUED:
            return job
        if job.attempt_count >= self.config.max_attempts:
            return self._give_up(job)
        if job.attempt_count:
            waited = age_seconds(job.last_attempt_at)
            if waited is not None and waited < self.backoff_seconds(job.attempt_count - 1):
                return job

        dispatched = self._attempt(job, job.worker_hint)
        if dispatched is not None:
            return dispatched
        current = self.get(job.job_id)
        if current.state == JobState.QUEUED and current.attempt_count >= self.config.max_attempts:
            return self._give_up(current)
        return current

    def _handle_for(self, job: CrackJob) -> DispatchHandle | None:
        with self.handles_lock:
            handle = self.handles.get(job.job_id)
        if handle is not None:
            return handle
        if job.worker_id and job.handle_token:
            return DispatchHandle(job.job_id, job.worker_id, self.backend.name, job.handle_token)
        return None

    def _forget(self, job_id: str) -> None:
        with self.handles_lock:
            self.handles.pop(job_id, None)

    def _release(self, handle: DispatchHandle) -> None:
        try:
            self.backend.release(handle)
        except (CrackpoolError, OSError) as exc:
            log_with_fields(self.logger, logging.WARNING, "job_release_failed", job_id=handle.job_id, error=str(exc))

    def _finished(self, job: CrackJob) -> None:
        handle = self._handle_for(job)
        self._forget(job.job_id)
        if handle is not None:
            self._release(handle)

    def report(
        self,
        job_id: str,
        state: JobState | str,
        result: dict[str, str] | None = None,
        reason: str | None = None,
    ) -> CrackJob:
        state = JobState(state)
        if state in (JobState.QUEUED, JobState.DISPATCHED):
            raise ValueError(f"workers cannot report state {state.value}")
        job = self.get(job_id)
        if job.state.terminal:
            raise AlreadyTerminalError(job_id, job.state.value)

        if state == JobState.COMPLETED and result is None:
            result = {}
        if not self.store.transition_job(job_id, state, result=result, reason=reason):
            current = self.get(job_id)
            if current.state.terminal:
                raise AlreadyTerminalError(job_id, current.state.value)
            raise InvalidTransitionError(job_id, current.state.value, state.value)

        if state.terminal:
            self._finished(job)
        if state != job.state:
            self.store.add_event(
                job_id,
                state.value,
                {"cracked": len(result or {}), "reason": reason},
                worker_id=job.worker_id,
            )
            log_with_fields(
                self.logger,
                logging.INFO,
                f"job_{state.value}",
                job_id=job_id,
                worker=job.worker_id,
                cracked=len(result or {}),
            )
        return self.get(job_id)

    def _apply(self, job: CrackJob, report: JobReport) -> bool:
        if report.state == job.state:
            return False
        try:
            self.report(job.job_id, report.state, result=report.result, reason=report.reason)
        except (AlreadyTerminalError, InvalidTransitionError) as exc:
            log_with_fields(self.logger, logging.INFO, "job_report_skipped", job_id=job.job_id, error=str(exc))
            return False
        return True

    def _check_worker(self, job: CrackJob) -> bool:
        """Refresh the job's liveness, or fail it once its worker is lost.

        Returns True when the job was moved to failed.
        """
        if job.worker_id and self._is_healthy(job.worker_id):
            self.store.touch_job(job.job_id)
            return False
        silent = age_seconds(job.last_seen_at or job.dispatched_at)
        if silent is None or silent < self.config.worker_lost_seconds:
            return False
        if not self.store.transition_job(
            job.job_id,
            JobState.FAILED,
            reason=WORKER_LOST,
            from_states=[JobState.DISPATCHED, JobState.RUNNING],
        ):
            return False
        self.store.add_event(
            job.job_id,
            "failed",
            {"reason": WORKER_LOST, "silent_seconds": round(silent)},
            worker_id=job.worker_id,
        )
        log_with_fields(
            self.logger,
            logging.WARNING,
            "job_worker_lost",
            job_id=job.job_id,
            worker=job.worker_id,
            silent_seconds=round(silent),
        )
        self._finished(job)
        return True

    def sync(self) -> int:
        updated = 0
        for job in self.store.list_jobs([JobState.DISPATCHED, JobState.RUNNING]):
            handle = self._handle_for(job)
            if handle is None:
                continue
            report = self.backend.poll(handle)
            if report is not None and self._apply(job, report):
                updated += 1
            if report is not None and report.state.terminal:
                continue
            if self._check_worker(job):
                updated += 1
        return updated

    def _with_retries(self, action: Callable[[], T]) -> T:
        for attempt in range(self.config.max_attempts):
            try:
                return action()
            except DispatchError:
                if attempt + 1 >= self.config.max_attempts:
                    raise
                self.sleep(self.backoff_seconds(attempt))
        raise AssertionError("unreachable")

    def _cancel_handle(self, handle: DispatchHandle) -> None:
        try:
            self._with_retries(lambda: self.backend.cancel(handle))
        except AlreadyTerminalError:
            report = self.backend.poll(handle)
            job = self.store.get_job(handle.job_id)
            if report is not None and report.state.terminal and job is not None:
                self._apply(job, report)

    def cancel(self, job_id: str) -> CrackJob:
        job = self.get(job_id)
        if job.state.terminal:
            log_with_fields(self.logger, logging.INFO, "job_cancel_noop", job_id=job_id, state=job.state.value)
            return job

        handle = self._handle_for(job)
        if handle is not None:
            self._cancel_handle(handle)

        if self.store.transition_job(job_id, JobState.CANCELLED, reason=CANCELLED_BY_CALLER):
            self.store.add_event(job_id, "cancelled", {}, worker_id=job.worker_id)
            log_with_fields(self.logger, logging.INFO, "job_cancelled", job_id=job_id)
        self._forget(job_id)
        if handle is not None:
            self._release(handle)
        return self.get(job_id)
