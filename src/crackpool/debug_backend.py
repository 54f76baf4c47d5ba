from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable

from .app_logging import get_logger, log_with_fields
from .config import DebugClusterConfig
from .errors import AlreadyTerminalError, DispatchError
from .models import ClusterWorker, CrackJob, DispatchHandle, HealthState, JobReport, JobState
from .utils import utc_now_iso

Runner = Callable[[CrackJob], dict[str, str]]


def null_runner(job: CrackJob) -> dict[str, str]:
    return {}


class DebugBackend:
    name = "debug"

    def __init__(
        self,
        config: DebugClusterConfig,
        *,
        runner: Runner | None = None,
        run_on_dispatch: bool = True,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.runner = runner or null_runner
        self.run_on_dispatch = run_on_dispatch
        self.logger = logger or get_logger("debug")
        self.worker = ClusterWorker(
            worker_id=config.worker_id,
            address="in-process",
            tags=("debug",),
            health=HealthState.HEALTHY,
            last_seen=utc_now_iso(),
        )
        self.pending: dict[str, CrackJob] = {}
        self.outcomes: dict[str, JobReport] = {}
        self.lock = threading.Lock()

    def discover_workers(self) -> list[ClusterWorker]:
        self.worker.last_seen = utc_now_iso()
        return [self.worker]

    def health_of(self, worker_id: str) -> HealthState:
        if worker_id == self.worker.worker_id:
            return HealthState.HEALTHY
        return HealthState.UNKNOWN

    def dispatch(self, job: CrackJob, worker: ClusterWorker) -> DispatchHandle:
        if worker.worker_id != self.worker.worker_id:
            raise DispatchError(f"unknown debug worker: {worker.worker_id}")
        handle = DispatchHandle(job.job_id, worker.worker_id, self.name, uuid.uuid4().hex)
        with self.lock:
            self.pending[handle.token] = job
        log_with_fields(self.logger, logging.INFO, "debug_job_queued", job_id=job.job_id, token=handle.token)
        if self.run_on_dispatch:
            self._run(handle.token)
        return handle

    def _run(self, token: str) -> None:
        with self.lock:
            job = self.pending.pop(token, None)
        if job is None:
            return
        try:
            cracked = self.runner(job)
            outcome = JobReport(state=JobState.COMPLETED, result=dict(cracked))
        except Exception as exc:
            outcome = JobReport(state=JobState.FAILED, result={}, reason=str(exc))
        with self.lock:
            self.outcomes.setdefault(token, outcome)
        log_with_fields(
            self.logger,
            logging.INFO,
            "debug_job_finished",
            job_id=job.job_id,
            state=outcome.state.value,
        )

    def poll(self, handle: DispatchHandle) -> JobReport | None:
        self._run(handle.token)
        with self.lock:
            return self.outcomes.get(handle.token)

    def cancel(self, handle: DispatchHandle) -> None:
        with self.lock:
            outcome = self.outcomes.get(handle.token)
            if outcome is not None:
                raise AlreadyTerminalError(handle.job_id, outcome.state.value)
            self.pending.pop(handle.token, None)
            self.outcomes[handle.token] = JobReport(state=JobState.CANCELLED, result={})
        log_with_fields(self.logger, logging.INFO, "debug_job_cancelled", job_id=handle.job_id)

    def release(self, handle: DispatchHandle) -> None:
        with self.lock:
            self.pending.pop(handle.token, None)
            self.outcomes.pop(handle.token, None)
