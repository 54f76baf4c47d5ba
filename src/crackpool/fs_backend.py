from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .app_logging import get_logger, log_with_fields
from .backend import cancel_via_channel, job_descriptor, poll_channel, release_via_channel
from .channel import FilesystemJobChannel, JobChannel, atomic_write_json, validate_id
from .config import FilesystemClusterConfig
from .errors import ChannelError, DispatchError
from .models import ClusterWorker, CrackJob, DispatchHandle, HealthState, JobReport
from .utils import age_seconds, utc_now_iso

WORKERS_DIRNAME = "workers"


class WorkerRegistry:
    """Worker descriptors under ``<root>/workers/<worker_id>.json``."""

    def __init__(self, root: Path) -> None:
        self.workers_dir = root / WORKERS_DIRNAME

    def path_for(self, worker_id: str) -> Path:
        return self.workers_dir / f"{validate_id(worker_id, 'worker id')}.json"

    def register(
        self,
        worker_id: str,
        address: str | None = None,
        tags: tuple[str, ...] = (),
        last_seen: str | None = None,
    ) -> None:
        atomic_write_json(
            self.path_for(worker_id),
            {
                "worker_id": worker_id,
                "address": address,
                "tags": list(tags),
                "last_seen": last_seen or utc_now_iso(),
            },
        )

    def unregister(self, worker_id: str) -> None:
        self.path_for(worker_id).unlink(missing_ok=True)

    def read(self, worker_id: str) -> dict[str, Any] | None:
        try:
            return json.loads(self.path_for(worker_id).read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None

    def descriptors(self) -> list[Path]:
        if not self.workers_dir.is_dir():
            return []
        return sorted(path for path in self.workers_dir.glob("*.json") if not path.name.startswith("."))


class FilesystemBackend:
    name = "filesystem"

    def __init__(
        self,
        config: FilesystemClusterConfig,
        *,
        wordlist_path: Callable[[str], str] | None = None,
        channel: JobChannel | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.registry = WorkerRegistry(config.root)
        self.channel = channel or FilesystemJobChannel(config.root)
        self.wordlist_path = wordlist_path or (lambda checksum: checksum)
        self.logger = logger or get_logger("filesystem")

    def _health_for(self, last_seen: str | None) -> HealthState:
        age = age_seconds(last_seen)
        if age is None:
            return HealthState.UNKNOWN
        if age <= self.config.worker_timeout_seconds:
            return HealthState.HEALTHY
        return HealthState.UNREACHABLE

    def _to_worker(self, raw: dict[str, Any]) -> ClusterWorker:
        return ClusterWorker(
            worker_id=str(raw["worker_id"]),
            address=raw.get("address"),
            tags=tuple(str(tag) for tag in raw.get("tags") or ()),
            health=self._health_for(raw.get("last_seen")),
            last_seen=raw.get("last_seen"),
        )

    def discover_workers(self) -> list[ClusterWorker]:
        workers: list[ClusterWorker] = []
        try:
            descriptors = self.registry.descriptors()
        except OSError as exc:
            log_with_fields(self.logger, logging.WARNING, "worker_discovery_failed", error=str(exc))
            return []
        for path in descriptors:
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
                worker = self._to_worker(raw)
            except (OSError, ValueError, KeyError, TypeError) as exc:
                log_with_fields(
                    self.logger,
                    logging.WARNING,
                    "worker_descriptor_invalid",
                    path=str(path),
                    error=str(exc),
                )
                continue
            age = age_seconds(worker.last_seen)
            if age is not None and age > self.config.worker_expiry_seconds:
                continue
            workers.append(worker)
        return workers

    def health_of(self, worker_id: str) -> HealthState:
        try:
            raw = self.registry.read(worker_id)
        except (OSError, ValueError) as exc:
            log_with_fields(self.logger, logging.WARNING, "worker_health_failed", worker=worker_id, error=str(exc))
            return HealthState.UNREACHABLE
        if raw is None:
            return HealthState.UNKNOWN
        try:
            return self._health_for(raw.get("last_seen"))
        except ValueError:
            return HealthState.UNKNOWN

    def dispatch(self, job: CrackJob, worker: ClusterWorker) -> DispatchHandle:
        descriptor = job_descriptor(job, worker, self.wordlist_path(job.wordlist_checksum))
        descriptor["dispatched_at"] = utc_now_iso()
        try:
            self.channel.publish(job.job_id, "job", descriptor)
        except ChannelError as exc:
            raise DispatchError(f"failed to publish job {job.job_id} for {worker.worker_id}: {exc}") from exc
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_descriptor_published",
            job_id=job.job_id,
            worker=worker.worker_id,
        )
        return DispatchHandle(job.job_id, worker.worker_id, self.name, f"jobs/{job.job_id}")

    def poll(self, handle: DispatchHandle) -> JobReport | None:
        return poll_channel(self.channel, handle, self.logger)

    def cancel(self, handle: DispatchHandle) -> None:
        cancel_via_channel(self.channel, handle, self.logger)

    def release(self, handle: DispatchHandle) -> None:
        release_via_channel(self.channel, handle, self.logger)
