from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from .app_logging import get_logger, log_with_fields
from .channel import FilesystemJobChannel, JobChannel
from .errors import ChannelError
from .fs_backend import WorkerRegistry
from .models import JobState
from .utils import utc_now_iso

# hashcat mode numbers for the digests hashlib can compute directly.
HASH_MODES = {
    0: "md5",
    100: "sha1",
    1400: "sha256",
    1700: "sha512",
}

Cracker = Callable[[dict[str, Any]], dict[str, str]]


def dictionary_attack(hashes: Iterable[str], hash_type: int, wordlist: Path) -> dict[str, str]:
    algorithm = HASH_MODES.get(hash_type)
    if algorithm is None:
        raise ValueError(f"unsupported hash type: {hash_type}")
    remaining = {value.strip().lower() for value in hashes if value.strip()}
    cracked: dict[str, str] = {}
    with wordlist.open("rb") as handle:
        for line in handle:
            if not remaining:
                break
            candidate = line.rstrip(b"\r\n")
            digest = hashlib.new(algorithm, candidate).hexdigest()
            if digest in remaining:
                remaining.discard(digest)
                cracked[digest] = candidate.decode("utf-8", errors="replace")
    return cracked


def descriptor_cracker(descriptor: dict[str, Any]) -> dict[str, str]:
    return dictionary_attack(descriptor["hashes"], int(descriptor.get("hash_type", 0)), Path(descriptor["wordlist"]))


class WorkerAgent:
    """Worker side of the shared-directory contract.

    Registers and heartbeats a descriptor under ``workers/``, claims job
    descriptors addressed to it, and writes status/result messages back.
    """

    def __init__(
        self,
        root: Path,
        worker_id: str,
        *,
        address: str | None = None,
        tags: tuple[str, ...] = (),
        cracker: Cracker = descriptor_cracker,
        channel: JobChannel | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.worker_id = worker_id
        self.address = address
        self.tags = tags
        self.cracker = cracker
        self.registry = WorkerRegistry(root)
        self.channel = channel or FilesystemJobChannel(root)
        self.logger = logger or get_logger("worker")

    def heartbeat(self) -> None:
        self.registry.register(self.worker_id, address=self.address, tags=self.tags)

    def stop(self) -> None:
        self.registry.unregister(self.worker_id)

    def pending_jobs(self) -> list[str]:
        pending: list[str] = []
        for job_id in self.channel.list_jobs():
            descriptor = self.channel.read(job_id, "job")
            if descriptor is None or descriptor.get("worker_id") != self.worker_id:
                continue
            pending.append(job_id)
        return pending

    def _finish(self, job_id: str, state: JobState, cracked: dict[str, str], reason: str | None = None) -> None:
        if self.channel.read(job_id, "cancel") is not None:
            self._drop(job_id, "job_cancelled")
            return
        if self.channel.read(job_id, "status") is None:
            # Released by the dispatcher after it recorded a terminal state.
            log_with_fields(self.logger, logging.WARNING, "job_released_before_finish", job_id=job_id)
            return
        try:
            self.channel.publish(
                job_id,
                "result",
                {
                    "state": state.value,
                    "cracked": cracked,
                    "reason": reason,
                    "worker_id": self.worker_id,
                    "finished_at": utc_now_iso(),
                },
            )
        except ChannelError as exc:
            log_with_fields(self.logger, logging.WARNING, "job_result_exists", job_id=job_id, error=str(exc))
            return
        log_with_fields(self.logger, logging.INFO, "job_finished", job_id=job_id, state=state.value)

    def _drop(self, job_id: str, event: str) -> None:
        try:
            self.channel.discard(job_id)
        except (ChannelError, OSError) as exc:
            log_with_fields(self.logger, logging.WARNING, "job_discard_failed", job_id=job_id, error=str(exc))
            return
        log_with_fields(self.logger, logging.INFO, event, job_id=job_id)

    def run_job(self, job_id: str) -> bool:
        descriptor = self.channel.take(job_id, "job")
        if descriptor is None:
            return False
        if self.channel.read(job_id, "cancel") is not None:
            self._drop(job_id, "job_cancelled")
            return True

        self.channel.publish(
            job_id,
            "status",
            {"state": JobState.RUNNING.value, "worker_id": self.worker_id, "updated_at": utc_now_iso()},
            overwrite=True,
        )
        try:
            cracked = self.cracker(descriptor)
        except Exception as exc:
            log_with_fields(self.logger, logging.ERROR, "job_crack_failed", job_id=job_id, error=str(exc))
            self._finish(job_id, JobState.FAILED, {}, reason=str(exc))
            return True

        self._finish(job_id, JobState.COMPLETED, cracked)
        return True

    def poll_once(self) -> int:
        self.heartbeat()
        return sum(1 for job_id in self.pending_jobs() if self.run_job(job_id))

    def run_forever(self, interval_seconds: float = 5.0) -> None:
        try:
            while True:
                self.poll_once()
                time.sleep(interval_seconds)
        finally:
            self.stop()
