from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Protocol

from .app_logging import log_with_fields
from .channel import JobChannel
from .config import (
    ClusterConfig,
    DebugClusterConfig,
    FilesystemClusterConfig,
    ManagedCloudClusterConfig,
)
from .errors import AlreadyTerminalError, ChannelError, DispatchError
from .models import ClusterWorker, CrackJob, DispatchHandle, HealthState, JobReport, JobState
from .utils import utc_now_iso


class ClusterBackend(Protocol):
    name: str

    def discover_workers(self) -> list[ClusterWorker]: ...

    def health_of(self, worker_id: str) -> HealthState: ...

    def dispatch(self, job: CrackJob, worker: ClusterWorker) -> DispatchHandle: ...

    def poll(self, handle: DispatchHandle) -> JobReport | None: ...

    def cancel(self, handle: DispatchHandle) -> None: ...

    def release(self, handle: DispatchHandle) -> None: ...


def job_descriptor(job: CrackJob, worker: ClusterWorker, wordlist: str) -> dict[str, Any]:
    return {
        "job_id": job.job_id,
        "worker_id": worker.worker_id,
        "hash_type": job.hash_type,
        "hashes": list(job.hashes),
        "wordlist_checksum": job.wordlist_checksum,
        "wordlist": wordlist,
    }


def report_from_channel(channel: JobChannel, job_id: str) -> JobReport | None:
    result = channel.read(job_id, "result")
    if result is not None:
        try:
            state = JobState(str(result.get("state", "failed")))
        except ValueError:
            state = JobState.FAILED
        if not state.terminal:
            state = JobState.FAILED
        cracked = result.get("cracked")
        return JobReport(
            state=state,
            result=dict(cracked) if isinstance(cracked, dict) else {},
            reason=result.get("reason"),
            details=result,
        )
    status = channel.read(job_id, "status")
    if status is not None and status.get("state") == JobState.RUNNING.value:
        return JobReport(state=JobState.RUNNING, details=status)
    return None


def poll_channel(channel: JobChannel, handle: DispatchHandle, logger: logging.Logger) -> JobReport | None:
    try:
        return report_from_channel(channel, handle.job_id)
    except ChannelError as exc:
        log_with_fields(logger, logging.WARNING, "job_poll_failed", job_id=handle.job_id, error=str(exc))
        return None


def cancel_via_channel(channel: JobChannel, handle: DispatchHandle, logger: logging.Logger) -> None:
    try:
        result = channel.read(handle.job_id, "result")
        if result is not None:
            raise AlreadyTerminalError(handle.job_id, str(result.get("state", "finished")))
        channel.publish(handle.job_id, "cancel", {"requested_at": utc_now_iso()}, overwrite=True)
    except ChannelError as exc:
        raise DispatchError(f"failed to cancel job {handle.job_id}: {exc}") from exc
    log_with_fields(logger, logging.INFO, "job_cancel_requested", job_id=handle.job_id)


def release_via_channel(channel: JobChannel, handle: DispatchHandle, logger: logging.Logger) -> None:
    """Remove the messages of a job whose terminal state is recorded.

    A cancelled job whose descriptor a worker already claimed is left for
    that worker, which drops the directory once it sees the cancel marker.
    """
    try:
        unclaimed = channel.take(handle.job_id, "job") is not None
        if (
            not unclaimed
            and channel.read(handle.job_id, "result") is None
            and channel.read(handle.job_id, "cancel") is not None
        ):
            log_with_fields(logger, logging.INFO, "job_release_deferred", job_id=handle.job_id)
            return
        channel.discard(handle.job_id)
    except (ChannelError, OSError) as exc:
        log_with_fields(logger, logging.WARNING, "job_release_failed", job_id=handle.job_id, error=str(exc))
        return
    log_with_fields(logger, logging.INFO, "job_released", job_id=handle.job_id)


def build_backend(
    config: ClusterConfig,
    *,
    wordlist_path: Callable[[str], str] | None = None,
    logger: logging.Logger | None = None,
    **overrides: Any,
) -> ClusterBackend:
    """Build the backend variant named by ``config``.

    ``wordlist_path`` maps a wordlist checksum to the path workers should
    read it from. ``overrides`` are forwarded to the variant's constructor
    (runner callables, injected boto3 clients, channels).
    """
    if isinstance(config, DebugClusterConfig):
        from .debug_backend import DebugBackend

        return DebugBackend(config, logger=logger, **overrides)
    if isinstance(config, FilesystemClusterConfig):
        from .fs_backend import FilesystemBackend

        return FilesystemBackend(config, wordlist_path=wordlist_path, logger=logger, **overrides)
    if isinstance(config, ManagedCloudClusterConfig):
        from .cloud_backend import ManagedCloudBackend

        return ManagedCloudBackend(config, wordlist_path=wordlist_path, logger=logger, **overrides)
    raise TypeError(f"unsupported cluster config: {type(config).__name__}")
