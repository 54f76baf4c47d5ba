from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections.abc import Callable
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .app_logging import get_logger, log_with_fields
from .backend import cancel_via_channel, job_descriptor, poll_channel, release_via_channel
from .channel import FilesystemJobChannel, JobChannel
from .config import ManagedCloudClusterConfig
from .errors import ChannelError, DispatchError
from .models import ClusterWorker, CrackJob, DispatchHandle, HealthState, JobReport
from .utils import utc_now_iso

AWS_ERRORS = (BotoCoreError, ClientError)

_HEALTH_STATUS = {
    "HEALTHY": HealthState.HEALTHY,
    "UNHEALTHY": HealthState.UNREACHABLE,
    "UNKNOWN": HealthState.UNKNOWN,
}

TAG_ATTRIBUTES = ("INSTANCE_TYPE", "GPU_CLASS")


def worker_id_from_instance(instance_id: str) -> str:
    # ECS registers tasks by ARN or bare task id; keep the trailing id.
    return instance_id.rsplit("/", 1)[-1].rsplit(":", 1)[-1]


class ManagedCloudBackend:
    """Workers are ECS tasks registered in AWS Cloud Map.

    Discovery asks Cloud Map for the service's instances. Dispatch drops the
    job descriptor on the shared network mount, then notifies the pool
    through SQS and, when configured, starts a Step Functions execution
    that scales capacity up. Workers report back through the same mount.
    """

    name = "managed-cloud"

    def __init__(
        self,
        config: ManagedCloudClusterConfig,
        *,
        wordlist_path: Callable[[str], str] | None = None,
        channel: JobChannel | None = None,
        discovery_client: Any = None,
        sqs_client: Any = None,
        sfn_client: Any = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.channel = channel or FilesystemJobChannel(config.root)
        self.wordlist_path = wordlist_path or (lambda checksum: checksum)
        self.logger = logger or get_logger("managed_cloud")
        self._clients: dict[str, Any] = {
            "servicediscovery": discovery_client,
            "sqs": sqs_client,
            "stepfunctions": sfn_client,
        }
        self._clients_lock = threading.Lock()
        self.clock = clock
        # (taken_at, health by worker id) from the last successful discovery
        self._snapshot: tuple[float, dict[str, HealthState]] | None = None

    def _client(self, service: str) -> Any:
        with self._clients_lock:
            client = self._clients.get(service)
            if client is None:
                timeout = self.config.discovery_timeout_seconds
                client = boto3.client(
                    service,
                    region_name=self.config.region,
                    config=Config(
                        connect_timeout=timeout,
                        read_timeout=timeout,
                        retries={"max_attempts": 2, "mode": "standard"},
                    ),
                )
                self._clients[service] = client
            return client

    def _to_worker(self, instance: dict[str, Any], seen_at: str) -> ClusterWorker:
        attributes = instance.get("Attributes") or {}
        host = attributes.get("AWS_INSTANCE_IPV4")
        port = attributes.get("AWS_INSTANCE_PORT")
        address = f"{host}:{port}" if host and port else host
        tags = tuple(str(attributes[key]) for key in TAG_ATTRIBUTES if attributes.get(key))
        return ClusterWorker(
            worker_id=worker_id_from_instance(str(instance["InstanceId"])),
            address=address,
            tags=tags,
            health=_HEALTH_STATUS.get(str(instance.get("HealthStatus", "UNKNOWN")).upper(), HealthState.UNKNOWN),
            last_seen=attributes.get("LAST_SEEN") or seen_at,
        )

    def discover_workers(self) -> list[ClusterWorker]:
        try:
            response = self._client("servicediscovery").discover_instances(
                NamespaceName=self.config.namespace,
                ServiceName=self.config.service,
                HealthStatus="ALL",
            )
        except AWS_ERRORS as exc:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "worker_discovery_failed",
                namespace=self.config.namespace,
                service=self.config.service,
                error=str(exc),
            )
            return []
        seen_at = utc_now_iso()
        workers: list[ClusterWorker] = []
        for instance in response.get("Instances") or []:
            try:
                workers.append(self._to_worker(instance, seen_at))
            except (KeyError, TypeError) as exc:
                log_with_fields(self.logger, logging.WARNING, "worker_instance_invalid", error=str(exc))
        self._snapshot = (self.clock(), {worker.worker_id: worker.health for worker in workers})
        return workers

    def health_of(self, worker_id: str) -> HealthState:
        """Health from the latest discovery snapshot.

        A dispatch round discovers once and then checks each candidate, so
        snapshots younger than ``discovery_cache_seconds`` are reused instead
        of calling Cloud Map again.
        """
        snapshot = self._snapshot
        if snapshot is None or self.clock() - snapshot[0] > self.config.discovery_cache_seconds:
            self.discover_workers()
            snapshot = self._snapshot
        if snapshot is None:
            return HealthState.UNKNOWN
        return snapshot[1].get(worker_id, HealthState.UNKNOWN)

    def _notify(self, job: CrackJob, worker: ClusterWorker) -> str:
        message = {"instanceID": worker.worker_id, "jobID": job.job_id}
        token = f"jobs/{job.job_id}"
        if self.config.queue_url:
            response = self._client("sqs").send_message(
                QueueUrl=self.config.queue_url,
                MessageBody=json.dumps(message, sort_keys=True),
            )
            token = str(response.get("MessageId") or token)
        if self.config.state_machine_arn:
            response = self._client("stepfunctions").start_execution(
                stateMachineArn=self.config.state_machine_arn,
                name=f"{job.job_id}-{uuid.uuid4().hex[:8]}"[:80],
                input=json.dumps({**message, "instanceType": next(iter(worker.tags), None)}, sort_keys=True),
            )
            token = str(response.get("executionArn") or token)
        return token

    def dispatch(self, job: CrackJob, worker: ClusterWorker) -> DispatchHandle:
        descriptor = job_descriptor(job, worker, self.wordlist_path(job.wordlist_checksum))
        descriptor["address"] = worker.address
        descriptor["dispatched_at"] = utc_now_iso()
        try:
            self.channel.publish(job.job_id, "job", descriptor)
        except ChannelError as exc:
            raise DispatchError(f"failed to publish job {job.job_id}: {exc}") from exc
        try:
            token = self._notify(job, worker)
        except AWS_ERRORS as exc:
            # Withdraw the descriptor so another worker can take the retry.
            self.channel.discard(job.job_id)
            raise DispatchError(f"failed to notify pool for job {job.job_id}: {exc}") from exc
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_enqueued",
            job_id=job.job_id,
            worker=worker.worker_id,
            token=token,
        )
        return DispatchHandle(job.job_id, worker.worker_id, self.name, token)

    def poll(self, handle: DispatchHandle) -> JobReport | None:
        return poll_channel(self.channel, handle, self.logger)

    def cancel(self, handle: DispatchHandle) -> None:
        cancel_via_channel(self.channel, handle, self.logger)

    def release(self, handle: DispatchHandle) -> None:
        release_via_channel(self.channel, handle, self.logger)
