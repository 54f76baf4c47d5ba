from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

import yaml

from .errors import ConfigError
from .models import DuplicatePolicy

CLUSTER_TYPE_ENV = "CRACKPOOL_CLUSTER_TYPE"
CLUSTER_TYPES = ("debug", "filesystem", "managed-cloud")


@dataclass(slots=True)
class PathsConfig:
    db: Path
    log: Path
    blobs: Path


@dataclass(slots=True)
class StoreConfig:
    duplicate_policy: DuplicatePolicy = DuplicatePolicy.REJECT
    chunk_size: int = 1024 * 1024
    read_retries: int = 3


@dataclass(slots=True)
class DispatchConfig:
    max_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    poll_interval_seconds: int = 10
    worker_lost_seconds: float = 600.0


@dataclass(slots=True)
class DebugClusterConfig:
    type: str = "debug"
    worker_id: str = "debug-0"


@dataclass(slots=True)
class FilesystemClusterConfig:
    root: Path
    type: str = "filesystem"
    worker_timeout_seconds: int = 60
    worker_expiry_seconds: int = 600


@dataclass(slots=True)
class ManagedCloudClusterConfig:
    root: Path
    namespace: str
    service: str
    type: str = "managed-cloud"
    queue_url: str | None = None
    state_machine_arn: str | None = None
    region: str | None = None
    discovery_timeout_seconds: int = 10
    discovery_cache_seconds: float = 5.0


ClusterConfig = Union[DebugClusterConfig, FilesystemClusterConfig, ManagedCloudClusterConfig]


@dataclass(slots=True)
class AppConfig:
    paths: PathsConfig
    store: StoreConfig
    dispatch: DispatchConfig
    cluster: ClusterConfig = field(default_factory=DebugClusterConfig)


def _require(mapping: dict, key: str, section: str) -> object:
    if key not in mapping:
        raise ConfigError(f"Missing `{section}.{key}` in config")
    return mapping[key]


def _mapping(raw: dict, key: str, section: str) -> dict:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"`{section}{key}` must be a mapping")
    return value


def _resolve_path(value: object, base: Path) -> Path:
    output = Path(str(value)).expanduser()
    if not output.is_absolute():
        output = base / output
    return output


def load_cluster_config(raw: dict, base: Path, environ: dict[str, str] | None = None) -> ClusterConfig:
    environ = os.environ if environ is None else environ
    cluster_type = str(environ.get(CLUSTER_TYPE_ENV) or raw.get("type", "debug")).lower()
    if cluster_type not in CLUSTER_TYPES:
        raise ConfigError(f"`cluster.type` must be one of {', '.join(CLUSTER_TYPES)}")

    section = _mapping(raw, cluster_type, "cluster.")
    if cluster_type == "debug":
        return DebugClusterConfig(worker_id=str(section.get("worker_id", "debug-0")))

    if cluster_type == "filesystem":
        cluster = FilesystemClusterConfig(
            root=_resolve_path(_require(section, "root", "cluster.filesystem"), base),
            worker_timeout_seconds=int(section.get("worker_timeout_seconds", 60)),
            worker_expiry_seconds=int(section.get("worker_expiry_seconds", 600)),
        )
        if cluster.worker_timeout_seconds < 1:
            raise ConfigError("`cluster.filesystem.worker_timeout_seconds` must be >= 1")
        if cluster.worker_expiry_seconds < cluster.worker_timeout_seconds:
            raise ConfigError(
                "`cluster.filesystem.worker_expiry_seconds` must be >= worker_timeout_seconds"
            )
        return cluster

    queue_url = section.get("queue_url")
    state_machine_arn = section.get("state_machine_arn")
    region = section.get("region")
    return ManagedCloudClusterConfig(
        root=_resolve_path(_require(section, "root", "cluster.managed-cloud"), base),
        namespace=str(_require(section, "namespace", "cluster.managed-cloud")),
        service=str(_require(section, "service", "cluster.managed-cloud")),
        queue_url=str(queue_url) if queue_url else None,
        state_machine_arn=str(state_machine_arn) if state_machine_arn else None,
        region=str(region) if region else None,
        discovery_timeout_seconds=int(section.get("discovery_timeout_seconds", 10)),
        discovery_cache_seconds=float(section.get("discovery_cache_seconds", 5.0)),
    )


def load_config(path: str | Path, environ: dict[str, str] | None = None) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")

    paths_raw = _require(raw, "paths", "root")
    if not isinstance(paths_raw, dict):
        raise ConfigError("`paths` must be a mapping")
    store_raw = _mapping(raw, "store", "")
    dispatch_raw = _mapping(raw, "dispatch", "")
    cluster_raw = _mapping(raw, "cluster", "")

    base = config_path.parent
    paths = PathsConfig(
        db=_resolve_path(_require(paths_raw, "db", "paths"), base),
        log=_resolve_path(_require(paths_raw, "log", "paths"), base),
        blobs=_resolve_path(_require(paths_raw, "blobs", "paths"), base),
    )

    try:
        duplicate_policy = DuplicatePolicy(str(store_raw.get("duplicate_policy", "reject")).lower())
    except ValueError as exc:
        raise ConfigError("`store.duplicate_policy` must be either `reject` or `return_existing`") from exc
    store = StoreConfig(
        duplicate_policy=duplicate_policy,
        chunk_size=int(store_raw.get("chunk_size", 1024 * 1024)),
        read_retries=int(store_raw.get("read_retries", 3)),
    )
    if store.chunk_size < 1:
        raise ConfigError("`store.chunk_size` must be >= 1")
    if store.read_retries < 1:
        raise ConfigError("`store.read_retries` must be >= 1")

    dispatch = DispatchConfig(
        max_attempts=int(dispatch_raw.get("max_attempts", 5)),
        backoff_base_seconds=float(dispatch_raw.get("backoff_base_seconds", 1.0)),
        backoff_max_seconds=float(dispatch_raw.get("backoff_max_seconds", 30.0)),
        poll_interval_seconds=int(dispatch_raw.get("poll_interval_seconds", 10)),
        worker_lost_seconds=float(dispatch_raw.get("worker_lost_seconds", 600.0)),
    )
    if dispatch.max_attempts < 1:
        raise ConfigError("`dispatch.max_attempts` must be >= 1")
    if dispatch.backoff_base_seconds < 0 or dispatch.backoff_max_seconds < 0:
        raise ConfigError("`dispatch` backoff values must be >= 0")
    if dispatch.poll_interval_seconds < 1:
        raise ConfigError("`dispatch.poll_interval_seconds` must be >= 1")
    if dispatch.worker_lost_seconds < 0:
        raise ConfigError("`dispatch.worker_lost_seconds` must be >= 0")

    cluster = load_cluster_config(cluster_raw, base, environ)
    return AppConfig(paths=paths, store=store, dispatch=dispatch, cluster=cluster)


def ensure_local_paths(config: AppConfig) -> None:
    config.paths.db.parent.mkdir(parents=True, exist_ok=True)
    config.paths.log.parent.mkdir(parents=True, exist_ok=True)
    config.paths.blobs.mkdir(parents=True, exist_ok=True)
    if isinstance(config.cluster, (FilesystemClusterConfig, ManagedCloudClusterConfig)):
        config.cluster.root.mkdir(parents=True, exist_ok=True)
