"""Message passing over the shared job subtree.

Each job gets one directory, ``<root>/jobs/<job_id>/``, holding one JSON
message per kind:

* ``job`` - the descriptor the dispatcher publishes for the worker
* ``status`` - the worker's latest heartbeat/status
* ``result`` - the worker's terminal report
* ``cancel`` - a cancellation request from the dispatcher

Messages are staged in a temporary file and renamed into place, so a reader
never observes a partial message. ``publish`` is write-once unless
``overwrite`` is set (heartbeats overwrite). ``take`` claims a message by
renaming it away before reading, so exactly one reader gets each message.
"""

from __future__ import annotations

import json
import os
import re
import threading
import uuid
from pathlib import Path
from typing import Any, Protocol

from .errors import ChannelError

KINDS = ("job", "status", "result", "cancel")
JOBS_DIRNAME = "jobs"
_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def validate_id(value: str, kind: str = "job id") -> str:
    if not _SAFE_ID.match(value):
        raise ValueError(f"invalid {kind}: {value!r}")
    return value


def atomic_write_json(path: Path, payload: dict[str, Any], *, overwrite: bool = True) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    staged = path.parent / f".{path.name}.{uuid.uuid4().hex}.tmp"
    try:
        with staged.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, sort_keys=True)
            handle.flush()
            os.fsync(handle.fileno())
        if overwrite:
            os.replace(staged, path)
        else:
            # link() fails if the target exists, unlike replace().
            try:
                os.link(staged, path)
            except FileExistsError as exc:
                raise ChannelError(f"message already published: {path}") from exc
    finally:
        staged.unlink(missing_ok=True)


class JobChannel(Protocol):
    def publish(self, job_id: str, kind: str, payload: dict[str, Any], *, overwrite: bool = False) -> None: ...

    def read(self, job_id: str, kind: str) -> dict[str, Any] | None: ...

    def take(self, job_id: str, kind: str) -> dict[str, Any] | None: ...

    def list_jobs(self) -> list[str]: ...

    def discard(self, job_id: str) -> None: ...


def _check_kind(kind: str) -> None:
    if kind not in KINDS:
        raise ChannelError(f"unknown message kind: {kind}")


class FilesystemJobChannel:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.jobs_dir = root / JOBS_DIRNAME

    def _message_path(self, job_id: str, kind: str) -> Path:
        _check_kind(kind)
        return self.jobs_dir / validate_id(job_id) / f"{kind}.json"

    def publish(self, job_id: str, kind: str, payload: dict[str, Any], *, overwrite: bool = False) -> None:
        path = self._message_path(job_id, kind)
        try:
            atomic_write_json(path, payload, overwrite=overwrite)
        except OSError as exc:
            raise ChannelError(f"failed to publish {kind} for {job_id}: {exc}") from exc

    def read(self, job_id: str, kind: str) -> dict[str, Any] | None:
        path = self._message_path(job_id, kind)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            raise ChannelError(f"failed to read {kind} for {job_id}: {exc}") from exc

    def take(self, job_id: str, kind: str) -> dict[str, Any] | None:
        path = self._message_path(job_id, kind)
        claimed = path.parent / f".{path.name}.{uuid.uuid4().hex}.taken"
        try:
            os.rename(path, claimed)
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise ChannelError(f"failed to claim {kind} for {job_id}: {exc}") from exc
        try:
            return json.loads(claimed.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ChannelError(f"failed to read claimed {kind} for {job_id}: {exc}") from exc
        finally:
            claimed.unlink(missing_ok=True)

    def list_jobs(self) -> list[str]:
        if not self.jobs_dir.is_dir():
            return []
        return sorted(
            path.name
            for path in self.jobs_dir.iterdir()
            if path.is_dir() and _SAFE_ID.match(path.name)
        )

    def discard(self, job_id: str) -> None:
        job_dir = self.jobs_dir / validate_id(job_id)
        if not job_dir.is_dir():
            return
        for path in job_dir.iterdir():
            path.unlink(missing_ok=True)
        job_dir.rmdir()


class MemoryJobChannel:
    def __init__(self) -> None:
        self.messages: dict[str, dict[str, dict[str, Any]]] = {}
        self.lock = threading.Lock()

    def publish(self, job_id: str, kind: str, payload: dict[str, Any], *, overwrite: bool = False) -> None:
        _check_kind(kind)
        validate_id(job_id)
        with self.lock:
            job = self.messages.setdefault(job_id, {})
            if kind in job and not overwrite:
                raise ChannelError(f"message already published: {job_id}/{kind}")
            job[kind] = json.loads(json.dumps(payload))

    def read(self, job_id: str, kind: str) -> dict[str, Any] | None:
        _check_kind(kind)
        with self.lock:
            message = self.messages.get(job_id, {}).get(kind)
            return json.loads(json.dumps(message)) if message is not None else None

    def take(self, job_id: str, kind: str) -> dict[str, Any] | None:
        _check_kind(kind)
        with self.lock:
            return self.messages.get(job_id, {}).pop(kind, None)

    def list_jobs(self) -> list[str]:
        with self.lock:
            return sorted(self.messages)

    def discard(self, job_id: str) -> None:
        with self.lock:
            self.messages.pop(job_id, None)
