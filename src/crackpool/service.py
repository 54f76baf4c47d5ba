from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from .app_logging import get_logger, log_with_fields
from .backend import ClusterBackend
from .dispatcher import Dispatcher
from .errors import PermissionDenied
from .models import ClusterWorker, CrackJob, JobState, WordlistRecord
from .permissions import (
    ROOT_PERMISSION,
    PermissionSet,
    normalize_permissions,
    permissions_for_profile,
    require,
)
from .wordlists import Content, WordlistStore


@dataclass(frozen=True, slots=True)
class Principal:
    name: str
    permissions: frozenset[str]

    @classmethod
    def from_profile(cls, name: str, profile: str) -> Principal:
        return cls(name=name, permissions=permissions_for_profile(profile))

    @classmethod
    def from_grants(cls, name: str, grants: PermissionSet) -> Principal:
        return cls(name=name, permissions=normalize_permissions(grants))


ROOT_PRINCIPAL = Principal(name="root", permissions=frozenset({ROOT_PERMISSION}))


class CrackService:
    """Permission-checked entry points for API handlers and the CLI."""

    def __init__(
        self,
        wordlists: WordlistStore,
        dispatcher: Dispatcher,
        backend: ClusterBackend,
        logger: logging.Logger | None = None,
    ) -> None:
        self.wordlists = wordlists
        self.dispatcher = dispatcher
        self.backend = backend
        self.logger = logger or get_logger("service")

    def _authorize(self, principal: Principal, required: str) -> None:
        try:
            require(principal.permissions, required)
        except PermissionDenied:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "permission_denied",
                principal=principal.name,
                required=required,
            )
            raise

    def upload_wordlist(self, principal: Principal, content: Content, filename: str | None = None) -> str:
        self._authorize(principal, "wordlists:add")
        return self.wordlists.begin_upload(content, filename).record.checksum

    def get_wordlist(self, principal: Principal, identifier: str) -> WordlistRecord:
        self._authorize(principal, "wordlists:get")
        return self.wordlists.get(identifier)

    def list_wordlists(self, principal: Principal) -> list[WordlistRecord]:
        self._authorize(principal, "wordlists:list")
        return self.wordlists.list()

    def remove_wordlist(self, principal: Principal, identifier: str) -> WordlistRecord:
        self._authorize(principal, "wordlists:remove")
        return self.wordlists.remove(identifier)

    def list_workers(self, principal: Principal) -> list[ClusterWorker]:
        self._authorize(principal, "instances:list")
        return self.backend.discover_workers()

    def cluster_status(self, principal: Principal) -> dict[str, Any]:
        self._authorize(principal, "instances:list")
        return self.dispatcher.cluster_status()

    def submit_job(
        self,
        principal: Principal,
        hashes: Iterable[str],
        wordlist: str,
        *,
        job_id: str | None = None,
        hash_type: int = 0,
        worker_hint: str | None = None,
    ) -> CrackJob:
        self._authorize(principal, "instances:jobs:add")
        return self.dispatcher.submit(
            hashes,
            wordlist,
            job_id=job_id,
            hash_type=hash_type,
            worker_hint=worker_hint,
        )

    def get_job(self, principal: Principal, job_id: str) -> CrackJob:
        self._authorize(principal, "instances:jobs:get")
        return self.dispatcher.get(job_id)

    def list_jobs(self, principal: Principal, state: JobState | None = None) -> list[CrackJob]:
        self._authorize(principal, "instances:jobs:get")
        return self.dispatcher.list(state)

    def cancel_job(self, principal: Principal, job_id: str) -> CrackJob:
        self._authorize(principal, "instances:jobs:remove")
        return self.dispatcher.cancel(job_id)

    def report_job_status(
        self,
        principal: Principal,
        job_id: str,
        state: JobState | str,
        result: dict[str, str] | None = None,
        reason: str | None = None,
    ) -> CrackJob:
        self._authorize(principal, "instances:jobs:add")
        return self.dispatcher.report(job_id, state, result=result, reason=reason)
