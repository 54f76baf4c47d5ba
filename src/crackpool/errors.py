from __future__ import annotations


class CrackpoolError(Exception):
    pass


class ClientError(CrackpoolError):
    """Failures the caller can correct; the API layer maps these to 4xx."""


class PermissionDenied(ClientError):
    def __init__(self, required: str) -> None:
        super().__init__(f"missing permission: {required}")
        self.required = required


class DuplicateError(ClientError):
    def __init__(self, checksum: str) -> None:
        super().__init__(f"wordlist already stored: {checksum}")
        self.checksum = checksum


class NotFoundError(ClientError):
    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class AlreadyTerminalError(ClientError):
    def __init__(self, job_id: str, state: str) -> None:
        super().__init__(f"job {job_id} already {state}")
        self.job_id = job_id
        self.state = state


class InvalidTransitionError(ClientError):
    def __init__(self, job_id: str, current: str, requested: str) -> None:
        super().__init__(f"job {job_id} cannot move from {current} to {requested}")
        self.job_id = job_id
        self.current = current
        self.requested = requested


class NoCapacityError(CrackpoolError):
    def __init__(self, job_id: str, attempts: int) -> None:
        super().__init__(f"no capacity for job {job_id} after {attempts} attempts")
        self.job_id = job_id
        self.attempts = attempts


class DispatchError(CrackpoolError):
    pass


class ChannelError(CrackpoolError):
    pass


class StorageError(CrackpoolError, OSError):
    pass


class ConfigError(CrackpoolError, ValueError):
    pass
