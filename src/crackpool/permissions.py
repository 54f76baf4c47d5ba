from __future__ import annotations

from collections.abc import Iterable

from .errors import PermissionDenied

ROOT_PERMISSION = "root"

PERMISSIONS = (
    "*",
    "auth",
    ROOT_PERMISSION,
    "hashes:*",
    "hashes:get",
    "hashes:add",
    "hashes:remove",
    "instances:*",
    "instances:get",
    "instances:list",
    "instances:add",
    "instances:remove",
    "instances:jobs:*",
    "instances:jobs:get",
    "instances:jobs:add",
    "instances:jobs:remove",
    "wordlists:*",
    "wordlists:get",
    "wordlists:list",
    "wordlists:add",
    "wordlists:remove",
)

PERMISSION_PROFILES: dict[str, tuple[str, ...]] = {
    "admin": ("*",),
    "contributor": (
        "auth",
        "hashes:*",
        "instances:get",
        "instances:list",
        "instances:jobs:get",
        "instances:jobs:add",
        "wordlists:get",
        "wordlists:list",
    ),
    "viewer": ("auth", "hashes:get"),
}

DEFAULT_PERMISSION_PROFILE = "viewer"

PermissionSet = Iterable[str] | str | None


def normalize_permissions(permissions: PermissionSet) -> frozenset[str]:
    if permissions is None:
        return frozenset()
    if isinstance(permissions, str):
        return frozenset(permissions.split())
    return frozenset(permissions)


def allows(permissions: PermissionSet, required: str) -> bool:
    granted = normalize_permissions(permissions)
    if not granted:
        return False
    if required in granted or ROOT_PERMISSION in granted:
        return True
    if not required:
        return False

    # a:b:c -> a:b:*, a:*, *
    sections = required.split(":")
    while sections:
        sections.pop()
        if ":".join([*sections, "*"]) in granted:
            return True
    return False


def require(permissions: PermissionSet, required: str) -> None:
    if not allows(permissions, required):
        raise PermissionDenied(required)


def permissions_for_profile(profile: str) -> frozenset[str]:
    if profile not in PERMISSION_PROFILES:
        raise KeyError(f"unknown permission profile: {profile}")
    return frozenset(PERMISSION_PROFILES[profile])
