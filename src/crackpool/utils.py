from __future__ import annotations

import hashlib
import re
from datetime import UTC, datetime
from pathlib import Path, PurePath

CHECKSUM_REGEX = re.compile(r"^[a-f0-9]{64}$")
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._ -]+")


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def age_seconds(value: str | None, now: datetime | None = None) -> float | None:
    parsed = parse_iso(value)
    if parsed is None:
        return None
    return ((now or datetime.now(UTC)) - parsed).total_seconds()


def sha256_file(path: Path) -> str:
    hasher = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def is_checksum(value: str) -> bool:
    return bool(CHECKSUM_REGEX.match(value))


def storage_key_for(checksum: str) -> str:
    checksum = checksum.lower()
    if not is_checksum(checksum):
        raise ValueError(f"not a sha256 checksum: {checksum!r}")
    return f"{checksum[:2]}/{checksum}"


def sanitize_filename(filename: str | None, fallback: str) -> str:
    if not filename:
        return fallback
    # Windows-style separators are not separators on POSIX, so strip both.
    name = PurePath(filename.replace("\\", "/")).name
    name = _UNSAFE_NAME_CHARS.sub("_", name).strip(" .")
    return name[:255] or fallback
