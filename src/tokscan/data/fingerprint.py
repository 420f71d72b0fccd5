"""File fingerprints for change detection."""

from __future__ import annotations

import hashlib
from pathlib import Path

from tokscan.config import FingerprintPolicy
from tokscan.errors import FileAccessError
from tokscan.models.records import FileFingerprint

_CHUNK_SIZE = 1 << 20


def stat_fingerprint(path: Path) -> FileFingerprint:
    """Size and modification time only."""
    try:
        stat = path.stat()
    except OSError as exc:
        raise FileAccessError(path, exc.strerror or type(exc).__name__) from exc
    return FileFingerprint(size=stat.st_size, mtime_ns=stat.st_mtime_ns)


def content_fingerprint(path: Path) -> FileFingerprint:
    """Size, modification time and a blake2b digest of the bytes."""
    base = stat_fingerprint(path)
    digest = hashlib.blake2b(digest_size=16)
    try:
        with open(path, "rb") as file:
            while chunk := file.read(_CHUNK_SIZE):
                digest.update(chunk)
    except OSError as exc:
        raise FileAccessError(path, exc.strerror or type(exc).__name__) from exc
    return base.model_copy(update={"digest": digest.hexdigest()})


def fingerprint(path: Path, policy: FingerprintPolicy = "stat") -> FileFingerprint:
    """Compute a fingerprint for ``path`` under the given policy."""
    match policy:
        case "content":
            return content_fingerprint(path)
        case _:
            return stat_fingerprint(path)
