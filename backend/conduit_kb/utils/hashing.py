"""Hashing utilities."""

from __future__ import annotations

import hashlib


def fingerprint(data: bytes, mtime_ns: int) -> str:
    """Fingerprint a document from its bytes and modification time."""
    h = hashlib.sha256(data)
    h.update(b"\0")
    h.update(str(mtime_ns).encode("ascii"))
    return h.hexdigest()
