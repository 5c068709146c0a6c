"""File fingerprints for cache validation.

A fingerprint combines a file's content with its modification time and
hashes the result. Two fingerprints match only when both the bytes and the
mtime are unchanged, so touching a file is enough to invalidate results
that depend on it.

Fingerprinting never raises: a missing or unreadable file has no
fingerprint (``None``), which callers treat as a cache miss.
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path


def compute_fingerprint(path: str | Path) -> str | None:
    """Compute the content fingerprint of a single file.

    Args:
        path: File to fingerprint.

    Returns:
        Hex md5 digest of ``content | mtime_ms``, or *None* if the file is
        absent, not a regular file, or cannot be read.
    """
    try:
        stat_result = os.stat(path)
        with open(path, "rb") as f:
            content = f.read()
    except OSError:
        return None

    mtime_ms = stat_result.st_mtime_ns // 1_000_000
    digest = hashlib.md5()
    digest.update(content)
    digest.update(f"|{mtime_ms}".encode())
    return digest.hexdigest()

