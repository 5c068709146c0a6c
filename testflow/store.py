"""Best-effort JSON persistence for the pipeline's durable stores.

Writes take an exclusive advisory lock on a sidecar ``<name>.lock`` file and
replace the target atomically, so a concurrent reader or a second pipeline
invocation never sees a half-written file. Readers treat a corrupt file as
empty and say so on stderr.

Write failures are reported and swallowed: the in-memory state stays
authoritative for the current process.
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Iterator


@contextlib.contextmanager
def locked(path: Path) -> Iterator[None]:
    """Hold an exclusive advisory lock associated with *path*."""
    lock_path = path.with_name(path.name + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_path, "a") as lock_file:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


def read_json(path: Path, label: str) -> Any | None:
    """Read a JSON store.

    Args:
        path: Store file.
        label: Subsystem name used in diagnostics (e.g. "Result cache").

    Returns:
        Parsed JSON, or None when the file is missing, unreadable or corrupt.
    """
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text())
    except OSError as e:
        print(f"{label}: failed to read {path}: {e}", file=sys.stderr)
        return None
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        print(
            f"{label}: {path} is corrupt ({e}), starting from an empty store",
            file=sys.stderr,
        )
        return None


def write_json(path: Path, data: Any, label: str) -> bool:
    """Atomically write a JSON store under the store lock.

    Args:
        path: Store file.
        data: JSON-serializable payload.
        label: Subsystem name used in diagnostics.

    Returns:
        True if the file was written, False if the write failed.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with locked(path):
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{path.name}.", suffix=".tmp", dir=path.parent
            )
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(data, f, indent=2)
                    f.write("\n")
                os.replace(tmp_name, path)
            except BaseException:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_name)
                raise
    except (OSError, TypeError, ValueError) as e:
        print(f"{label}: failed to persist {path}: {e}", file=sys.stderr)
        return False
    return True
