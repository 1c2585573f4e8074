from __future__ import annotations

import fcntl
import os
from pathlib import Path
from typing import IO


class LockUnavailableError(RuntimeError):
    """Raised when a non-blocking lock cannot be acquired."""


def acquire_lockfile(path: Path, *, blocking: bool = True) -> IO[bytes]:
    """Open + lock a lockfile. Keep the returned handle open to hold the lock."""
    path.parent.mkdir(parents=True, exist_ok=True)
    # Non-append mode so callers can write the holder pid into it.
    f = path.open("r+b") if path.exists() else path.open("w+b")
    flags = fcntl.LOCK_EX
    if not blocking:
        flags |= fcntl.LOCK_NB
    try:
        fcntl.flock(f.fileno(), flags)
    except OSError as e:
        f.close()
        if not blocking:
            raise LockUnavailableError(str(e)) from e
        raise
    return f


def release_lockfile(f: IO[bytes]) -> None:
    """Release a lockfile acquired via acquire_lockfile (best-effort)."""
    try:
        fcntl.flock(f.fileno(), fcntl.LOCK_UN)
    except OSError:
        pass
    try:
        f.close()
    except OSError:
        pass


def write_lock_owner(f: IO[bytes]) -> None:
    f.seek(0)
    f.truncate()
    f.write(f"{os.getpid()}\n".encode("utf-8"))
    f.flush()
