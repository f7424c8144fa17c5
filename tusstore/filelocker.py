"""Exclusive upload locks kept as lock files on the local file system.

Each lock file stores the PID of the process holding it, so a lock left
behind by a process that no longer runs is taken over automatically.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from dataclasses import dataclass
from typing import Optional

from tusstore.model import FileLockedError

_FILE_PERM = 0o664


def _process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def _read_owner(path: str) -> Optional[int]:
    """Return the PID stored in a lock file, or None if it holds no valid PID."""
    with open(path, encoding="ascii", errors="replace") as fh:
        content = fh.read()
    try:
        return int(content.strip())
    except ValueError:
        return None


@dataclass(frozen=True)
class FileLocker:
    """Creates locks stored as ``<id>.lock`` files in a directory."""

    path: str

    def new_lock(self, upload_id: str) -> "FileUploadLock":
        """Return a lock for the given upload; it is not acquired yet."""
        return FileUploadLock(
            os.path.abspath(os.path.join(self.path, upload_id + ".lock"))
        )


@dataclass
class FileUploadLock:
    """A lock backed by a single lock file."""

    path: str

    def lock(self) -> None:
        """Acquire the lock or raise FileLockedError if a live process holds it."""
        directory, name = os.path.split(self.path)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=name, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="ascii") as fh:
                fh.write(f"{os.getpid()}\n")
            os.chmod(tmp_path, _FILE_PERM)
            for _ in range(2):
                try:
                    os.link(tmp_path, self.path)
                    return
                except FileExistsError:
                    pass
                try:
                    owner = _read_owner(self.path)
                except FileNotFoundError:
                    continue
                if owner is not None and _process_alive(owner):
                    raise FileLockedError()
                # The holder is gone or the file is garbage: take it over.
                with contextlib.suppress(FileNotFoundError):
                    os.remove(self.path)
            raise FileLockedError()
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.remove(tmp_path)

    def unlock(self) -> None:
        """Release the lock; a missing lock file is not an error."""
        try:
            owner = _read_owner(self.path)
        except FileNotFoundError:
            return
        if owner != os.getpid():
            raise RuntimeError("lock file is owned by another process")
        with contextlib.suppress(FileNotFoundError):
            os.remove(self.path)

    def __enter__(self) -> "FileUploadLock":
        self.lock()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unlock()