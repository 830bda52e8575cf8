from __future__ import annotations

import fcntl
import os
from pathlib import Path


class FileLock:
    """Exclusive ``flock`` held on an open descriptor.

    The lock follows the file across renames and dies with the process
    that holds it, which is what lets a sweep tell abandoned claims from
    live ones.
    """

    def __init__(self, path: Path, fd: int):
        self.path = path
        self.fd = fd

    @classmethod
    def try_acquire(cls, path: str | Path) -> FileLock | None:
        path = Path(path)
        try:
            fd = os.open(path, os.O_RDONLY)
        except (FileNotFoundError, IsADirectoryError):
            return None
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return None
        except OSError:
            os.close(fd)
            raise

        # another worker may have moved the file away between open and flock
        try:
            linked = os.path.samestat(os.fstat(fd), os.stat(path))
        except FileNotFoundError:
            linked = False
        if not linked:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
            return None
        return cls(path, fd)

    @property
    def held(self) -> bool:
        return self.fd >= 0

    def moved_to(self, path: Path) -> None:
        self.path = path

    def release(self) -> bool:
        if self.fd < 0:
            return False
        fd, self.fd = self.fd, -1
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        return True

    def __del__(self):
        if getattr(self, "fd", -1) >= 0:
            self.release()

    def __repr__(self) -> str:
        state = "held" if self.held else "released"
        return f"FileLock({str(self.path)!r}, {state})"
