from __future__ import annotations

import os
from pathlib import Path
from typing import IO, Optional, Union

try:
    import fcntl
except ImportError:  # Windows has no flock; runs proceed unlocked there.
    fcntl = None


class RunLock:
    """
    Non-blocking exclusive lock on a file, held for one collection run.

    ``acquire()`` returns False when another invocation already holds it.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self._path = Path(path)
        self._handle: Optional[IO[str]] = None

    @property
    def path(self) -> Path:
        return self._path

    def acquire(self) -> bool:
        if fcntl is None:
            return True

        self._path.parent.mkdir(parents=True, exist_ok=True)
        handle = self._path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            return False
        except OSError:
            handle.close()
            raise

        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        return True

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> bool:
        return self.acquire()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
