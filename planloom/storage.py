"""File locking and atomic writes for plan documents."""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import IO, Optional, Union

from .models import LOCK_SUFFIX

if os.name == "nt":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger("planloom.storage")

_POLL_INTERVAL = 0.05


def _try_lock(handle: IO[str]) -> bool:
    if os.name == "nt":
        handle.seek(0)
        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError:
            # msvcrt reports contention as EACCES/EDEADLOCK
            return False
        return True

    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return False
    return True


def _unlock(handle: IO[str]) -> None:
    if os.name == "nt":
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class PlanLock:
    """Advisory, exclusive, cross-process lock for one plan document.

    The lock lives in a sibling ``<name>.lock`` file. ``timeout=None`` waits
    indefinitely; otherwise :class:`TimeoutError` is raised once ``timeout``
    seconds have passed without acquiring it.
    """

    def __init__(self, path: Union[str, Path], timeout: Optional[float] = None):
        path = Path(path)
        self.path = path.with_name(path.name + LOCK_SUFFIX)
        self.timeout = timeout
        self._handle: Optional[IO[str]] = None

    @property
    def locked(self) -> bool:
        return self._handle is not None

    def acquire(self) -> None:
        if self._handle is not None:
            raise RuntimeError(f"Lock {self.path} is already held by this object")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, "a+", encoding="utf-8")
        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        try:
            while not _try_lock(handle):
                if deadline is not None and time.monotonic() >= deadline:
                    raise TimeoutError(f"Timed out after {self.timeout}s waiting for {self.path}")
                time.sleep(_POLL_INTERVAL)
        except BaseException:
            handle.close()
            raise

        self._handle = handle
        logger.debug(f"Acquired lock {self.path}")

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            _unlock(self._handle)
        finally:
            self._handle.close()
            self._handle = None
        logger.debug(f"Released lock {self.path}")

    def __enter__(self) -> "PlanLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()


def atomic_write_text(path: Union[str, Path], content: str) -> None:
    """Write ``content`` to ``path`` so readers see the old or the new file, never a mix."""
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def read_text_if_exists(path: Union[str, Path]) -> Optional[str]:
    try:
        return Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def content_fingerprint(content: Optional[str]) -> str:
    """Digest identifying a version of a document; ``"missing"`` if absent."""
    if content is None:
        return "missing"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()
