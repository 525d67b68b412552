from __future__ import annotations

import os
import time
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Iterator, TextIO


class FileLockTimeout(RuntimeError):
    pass


def _acquire_posix(fp: TextIO, *, timeout_s: float, poll_interval_s: float) -> None:
    import fcntl

    deadline = time.monotonic() + float(timeout_s)
    while True:
        try:
            fcntl.flock(fp.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            return
        except BlockingIOError:
            if time.monotonic() >= deadline:
                raise FileLockTimeout("Timed out acquiring file lock") from None
            time.sleep(float(poll_interval_s))


def _release_posix(fp: TextIO) -> None:
    import fcntl

    with suppress(OSError):
        fcntl.flock(fp.fileno(), fcntl.LOCK_UN)


def _acquire_windows(fp: TextIO, *, timeout_s: float, poll_interval_s: float) -> None:
    import msvcrt  # type: ignore

    deadline = time.monotonic() + float(timeout_s)
    while True:
        try:
            msvcrt.locking(fp.fileno(), msvcrt.LK_NBLCK, 1)
            return
        except OSError:
            if time.monotonic() >= deadline:
                raise FileLockTimeout("Timed out acquiring file lock") from None
            time.sleep(float(poll_interval_s))


def _release_windows(fp: TextIO) -> None:
    import msvcrt  # type: ignore

    with suppress(OSError):
        msvcrt.locking(fp.fileno(), msvcrt.LK_UNLCK, 1)


@contextmanager
def file_lock(path: Path, *, timeout_s: float = 30.0, poll_interval_s: float = 0.05) -> Iterator[None]:
    """
    Cross-process advisory lock on `path` (created if missing).

    Serializes JobStore read-modify-write cycles between processes sharing one
    state directory (e.g. the API server and a CLI invocation).
    """
    lock_path = Path(path).resolve()
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    fp = lock_path.open("a+", encoding="utf-8")
    try:
        if os.name == "nt":
            _acquire_windows(fp, timeout_s=timeout_s, poll_interval_s=poll_interval_s)
        else:
            _acquire_posix(fp, timeout_s=timeout_s, poll_interval_s=poll_interval_s)
        try:
            yield
        finally:
            if os.name == "nt":
                _release_windows(fp)
            else:
                _release_posix(fp)
    finally:
        with suppress(OSError):
            fp.close()
