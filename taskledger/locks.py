from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator


@contextmanager
def file_lock(lock_path: Path, *, blocking: bool = True, busy_message: str = "") -> Iterator[IO[str]]:
    """Hold an exclusive flock on `lock_path` for the duration of the block.

    Used by the local content store to make compare-and-swap writes atomic
    across processes sharing one directory.
    """

    lock_path.parent.mkdir(parents=True, exist_ok=True)
    handle = lock_path.open("a+", encoding="utf-8")
    try:
        try:
            import fcntl  # type: ignore

            flags = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
            fcntl.flock(handle.fileno(), flags)
        except ModuleNotFoundError:
            raise RuntimeError("File locks require fcntl (not available on this platform).")
        except OSError as exc:
            raise RuntimeError(busy_message or f"Lock is held by another process (lock: {lock_path}).") from exc
        yield handle
    finally:
        try:
            import fcntl  # type: ignore

            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except Exception:  # noqa: BLE001
            pass
        handle.close()


def instance_lock(lock_path: Path):
    """Refuse to start a second daemon on the same `.taskledger/` state."""

    return file_lock(
        lock_path,
        blocking=False,
        busy_message=f"Another taskledger daemon is already running (lock: {lock_path}).",
    )
