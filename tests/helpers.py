from __future__ import annotations

from datetime import datetime
import threading
from typing import Callable
from zoneinfo import ZoneInfo

from taskledger.store import MemoryStore, StoredDocument, StoreUnavailable


TOKYO = ZoneInfo("Asia/Tokyo")

WriteHook = Callable[[MemoryStore, str], None]


def tokyo(year: int, month: int, day: int, hour: int = 9, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=TOKYO)


class ScriptedStore:
    """MemoryStore wrapper that runs scripted hooks before writes.

    A hook can write to the inner store (a concurrent writer sneaking in
    between our read and write) or raise (an outage). Hooks are consumed one
    per write call; once the script is empty writes go straight through.
    """

    def __init__(self, inner: MemoryStore | None = None, *, write_hooks: list[WriteHook] | None = None) -> None:
        self.inner = inner if inner is not None else MemoryStore()
        self.write_hooks = list(write_hooks or [])
        self.read_failures = 0
        self.write_calls = 0
        self._lock = threading.Lock()

    def read(self, path: str) -> StoredDocument | None:
        with self._lock:
            if self.read_failures > 0:
                self.read_failures -= 1
                raise StoreUnavailable("scripted read outage")
        return self.inner.read(path)

    def write(self, path: str, content: str, expected_version: str | None) -> str:
        with self._lock:
            self.write_calls += 1
            hook = self.write_hooks.pop(0) if self.write_hooks else None
        if hook is not None:
            hook(self.inner, path)
        return self.inner.write(path, content, expected_version)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
