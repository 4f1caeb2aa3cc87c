from __future__ import annotations

from collections import Counter, deque
from collections.abc import Callable
import contextlib
from datetime import datetime, timezone
import json
import secrets
import time
from pathlib import Path
from typing import Any

LedgerEvent = dict[str, Any]
EventHandler = Callable[[LedgerEvent], Any]

RECENT_EVENTS_MAX = 200
UNWRITTEN_EVENTS_MAX = 1000
SEVERITIES = ("info", "warn", "error")


def utc_now_iso() -> str:
    return datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat()


def new_event_id() -> str:
    return f"evt-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def _severity(value: str) -> str:
    lowered = str(value or "info").strip().lower()
    if lowered == "warning":
        return "warn"
    return lowered if lowered in SEVERITIES else "info"


class EventBus:
    """Ledger telemetry: subscribers, a bounded recent window and a JSONL audit trail.

    Conflict retries, store outages, malformed sections and persisted updates
    all land here so the daemon can log them and tests can assert on them.
    Events published before a log path is known are kept (the newest
    `max_unwritten` of them) and written once `set_log_path` is called. A
    failing subscriber never reaches the ledger.
    """

    def __init__(self, log_path: Path | None = None, *, max_unwritten: int = UNWRITTEN_EVENTS_MAX) -> None:
        self._log_path: Path | None = None
        self._unwritten: deque[LedgerEvent] = deque(maxlen=max(1, max_unwritten))
        self._handlers: list[EventHandler] = []
        self._recent: deque[LedgerEvent] = deque(maxlen=RECENT_EVENTS_MAX)
        self._counts: Counter[str] = Counter()
        self.events_written = 0
        if log_path is not None:
            self.set_log_path(log_path)

    @property
    def log_path(self) -> Path | None:
        return self._log_path

    def set_log_path(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch(exist_ok=True)
        self._log_path = path
        while self._unwritten:
            self._write(self._unwritten.popleft())

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._handlers.remove(handler)

        return _unsubscribe

    def recent(self, event_type: str | None = None, *, author: str | None = None) -> list[LedgerEvent]:
        events = list(self._recent)
        if event_type is not None:
            events = [event for event in events if event["type"] == event_type]
        if author is not None:
            events = [event for event in events if event["metadata"].get("author") == author]
        return events

    def counts(self) -> dict[str, int]:
        """Events seen per type since the bus was created (not bounded by the window)."""

        return dict(self._counts)

    def publish(
        self,
        event_type: str,
        message: str,
        *,
        severity: str = "info",
        source: str = "ledger",
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEvent:
        event: LedgerEvent = {
            "id": new_event_id(),
            "ts": utc_now_iso(),
            "type": str(event_type or "ledger.event"),
            "severity": _severity(severity),
            "source": str(source or "ledger"),
            "message": str(message or ""),
            "metadata": dict(metadata or {}),
        }
        self._recent.append(event)
        self._counts[event["type"]] += 1
        if self._log_path is None:
            self._unwritten.append(event)
        else:
            self._write(event)
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:  # noqa: BLE001
                continue
        return event

    def _write(self, event: LedgerEvent) -> None:
        if self._log_path is None:
            return
        with self._log_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(event, sort_keys=True, ensure_ascii=False))
            handle.write("\n")
        self.events_written += 1
