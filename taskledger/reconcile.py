from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date, datetime
import random
from typing import Awaitable, Callable
from zoneinfo import ZoneInfo

from .config import EMPTY_POLICY_CLEAR, EMPTY_POLICY_IGNORE
from .diff import TaskDiff, diff_tasks
from .document import SectionState, current_sections, default_header, find_section, render_document
from .events import EventBus
from .history import append_history, render_history_entry
from .merge import clean_author, merge_section
from .parser import Normalizer, parse_task_list
from .store import StoreConflict, StoreGateway, StoreUnavailable


STATUS_PERSISTED = "persisted"
STATUS_UNCHANGED = "unchanged"
STATUS_IGNORED = "ignored"

DEFAULT_PATH_TEMPLATE = "tasks/{date}-tasks.md"
DEFAULT_TIMEZONE = "Asia/Tokyo"
DEFAULT_MAX_ATTEMPTS = 3
RETRY_BASE_S = 0.2
RETRY_MAX_S = 2.0
TIMESTAMP_FORMAT = "%Y/%m/%d %H:%M"

Sleep = Callable[[float], Awaitable[None]]


class ReconcileFailed(RuntimeError):
    """Every attempt to persist an update hit a conflict or an unavailable store."""

    def __init__(self, author: str, path: str, reason: str, attempts: int, last_error: Exception | None = None) -> None:
        self.author = author
        self.path = path
        self.reason = reason
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"task update for {author} on {path} failed after {attempts} attempts ({reason}){detail}")


@dataclass(frozen=True)
class RecordResult:
    author: str
    path: str
    status: str
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    unchanged: tuple[str, ...] = ()
    version: str | None = None
    attempts: int = 0
    history_error: str = ""
    tasks: tuple[str, ...] = ()

    @property
    def added_count(self) -> int:
        return len(self.added)

    @property
    def removed_count(self) -> int:
        return len(self.removed)

    @property
    def unchanged_count(self) -> int:
        return len(self.unchanged)


@dataclass(frozen=True)
class _Attempt:
    status: str
    diff: TaskDiff
    version: str | None


@dataclass(frozen=True)
class _PendingWrite:
    section_raw: str
    diff: TaskDiff


class _WriteInDoubt(StoreUnavailable):
    """A write failed in transit; it may still have reached the store."""

    def __init__(self, pending: _PendingWrite, cause: StoreUnavailable) -> None:
        self.pending = pending
        super().__init__(str(cause))


def format_timestamp(moment: datetime) -> str:
    return moment.strftime(TIMESTAMP_FORMAT)


class TaskLedger:
    """Reconciles chat task messages into the shared daily task document.

    Each update is a read-diff-merge-write cycle against a fresh snapshot,
    written with the snapshot's version token. Conflicts and store outages
    restart the whole cycle, up to `max_attempts` times.
    """

    def __init__(
        self,
        gateway: StoreGateway,
        *,
        path_template: str = DEFAULT_PATH_TEMPLATE,
        timezone: str = DEFAULT_TIMEZONE,
        empty_policy: str = EMPTY_POLICY_IGNORE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        history_path: str = "",
        bus: EventBus | None = None,
        normalize: Normalizer | None = None,
        sleep: Sleep = asyncio.sleep,
        retry_base_s: float = RETRY_BASE_S,
    ) -> None:
        if empty_policy not in {EMPTY_POLICY_IGNORE, EMPTY_POLICY_CLEAR}:
            raise ValueError(f"unknown empty message policy: {empty_policy}")
        self.gateway = gateway
        self.path_template = path_template or DEFAULT_PATH_TEMPLATE
        self.tz = ZoneInfo(timezone or DEFAULT_TIMEZONE)
        self.empty_policy = empty_policy
        self.max_attempts = max(1, int(max_attempts))
        self.history_path = history_path
        self.bus = bus if bus is not None else EventBus()
        self.normalize = normalize
        self._sleep = sleep
        self.retry_base_s = max(0.0, float(retry_base_s))

    def document_path(self, day: date) -> str:
        return self.path_template.replace("{date}", day.isoformat())

    def history_document_path(self, day: date) -> str:
        return self.history_path.replace("{date}", day.isoformat()) if self.history_path else ""

    def localize(self, moment: datetime | None = None) -> datetime:
        if moment is None:
            return datetime.now(tz=self.tz)
        if moment.tzinfo is None:
            return moment.replace(tzinfo=self.tz)
        return moment.astimezone(self.tz)

    def today(self) -> date:
        return self.localize().date()

    async def record_task_message(self, author: str, raw_text: str, timestamp: datetime | None = None) -> RecordResult:
        name = clean_author(author)
        if not name:
            raise ValueError("author name cannot be empty")

        moment = self.localize(timestamp)
        day = moment.date()
        path = self.document_path(day)
        stamp = format_timestamp(moment)
        tasks = parse_task_list(raw_text, normalize=self.normalize)

        if not tasks and self.empty_policy == EMPTY_POLICY_IGNORE:
            self._publish(
                "ledger.ignored",
                f"no tasks parsed for {name}; leaving {path} untouched",
                author=name,
                path=path,
            )
            return RecordResult(author=name, path=path, status=STATUS_IGNORED)

        last_error: Exception | None = None
        reason = ""
        pending: _PendingWrite | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                outcome = await self._attempt(name, tasks, path, day, stamp, pending)
            except StoreConflict as exc:
                last_error, reason = exc, "conflict"
                self._publish(
                    "ledger.conflict",
                    f"version conflict on {path} for {name} (attempt {attempt}/{self.max_attempts})",
                    severity="warn",
                    author=name,
                    path=path,
                    attempt=attempt,
                )
            except StoreUnavailable as exc:
                last_error, reason = exc, "unavailable"
                if isinstance(exc, _WriteInDoubt):
                    pending = exc.pending
                self._publish(
                    "ledger.store_unavailable",
                    f"store unavailable for {path} (attempt {attempt}/{self.max_attempts}): {exc}",
                    severity="warn",
                    author=name,
                    path=path,
                    attempt=attempt,
                )
            else:
                return await self._finish(name, path, day, stamp, tasks, outcome, attempt)

            if attempt < self.max_attempts:
                await self._sleep(self._retry_delay(attempt))

        self._publish(
            "ledger.failed",
            f"giving up on {name} update to {path} after {self.max_attempts} attempts ({reason})",
            severity="error",
            author=name,
            path=path,
            reason=reason,
            attempts=self.max_attempts,
        )
        raise ReconcileFailed(name, path, reason, self.max_attempts, last_error)

    async def _attempt(
        self,
        author: str,
        tasks: list[str],
        path: str,
        day: date,
        stamp: str,
        pending: _PendingWrite | None = None,
    ) -> _Attempt:
        snapshot = await self.gateway.read_snapshot(path)
        previous = find_section(snapshot.document, author)
        if pending is not None and previous is not None and previous.raw == pending.section_raw:
            # An earlier write timed out after landing; report what it changed.
            return _Attempt(status=STATUS_PERSISTED, diff=pending.diff, version=snapshot.version)
        if previous is not None and not previous.has_task_block:
            self._publish(
                "ledger.malformed_section",
                f"section for {author} in {path} has no current-task block; treating as empty",
                severity="warn",
                author=author,
                path=path,
            )
        prior = list(previous.tasks) if previous is not None else []

        if not tasks and previous is None:
            return _Attempt(status=STATUS_UNCHANGED, diff=TaskDiff(), version=snapshot.version)

        diff = diff_tasks(prior, tasks)
        merged = merge_section(snapshot.document, author, tasks, diff, stamp, header=default_header(day))
        if snapshot.exists and render_document(merged) == render_document(snapshot.document):
            return _Attempt(status=STATUS_UNCHANGED, diff=diff, version=snapshot.version)

        written = find_section(merged, author)
        pending_write = _PendingWrite(section_raw=written.raw if written is not None else "", diff=diff)
        try:
            version = await self.gateway.write_document(path, merged, snapshot.version)
        except StoreUnavailable as exc:
            raise _WriteInDoubt(pending_write, exc) from exc
        return _Attempt(status=STATUS_PERSISTED, diff=diff, version=version)

    async def _finish(
        self,
        author: str,
        path: str,
        day: date,
        stamp: str,
        tasks: list[str],
        outcome: _Attempt,
        attempts: int,
    ) -> RecordResult:
        diff = outcome.diff
        history_error = ""
        if outcome.status == STATUS_PERSISTED:
            self.gateway.invalidate(path, author)
            added, removed, unchanged = diff.counts()
            self._publish(
                "ledger.persisted",
                f"{author}: +{added} -{removed} ={unchanged} -> {path}",
                author=author,
                path=path,
                version=outcome.version,
                attempts=attempts,
            )
            if self.history_path:
                history_error = await self._append_history(author, tasks, diff, stamp, day)
        else:
            self._publish(
                "ledger.unchanged",
                f"{author}: task list unchanged in {path}",
                author=author,
                path=path,
            )

        return RecordResult(
            author=author,
            path=path,
            status=outcome.status,
            added=diff.added,
            removed=diff.removed,
            unchanged=diff.unchanged,
            version=outcome.version,
            attempts=attempts,
            history_error=history_error,
            tasks=tuple(tasks),
        )

    async def _append_history(self, author: str, tasks: list[str], diff: TaskDiff, stamp: str, day: date) -> str:
        path = self.history_document_path(day)
        entry = render_history_entry(author, tasks, diff, stamp)
        error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                stored = await self.gateway.read_text(path)
                content = append_history(stored.content if stored is not None else None, entry)
                await self.gateway.write_text(path, content, stored.version if stored is not None else None)
                return ""
            except (StoreConflict, StoreUnavailable) as exc:
                error = str(exc)
            if attempt < self.max_attempts:
                await self._sleep(self._retry_delay(attempt))

        self._publish(
            "ledger.history_failed",
            f"history append for {author} to {path} failed: {error}",
            severity="warn",
            author=author,
            path=path,
        )
        return error

    async def get_current_tasks(self, author: str, *, day: date | None = None) -> list[str] | None:
        """Current tasks for `author`, or None when they have no non-empty section.

        Served through the gateway's TTL cache, so the answer may lag a
        concurrent update by up to the cache TTL.
        """

        name = clean_author(author)
        if not name:
            return None
        path = self.document_path(day or self.today())
        section = await self.gateway.cached_section(path, name)
        if section is None or not section.tasks:
            return None
        return list(section.tasks)

    async def get_all_current_sections(self, *, day: date | None = None) -> dict[str, SectionState]:
        path = self.document_path(day or self.today())
        snapshot = await self.gateway.read_snapshot(path)
        return current_sections(snapshot.document)

    def _retry_delay(self, attempt: int) -> float:
        if self.retry_base_s <= 0:
            return 0.0
        base = min(RETRY_MAX_S, self.retry_base_s * (2 ** max(0, attempt - 1)))
        return base + random.uniform(0.0, base * 0.2)

    def _publish(self, event_type: str, message: str, *, severity: str = "info", **metadata) -> None:
        self.bus.publish(event_type, message, severity=severity, source="ledger", metadata=metadata)
