from __future__ import annotations

import asyncio
from datetime import datetime, time, timedelta
from typing import Awaitable, Callable, Mapping, Sequence

from .document import SectionState
from .parser import render_bullet
from .reconcile import TaskLedger, format_timestamp
from .store import StoreError


Send = Callable[[str], Awaitable[None]]
ErrorHook = Callable[[Exception], None]


def format_reminder(sections: Mapping[str, SectionState], now: datetime, next_at: datetime | None = None) -> str:
    """Render the periodic overview; empty string when nobody has tasks."""

    active = {author: state for author, state in sections.items() if state.tasks}
    if not active:
        return ""
    lines = [f"🔔 **定時タスクリマインダー** ({format_timestamp(now)})", ""]
    total = 0
    for author, state in active.items():
        lines.append(f"**{author}さん ({len(state.tasks)}件):**")
        lines.extend(render_bullet(task) for task in state.tasks)
        lines.append("")
        total += len(state.tasks)
    footer = f"🤖 定時リマインダー | 👥 {len(active)}名 | 📋 合計{total}件のタスク"
    if next_at is not None:
        footer += f" | ⏰ 次回: {format_timestamp(next_at)}"
    lines.append(footer)
    return "\n".join(lines)


def next_reminder_time(now: datetime, slots: Sequence[tuple[int, int]]) -> datetime:
    """Next slot strictly after `now`; wraps to the first slot of the next day."""

    if not slots:
        raise ValueError("at least one reminder slot is required")
    ordered = sorted(slots)
    for hour, minute in ordered:
        candidate = datetime.combine(now.date(), time(hour, minute), tzinfo=now.tzinfo)
        if candidate > now:
            return candidate
    hour, minute = ordered[0]
    return datetime.combine(now.date() + timedelta(days=1), time(hour, minute), tzinfo=now.tzinfo)


async def send_reminder(ledger: TaskLedger, send: Send, *, now: datetime, next_at: datetime | None = None) -> bool:
    sections = await ledger.get_all_current_sections(day=now.date())
    text = format_reminder(sections, now, next_at)
    if not text:
        return False
    await send(text)
    return True


async def reminder_loop(
    ledger: TaskLedger,
    send: Send,
    slots: Sequence[tuple[int, int]],
    *,
    clock: Callable[[], datetime] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_error: ErrorHook | None = None,
    max_runs: int | None = None,
) -> int:
    """Post a summary at every slot until cancelled. Returns reminders sent."""

    now_fn = clock or ledger.localize
    sent = 0
    runs = 0
    while max_runs is None or runs < max_runs:
        target = next_reminder_time(now_fn(), slots)
        delay = (target - now_fn()).total_seconds()
        if delay > 0:
            await sleep(delay)
        runs += 1
        try:
            if await send_reminder(ledger, send, now=target, next_at=next_reminder_time(target, slots)):
                sent += 1
        except asyncio.CancelledError:
            raise
        except (StoreError, RuntimeError) as exc:
            if on_error is not None:
                on_error(exc)
    return sent
