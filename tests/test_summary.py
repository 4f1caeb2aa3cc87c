from __future__ import annotations

import asyncio
from datetime import timedelta
import unittest

from taskledger.document import SectionState
from taskledger.reconcile import TaskLedger
from taskledger.store import MemoryStore, StoreGateway
from taskledger.summary import format_reminder, next_reminder_time, reminder_loop
from tests.helpers import RecordingSleep, ScriptedStore, tokyo


SLOTS = [(9, 30), (11, 30), (13, 30), (15, 30), (17, 30), (20, 30)]


class _DatetimeClock:
    """Clock + sleep pair: sleeping moves the clock forward."""

    def __init__(self, start) -> None:
        self.now = start

    def __call__(self):
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class TestNextReminderTime(unittest.TestCase):
    def test_next_slot_today(self) -> None:
        self.assertEqual(tokyo(2024, 1, 5, 9, 30), next_reminder_time(tokyo(2024, 1, 5, 9, 0), SLOTS))

    def test_exact_slot_moves_to_the_following_one(self) -> None:
        self.assertEqual(tokyo(2024, 1, 5, 11, 30), next_reminder_time(tokyo(2024, 1, 5, 9, 30), SLOTS))

    def test_after_last_slot_wraps_to_tomorrow(self) -> None:
        self.assertEqual(tokyo(2024, 1, 6, 9, 30), next_reminder_time(tokyo(2024, 1, 5, 21, 0), SLOTS))

    def test_requires_slots(self) -> None:
        with self.assertRaises(ValueError):
            next_reminder_time(tokyo(2024, 1, 5), [])


class TestFormatReminder(unittest.TestCase):
    def test_lists_authors_with_tasks(self) -> None:
        sections = {
            "alice": SectionState(tasks=("a", "b"), last_updated="2024/01/05 09:00"),
            "bob": SectionState(tasks=(), last_updated=""),
        }
        text = format_reminder(sections, tokyo(2024, 1, 5, 9, 30), tokyo(2024, 1, 5, 11, 30))
        self.assertEqual(
            "🔔 **定時タスクリマインダー** (2024/01/05 09:30)\n\n"
            "**aliceさん (2件):**\n"
            "・a\n"
            "・b\n\n"
            "🤖 定時リマインダー | 👥 1名 | 📋 合計2件のタスク | ⏰ 次回: 2024/01/05 11:30",
            text,
        )

    def test_nothing_to_report_is_empty(self) -> None:
        self.assertEqual("", format_reminder({}, tokyo(2024, 1, 5)))


class TestReminderLoop(unittest.TestCase):
    def test_posts_at_each_slot(self) -> None:
        store = MemoryStore()
        ledger = TaskLedger(StoreGateway(store), sleep=RecordingSleep())
        clock = _DatetimeClock(tokyo(2024, 1, 5, 9, 0))
        sent: list[str] = []

        async def send(text: str) -> None:
            sent.append(text)

        async def scenario():
            await ledger.record_task_message("alice", "・a", tokyo(2024, 1, 5, 8, 0))
            return await reminder_loop(ledger, send, SLOTS, clock=clock, sleep=clock.sleep, max_runs=2)

        count = asyncio.run(scenario())
        self.assertEqual(2, count)
        self.assertIn("(2024/01/05 09:30)", sent[0])
        self.assertIn("(2024/01/05 11:30)", sent[1])
        self.assertIn("**aliceさん (1件):**", sent[0])

    def test_skips_when_nobody_has_tasks(self) -> None:
        ledger = TaskLedger(StoreGateway(MemoryStore()), sleep=RecordingSleep())
        clock = _DatetimeClock(tokyo(2024, 1, 5, 9, 0))
        sent: list[str] = []

        async def send(text: str) -> None:
            sent.append(text)

        count = asyncio.run(reminder_loop(ledger, send, SLOTS, clock=clock, sleep=clock.sleep, max_runs=1))
        self.assertEqual(0, count)
        self.assertEqual([], sent)

    def test_store_errors_are_reported_and_loop_continues(self) -> None:
        store = ScriptedStore()
        store.read_failures = 1
        ledger = TaskLedger(StoreGateway(store), sleep=RecordingSleep())
        clock = _DatetimeClock(tokyo(2024, 1, 5, 9, 0))
        errors: list[Exception] = []

        async def send(text: str) -> None:
            return None

        count = asyncio.run(
            reminder_loop(ledger, send, SLOTS, clock=clock, sleep=clock.sleep, on_error=errors.append, max_runs=2)
        )
        self.assertEqual(0, count)
        self.assertEqual(1, len(errors))


if __name__ == "__main__":
    unittest.main()
