from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from .parser import dedupe


@dataclass(frozen=True)
class TaskDiff:
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    unchanged: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)

    def counts(self) -> tuple[int, int, int]:
        return len(self.added), len(self.removed), len(self.unchanged)


def diff_tasks(previous: Sequence[str], new: Sequence[str]) -> TaskDiff:
    """Classify tasks by presence only (exact string match).

    `added` and `unchanged` keep the order of `new`, `removed` keeps the order
    of `previous`. Duplicate counts are not tracked.
    """

    previous_set = set(previous)
    new_set = set(new)
    return TaskDiff(
        added=tuple(dedupe(task for task in new if task not in previous_set)),
        removed=tuple(dedupe(task for task in previous if task not in new_set)),
        unchanged=tuple(dedupe(task for task in new if task in previous_set)),
    )
