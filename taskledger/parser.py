from __future__ import annotations

import re
from typing import Callable, Iterable


TASK_BULLET = "・"
MARKER_CHARS = frozenset("・-*+.")

_BULLET_START_RE = re.compile(r"^(?:[・\-\*\+]|\d+\.)")
_MARKER_PREFIX_RE = re.compile(r"^[・\-\*\+\d\.]+\s*")

Normalizer = Callable[[str], str]


def bullet_body(line: str) -> str | None:
    """Return the task body of a bullet line, or None for prose.

    `・foo`, `- foo`, `* foo`, `+ foo` and `1. foo` are bullet lines. The whole
    run of marker/digit/dot characters and the whitespace after it is stripped.
    A bullet with an empty body (e.g. a `---` rule) yields None.
    """

    trimmed = line.strip()
    if not _BULLET_START_RE.match(trimmed):
        return None
    body = _MARKER_PREFIX_RE.sub("", trimmed, count=1).strip()
    return body or None


def is_bullet_line(line: str) -> bool:
    return bullet_body(line) is not None


def render_bullet(task: str) -> str:
    # A body that itself starts with a marker or digit needs a space after `・`
    # or the marker run would swallow it on the next parse.
    if task[:1] in MARKER_CHARS or task[:1].isdigit():
        return f"{TASK_BULLET} {task}"
    return f"{TASK_BULLET}{task}"


def dedupe(tasks: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for task in tasks:
        if task in seen:
            continue
        seen.add(task)
        out.append(task)
    return out


def parse_task_list(text: str, *, normalize: Normalizer | None = None) -> list[str]:
    """Turn a free-text message into an ordered, de-duplicated task list.

    Prose lines are ignored. An empty result is not an error; the caller
    decides what a message without tasks means.
    """

    tasks: list[str] = []
    for raw in (text or "").splitlines():
        body = bullet_body(raw)
        if body is None:
            continue
        if normalize is not None:
            body = normalize(body).strip()
            if not body:
                continue
        tasks.append(body)
    return dedupe(tasks)


def casefold_whitespace(task: str) -> str:
    """Optional normalizer: collapse inner whitespace and casefold."""

    return " ".join(task.split()).casefold()
