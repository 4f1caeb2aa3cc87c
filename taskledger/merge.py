from __future__ import annotations

from datetime import date
from typing import Sequence

from .diff import TaskDiff
from .document import (
    ADDED_LABEL,
    CURRENT_TASKS_LABEL,
    REMOVED_LABEL,
    SECTION_HEADING_PREFIX,
    SECTION_SEPARATOR,
    Document,
    count_sections,
    default_header,
    find_section,
    parse_section,
)
from .parser import dedupe, render_bullet


class MergeInvariantError(RuntimeError):
    pass


def clean_author(author: str) -> str:
    return " ".join((author or "").split()).strip()


def render_section(
    author: str,
    tasks: Sequence[str],
    *,
    last_updated: str = "",
    added: Sequence[str] = (),
    removed: Sequence[str] = (),
) -> str:
    lines = [f"{SECTION_HEADING_PREFIX}{author}", "", CURRENT_TASKS_LABEL]
    lines.extend(render_bullet(task) for task in tasks)
    if added or removed:
        lines.append("")
        lines.append(f"**最新の変更 ({last_updated}):**")
        if added:
            lines.append(ADDED_LABEL)
            lines.extend(render_bullet(task) for task in added)
        if removed:
            lines.append(REMOVED_LABEL)
            lines.extend(render_bullet(task) for task in removed)
    lines.extend(["", SECTION_SEPARATOR, "", ""])
    return "\n".join(lines)


def merge_section(
    document: Document,
    author: str,
    tasks: Sequence[str],
    diff: TaskDiff,
    timestamp: str,
    *,
    header: str | None = None,
) -> Document:
    """Replace the author's section with a freshly rendered one at the end.

    Every earlier section of the author is dropped; other sections are kept
    untouched and in order. When the diff is empty the previous latest-change
    block is carried forward so a resubmission renders identically.
    """

    name = clean_author(author)
    if not name:
        raise ValueError("author name cannot be empty")

    if document.is_empty:
        base = Document(header=header if header is not None else default_header(date.today()))
    else:
        base = _line_terminated(document)

    previous = find_section(base, name)
    if diff.changed:
        last_updated, added, removed = timestamp, diff.added, diff.removed
    elif previous is not None:
        last_updated, added, removed = previous.last_updated, previous.added, previous.removed
    else:
        last_updated, added, removed = "", (), ()

    ordered = dedupe(tasks)
    raw = render_section(name, ordered, last_updated=last_updated, added=added, removed=removed)
    section = parse_section(name, raw)
    kept = tuple(item for item in base.sections if item.author != name)
    merged = Document(header=base.header, sections=kept + (section,))
    _check_merge(base, merged, name, ordered)
    return merged


def _line_terminated(document: Document) -> Document:
    if document.sections:
        last = document.sections[-1]
        if last.raw.endswith("\n"):
            return document
        fixed = parse_section(last.author, last.raw + "\n")
        return Document(header=document.header, sections=document.sections[:-1] + (fixed,))
    if document.header and not document.header.endswith("\n"):
        return Document(header=document.header + "\n", sections=())
    return document


def _check_merge(before: Document, after: Document, author: str, tasks: list[str]) -> None:
    if count_sections(after, author) != 1:
        raise MergeInvariantError(f"expected exactly one section for {author!r} after merge")
    others_before = [item.raw for item in before.sections if item.author != author]
    others_after = [item.raw for item in after.sections if item.author != author]
    if others_before != others_after:
        raise MergeInvariantError(f"merge for {author!r} altered another author's section")
    merged = find_section(after, author)
    if merged is None or list(merged.tasks) != tasks:
        raise MergeInvariantError(f"rendered task block for {author!r} does not read back")
