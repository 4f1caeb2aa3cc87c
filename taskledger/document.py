from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
import re

from .parser import bullet_body, dedupe


SECTION_HEADING_PREFIX = "## "
CURRENT_TASKS_LABEL = "**現在のタスク:**"
ADDED_LABEL = "🆕 追加:"
REMOVED_LABEL = "🗑️ 削除:"
SECTION_SEPARATOR = "---"

_LATEST_CHANGE_RE = re.compile(r"^\*\*最新の変更\s*\((?P<stamp>[^)]*)\)\s*:?\*\*:?\s*$")


@dataclass(frozen=True)
class Section:
    author: str
    tasks: tuple[str, ...] = ()
    last_updated: str = ""
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    raw: str = ""
    has_task_block: bool = False


@dataclass(frozen=True)
class Document:
    """A task document held as a header plus author sections in file order.

    `render_document(parse_document(text)) == text` for any input; sections
    keep their raw text so that untouched sections serialize byte-for-byte.
    """

    header: str = ""
    sections: tuple[Section, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.header.strip() and not self.sections

    def authors(self) -> list[str]:
        return [section.author for section in self.sections]


@dataclass(frozen=True)
class SectionState:
    tasks: tuple[str, ...]
    last_updated: str


def default_header(day: date) -> str:
    return f"# 📅 {day.isoformat()} のタスク\n\n"


def _heading_author(line: str) -> str | None:
    if not line.startswith(SECTION_HEADING_PREFIX):
        return None
    return line[len(SECTION_HEADING_PREFIX) :].strip()


def parse_document(text: str) -> Document:
    header_parts: list[str] = []
    chunks: list[tuple[str, list[str]]] = []
    for line in (text or "").splitlines(keepends=True):
        author = _heading_author(line)
        if author is not None:
            chunks.append((author, [line]))
            continue
        if chunks:
            chunks[-1][1].append(line)
        else:
            header_parts.append(line)
    sections = tuple(parse_section(author, "".join(lines)) for author, lines in chunks)
    return Document(header="".join(header_parts), sections=sections)


def render_document(document: Document) -> str:
    return document.header + "".join(section.raw for section in document.sections)


def parse_section(author: str, raw: str) -> Section:
    """Recover tasks and the latest-change block from one section's text.

    The current-task block starts at the current-tasks label and ends at the
    next bold label line. A section without the label has no tasks.
    """

    tasks: list[str] = []
    added: list[str] = []
    removed: list[str] = []
    last_updated = ""
    has_task_block = False
    mode = ""

    for line in raw.splitlines()[1:]:
        stripped = line.strip()
        if stripped == CURRENT_TASKS_LABEL:
            has_task_block = True
            mode = "tasks"
            continue
        if stripped.startswith("**"):
            match = _LATEST_CHANGE_RE.match(stripped)
            if match:
                last_updated = match.group("stamp").strip()
                mode = "change"
            else:
                mode = ""
            continue
        if mode == "tasks":
            body = bullet_body(stripped)
            if body is not None:
                tasks.append(body)
            continue
        if mode in {"change", "added", "removed"}:
            if stripped == ADDED_LABEL:
                mode = "added"
                continue
            if stripped == REMOVED_LABEL:
                mode = "removed"
                continue
            body = bullet_body(stripped)
            if body is None:
                continue
            if mode == "added":
                added.append(body)
            elif mode == "removed":
                removed.append(body)

    return Section(
        author=author,
        tasks=tuple(dedupe(tasks)),
        last_updated=last_updated,
        added=tuple(added),
        removed=tuple(removed),
        raw=raw,
        has_task_block=has_task_block,
    )


def find_section(document: Document, author: str) -> Section | None:
    """Return the author's active section (the last one, if duplicated)."""

    wanted = author.strip()
    found: Section | None = None
    for section in document.sections:
        if section.author == wanted:
            found = section
    return found


def count_sections(document: Document, author: str) -> int:
    wanted = author.strip()
    return sum(1 for section in document.sections if section.author == wanted)


def extract_previous_tasks(text: str, author: str) -> list[str]:
    section = find_section(parse_document(text), author)
    if section is None:
        return []
    return list(section.tasks)


def current_sections(document: Document) -> dict[str, SectionState]:
    """Map author -> current state; later duplicates win, empty sections are skipped."""

    out: dict[str, SectionState] = {}
    for section in document.sections:
        if not section.author:
            continue
        if not section.tasks:
            out.pop(section.author, None)
            continue
        out.pop(section.author, None)
        out[section.author] = SectionState(tasks=section.tasks, last_updated=section.last_updated)
    return out
