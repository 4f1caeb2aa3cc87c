from __future__ import annotations

from typing import Sequence

from .diff import TaskDiff
from .parser import render_bullet


HISTORY_HEADER = "# 📋 全タスク履歴\n\n"


def render_history_entry(author: str, tasks: Sequence[str], diff: TaskDiff, timestamp: str) -> str:
    """One append-only history record: change summary plus the full task list."""

    lines = [f"## 📋 {author}さんのタスク (更新: {timestamp})", "", "### 📊 変更サマリー"]
    if diff.added:
        lines.append(f"**🆕 追加されたタスク ({len(diff.added)}件):**")
        lines.extend(f"- ✅ {task}" for task in diff.added)
    if diff.removed:
        lines.append(f"**🗑️ 削除されたタスク ({len(diff.removed)}件):**")
        lines.extend(f"- ❌ {task}" for task in diff.removed)
    if diff.unchanged:
        lines.append(f"**📋 継続中のタスク ({len(diff.unchanged)}件):**")
        lines.extend(f"- 🔄 {task}" for task in diff.unchanged)
    if not diff.added and not diff.removed and not diff.unchanged:
        lines.append("(変更なし)")
    lines.extend(["", "### 📝 現在のタスク一覧"])
    lines.extend(render_bullet(task) for task in tasks)
    lines.extend(["", "---", "", ""])
    return "\n".join(lines)


def append_history(existing: str | None, entry: str) -> str:
    base = existing if existing else HISTORY_HEADER
    if not base.endswith("\n"):
        base += "\n"
    return base + entry
