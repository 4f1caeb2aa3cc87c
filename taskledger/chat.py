from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import re
from typing import Awaitable, Callable, Iterable, Sequence

from .config import DEFAULT_TRIGGER_PATTERNS
from .reconcile import STATUS_IGNORED, ReconcileFailed, RecordResult, TaskLedger
from .store import StoreError


_STATUS_INQUIRY_PATTERNS = (
    re.compile(r"(.+?)さんのタスク状況を教えて"),
    re.compile(r"(.+?)のタスク状況を教えて"),
    re.compile(r"(.+?)さんのタスクを教えて"),
    re.compile(r"(.+?)のタスクを教えて"),
    re.compile(r"(.+?)さんのタスク状況"),
    re.compile(r"(.+?)のタスク状況"),
)
_LEADING_MENTION_RE = re.compile(r"^(?:@\S+\s+)+")

NameResolver = Callable[[str], Awaitable[str]]


def compile_trigger_patterns(patterns: Iterable[str] = DEFAULT_TRIGGER_PATTERNS) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns)


def is_task_message(text: str, patterns: Sequence[re.Pattern[str]] | None = None) -> bool:
    compiled = patterns if patterns is not None else compile_trigger_patterns()
    return any(pattern.search(text or "") for pattern in compiled)


def parse_status_inquiry(text: str) -> str | None:
    """Return the author name asked about in a task-status question, if any."""

    first_line = (text or "").strip().splitlines()[0] if (text or "").strip() else ""
    cleaned = _LEADING_MENTION_RE.sub("", first_line).strip()
    for pattern in _STATUS_INQUIRY_PATTERNS:
        match = pattern.search(cleaned)
        if match:
            name = match.group(1).strip()
            return name or None
    return None


def format_update_reply(result: RecordResult) -> str:
    if result.status == STATUS_IGNORED:
        return f"📋 {result.author}さんのメッセージからタスクが見つかりませんでした。(変更なし)"
    lines = [f"📋 *{result.author}さんのタスク更新*"]
    if result.added:
        lines.append(f"🆕 追加: {result.added_count}件")
    if result.removed:
        lines.append(f"🗑️ 削除: {result.removed_count}件")
    if result.unchanged:
        lines.append(f"🔄 継続: {result.unchanged_count}件")
    if not result.added and not result.removed and not result.unchanged:
        lines.append("現在のタスクはありません")
    if result.history_error:
        lines.append("⚠️ 履歴の保存に失敗しました")
    return "\n".join(lines)


def format_status_reply(author: str, tasks: Sequence[str] | None) -> str:
    if not tasks:
        return f"📋 {author}さんのタスクが見つかりませんでした。"
    lines = [f"👤 *{author}さんのタスク状況*", f"📊 {len(tasks)}件のタスクが登録されています", ""]
    lines.extend(f"{index}. {task}" for index, task in enumerate(tasks, start=1))
    return "\n".join(lines)


def format_forward_message(author: str, text: str) -> str:
    return f"📋 *{author}さんのタスク* (自動転送)\n\n{text.strip()}\n\n🤖 自動転送・保存完了"


def format_failure_reply(author: str, error: Exception) -> str:
    if isinstance(error, ReconcileFailed) and error.reason == "conflict":
        detail = "同時更新が続いたため保存できませんでした"
    elif isinstance(error, ReconcileFailed):
        detail = "保存先に接続できませんでした"
    else:
        detail = "保存中にエラーが発生しました"
    return f"⚠️ {author}さんのタスク更新に失敗しました: {detail}。もう一度送信してください。"


@dataclass(frozen=True)
class InboundMessage:
    sender: str
    text: str
    timestamp: datetime | None = None
    conversation_id: str = ""
    message_id: str = ""


@dataclass(frozen=True)
class ChatOutcome:
    """What handling one message produced: the reply and, for task messages, the record."""

    reply: str | None = None
    author: str = ""
    recorded: RecordResult | None = None

    @property
    def forwardable(self) -> bool:
        return self.recorded is not None and self.recorded.status != STATUS_IGNORED


@dataclass
class ChatRouter:
    """Routes one chat message to the ledger and returns the reply text.

    Task messages are recorded, status questions are answered from the
    ledger, anything else yields None (no reply).
    """

    ledger: TaskLedger
    resolve_name: NameResolver | None = None
    trigger_patterns: tuple[re.Pattern[str], ...] = field(default_factory=compile_trigger_patterns)

    async def display_name(self, sender: str) -> str:
        if self.resolve_name is None:
            return sender
        return await self.resolve_name(sender)

    async def handle(self, message: InboundMessage) -> str | None:
        return (await self.route(message)).reply

    async def route(self, message: InboundMessage) -> ChatOutcome:
        text = (message.text or "").strip()
        if not text:
            return ChatOutcome()
        if is_task_message(text, self.trigger_patterns):
            author = await self.display_name(message.sender)
            try:
                result = await self.ledger.record_task_message(author, text, message.timestamp)
            except (ReconcileFailed, StoreError) as exc:
                return ChatOutcome(reply=format_failure_reply(author, exc), author=author)
            return ChatOutcome(reply=format_update_reply(result), author=author, recorded=result)

        asked = parse_status_inquiry(text)
        if asked is None:
            return ChatOutcome()
        try:
            tasks = await self.ledger.get_current_tasks(asked)
        except StoreError as exc:
            return ChatOutcome(reply=f"⚠️ {asked}さんのタスクを取得できませんでした: {exc}")
        return ChatOutcome(reply=format_status_reply(asked, tasks))
