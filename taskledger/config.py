from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
import re
import tomllib
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


CONFIG_FILENAME = "taskledger.toml"
EMPTY_POLICY_IGNORE = "ignore"
EMPTY_POLICY_CLEAR = "clear"
EMPTY_POLICIES = (EMPTY_POLICY_IGNORE, EMPTY_POLICY_CLEAR)
STORE_BACKENDS = ("local", "github", "memory")

DEFAULT_TRIGGER_PATTERNS = (
    r"\[タスク\]",
    r"\[本日のタスク\]",
    r"\[今日のタスク\]",
    r"\[task\]",
    r"\[todo\]",
    r"\[やること\]",
)
DEFAULT_REMINDER_TIMES = ("09:30", "11:30", "13:30", "15:30", "17:30", "20:30")
DEFAULT_ENS_RPC_URLS = ("https://ethereum.publicnode.com", "https://eth.llamarpc.com")

_TIME_RE = re.compile(r"^(?P<hour>[01]?\d|2[0-3]):(?P<minute>[0-5]\d)$")


def _as_float(value, *, default: float) -> float:
    try:
        return float(value)
    except Exception:  # noqa: BLE001
        return float(default)


def _as_int(value, *, default: int) -> int:
    try:
        return int(value)
    except Exception:  # noqa: BLE001
        return int(default)


def _as_bool(value, *, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "y", "on"}:
            return True
        if lowered in {"0", "false", "no", "n", "off"}:
            return False
    return bool(default)


def _as_str_list(value) -> list[str]:
    if isinstance(value, list):
        out: list[str] = []
        for item in value:
            if isinstance(item, str) and item.strip():
                out.append(item.strip())
        return out
    if isinstance(value, str) and value.strip():
        return [value.strip()]
    return []


def _as_choice(value, *, choices: tuple[str, ...], default: str) -> str:
    lowered = str(value or "").strip().lower()
    return lowered if lowered in choices else default


def _table(data: dict, key: str) -> dict:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def parse_clock_time(value: str) -> tuple[int, int] | None:
    match = _TIME_RE.match((value or "").strip())
    if not match:
        return None
    return int(match.group("hour")), int(match.group("minute"))


@dataclass(frozen=True)
class LedgerConfig:
    document_path: str = "tasks/{date}-tasks.md"
    timezone: str = "Asia/Tokyo"
    empty_message_policy: str = EMPTY_POLICY_IGNORE
    max_attempts: int = 3
    history_path: str = ""

    def path_for(self, day: date) -> str:
        return self.document_path.replace("{date}", day.isoformat())

    def history_path_for(self, day: date) -> str:
        return self.history_path.replace("{date}", day.isoformat()) if self.history_path else ""

    def tzinfo(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            return ZoneInfo("UTC")


@dataclass(frozen=True)
class GitHubStoreConfig:
    owner: str = ""
    repo: str = ""
    branch: str = "main"
    token_env: str = "GITHUB_TOKEN"


@dataclass(frozen=True)
class StoreConfig:
    backend: str = "local"
    root: str = "."
    timeout_s: float = 10.0
    github: GitHubStoreConfig = field(default_factory=GitHubStoreConfig)


@dataclass(frozen=True)
class CacheConfig:
    ttl_seconds: float = 30.0


@dataclass(frozen=True)
class ChatConfig:
    env: str = "production"
    trigger_patterns: tuple[str, ...] = DEFAULT_TRIGGER_PATTERNS
    ens_rpc_urls: tuple[str, ...] = DEFAULT_ENS_RPC_URLS
    authors: dict[str, str] = field(default_factory=dict)
    forward_conversation_id: str = ""


@dataclass(frozen=True)
class RemindersConfig:
    enabled: bool = False
    times: tuple[str, ...] = DEFAULT_REMINDER_TIMES
    conversation_id: str = ""

    def slots(self) -> list[tuple[int, int]]:
        parsed = [parse_clock_time(item) for item in self.times]
        return sorted({item for item in parsed if item is not None})


@dataclass(frozen=True)
class TaskLedgerConfig:
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)
    reminders: RemindersConfig = field(default_factory=RemindersConfig)


def load_taskledger_toml(path: Path) -> tuple[TaskLedgerConfig, str]:
    """Load workspace config from taskledger.toml.

    Returns (config, warning). Warning is empty on success; a missing file is
    not a warning. Invalid values fall back to their defaults.
    """

    if not path.exists():
        return TaskLedgerConfig(), ""

    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:  # noqa: BLE001
        return TaskLedgerConfig(), f"{CONFIG_FILENAME} parse failed: {exc}"

    if not isinstance(data, dict):
        return TaskLedgerConfig(), f"{CONFIG_FILENAME} parse failed: top-level is not a table"

    ledger = _table(data, "ledger")
    store = _table(data, "store")
    github = _table(store, "github")
    cache = _table(data, "cache")
    chat = _table(data, "chat")
    authors = _table(chat, "authors")
    reminders = _table(data, "reminders")

    patterns = _valid_patterns(_as_str_list(chat.get("trigger_patterns")))
    times = [item for item in _as_str_list(reminders.get("times")) if parse_clock_time(item) is not None]
    rpc_urls = _as_str_list(chat.get("ens_rpc_urls"))

    cfg = TaskLedgerConfig(
        ledger=LedgerConfig(
            document_path=str(ledger.get("document_path") or LedgerConfig.document_path),
            timezone=str(ledger.get("timezone") or LedgerConfig.timezone),
            empty_message_policy=_as_choice(
                ledger.get("empty_message_policy"),
                choices=EMPTY_POLICIES,
                default=LedgerConfig.empty_message_policy,
            ),
            max_attempts=max(1, _as_int(ledger.get("max_attempts"), default=LedgerConfig.max_attempts)),
            history_path=str(ledger.get("history_path") or ""),
        ),
        store=StoreConfig(
            backend=_as_choice(store.get("backend"), choices=STORE_BACKENDS, default=StoreConfig.backend),
            root=str(store.get("root") or StoreConfig.root),
            timeout_s=max(0.5, _as_float(store.get("timeout_s"), default=StoreConfig.timeout_s)),
            github=GitHubStoreConfig(
                owner=str(github.get("owner") or ""),
                repo=str(github.get("repo") or ""),
                branch=str(github.get("branch") or GitHubStoreConfig.branch),
                token_env=str(github.get("token_env") or GitHubStoreConfig.token_env),
            ),
        ),
        cache=CacheConfig(
            ttl_seconds=max(0.0, _as_float(cache.get("ttl_seconds"), default=CacheConfig.ttl_seconds)),
        ),
        chat=ChatConfig(
            env=str(chat.get("env") or ChatConfig.env),
            trigger_patterns=tuple(patterns) if patterns else DEFAULT_TRIGGER_PATTERNS,
            ens_rpc_urls=tuple(rpc_urls) if rpc_urls else DEFAULT_ENS_RPC_URLS,
            authors={str(key).strip(): str(value).strip() for key, value in authors.items() if str(value).strip()},
            forward_conversation_id=str(chat.get("forward_conversation_id") or "").strip(),
        ),
        reminders=RemindersConfig(
            enabled=_as_bool(reminders.get("enabled"), default=RemindersConfig.enabled),
            times=tuple(times) if times else DEFAULT_REMINDER_TIMES,
            conversation_id=str(reminders.get("conversation_id") or ""),
        ),
    )
    return cfg, ""


def _valid_patterns(patterns: list[str]) -> list[str]:
    out: list[str] = []
    for pattern in patterns:
        try:
            re.compile(pattern)
        except re.error:
            continue
        out.append(pattern)
    return out


def explain_taskledger_toml(config: TaskLedgerConfig, *, path: Path | None = None) -> str:
    location = str(path) if path is not None else CONFIG_FILENAME
    ledger = config.ledger
    store = config.store
    lines = [
        f"taskledger.toml guide ({location})",
        "",
        "[ledger]",
        f"- document_path: shared task document, {{date}} = message day (current: {ledger.document_path})",
        f"- timezone: zone for change stamps and daily paths (current: {ledger.timezone})",
        f"- empty_message_policy: ignore | clear for task messages without bullets (current: {ledger.empty_message_policy})",
        f"- max_attempts: read-merge-write attempts before failing (current: {ledger.max_attempts})",
        f"- history_path: optional append-only change history (current: {ledger.history_path or '(disabled)'})",
        "",
        "[store]",
        f"- backend: local | github | memory (current: {store.backend})",
        f"- root: directory for the local backend (current: {store.root})",
        f"- timeout_s: per-call store timeout (current: {store.timeout_s})",
        "",
        "[store.github]",
        f"- owner/repo/branch: contents API target (current: {store.github.owner or '-'}/{store.github.repo or '-'}@{store.github.branch})",
        f"- token_env: environment variable holding the token (current: {store.github.token_env})",
        "",
        "[cache]",
        f"- ttl_seconds: lifetime of cached per-author lookups (current: {config.cache.ttl_seconds})",
        "",
        "[chat]",
        f"- env: XMTP environment (current: {config.chat.env})",
        f"- trigger_patterns: regexes marking a task message (current: {len(config.chat.trigger_patterns)} patterns)",
        f"- authors: sender -> display name overrides (current: {len(config.chat.authors)} entries)",
        f"- forward_conversation_id: re-post recorded task messages here (current: {config.chat.forward_conversation_id or '(disabled)'})",
        "",
        "[reminders]",
        f"- enabled: post periodic task summaries (current: {'true' if config.reminders.enabled else 'false'})",
        f"- times: local HH:MM slots (current: {', '.join(config.reminders.times)})",
        f"- conversation_id: where summaries are posted (current: {config.reminders.conversation_id or '(unset)'})",
    ]
    return "\n".join(lines)
