from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
import json
import os
from pathlib import Path
import random
import secrets
import time
from typing import Any, Callable

from .chat import ChatRouter, InboundMessage, format_forward_message


STREAM_RECONNECT_BASE_S = 1.5
STREAM_RECONNECT_MAX_S = 45.0
STREAM_HINT_COOLDOWN_S = 90.0
SEEN_MESSAGE_CACHE_MAX = 4096

LogFn = Callable[[str, str], None]


def generate_private_key() -> str:
    return "0x" + secrets.token_hex(32)


def generate_db_key() -> str:
    return "0x" + secrets.token_hex(32)


def load_or_create_keys(path: Path) -> dict[str, str]:
    """Read the bot's XMTP wallet/db keys, creating them on first run (mode 600)."""

    if path.exists():
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        if not isinstance(data, dict):
            raise RuntimeError(f"{path} is not a JSON object")
        for key in ("wallet_key", "db_encryption_key"):
            if not isinstance(data.get(key), str) or not data[key]:
                raise RuntimeError(f"Missing {key} in {path}")
        return {"wallet_key": data["wallet_key"], "db_encryption_key": data["db_encryption_key"]}

    data = {
        "wallet_key": generate_private_key(),
        "db_encryption_key": generate_db_key(),
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(data, handle, indent=2, sort_keys=True, ensure_ascii=True)
        handle.write("\n")
    try:
        os.chmod(path, 0o600)
    except OSError:
        pass
    return data


def hint_for_xmtp_error(error: Exception) -> str | None:
    lowered = str(error).lower()
    if "grpc-status header missing" in lowered or "identityapi" in lowered:
        return (
            "Tip: check outbound HTTPS/HTTP2 access to "
            "grpc.production.xmtp.network:443 and "
            "message-history.production.ephemera.network, "
            "or override XMTP_API_URL/XMTP_HISTORY_SYNC_URL."
        )
    if "file is not a database" in lowered or "sqlcipher" in lowered:
        return (
            "Tip: the local XMTP database appears corrupted or was created with a "
            "different encryption key. Remove .taskledger/xmtp-db to recreate it."
        )
    return None


def summarize_error(error: Exception) -> str:
    lines = str(error).strip().splitlines()
    text = lines[0].strip() if lines else ""
    if not text:
        return error.__class__.__name__
    if len(text) > 220:
        return f"{text[:217]}..."
    return text


async def create_client(env: str, db_root: Path, wallet_key: str, db_encryption_key: str):
    from xmtp import Client
    from xmtp.signers import create_signer
    from xmtp.types import ClientOptions

    db_root.mkdir(parents=True, exist_ok=True)

    def db_path_for(inbox_id: str) -> str:
        return str(db_root / f"xmtp-{env}-{inbox_id}.db3")

    signer = create_signer(wallet_key)
    options = ClientOptions(
        env=env,
        api_url=os.environ.get("XMTP_API_URL"),
        history_sync_url=os.environ.get("XMTP_HISTORY_SYNC_URL"),
        gateway_host=os.environ.get("XMTP_GATEWAY_HOST"),
        disable_device_sync=True,
        db_path=db_path_for,
        db_encryption_key=db_encryption_key,
    )
    return await Client.create(signer, options)


def stream_reconnect_delay(attempt: int) -> float:
    base = min(STREAM_RECONNECT_MAX_S, STREAM_RECONNECT_BASE_S * (2 ** max(0, attempt)))
    jitter = random.uniform(0.0, base * 0.2)
    return base + jitter


def _as_bytes(value: Any) -> bytes | None:
    if isinstance(value, bytes):
        return value
    if isinstance(value, bytearray):
        return bytes(value)
    if isinstance(value, str) and value:
        with contextlib.suppress(ValueError):
            return bytes.fromhex(value)
    return None


@dataclass
class SeenMessages:
    """Bounded set of processed message ids; survives stream reconnects."""

    limit: int = SEEN_MESSAGE_CACHE_MAX
    _ids: set[bytes] = field(default_factory=set)
    _order: deque[bytes] = field(default_factory=deque)

    def mark(self, item) -> bool:
        message_id = _as_bytes(getattr(item, "id", None))
        if message_id is None:
            return True
        if message_id in self._ids:
            return False
        self._ids.add(message_id)
        self._order.append(message_id)
        while len(self._order) > self.limit:
            self._ids.discard(self._order.popleft())
        return True

    def __len__(self) -> int:
        return len(self._ids)


def inbound_from_item(item, *, own_inbox_id: str = "") -> InboundMessage | None:
    sender = getattr(item, "sender_inbox_id", None)
    if not isinstance(sender, str) or not sender:
        return None
    if own_inbox_id and sender == own_inbox_id:
        return None
    content = getattr(item, "content", None)
    if not isinstance(content, str) or not content.strip():
        return None
    convo_id = _as_bytes(getattr(item, "conversation_id", None))
    if convo_id is None:
        return None
    message_id = _as_bytes(getattr(item, "id", None))
    sent_at = getattr(item, "sent_at", None)
    return InboundMessage(
        sender=sender,
        text=content.strip(),
        timestamp=sent_at if isinstance(sent_at, datetime) else None,
        conversation_id=convo_id.hex(),
        message_id=message_id.hex() if message_id is not None else "",
    )


class MessageDaemon:
    """Streams XMTP messages and hands each one to its own asyncio task.

    Tasks for different messages run concurrently; the ledger's
    compare-and-swap writes keep the shared document consistent. Recorded
    task messages are re-posted to `forward_conversation_id` when it is set.
    """

    def __init__(
        self,
        client,
        router: ChatRouter,
        *,
        log: LogFn | None = None,
        forward_conversation_id: str = "",
    ) -> None:
        self.client = client
        self.router = router
        self.forward_conversation_id = forward_conversation_id.strip().lower()
        self.log = log or (lambda level, message: None)
        self.seen = SeenMessages()
        self.handled = 0
        self._tasks: set[asyncio.Task] = set()
        self._hint_last_printed: dict[str, float] = {}

    @property
    def own_inbox_id(self) -> str:
        value = getattr(self.client, "inbox_id", "")
        return value if isinstance(value, str) else ""

    def dispatch(self, item) -> asyncio.Task | None:
        if not self.seen.mark(item):
            return None
        message = inbound_from_item(item, own_inbox_id=self.own_inbox_id)
        if message is None:
            return None
        task = asyncio.create_task(self.handle(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def handle(self, message: InboundMessage) -> None:
        try:
            outcome = await self.router.route(message)
            self.handled += 1
            if outcome.reply:
                await self.send(message.conversation_id, outcome.reply)
            if outcome.forwardable:
                await self.forward(message, outcome.author)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            self.log("error", f"message handling failed ({message.message_id or 'no-id'}): {summarize_error(exc)}")

    async def forward(self, message: InboundMessage, author: str) -> bool:
        target = self.forward_conversation_id
        if not target or target == message.conversation_id.lower():
            return False
        return await self.send(target, format_forward_message(author, message.text))

    async def send(self, conversation_id: str, text: str) -> bool:
        convo_id = _as_bytes(conversation_id)
        if convo_id is None:
            self.log("warn", f"cannot send to invalid conversation id: {conversation_id!r}")
            return False
        convo = await self.client.conversations.get_conversation_by_id(convo_id)
        if convo is None:
            self.log("warn", f"conversation not found: {conversation_id}")
            return False
        await convo.send(text)
        return True

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run(self, *, max_reconnects: int | None = None) -> None:
        reconnect_attempt = 0
        reconnects = 0
        try:
            while True:
                stream = self.client.conversations.stream_all_messages()
                try:
                    async for item in stream:
                        if isinstance(item, Exception):
                            self.log("warn", f"XMTP stream warning: {summarize_error(item)}")
                            self._maybe_hint(item)
                            continue
                        reconnect_attempt = 0
                        self.dispatch(item)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # noqa: BLE001
                    self.log("error", f"XMTP stream crashed: {summarize_error(exc)}")
                    self._maybe_hint(exc)
                finally:
                    close = getattr(stream, "close", None)
                    if close is not None:
                        with contextlib.suppress(Exception):
                            await close()

                if max_reconnects is not None and reconnects >= max_reconnects:
                    return
                reconnects += 1
                delay = stream_reconnect_delay(reconnect_attempt)
                reconnect_attempt += 1
                self.log("warn", f"XMTP stream reconnecting in {delay:.1f}s...")
                await asyncio.sleep(delay)
        finally:
            await self.drain()

    def _maybe_hint(self, error: Exception) -> None:
        hint = hint_for_xmtp_error(error)
        if not hint:
            return
        now = time.monotonic()
        last = self._hint_last_printed.get(hint)
        if last is None or now - last > STREAM_HINT_COOLDOWN_S:
            self._hint_last_printed[hint] = now
            self.log("warn", hint)
