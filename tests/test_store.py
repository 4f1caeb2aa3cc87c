from __future__ import annotations

import asyncio
import base64
from http.client import IncompleteRead
import json
from pathlib import Path
from tempfile import TemporaryDirectory
import time
import unittest
from unittest.mock import patch
from urllib.error import HTTPError, URLError

from taskledger.cache import TTLCache
from taskledger.chat import ChatRouter, InboundMessage
from taskledger.document import parse_document
from taskledger.reconcile import ReconcileFailed, TaskLedger
from taskledger.store import (
    GitHubContentStore,
    LocalFileStore,
    MemoryStore,
    StoreConflict,
    StoredDocument,
    StoreGateway,
    StoreUnavailable,
    build_store,
    content_version,
    normalize_path,
)
from tests.helpers import FakeClock, RecordingSleep, tokyo


DOC = "# 📅 2024-01-05 のタスク\n\n## alice\n\n**現在のタスク:**\n・a\n\n---\n\n"


class _FakeResponse:
    def __init__(self, payload: dict | bytes) -> None:
        self._body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, *_exc) -> None:
        return None

    def read(self) -> bytes:
        return self._body


class _SlowStore:
    def read(self, path: str) -> StoredDocument | None:
        time.sleep(0.3)
        return None

    def write(self, path: str, content: str, expected_version: str | None) -> str:
        return "v"


class TestStores(unittest.TestCase):
    def test_normalize_path(self) -> None:
        self.assertEqual("tasks/2024-01-05-tasks.md", normalize_path("/tasks//./2024-01-05-tasks.md"))
        with self.assertRaises(ValueError):
            normalize_path("../secrets.md")
        with self.assertRaises(ValueError):
            normalize_path("")

    def test_memory_store_compare_and_swap(self) -> None:
        store = MemoryStore()
        self.assertIsNone(store.read("a.md"))
        v1 = store.write("a.md", "one", None)
        self.assertEqual(content_version("one"), v1)
        with self.assertRaises(StoreConflict):
            store.write("a.md", "two", None)
        v2 = store.write("a.md", "two", v1)
        with self.assertRaises(StoreConflict) as ctx:
            store.write("a.md", "three", v1)
        self.assertEqual(v2, ctx.exception.actual)
        self.assertEqual("two", store.content("a.md"))

    def test_local_file_store_round_trip_and_conflict(self) -> None:
        with TemporaryDirectory() as tmp:
            root = Path(tmp)
            store = LocalFileStore(root)
            self.assertIsNone(store.read("tasks/day.md"))
            version = store.write("tasks/day.md", DOC, None)
            self.assertEqual(DOC, (root / "tasks" / "day.md").read_text(encoding="utf-8"))
            stored = store.read("tasks/day.md")
            self.assertEqual(StoredDocument(content=DOC, version=version), stored)
            with self.assertRaises(StoreConflict):
                store.write("tasks/day.md", "stale", None)
            with self.assertRaises(StoreConflict):
                store.write("tasks/day.md", "stale", "not-the-version")
            self.assertEqual(DOC, (root / "tasks" / "day.md").read_text(encoding="utf-8"))
            self.assertEqual([], list((root / "tasks").glob("*.tmp")))

    def test_build_store_selects_backend(self) -> None:
        with TemporaryDirectory() as tmp:
            self.assertIsInstance(build_store("memory", root=Path(tmp)), MemoryStore)
            self.assertIsInstance(build_store("local", root=Path(tmp)), LocalFileStore)
            self.assertIsInstance(
                build_store("github", root=Path(tmp), github_owner="o", github_repo="r"),
                GitHubContentStore,
            )
            with self.assertRaises(ValueError):
                build_store("github", root=Path(tmp))
            with self.assertRaises(ValueError):
                build_store("ftp", root=Path(tmp))


class TestGitHubContentStore(unittest.TestCase):
    def setUp(self) -> None:
        self.store = GitHubContentStore("octo", "notes", branch="main", token="t0ken")

    def test_read_decodes_content_and_uses_sha_as_version(self) -> None:
        encoded = base64.encodebytes(DOC.encode("utf-8")).decode("ascii")
        payload = {"type": "file", "sha": "abc123", "content": encoded}
        with patch("taskledger.store.urlopen", return_value=_FakeResponse(payload)) as fake:
            stored = self.store.read("tasks/day.md")
        self.assertEqual(StoredDocument(content=DOC, version="abc123"), stored)
        request = fake.call_args.args[0]
        self.assertIn("/repos/octo/notes/contents/tasks/day.md?ref=main", request.full_url)
        self.assertEqual("Bearer t0ken", request.get_header("Authorization"))

    def test_read_missing_file_returns_none(self) -> None:
        error = HTTPError("https://api.github.com/x", 404, "Not Found", hdrs=None, fp=None)
        with patch("taskledger.store.urlopen", side_effect=error):
            self.assertIsNone(self.store.read("tasks/day.md"))

    def test_write_sends_sha_and_returns_new_sha(self) -> None:
        response = _FakeResponse({"content": {"sha": "def456"}})
        with patch("taskledger.store.urlopen", return_value=response) as fake:
            version = self.store.write("tasks/day.md", DOC, "abc123")
        self.assertEqual("def456", version)
        request = fake.call_args.args[0]
        self.assertEqual("PUT", request.get_method())
        body = json.loads(request.data.decode("utf-8"))
        self.assertEqual("abc123", body["sha"])
        self.assertEqual("main", body["branch"])
        self.assertEqual(DOC, base64.b64decode(body["content"]).decode("utf-8"))

    def test_stale_sha_maps_to_conflict(self) -> None:
        for code in (409, 422):
            with self.subTest(code=code):
                error = HTTPError("https://api.github.com/x", code, "Conflict", hdrs=None, fp=None)
                with patch("taskledger.store.urlopen", side_effect=error):
                    with self.assertRaises(StoreConflict):
                        self.store.write("tasks/day.md", DOC, "stale")

    def test_transport_errors_map_to_unavailable(self) -> None:
        with patch("taskledger.store.urlopen", side_effect=URLError("connection refused")):
            with self.assertRaises(StoreUnavailable):
                self.store.read("tasks/day.md")
        error = HTTPError("https://api.github.com/x", 502, "Bad Gateway", hdrs=None, fp=None)
        with patch("taskledger.store.urlopen", side_effect=error):
            with self.assertRaises(StoreUnavailable):
                self.store.write("tasks/day.md", DOC, "abc123")

    def test_truncated_responses_map_to_unavailable(self) -> None:
        with patch("taskledger.store.urlopen", side_effect=IncompleteRead(b"")):
            with self.assertRaises(StoreUnavailable):
                self.store.read("tasks/day.md")
            with self.assertRaises(StoreUnavailable):
                self.store.write("tasks/day.md", DOC, "abc123")

    def test_truncated_responses_exhaust_retries_and_reach_the_sender(self) -> None:
        sleep = RecordingSleep()
        ledger = TaskLedger(StoreGateway(self.store), sleep=sleep, max_attempts=2)
        router = ChatRouter(ledger)
        message = InboundMessage(sender="aoki", text="[タスク]\n・資料作成", timestamp=tokyo(2024, 1, 5))

        with patch("taskledger.store.urlopen", side_effect=IncompleteRead(b"")) as fake:
            with self.assertRaises(ReconcileFailed) as ctx:
                asyncio.run(ledger.record_task_message("aoki", "・資料作成", tokyo(2024, 1, 5)))
            reply = asyncio.run(router.handle(message))

        self.assertEqual("unavailable", ctx.exception.reason)
        self.assertEqual(4, fake.call_count)
        self.assertTrue(reply.startswith("⚠️ aokiさんのタスク更新に失敗しました"))

    def test_large_file_is_fetched_raw_instead_of_read_as_empty(self) -> None:
        listing = _FakeResponse({"type": "file", "sha": "abc", "content": "", "encoding": "none"})
        raw = _FakeResponse(DOC.encode("utf-8"))
        with patch("taskledger.store.urlopen", side_effect=[listing, raw]) as fake:
            stored = self.store.read("tasks/day.md")
        self.assertEqual(StoredDocument(content=DOC, version="abc"), stored)
        self.assertEqual("application/vnd.github.raw", fake.call_args_list[1].args[0].get_header("Accept"))

    def test_unknown_content_encoding_is_unavailable(self) -> None:
        payload = {"type": "file", "sha": "abc", "content": "", "encoding": "gzip"}
        with patch("taskledger.store.urlopen", return_value=_FakeResponse(payload)):
            with self.assertRaises(StoreUnavailable):
                self.store.read("tasks/day.md")


class TestStoreGateway(unittest.TestCase):
    def test_snapshot_of_missing_document_has_no_version(self) -> None:
        gateway = StoreGateway(MemoryStore())
        snapshot = asyncio.run(gateway.read_snapshot("tasks/day.md"))
        self.assertFalse(snapshot.exists)
        self.assertTrue(snapshot.document.is_empty)

    def test_write_then_read_snapshot(self) -> None:
        store = MemoryStore()
        gateway = StoreGateway(store)

        async def scenario():
            version = await gateway.write_document("tasks/day.md", parse_document(DOC), None)
            snapshot = await gateway.read_snapshot("tasks/day.md")
            return version, snapshot

        version, snapshot = asyncio.run(scenario())
        self.assertEqual(version, snapshot.version)
        self.assertEqual(["alice"], snapshot.document.authors())
        self.assertEqual(DOC, store.content("tasks/day.md"))

    def test_cached_section_serves_from_cache_until_invalidated(self) -> None:
        store = MemoryStore({"tasks/day.md": DOC})
        clock = FakeClock()
        gateway = StoreGateway(store, cache=TTLCache(30, clock=clock))

        async def scenario():
            first = await gateway.cached_section("tasks/day.md", "alice")
            second = await gateway.cached_section("tasks/day.md", "alice")
            missing = await gateway.cached_section("tasks/day.md", "carol")
            reads_before = store.reads
            missing_again = await gateway.cached_section("tasks/day.md", "carol")
            cached_none_reads = store.reads - reads_before
            gateway.invalidate("tasks/day.md", "alice")
            third = await gateway.cached_section("tasks/day.md", "alice")
            return first, second, missing, missing_again, cached_none_reads, third

        first, second, missing, missing_again, cached_none_reads, third = asyncio.run(scenario())
        self.assertEqual(("a",), first.tasks)
        self.assertIs(first, second)
        self.assertIsNone(missing)
        self.assertIsNone(missing_again)
        self.assertEqual(0, cached_none_reads)
        self.assertEqual(("a",), third.tasks)
        self.assertEqual(3, store.reads)

    def test_slow_store_times_out_as_unavailable(self) -> None:
        gateway = StoreGateway(_SlowStore(), timeout_s=0.05)
        with self.assertRaises(StoreUnavailable):
            asyncio.run(gateway.read_snapshot("tasks/day.md"))


if __name__ == "__main__":
    unittest.main()
