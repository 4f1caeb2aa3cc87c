from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass
import hashlib
from http.client import HTTPException
import json
import os
from pathlib import Path, PurePosixPath
import threading
from typing import Any, Mapping, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from .cache import TTLCache, is_missing
from .document import Document, Section, find_section, parse_document, render_document
from .locks import file_lock


DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_STORE_TIMEOUT_S = 10.0
GITHUB_USER_AGENT = "taskledger"
GITHUB_JSON_MEDIA_TYPE = "application/vnd.github+json"
GITHUB_RAW_MEDIA_TYPE = "application/vnd.github.raw"


class StoreError(RuntimeError):
    pass


class StoreConflict(StoreError):
    """The expected version token no longer matches the stored document."""

    def __init__(self, path: str, expected: str | None, actual: str | None = None) -> None:
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(f"version conflict on {path} (expected {expected or 'absent'}, found {actual or 'unknown'})")


class StoreUnavailable(StoreError):
    """Transport-level failure: network error, timeout, or unexpected store reply."""


@dataclass(frozen=True)
class StoredDocument:
    content: str
    version: str


class ContentStore(Protocol):
    def read(self, path: str) -> StoredDocument | None:
        ...

    def write(self, path: str, content: str, expected_version: str | None) -> str:
        ...


def content_version(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def normalize_path(path: str) -> str:
    parts = [part for part in PurePosixPath(str(path or "").replace("\\", "/")).parts if part not in {"/", "."}]
    if not parts:
        raise ValueError("document path cannot be empty")
    if ".." in parts:
        raise ValueError(f"document path may not leave the store root: {path}")
    return "/".join(parts)


class MemoryStore:
    """Process-local content store with compare-and-swap writes."""

    def __init__(self, documents: Mapping[str, str] | None = None) -> None:
        self._lock = threading.Lock()
        self._items: dict[str, StoredDocument] = {}
        self.reads = 0
        self.writes = 0
        for path, content in (documents or {}).items():
            self._items[normalize_path(path)] = StoredDocument(content=content, version=content_version(content))

    def read(self, path: str) -> StoredDocument | None:
        key = normalize_path(path)
        with self._lock:
            self.reads += 1
            return self._items.get(key)

    def write(self, path: str, content: str, expected_version: str | None) -> str:
        key = normalize_path(path)
        with self._lock:
            current = self._items.get(key)
            actual = current.version if current is not None else None
            if actual != expected_version:
                raise StoreConflict(key, expected_version, actual)
            version = content_version(content)
            self._items[key] = StoredDocument(content=content, version=version)
            self.writes += 1
            return version

    def content(self, path: str) -> str | None:
        stored = self.read(path)
        return stored.content if stored is not None else None


class LocalFileStore:
    """Directory-backed store; a per-document flock makes each write a CAS."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _file(self, path: str) -> Path:
        return self.root / normalize_path(path)

    def _lock_file(self, path: str) -> Path:
        digest = hashlib.sha1(normalize_path(path).encode("utf-8")).hexdigest()[:16]
        return self.root / ".taskledger-locks" / f"{digest}.lock"

    def read(self, path: str) -> StoredDocument | None:
        target = self._file(path)
        try:
            content = target.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StoreUnavailable(f"failed reading {target}: {exc}") from exc
        return StoredDocument(content=content, version=content_version(content))

    def write(self, path: str, content: str, expected_version: str | None) -> str:
        target = self._file(path)
        try:
            with file_lock(self._lock_file(path)):
                current = self.read(path)
                actual = current.version if current is not None else None
                if actual != expected_version:
                    raise StoreConflict(normalize_path(path), expected_version, actual)
                target.parent.mkdir(parents=True, exist_ok=True)
                tmp = target.with_name(f".{target.name}.{os.getpid()}.tmp")
                tmp.write_text(content, encoding="utf-8")
                os.replace(tmp, target)
        except StoreError:
            raise
        except (OSError, RuntimeError) as exc:
            raise StoreUnavailable(f"failed writing {target}: {exc}") from exc
        return content_version(content)


class GitHubContentStore:
    """GitHub contents API; the blob sha is the version token."""

    def __init__(
        self,
        owner: str,
        repo: str,
        *,
        branch: str = "main",
        token: str = "",
        api_url: str = DEFAULT_GITHUB_API_URL,
        timeout_s: float = DEFAULT_STORE_TIMEOUT_S,
        commit_message: str = "taskledger: update {path}",
    ) -> None:
        if not owner or not repo:
            raise ValueError("GitHub store needs both owner and repo")
        self.owner = owner
        self.repo = repo
        self.branch = branch or "main"
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout_s = max(1.0, float(timeout_s))
        self.commit_message = commit_message

    def _url(self, path: str) -> str:
        return f"{self.api_url}/repos/{quote(self.owner)}/{quote(self.repo)}/contents/{quote(normalize_path(path))}"

    def _request(
        self,
        method: str,
        url: str,
        payload: dict[str, Any] | None = None,
        *,
        accept: str = GITHUB_JSON_MEDIA_TYPE,
    ) -> Any:
        headers = {
            "Accept": accept,
            "User-Agent": GITHUB_USER_AGENT,
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        data = None
        if payload is not None:
            data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
            headers["Content-Type"] = "application/json"
        request = Request(url, data=data, headers=headers, method=method)
        try:
            with urlopen(request, timeout=self.timeout_s) as response:
                body = response.read()
        except HTTPError:
            raise
        except (URLError, HTTPException, TimeoutError, OSError) as exc:
            raise StoreUnavailable(f"GitHub {method} {url} failed: {exc!r}") from exc
        if accept == GITHUB_RAW_MEDIA_TYPE:
            try:
                return body.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise StoreUnavailable(f"GitHub {method} {url} returned non-UTF-8 content") from exc
        try:
            return json.loads(body.decode("utf-8")) if body else {}
        except ValueError as exc:
            raise StoreUnavailable(f"GitHub {method} {url} returned invalid JSON") from exc

    def read(self, path: str) -> StoredDocument | None:
        url = f"{self._url(path)}?ref={quote(self.branch)}"
        try:
            data = self._request("GET", url)
        except HTTPError as exc:
            if exc.code == 404:
                return None
            raise StoreUnavailable(f"GitHub read {path} failed: {exc.code} {exc.reason}") from exc
        if not isinstance(data, dict) or data.get("type") != "file":
            raise StoreUnavailable(f"GitHub path is not a file: {path}")
        sha = str(data.get("sha") or "")
        if not sha:
            raise StoreUnavailable(f"GitHub read {path} returned no sha")
        encoding = str(data.get("encoding") or "base64")
        if encoding == "none":
            # Files over 1 MB come back without inline content.
            return StoredDocument(content=self._read_raw(url), version=sha)
        if encoding != "base64":
            raise StoreUnavailable(f"GitHub read {path} returned unsupported encoding {encoding!r}")
        raw = str(data.get("content") or "")
        try:
            content = base64.b64decode(raw).decode("utf-8") if raw else ""
        except ValueError as exc:
            raise StoreUnavailable(f"GitHub read {path} returned undecodable content") from exc
        return StoredDocument(content=content, version=sha)

    def _read_raw(self, url: str) -> str:
        try:
            return self._request("GET", url, accept=GITHUB_RAW_MEDIA_TYPE)
        except HTTPError as exc:
            raise StoreUnavailable(f"GitHub raw read failed: {exc.code} {exc.reason}") from exc

    def write(self, path: str, content: str, expected_version: str | None) -> str:
        clean = normalize_path(path)
        payload: dict[str, Any] = {
            "message": self.commit_message.format(path=clean),
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": self.branch,
        }
        if expected_version is not None:
            payload["sha"] = expected_version
        try:
            data = self._request("PUT", self._url(clean), payload)
        except HTTPError as exc:
            # 409: sha mismatch. 422: sha missing for an existing file (or stale).
            if exc.code in {409, 422}:
                raise StoreConflict(clean, expected_version) from exc
            if exc.code == 404 and expected_version is not None:
                raise StoreConflict(clean, expected_version) from exc
            raise StoreUnavailable(f"GitHub write {clean} failed: {exc.code} {exc.reason}") from exc
        content_info = data.get("content") if isinstance(data, dict) else None
        sha = str(content_info.get("sha") or "") if isinstance(content_info, dict) else ""
        if not sha:
            raise StoreUnavailable(f"GitHub write {clean} returned no sha")
        return sha


@dataclass(frozen=True)
class Snapshot:
    path: str
    document: Document
    version: str | None

    @property
    def exists(self) -> bool:
        return self.version is not None


class StoreGateway:
    """Async front for a content store.

    Store calls run in a worker thread and are bounded by `timeout_s`; a
    timeout surfaces as `StoreUnavailable`. Per-author sections are cached for
    read-only lookups. Snapshots used for writes always come from a fresh read.
    """

    def __init__(
        self,
        store: ContentStore,
        *,
        cache: TTLCache | None = None,
        timeout_s: float = DEFAULT_STORE_TIMEOUT_S,
    ) -> None:
        self.store = store
        self.cache = cache if cache is not None else TTLCache(ttl_seconds=0)
        self.timeout_s = max(0.01, float(timeout_s))

    async def read_snapshot(self, path: str) -> Snapshot:
        clean = normalize_path(path)
        stored = await self._call(self.store.read, clean)
        if stored is None:
            return Snapshot(path=clean, document=Document(), version=None)
        document = parse_document(stored.content)
        self._remember(clean, document)
        return Snapshot(path=clean, document=document, version=stored.version)

    async def write_document(self, path: str, document: Document, expected_version: str | None) -> str:
        return await self.write_text(path, render_document(document), expected_version)

    async def read_text(self, path: str) -> StoredDocument | None:
        return await self._call(self.store.read, normalize_path(path))

    async def write_text(self, path: str, content: str, expected_version: str | None) -> str:
        clean = normalize_path(path)
        version = await self._call(self.store.write, clean, content, expected_version)
        if not isinstance(version, str) or not version:
            raise StoreUnavailable(f"store accepted {clean} but returned no version token")
        return version

    async def cached_section(self, path: str, author: str) -> Section | None:
        clean = normalize_path(path)
        cached = self.cache.lookup((clean, author))
        if not is_missing(cached):
            return cached
        snapshot = await self.read_snapshot(clean)
        section = find_section(snapshot.document, author)
        self.cache.put((clean, author), section)
        return section

    def invalidate(self, path: str, author: str) -> None:
        self.cache.invalidate((normalize_path(path), author))

    def _remember(self, path: str, document: Document) -> None:
        for author in set(document.authors()):
            self.cache.put((path, author), find_section(document, author))

    async def _call(self, fn, *args):
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.timeout_s)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable(f"store call timed out after {self.timeout_s:.1f}s") from exc


def build_store(
    backend: str,
    *,
    root: Path,
    github_owner: str = "",
    github_repo: str = "",
    github_branch: str = "main",
    github_token: str = "",
    timeout_s: float = DEFAULT_STORE_TIMEOUT_S,
) -> ContentStore:
    kind = (backend or "local").strip().lower()
    if kind == "memory":
        return MemoryStore()
    if kind == "local":
        return LocalFileStore(root)
    if kind == "github":
        return GitHubContentStore(
            github_owner,
            github_repo,
            branch=github_branch,
            token=github_token,
            timeout_s=timeout_s,
        )
    raise ValueError(f"unknown store backend: {backend}")
