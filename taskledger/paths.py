from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .config import CONFIG_FILENAME


def find_workspace_root(start: Path | None = None) -> Path:
    """Best-effort workspace root discovery.

    The nearest directory holding a `taskledger.toml` wins. If there is none,
    the start directory is used so one-off commands still work.
    """

    start_dir = (start or Path.cwd()).resolve()
    for candidate in [start_dir, *start_dir.parents]:
        if (candidate / CONFIG_FILENAME).exists():
            return candidate
    return start_dir


def workspace_root() -> Path:
    return find_workspace_root()


def config_path(root: Path | None = None) -> Path:
    return (root or workspace_root()) / CONFIG_FILENAME


@dataclass(frozen=True)
class RuntimePaths:
    root: Path
    keys_json: Path
    locks_dir: Path
    logs_dir: Path
    state_dir: Path
    xmtp_db_dir: Path


def runtime_paths(root: Path | None = None) -> RuntimePaths:
    base = (root or workspace_root()) / ".taskledger"
    return RuntimePaths(
        root=base,
        keys_json=base / "keys.json",
        locks_dir=base / "locks",
        logs_dir=base / "logs",
        state_dir=base / "state",
        xmtp_db_dir=base / "xmtp-db",
    )


def ensure_runtime_dirs(paths: RuntimePaths | None = None) -> RuntimePaths:
    paths = paths or runtime_paths()
    for directory in (paths.root, paths.locks_dir, paths.logs_dir, paths.state_dir, paths.xmtp_db_dir):
        directory.mkdir(parents=True, exist_ok=True)
    return paths
