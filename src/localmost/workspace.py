# workspace.py
from __future__ import annotations

import logging
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List

from . import config

log = logging.getLogger(__name__)

DEFAULT_EXCLUDES = (
    "node_modules",
    ".localmost",
    ".localmost-artifacts",
    "*.log",
    ".DS_Store",
    "Thumbs.db",
)


@dataclass(frozen=True)
class Workspace:
    id: str
    path: Path
    source: Path


def _workspace_id() -> str:
    return f"ws-{time.strftime('%Y%m%d-%H%M%S')}-{os.urandom(3).hex()}"


def create_workspace(source_dir: str | Path, root: str | Path | None = None, excludes=DEFAULT_EXCLUDES) -> Workspace:
    """Copy the source tree into a fresh directory under `root` (app workspaces dir by default)."""
    source = Path(source_dir).resolve()
    base = Path(root) if root is not None else config.workspaces_dir()
    base.mkdir(parents=True, exist_ok=True)

    ws_id = _workspace_id()
    dest = base / ws_id
    shutil.copytree(source, dest, symlinks=True, ignore=shutil.ignore_patterns(*excludes))
    log.debug("workspace %s created from %s", dest, source)
    return Workspace(id=ws_id, path=dest, source=source)


def list_workspaces(root: str | Path | None = None) -> List[Path]:
    """Newest first."""
    base = Path(root) if root is not None else config.workspaces_dir()
    if not base.is_dir():
        return []
    dirs = [p for p in base.iterdir() if p.is_dir() and p.name.startswith("ws-")]
    return sorted(dirs, key=lambda p: p.stat().st_mtime, reverse=True)


def cleanup_workspaces(keep: int | None = None, root: str | Path | None = None) -> int:
    """Remove all but the `keep` newest snapshots. Returns number removed."""
    keep = config.workspace_keep() if keep is None else keep
    removed = 0
    for path in list_workspaces(root)[keep:]:
        shutil.rmtree(path, ignore_errors=True)
        removed += 1
    return removed
