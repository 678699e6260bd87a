# cache.py
from __future__ import annotations

import json
import logging
import os
import posixpath
import re
import tarfile
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from . import config

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Storage behind the intercepted actions/cache step.
#
#   root/
#     <sanitized key>.tar.gz          one member tree per cached path
#     <sanitized key>.manifest.json   key, paths, arc names, created time
#
# restore(key, restore_keys):
#   exact key            -> hit=True
#   first restore-key prefix that matches a stored key (newest wins)
#                        -> hit=False, matched_key set (partial restore)
#   nothing              -> hit=False
#
# Symlinks inside a cached directory are restored as links when they point
# inside that directory.
# ---------------------------------------------------------------------

MAX_KEY_LENGTH = 200
_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9_-]")


def sanitize_key(key: str) -> str:
    return _UNSAFE_RE.sub("_", key)[:MAX_KEY_LENGTH]


def split_paths(raw: str) -> List[str]:
    """actions/cache `path` input: one path per line, blanks ignored."""
    return [p.strip() for p in raw.splitlines() if p.strip()]


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    matched_key: str | None = None
    reason: str = ""
    restored: List[str] = field(default_factory=list)


def _resolve(path: str, work_dir: Path) -> Path:
    p = Path(os.path.expanduser(path))
    return p if p.is_absolute() else (work_dir / p)


def _iter_tree(root: Path) -> Iterable[Path]:
    # deterministic traversal; directories included so empty ones survive
    yield from sorted(root.rglob("*"))


def _safe_join(base: Path, rel: str) -> Path:
    dest = (base / rel).resolve()
    if dest != base.resolve() and base.resolve() not in dest.parents:
        raise ValueError(f"cache member escapes its destination: {rel}")
    return dest


def _link_target(rel: str, linkname: str) -> Optional[str]:
    """`linkname` when the link at `rel` stays inside the cached tree, else None."""
    if posixpath.isabs(linkname):
        return None
    joined = posixpath.normpath(posixpath.join(posixpath.dirname(rel), linkname))
    if joined == ".." or joined.startswith("../"):
        return None
    return linkname


def _restore_link(member: tarfile.TarInfo, target: Path, rel: str) -> None:
    link = _link_target(rel, member.linkname)
    if link is None:
        log.warning("skipping cached symlink %s -> %s: points outside %s", rel, member.linkname, target)
        return
    parent_rel = posixpath.dirname(rel)
    parent = _safe_join(target, parent_rel) if parent_rel else target
    parent.mkdir(parents=True, exist_ok=True)
    dest = parent / posixpath.basename(rel)
    if dest.is_symlink() or dest.is_file():
        dest.unlink()
    elif dest.exists():
        log.warning("skipping cached symlink %s: a directory is in the way", rel)
        return
    os.symlink(link, dest)


class CacheStore:
    """File-based store for workflow caches (see module header for layout)."""

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root) if root is not None else config.workflow_cache_dir()
        self.root.mkdir(parents=True, exist_ok=True)

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{sanitize_key(key)}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{sanitize_key(key)}.manifest.json"

    def has(self, key: str) -> bool:
        return self.artifact_path(key).exists() and self.manifest_path(key).exists()

    def _manifests(self) -> List[Dict]:
        out = []
        for man in self.root.glob("*.manifest.json"):
            try:
                data = json.loads(man.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                continue
            data["_stem"] = man.name[: -len(".manifest.json")]
            out.append(data)
        return out

    def find_prefix(self, prefix: str) -> Optional[str]:
        """Newest stored key whose sanitized name starts with the sanitized prefix."""
        want = sanitize_key(prefix)
        matches = [m for m in self._manifests() if m["_stem"].startswith(want)]
        if not matches:
            return None
        matches.sort(key=lambda m: m.get("created_at_unix", 0), reverse=True)
        return matches[0].get("key", matches[0]["_stem"])

    # ---- save ----
    def save(self, key: str, paths: List[str], work_dir: str | Path) -> List[str]:
        """
        Archive every existing path under `key`. Returns the paths saved.
        Missing paths are skipped. Symlinks inside a cached directory are
        stored as links.
        """
        wd = Path(work_dir)
        saved: List[str] = []
        entries: Dict[str, str] = {}

        art_fd, art_tmp = tempfile.mkstemp(dir=self.root, prefix=".save-", suffix=".tar.gz")
        man_tmp: str | None = None
        try:
            with os.fdopen(art_fd, "wb") as fh, tarfile.open(fileobj=fh, mode="w:gz") as tar:
                for i, raw in enumerate(paths):
                    src = _resolve(raw, wd)
                    if not src.exists():
                        continue
                    arc_prefix = f"{i}_{sanitize_key(raw)}"
                    entries[arc_prefix] = raw
                    saved.append(raw)
                    if src.is_file():
                        tar.add(str(src.resolve()), arcname=f"{arc_prefix}/__file__", recursive=False)
                        continue
                    tar.add(str(src), arcname=arc_prefix, recursive=False)
                    for f in _iter_tree(src):
                        rel = f.relative_to(src).as_posix()
                        tar.add(str(f), arcname=f"{arc_prefix}/{rel}", recursive=False)

            manifest = {
                "key": key,
                "entries": entries,
                "created_at_unix": time.time(),
            }
            man_fd, man_tmp = tempfile.mkstemp(dir=self.root, prefix=".save-", suffix=".json")
            with os.fdopen(man_fd, "w", encoding="utf-8") as fh:
                json.dump(manifest, fh, indent=2)

            # archive first: a manifest never points at a missing archive
            os.replace(art_tmp, self.artifact_path(key))
            os.replace(man_tmp, self.manifest_path(key))
        finally:
            Path(art_tmp).unlink(missing_ok=True)
            if man_tmp is not None:
                Path(man_tmp).unlink(missing_ok=True)
        return saved

    # ---- restore ----
    def _extract(self, key: str, work_dir: Path) -> List[str]:
        manifest = json.loads(self.manifest_path(key).read_text(encoding="utf-8"))
        entries: Dict[str, str] = manifest.get("entries", {})
        restored: List[str] = []

        with tarfile.open(str(self.artifact_path(key)), mode="r:gz") as tar:
            for member in tar.getmembers():
                arc_prefix, _, rel = member.name.partition("/")
                if arc_prefix not in entries:
                    continue
                target = _resolve(entries[arc_prefix], work_dir)

                if not rel:
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                if rel == "__file__":
                    dest = target
                elif member.issym():
                    _restore_link(member, target, rel)
                    continue
                else:
                    dest = _safe_join(target, rel)

                if member.isdir():
                    dest.mkdir(parents=True, exist_ok=True)
                    continue
                if not member.isfile():
                    continue
                dest.parent.mkdir(parents=True, exist_ok=True)
                src = tar.extractfile(member)
                if src is None:
                    continue
                with src, open(dest, "wb") as out:
                    out.write(src.read())
                os.chmod(dest, member.mode & 0o777)

        for raw in entries.values():
            restored.append(raw)
        return restored

    def restore(
        self,
        key: str,
        restore_keys: List[str],
        work_dir: str | Path,
    ) -> CacheHit:
        wd = Path(work_dir)

        if self.has(key):
            restored = self._extract(key, wd)
            return CacheHit(hit=True, key=key, matched_key=key, reason="exact key", restored=restored)

        for prefix in restore_keys:
            matched = self.find_prefix(prefix)
            if matched is not None and self.has(matched):
                restored = self._extract(matched, wd)
                return CacheHit(
                    hit=False,
                    key=key,
                    matched_key=matched,
                    reason=f"restore key {prefix!r}",
                    restored=restored,
                )

        return CacheHit(hit=False, key=key, reason="cache miss")

    def prune(self, keep: int = 50) -> int:
        """Remove all but the `keep` newest entries. Returns number removed."""
        manifests = sorted(self._manifests(), key=lambda m: m.get("created_at_unix", 0), reverse=True)
        removed = 0
        for m in manifests[keep:]:
            stem = m["_stem"]
            (self.root / f"{stem}.tar.gz").unlink(missing_ok=True)
            (self.root / f"{stem}.manifest.json").unlink(missing_ok=True)
            removed += 1
        return removed
