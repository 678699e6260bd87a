# actions.py
from __future__ import annotations

import json
import logging
import re
import shutil
import tarfile
import time
import urllib.error
import urllib.request
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import config
from ._fs import write_text_atomic
from ._yaml import YAMLError, load_yaml
from .errors import ActionError

log = logging.getLogger(__name__)

INDEX_FILE = "index.json"
DOWNLOAD_TIMEOUT = 60

_REF_RE = re.compile(r"^([^/]+)/([^@/]+)(?:/([^@]+))?@(.+)$")
_SHA_RE = re.compile(r"^[0-9a-f]{40}$")
_VERSION_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9.-]")


@dataclass(frozen=True)
class ActionRef:
    owner: str
    repo: str
    version: str
    path: str | None = None

    @property
    def cache_key(self) -> str:
        base = f"{self.owner}/{self.repo}@{self.version}"
        return f"{base}/{self.path}" if self.path else base

    def __str__(self) -> str:
        sub = f"/{self.path}" if self.path else ""
        return f"{self.owner}/{self.repo}{sub}@{self.version}"


def parse_action_ref(uses: str) -> Optional[ActionRef]:
    """
    "actions/cache/save@v4" -> ActionRef(owner, repo, version, path).

    Local ("./x", "../x") and docker:// references are not fetchable and
    give None, as does anything unparseable.
    """
    if uses.startswith(("./", "../", "docker://")):
        return None
    m = _REF_RE.match(uses)
    if not m:
        return None
    owner, repo, sub, version = m.groups()
    return ActionRef(owner=owner, repo=repo, version=version, path=sub)


# ----------------------------------------------------------------------
# Metadata
# ----------------------------------------------------------------------

@dataclass
class ActionMetadata:
    name: str
    using: str
    main: str | None = None
    steps: List[Any] = field(default_factory=list)
    inputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    description: str | None = None


def find_action_file(action_dir: str | Path) -> Optional[Path]:
    for name in ("action.yml", "action.yaml"):
        p = Path(action_dir) / name
        if p.is_file():
            return p
    return None


def read_action_metadata(action_dir: str | Path) -> ActionMetadata:
    """
    Load action.yml / action.yaml.

    Raises:
        ActionError: missing file, bad YAML, or no `runs.using`
    """
    path = find_action_file(action_dir)
    if path is None:
        raise ActionError(f"No action.yml found in {action_dir}")
    try:
        doc = load_yaml(path.read_text(encoding="utf-8"))
    except YAMLError as e:
        raise ActionError(f"Invalid action metadata in {path}: {e}") from e

    if not isinstance(doc, dict) or not isinstance(doc.get("runs"), dict):
        raise ActionError(f"Invalid action metadata in {path}: missing 'runs'")
    runs = doc["runs"]
    using = runs.get("using")
    if not using:
        raise ActionError(f"Invalid action metadata in {path}: missing 'runs.using'")

    return ActionMetadata(
        name=str(doc.get("name") or Path(action_dir).name),
        using=str(using),
        main=str(runs["main"]) if runs.get("main") else None,
        steps=list(runs.get("steps") or []),
        inputs={str(k): dict(v or {}) for k, v in (doc.get("inputs") or {}).items()},
        outputs={str(k): dict(v or {}) for k, v in (doc.get("outputs") or {}).items()},
        description=doc.get("description"),
    )


# ----------------------------------------------------------------------
# Local action cache
# ----------------------------------------------------------------------

@dataclass
class CachedAction:
    ref: ActionRef
    local_path: str
    fetched_at: float

    def to_json(self) -> Dict[str, Any]:
        return {"ref": asdict(self.ref), "local_path": self.local_path, "fetched_at": self.fetched_at}

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "CachedAction":
        return cls(
            ref=ActionRef(**data["ref"]),
            local_path=data["local_path"],
            fetched_at=float(data["fetched_at"]),
        )


def tarball_urls(ref: ActionRef) -> List[str]:
    """Tag (or commit) archive first, then the branch archive."""
    base = f"https://github.com/{ref.owner}/{ref.repo}/archive/refs"
    first = f"{base}/{ref.version}.tar.gz" if _SHA_RE.match(ref.version) else f"{base}/tags/{ref.version}.tar.gz"
    return [first, f"{base}/heads/{ref.version}.tar.gz"]


def _extract_stripped(fileobj, dest: Path) -> None:
    """Like `tar -xz --strip-components=1 -C dest`, refusing members outside dest."""
    dest = dest.resolve()
    with tarfile.open(fileobj=fileobj, mode="r|gz") as tar:
        for member in tar:
            _, _, rel = member.name.partition("/")
            if not rel:
                continue
            target = (dest / rel).resolve()
            if dest not in target.parents:
                raise ActionError(f"Archive member escapes destination: {member.name}")
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
            elif member.isfile():
                target.parent.mkdir(parents=True, exist_ok=True)
                src = tar.extractfile(member)
                if src is None:
                    continue
                with src, open(target, "wb") as out:
                    shutil.copyfileobj(src, out)
                target.chmod(member.mode & 0o777)


class ActionCache:
    """
    Downloaded actions:
      root/
        index.json
        <owner>/<repo>/<version>[/<path with / -> _>]/
    """

    def __init__(self, root: str | Path | None = None, max_age_days: float | None = None):
        self.root = Path(root) if root is not None else config.actions_dir()
        self.max_age_days = max_age_days if max_age_days is not None else config.action_cache_max_age_days()

    # ---- index ----
    def _index_path(self) -> Path:
        return self.root / INDEX_FILE

    def _load_index(self) -> Dict[str, CachedAction]:
        path = self._index_path()
        if not path.exists():
            return {}
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return {k: CachedAction.from_json(v) for k, v in raw.items()}
        except (OSError, ValueError, KeyError, TypeError) as e:
            log.warning("Ignoring unreadable action cache index %s: %s", path, e)
            return {}

    def _save_index(self, index: Dict[str, CachedAction]) -> None:
        write_text_atomic(self._index_path(), json.dumps({k: v.to_json() for k, v in index.items()}, indent=2))

    def action_dir(self, ref: ActionRef) -> Path:
        return self.root / ref.owner / ref.repo / _VERSION_UNSAFE_RE.sub("_", ref.version)

    # ---- fetch ----
    def _download(self, ref: ActionRef, dest: Path) -> None:
        last_error: Exception | None = None
        for url in tarball_urls(ref):
            if dest.exists():
                shutil.rmtree(dest)
            dest.mkdir(parents=True)
            log.debug("Downloading %s", url)
            try:
                with urllib.request.urlopen(url, timeout=DOWNLOAD_TIMEOUT) as resp:
                    _extract_stripped(resp, dest)
                return
            except (urllib.error.URLError, tarfile.TarError, OSError) as e:
                last_error = e
                log.debug("Download of %s failed: %s", url, e)
        raise ActionError(f"Failed to download {ref}: {last_error}")

    def get(self, ref: ActionRef) -> Optional[CachedAction]:
        """Cached entry if present on disk and younger than max_age_days."""
        cached = self._load_index().get(ref.cache_key)
        if cached is None or not Path(cached.local_path).exists():
            return None
        if time.time() - cached.fetched_at > self.max_age_days * 86400:
            return None
        return cached

    def fetch(self, ref: ActionRef) -> CachedAction:
        cached = self.get(ref)
        if cached is not None:
            return cached

        repo_dir = self.action_dir(ref)
        self._download(ref, repo_dir)

        local_path = repo_dir / ref.path if ref.path else repo_dir
        if find_action_file(local_path) is None:
            raise ActionError(f"No action.yml found in {ref}")

        cached = CachedAction(ref=ref, local_path=str(local_path), fetched_at=time.time())
        index = self._load_index()
        index[ref.cache_key] = cached
        self._save_index(index)
        log.info("Fetched action %s", ref)
        return cached

    # ---- maintenance ----
    def list(self) -> List[CachedAction]:
        return [c for c in self._load_index().values() if Path(c.local_path).exists()]

    def clean(self, max_age_days: float = 30) -> tuple[int, int]:
        """Drop entries older than max_age_days or missing on disk. Returns (removed, kept)."""
        index = self._load_index()
        now = time.time()
        removed = kept = 0
        for key in list(index):
            cached = index[key]
            path = Path(cached.local_path)
            if now - cached.fetched_at > max_age_days * 86400 or not path.exists():
                if path.exists():
                    shutil.rmtree(self.action_dir(cached.ref), ignore_errors=True)
                del index[key]
                removed += 1
            else:
                kept += 1
        self._save_index(index)
        return removed, kept
