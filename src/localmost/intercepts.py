# intercepts.py
"""Built-in actions replaced by local equivalents instead of being fetched."""

from __future__ import annotations

import enum
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Dict, Optional

from .cache import CacheStore, split_paths
from .context import ExecutionContext
from .git import git_info, update_submodules
from .model import StepResult

log = logging.getLogger(__name__)

ARTIFACTS_DIR = ".localmost-artifacts"


class InterceptedAction(enum.Enum):
    CHECKOUT = "actions/checkout"
    CACHE = "actions/cache"
    CACHE_RESTORE = "actions/cache/restore"
    CACHE_SAVE = "actions/cache/save"
    UPLOAD_ARTIFACT = "actions/upload-artifact"
    DOWNLOAD_ARTIFACT = "actions/download-artifact"
    SETUP_TOOLCHAIN = "setup"


# `uses` prefix (before "@") -> kind
_PREFIXES: Dict[str, InterceptedAction] = {
    "actions/checkout": InterceptedAction.CHECKOUT,
    "actions/cache": InterceptedAction.CACHE,
    "actions/cache/restore": InterceptedAction.CACHE_RESTORE,
    "actions/cache/save": InterceptedAction.CACHE_SAVE,
    "actions/upload-artifact": InterceptedAction.UPLOAD_ARTIFACT,
    "actions/download-artifact": InterceptedAction.DOWNLOAD_ARTIFACT,
    "actions/setup-node": InterceptedAction.SETUP_TOOLCHAIN,
    "actions/setup-python": InterceptedAction.SETUP_TOOLCHAIN,
    "actions/setup-go": InterceptedAction.SETUP_TOOLCHAIN,
}

SETUP_TOOLS = {
    "actions/setup-node": "node",
    "actions/setup-python": "python3",
    "actions/setup-go": "go",
}


def classify_intercept(uses: str) -> Optional[InterceptedAction]:
    name, at, _version = uses.partition("@")
    if not at:
        return None
    return _PREFIXES.get(name)


def _ok(name: str, outputs: Dict[str, str] | None = None) -> StepResult:
    return StepResult(name=name, status="success", outputs=outputs or {})


# ----------------------------------------------------------------------
# checkout
# ----------------------------------------------------------------------

def _checkout(with_: Dict[str, str], ctx: ExecutionContext, name: str) -> StepResult:
    repository = with_.get("repository")
    if repository and repository != ctx.repository:
        ctx.on_output(f"Note: Checking out {repository} would require network access", "stdout")
        return _ok(name)

    info = git_info(ctx.work_dir)
    ctx.sha, ctx.ref = info.sha, info.ref
    ctx.on_output("Using local working tree (checkout intercepted)", "stdout")

    if with_.get("submodules", "").lower() in ("true", "recursive"):
        ctx.on_output("Updating submodules...", "stdout")
        try:
            update_submodules(ctx.work_dir)
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            ctx.on_output(f"Warning: Failed to update submodules: {e}", "stderr")

    return _ok(name)


# ----------------------------------------------------------------------
# cache
# ----------------------------------------------------------------------

def _cache_restore(with_: Dict[str, str], ctx: ExecutionContext, name: str, save_after: bool) -> StepResult:
    key = with_.get("key", "")
    raw_paths = with_.get("path", "")
    if not key or not raw_paths:
        ctx.on_output("Cache: missing key or path", "stdout")
        return _ok(name, {"cache-hit": "false"})

    paths = split_paths(raw_paths)
    restore_keys = split_paths(with_.get("restore-keys", ""))
    ctx.on_output(f"Cache (local): key={key}, path={', '.join(paths)}", "stdout")

    store = CacheStore()
    try:
        hit = store.restore(key, restore_keys, ctx.work_dir)
    except (OSError, ValueError) as e:
        # cache problems never fail the step
        log.warning("cache restore for %s failed: %s", key, e)
        ctx.on_output(f"Cache restore error: {e}", "stderr")
        hit = None

    outputs = {"cache-hit": "false", "cache-primary-key": key}
    if hit is not None and hit.matched_key:
        outputs["cache-matched-key"] = hit.matched_key
        outputs["cache-hit"] = "true" if hit.hit else "false"
        if hit.hit:
            ctx.on_output(f"Cache hit: {key}", "stdout")
        else:
            ctx.on_output(f"Cache restored from key prefix ({hit.reason})", "stdout")
        for p in hit.restored:
            ctx.on_output(f"  Restored: {p}", "stdout")
    else:
        ctx.on_output("Cache miss", "stdout")

    if save_after and not (hit is not None and hit.hit):
        ctx.post_job.append(lambda: _save(key, paths, ctx))

    return _ok(name, outputs)


def _save(key: str, paths: list[str], ctx: ExecutionContext) -> None:
    ctx.on_output(f"Cache save (local): key={key}", "stdout")
    try:
        saved = CacheStore().save(key, paths, ctx.work_dir)
    except OSError as e:
        log.warning("cache save for %s failed: %s", key, e)
        ctx.on_output(f"Cache save error: {e}", "stderr")
        return
    for p in paths:
        ctx.on_output(f"  Saved: {p}" if p in saved else f"  Skipped (not found): {p}", "stdout")


def _cache_save(with_: Dict[str, str], ctx: ExecutionContext, name: str) -> StepResult:
    key = with_.get("key", "")
    raw_paths = with_.get("path", "")
    if not key or not raw_paths:
        ctx.on_output("Cache save: missing key or path", "stdout")
        return _ok(name)
    _save(key, split_paths(raw_paths), ctx)
    return _ok(name)


# ----------------------------------------------------------------------
# artifacts
# ----------------------------------------------------------------------

def _upload_artifact(with_: Dict[str, str], ctx: ExecutionContext, name: str) -> StepResult:
    artifact = with_.get("name") or "artifact"
    dest_root = ctx.work_dir / ARTIFACTS_DIR / artifact
    dest_root.mkdir(parents=True, exist_ok=True)

    for raw in split_paths(with_.get("path", "")):
        src = Path(raw).expanduser()
        src = src if src.is_absolute() else ctx.work_dir / src
        if not src.exists():
            ctx.on_output(f"  Skipped (not found): {raw}", "stdout")
            continue
        if src.is_dir():
            shutil.copytree(src, dest_root / src.name, dirs_exist_ok=True)
        else:
            shutil.copy2(src, dest_root / src.name)
        ctx.on_output(f"  Stored: {raw}", "stdout")

    ctx.on_output(f"Artifact {artifact} saved to: {dest_root}", "stdout")
    return _ok(name)


def _download_artifact(with_: Dict[str, str], ctx: ExecutionContext, name: str) -> StepResult:
    artifact = with_.get("name") or "artifact"
    src = ctx.work_dir / ARTIFACTS_DIR / artifact
    if not src.is_dir():
        ctx.on_output(f"Artifact download stubbed: {artifact} (no local copy)", "stdout")
        return _ok(name)

    target = Path(with_.get("path") or ".")
    target = target if target.is_absolute() else ctx.work_dir / target
    shutil.copytree(src, target, dirs_exist_ok=True)
    ctx.on_output(f"Artifact {artifact} restored to: {target}", "stdout")
    return _ok(name, {"download-path": str(target)})


# ----------------------------------------------------------------------
# setup-*
# ----------------------------------------------------------------------

def _setup_toolchain(uses: str, with_: Dict[str, str], ctx: ExecutionContext, name: str) -> StepResult:
    action = uses.partition("@")[0]
    tool = SETUP_TOOLS.get(action, action.rsplit("-", 1)[-1])
    location = shutil.which(tool)
    wanted = next((v for k, v in with_.items() if k.endswith("-version") and v), None)

    if location is None:
        ctx.on_output(f"Warning: {tool} not found on PATH ({action} intercepted)", "stderr")
    else:
        suffix = f", requested {wanted}" if wanted else ""
        ctx.on_output(f"Using host {tool} at {location} ({action} intercepted{suffix})", "stdout")
    return _ok(name)


def run_intercepted(
    kind: InterceptedAction,
    uses: str,
    with_: Dict[str, str],
    ctx: ExecutionContext,
    name: str,
) -> StepResult:
    match kind:
        case InterceptedAction.CHECKOUT:
            return _checkout(with_, ctx, name)
        case InterceptedAction.CACHE:
            return _cache_restore(with_, ctx, name, save_after=True)
        case InterceptedAction.CACHE_RESTORE:
            return _cache_restore(with_, ctx, name, save_after=False)
        case InterceptedAction.CACHE_SAVE:
            return _cache_save(with_, ctx, name)
        case InterceptedAction.UPLOAD_ARTIFACT:
            return _upload_artifact(with_, ctx, name)
        case InterceptedAction.DOWNLOAD_ARTIFACT:
            return _download_artifact(with_, ctx, name)
        case InterceptedAction.SETUP_TOOLCHAIN:
            return _setup_toolchain(uses, with_, ctx, name)
