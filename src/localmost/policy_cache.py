# policy_cache.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from pydantic import BaseModel, Field, ValidationError

from . import config
from ._fs import write_text_atomic
from .policy import (
    LocalmostrcConfig,
    PolicyDiff,
    diff_configs,
    empty_config,
    format_policy_diff,
    parse_localmostrc,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Approval states for one repository
# ---------------------------------------------------------------------
#   no cached record                       -> approval (is_new_repo)
#   cached, diff non-empty                 -> approval (diffs listed)
#   cached, diff empty, not yet approved   -> approval
#   cached, diff empty, approved           -> run
#
# A repository without .localmostrc (or with an invalid one) is compared
# as an empty policy. Nothing here ever approves on its own: only the
# injected callback can, and without one the gate stays closed.
# ---------------------------------------------------------------------


class CachedPolicy(BaseModel):
    repository: str
    config: LocalmostrcConfig
    cached_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    approved_at_commit: Optional[str] = None
    approved: bool = False


class PolicyApprovalRequest(BaseModel):
    repository: str
    old_config: Optional[LocalmostrcConfig] = None
    new_config: LocalmostrcConfig
    diffs: List[PolicyDiff] = Field(default_factory=list)
    is_new_repo: bool = False


ApprovalCallback = Callable[[PolicyApprovalRequest], Awaitable[bool]]


def policy_file_name(repository: str) -> str:
    return repository.replace("/", "_") + ".json"


def format_approval_request(request: PolicyApprovalRequest) -> str:
    if request.is_new_repo:
        lines = [
            f"New repository: {request.repository}",
            "",
            "This repository wants to run workflows on your machine.",
            "Review the sandbox policy before approving.",
        ]
    elif request.diffs:
        lines = [
            f"Policy change detected: {request.repository}",
            "",
            format_policy_diff(request.diffs),
        ]
    else:
        lines = [
            f"Approval required: {request.repository}",
            "",
            "This repository's policy has not been approved yet.",
        ]
    return "\n".join(lines)


class PolicyCache:
    """
    Last-approved `.localmostrc` per repository, one JSON file each:

        <cache_dir>/<owner>_<repo>.json
    """

    def __init__(self, cache_dir: str | Path | None = None, approval_callback: ApprovalCallback | None = None):
        self.cache_dir = Path(cache_dir) if cache_dir is not None else config.policies_dir()
        self.approval_callback = approval_callback

    def _path(self, repository: str) -> Path:
        return self.cache_dir / policy_file_name(repository)

    # ---- storage ----
    def get(self, repository: str) -> Optional[CachedPolicy]:
        path = self._path(repository)
        if not path.exists():
            return None
        try:
            cached = CachedPolicy.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError, ValidationError) as e:
            log.warning("Failed to load cached policy for %s: %s", repository, e)
            return None
        if cached.repository != repository:
            # file names are a lossy encoding of the repository id
            log.warning("Cached policy %s belongs to %s, not %s", path.name, cached.repository, repository)
            return None
        return cached

    def store(
        self,
        repository: str,
        policy: LocalmostrcConfig,
        approved: bool = False,
        commit: str | None = None,
    ) -> CachedPolicy:
        cached = CachedPolicy(repository=repository, config=policy, approved=approved, approved_at_commit=commit)
        self._write(cached)
        log.debug("Cached policy for %s", repository)
        return cached

    def _write(self, cached: CachedPolicy) -> None:
        write_text_atomic(self._path(cached.repository), cached.model_dump_json(indent=2))

    def approve(self, repository: str, commit: str | None = None) -> bool:
        cached = self.get(repository)
        if cached is None:
            return False
        cached.approved = True
        cached.approved_at_commit = commit
        self._write(cached)
        log.info("Approved policy for %s", repository)
        return True

    def remove(self, repository: str) -> bool:
        path = self._path(repository)
        if not path.exists():
            return False
        path.unlink()
        log.debug("Removed cached policy for %s", repository)
        return True

    def list(self) -> List[CachedPolicy]:
        if not self.cache_dir.is_dir():
            return []
        out: List[CachedPolicy] = []
        for path in sorted(self.cache_dir.glob("*.json")):
            try:
                out.append(CachedPolicy.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValueError, ValidationError) as e:
                log.warning("Skipping unreadable cached policy %s: %s", path, e)
        return out

    # ---- gate ----
    def validate_for_job(self, repository: str, rc_content: str | None) -> Optional[PolicyApprovalRequest]:
        """None when the job may run as-is, else what needs approving."""
        cached = self.get(repository)
        old = cached.config if cached is not None else None

        if not rc_content:
            if cached is None:
                return PolicyApprovalRequest(repository=repository, new_config=empty_config(), is_new_repo=True)
            new = empty_config()
            return PolicyApprovalRequest(
                repository=repository,
                old_config=old,
                new_config=new,
                diffs=diff_configs(cached.config, new),
            )

        parsed = parse_localmostrc(rc_content)
        if not parsed.ok:
            first = parsed.errors[0] if parsed.errors else "unknown error"
            log.warning("Invalid .localmostrc for %s: %s", repository, first)
            return PolicyApprovalRequest(
                repository=repository,
                old_config=old,
                new_config=empty_config(),
                is_new_repo=cached is None,
            )

        new = parsed.unwrap()
        if cached is None:
            return PolicyApprovalRequest(repository=repository, new_config=new, is_new_repo=True)

        diffs = diff_configs(cached.config, new)
        if not diffs and cached.approved:
            return None
        return PolicyApprovalRequest(repository=repository, old_config=old, new_config=new, diffs=diffs)

    async def can_run_job(self, repository: str, rc_content: str | None, commit: str | None = None) -> bool:
        """
        Gate for running jobs of `repository`. Asks the approval callback
        when needed and persists the new policy only on approval.
        """
        request = self.validate_for_job(repository, rc_content)
        if request is None:
            return True

        log.info("%s", format_approval_request(request))

        if self.approval_callback is None:
            log.warning("No policy approval callback registered; refusing %s", repository)
            return False

        try:
            approved = bool(await self.approval_callback(request))
        except Exception:
            log.exception("Policy approval callback failed for %s", repository)
            return False

        if approved:
            self.store(repository, request.new_config, approved=True, commit=commit)
        else:
            log.info("Policy for %s was not approved", repository)
        return approved
