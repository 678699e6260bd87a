# context.py
from __future__ import annotations

import dataclasses
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .actions import ActionCache
from .model import MatrixCombination, RunDefaults, StepStatus
from .policy import SandboxPolicy

OutputCallback = Callable[[str, str], None]       # (line, "stdout" | "stderr")
StatusCallback = Callable[[str, StepStatus], None]


def _ignore_output(line: str, stream: str) -> None:
    return None


def _ignore_status(name: str, status: StepStatus) -> None:
    return None


@dataclass
class ExecutionContext:
    """
    Everything one job run needs. Owned by that run; never shared between
    jobs. Composite actions get a derived copy via `for_composite`.
    """
    work_dir: Path

    # ---- run identity (feeds GITHUB_* variables) ----
    workflow_name: str = "workflow"
    job_id: str = "job"
    repository: str = "local/repo"
    sha: str = ""
    ref: str = "refs/heads/main"
    actor: str = field(default_factory=lambda: os.environ.get("USER") or "local")
    run_id: str = field(default_factory=lambda: str(int(time.time())))
    run_number: str = "1"

    # ---- layered values ----
    workflow_env: Dict[str, str] = field(default_factory=dict)
    job_env: Dict[str, str] = field(default_factory=dict)
    defaults: RunDefaults = field(default_factory=RunDefaults)
    matrix: MatrixCombination = field(default_factory=dict)
    secrets: Dict[str, str] = field(default_factory=dict)
    step_outputs: Dict[str, Dict[str, str]] = field(default_factory=dict)
    inputs: Dict[str, Any] = field(default_factory=dict)
    needs: Dict[str, Dict[str, str]] = field(default_factory=dict)
    extra_path: List[str] = field(default_factory=list)

    # ---- sandbox ----
    policy: Optional[SandboxPolicy] = None
    permissive: bool = False
    log_destination: str | None = None

    # ---- callbacks / control ----
    on_output: OutputCallback = _ignore_output
    on_status: StatusCallback = _ignore_status
    post_job: List[Callable[[], None]] = field(default_factory=list)
    deadline: float | None = None                  # time.monotonic() based
    cancel: threading.Event | None = None
    action_cache: Optional[ActionCache] = None

    def remaining_seconds(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()

    def for_composite(self, inputs: Dict[str, Any], env: Dict[str, str] | None = None) -> "ExecutionContext":
        """
        Context for the nested steps of a composite action: same env layers,
        policy and callbacks, its own step-output map, `inputs` = the action's inputs.
        The calling step's `env` is layered over a copy of the job env; the
        PATH additions list is shared with the job.
        """
        return dataclasses.replace(
            self,
            job_env={**self.job_env, **(env or {})},
            step_outputs={},
            inputs=dict(inputs),
        )
