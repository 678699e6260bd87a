# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

MatrixValue = Union[str, int, float, bool]
MatrixCombination = Dict[str, MatrixValue]

StepStatus = Literal["pending", "running", "success", "failure", "skipped"]
JobStatus = Literal["success", "failure", "skipped"]


@dataclass(frozen=True)
class RunDefaults:
    """`defaults.run` at workflow or job level."""
    shell: str | None = None
    working_directory: str | None = None


@dataclass(frozen=True)
class Step:
    """
    A single step inside a job.

    Exactly one of `run` / `uses` is set (enforced by the parser).
    """
    run: str | None = None
    uses: str | None = None
    id: str | None = None
    name: str | None = None
    if_: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    with_: Dict[str, str] = field(default_factory=dict)
    shell: str | None = None
    working_directory: str | None = None
    continue_on_error: bool = False
    timeout_minutes: float | None = None

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.uses:
            return self.uses
        if self.run:
            first = self.run.strip().splitlines()[0] if self.run.strip() else ""
            return f"Run {first}".strip()
        return self.id or "step"


@dataclass(frozen=True)
class Strategy:
    """Only the matrix dimensions take part in fan-out; include/exclude are not supported."""
    matrix: Dict[str, List[MatrixValue]] = field(default_factory=dict)
    fail_fast: bool = True
    max_parallel: int | None = None


@dataclass
class Job:
    """
    A workflow job: either a regular job (runs-on + steps) or a
    reusable-workflow call (uses + with).
    """
    id: str
    name: str | None = None
    runs_on: Union[str, List[str], None] = None
    steps: List[Step] = field(default_factory=list)
    needs: List[str] = field(default_factory=list)
    if_: str | None = None
    strategy: Optional[Strategy] = None
    env: Dict[str, str] = field(default_factory=dict)
    outputs: Dict[str, str] = field(default_factory=dict)
    defaults: RunDefaults = field(default_factory=RunDefaults)
    timeout_minutes: float | None = None
    continue_on_error: bool = False

    # ---- reusable-workflow call ----
    uses: str | None = None
    with_: Dict[str, Any] = field(default_factory=dict)
    secrets: Union[str, Dict[str, str], None] = None

    @property
    def is_reusable_call(self) -> bool:
        return self.uses is not None

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass
class Workflow:
    name: str
    jobs: Dict[str, Job]
    on: Any = None
    env: Dict[str, str] = field(default_factory=dict)
    defaults: RunDefaults = field(default_factory=RunDefaults)
    path: Path | None = None
    job_order: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class WorkflowInput:
    type: str = "string"
    default: Any = None
    required: bool = False
    description: str | None = None


@dataclass(frozen=True)
class WorkflowOutput:
    value: str
    description: str | None = None


@dataclass
class ReusableWorkflow:
    """A workflow callable through `on.workflow_call`."""
    workflow: Workflow
    inputs: Dict[str, WorkflowInput] = field(default_factory=dict)
    outputs: Dict[str, WorkflowOutput] = field(default_factory=dict)


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

@dataclass
class StepResult:
    name: str
    status: StepStatus
    outputs: Dict[str, str] = field(default_factory=dict)
    error: str | None = None
    exit_code: int | None = None
    duration: float = 0.0


@dataclass
class JobResult:
    job_id: str
    name: str
    status: JobStatus
    steps: List[StepResult] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)
    matrix: MatrixCombination = field(default_factory=dict)
    reason: str | None = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status != "failure"
