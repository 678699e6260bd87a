# runner.py
from __future__ import annotations

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from . import config
from .actions import ActionCache
from .dag import dependency_levels
from .context import ExecutionContext, OutputCallback, StatusCallback, _ignore_output, _ignore_status
from .errors import LocalmostError, WorkflowParseError
from .executor import extract_job_outputs, extract_workflow_outputs, run_steps
from .expressions import evaluate_condition, expand, runs_always
from .matrix import find_matching_combination, format_combination, generate_matrix_combinations, parse_matrix_spec
from .model import Job, JobResult, JobStatus, MatrixCombination, StepResult, Workflow
from .parser import (
    is_reusable_workflow_job,
    parse_reusable_workflow,
    resolve_reusable_workflow_inputs,
    resolve_reusable_workflow_path,
)
from .policy import SandboxPolicy
from .process import sandbox_available

log = logging.getLogger(__name__)

# local tree ---> workspace copy ---> jobs in order ---> post-job hooks

JobStartCallback = Callable[[Job, MatrixCombination], None]
JobEndCallback = Callable[[JobResult], None]
NoteCallback = Callable[[str], None]


def _ignore(*_args) -> None:
    return None


@dataclass
class RunOptions:
    """
    What to run and how. Everything the CLI decides before the first job
    starts ends up here.
    """
    work_dir: Path

    job: str | None = None                # only this job id
    matrix: str | None = None             # "os=macos,node=18"
    full_matrix: bool = False
    dry_run: bool = False
    gate_on_needs: bool = True            # skip dependents of failed jobs

    repository: str = "local/repo"
    sha: str = ""
    ref: str = "refs/heads/main"
    secrets: Dict[str, str] = field(default_factory=dict)

    policy: Optional[SandboxPolicy] = None
    permissive: bool = False
    log_destination: str | None = None
    action_cache: Optional[ActionCache] = None
    cancel: threading.Event | None = None

    on_output: OutputCallback = _ignore_output
    on_status: StatusCallback = _ignore_status
    on_job_start: JobStartCallback = _ignore
    on_job_end: JobEndCallback = _ignore
    on_note: NoteCallback = _ignore


@dataclass
class WorkflowRunResult:
    workflow: str
    jobs: List[JobResult] = field(default_factory=list)
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return all(j.ok for j in self.jobs)

    @property
    def passed(self) -> int:
        return sum(1 for j in self.jobs if j.status == "success")


def format_duration(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs}s"


# ----------------------------------------------------------------------
# Context construction
# ----------------------------------------------------------------------

def _job_context(
    workflow: Workflow,
    job: Job,
    matrix: MatrixCombination,
    options: RunOptions,
    needs: Dict[str, Dict[str, str]],
    inputs: Dict | None = None,
) -> ExecutionContext:
    ctx = ExecutionContext(
        work_dir=options.work_dir,
        workflow_name=workflow.name,
        job_id=job.id,
        repository=options.repository,
        sha=options.sha,
        ref=options.ref,
        workflow_env=dict(workflow.env),
        job_env=dict(job.env),
        defaults=job.defaults if (job.defaults.shell or job.defaults.working_directory) else workflow.defaults,
        matrix=dict(matrix),
        secrets=dict(options.secrets),
        inputs=dict(inputs or {}),
        needs={k: dict(v) for k, v in needs.items()},
        policy=options.policy,
        permissive=options.permissive,
        log_destination=options.log_destination,
        on_output=options.on_output,
        on_status=options.on_status,
        cancel=options.cancel,
        action_cache=options.action_cache,
    )
    if job.timeout_minutes is not None:
        ctx.deadline = time.monotonic() + job.timeout_minutes * 60
    return ctx


def _dry_run_steps(job: Job) -> List[StepResult]:
    return [StepResult(name=s.display_name, status="pending") for s in job.steps]


def _run_post_job(ctx: ExecutionContext) -> None:
    for hook in ctx.post_job:
        try:
            hook()
        except (LocalmostError, OSError) as e:
            log.warning("post-job hook for %s failed: %s", ctx.job_id, e)
            ctx.on_output(f"Post-job step failed: {e}", "stderr")


# ----------------------------------------------------------------------
# Jobs
# ----------------------------------------------------------------------

def run_job(
    workflow: Workflow,
    job: Job,
    matrix: MatrixCombination,
    options: RunOptions,
    needs: Dict[str, Dict[str, str]] | None = None,
    inputs: Dict | None = None,
) -> JobResult:
    """
    Run one regular job (one matrix combination) in a fresh context.

    The job fails when a step without continue-on-error fails; steps after
    it are not run. Post-job hooks (deferred cache saves) run only when the
    job succeeded.
    """
    started = time.monotonic()
    if options.dry_run:
        return JobResult(job_id=job.id, name=job.display_name, status="skipped",
                         steps=_dry_run_steps(job), matrix=dict(matrix), reason="dry run")

    ctx = _job_context(workflow, job, matrix, options, needs or {}, inputs)
    steps, ok = run_steps(job.steps, ctx, job)

    if ok:
        _run_post_job(ctx)

    reason = None
    if not ok:
        if ctx.cancelled():
            reason = "cancelled"
        else:
            failed = next((s for s in reversed(steps) if s.status == "failure"), None)
            reason = failed.error if failed is not None else None

    return JobResult(
        job_id=job.id,
        name=job.display_name,
        status="success" if ok else "failure",
        steps=steps,
        outputs=extract_job_outputs(job, ctx.step_outputs),
        matrix=dict(matrix),
        reason=reason,
        duration=time.monotonic() - started,
    )


def run_reusable_workflow_job(
    workflow: Workflow,
    job: Job,
    options: RunOptions,
    needs: Dict[str, Dict[str, str]] | None = None,
) -> JobResult:
    """
    Run a `jobs.<id>.uses: ./.github/workflows/x.yml` call job.

    Each callee job runs in the callee's order with `inputs` resolved from
    the caller's `with` and a `needs` map of the callee's finished jobs.
    Remote references and nested calls are reported skips. The first
    failing callee job stops the call.
    """
    started = time.monotonic()
    uses = job.uses or ""
    caller_path = workflow.path or (options.work_dir / ".github" / "workflows" / "workflow.yml")

    path = resolve_reusable_workflow_path(uses, caller_path)
    if path is None:
        options.on_note(f"Skipping: Remote reusable workflows not supported ({uses})")
        return JobResult(job_id=job.id, name=job.display_name, status="skipped",
                         reason=f"Remote reusable workflows are not supported: {uses}")

    try:
        reusable = parse_reusable_workflow(path)
        # `with` may reference needs.* / matrix.* of the caller
        caller_ctx = _job_context(workflow, job, {}, options, needs or {})
        with_ = {k: expand(v, {}, caller_ctx) if isinstance(v, str) else v for k, v in job.with_.items()}
        inputs = resolve_reusable_workflow_inputs(with_, reusable.inputs, reusable.workflow.name)
    except WorkflowParseError as e:
        options.on_note(f"Error loading workflow: {e}")
        return JobResult(job_id=job.id, name=job.display_name, status="failure", reason=str(e),
                         duration=time.monotonic() - started)

    options.on_note(f"Loading: {path.name}")
    if inputs:
        options.on_note("Inputs: " + ", ".join(f"{k}={v}" for k, v in inputs.items()))

    callee = reusable.workflow
    callee_env_workflow = dataclasses.replace(callee, env={**workflow.env, **callee.env})

    steps: List[StepResult] = []
    called_outputs: Dict[str, Dict[str, str]] = {}
    status = "success"
    reason = None

    for called_id in callee.job_order:
        called = callee.jobs[called_id]
        if is_reusable_workflow_job(called):
            options.on_note(f"Skipping nested reusable workflow: {called_id}")
            continue

        options.on_job_start(called, {})
        result = run_job(
            callee_env_workflow,
            called,
            {},
            options,
            needs={**(needs or {}), **called_outputs},
            inputs=inputs,
        )
        options.on_job_end(result)
        steps.extend(result.steps)
        called_outputs[called_id] = result.outputs

        if result.status == "failure":
            status, reason = "failure", f"{called_id}: {result.reason}"
            break

    if options.dry_run and status == "success":
        status, reason = "skipped", "dry run"

    return JobResult(
        job_id=job.id,
        name=job.display_name,
        status=status,
        steps=steps,
        outputs=extract_workflow_outputs(reusable, called_outputs),
        reason=reason,
        duration=time.monotonic() - started,
    )


# ----------------------------------------------------------------------
# Workflow
# ----------------------------------------------------------------------

def select_combinations(job: Job, options: RunOptions) -> List[MatrixCombination]:
    """
    First combination by default, every combination with full_matrix, or
    the one matching `options.matrix`.

    Raises:
        LocalmostError: no combination matches the requested spec
    """
    combinations = generate_matrix_combinations(job.strategy)
    if options.full_matrix:
        return combinations
    if options.matrix:
        match = find_matching_combination(combinations, parse_matrix_spec(options.matrix))
        if match is None:
            raise LocalmostError(f"No matching matrix combination for: {options.matrix}")
        return [match]
    return combinations[:1]


def _blocked_by(job: Job, finished: Dict[str, JobStatus]) -> Optional[str]:
    for dep in job.needs:
        status = finished.get(dep)
        if status == "failure":
            return f"dependency '{dep}' failed"
        if status == "skipped":
            return f"dependency '{dep}' was skipped"
    return None


def _gate_status(result: JobResult, job: Job) -> JobStatus:
    if result.status == "failure" and job.continue_on_error:
        return "success"
    if result.reason == "dry run":
        return "success"
    return result.status


def _record(finished: Dict[str, JobStatus], result: JobResult, job: Job) -> None:
    # one failing matrix leg fails the job for its dependents
    if finished.get(job.id) != "failure":
        finished[job.id] = _gate_status(result, job)


def run_workflow(workflow: Workflow, options: RunOptions) -> WorkflowRunResult:
    """
    Run jobs one after another in `workflow.job_order`.

    With `gate_on_needs` a job whose dependency failed (or was skipped) is
    reported as skipped instead of run, unless its `if:` calls always().
    A failing job never stops unrelated jobs. Cancellation stops the run
    before the next job.
    """
    started = time.monotonic()
    run = WorkflowRunResult(workflow=workflow.name)

    if options.job is not None and options.job not in workflow.jobs:
        raise LocalmostError(f"Job not found: {options.job}")
    job_ids = [options.job] if options.job else list(workflow.job_order)

    confined = options.policy is not None or options.permissive
    if confined and not options.dry_run and not sandbox_available():
        log.warning(
            "sandbox-exec not available (%s); steps run without confinement",
            config.sandbox_exec() or "disabled",
        )

    if options.dry_run and options.job is None:
        # jobs of one stage do not depend on each other
        for n, level in enumerate(dependency_levels(workflow.jobs), start=1):
            options.on_note(f"Stage {n}: {', '.join(level)}")

    finished: Dict[str, JobStatus] = {}
    needs_outputs: Dict[str, Dict[str, str]] = {}

    for job_id in job_ids:
        if options.cancel is not None and options.cancel.is_set():
            options.on_note("Run cancelled")
            break

        job = workflow.jobs[job_id]

        gated = options.gate_on_needs and not runs_always(job.if_)
        blocked = _blocked_by(job, finished) if gated else None
        if blocked is None and not evaluate_condition(job.if_):
            blocked = "condition evaluated to false"
        if blocked is not None:
            result = JobResult(job_id=job_id, name=job.display_name, status="skipped", reason=blocked)
            options.on_job_start(job, {})
            options.on_job_end(result)
            run.jobs.append(result)
            finished[job_id] = "skipped"
            continue

        if job.is_reusable_call:
            options.on_job_start(job, {})
            result = run_reusable_workflow_job(workflow, job, options, needs_outputs)
            options.on_job_end(result)
            run.jobs.append(result)
            _record(finished, result, job)
            needs_outputs[job_id] = dict(result.outputs)
            continue

        for matrix in select_combinations(job, options):
            if options.cancel is not None and options.cancel.is_set():
                break
            if matrix:
                log.debug("job %s matrix %s", job_id, format_combination(matrix))
            options.on_job_start(job, matrix)
            result = run_job(workflow, job, matrix, options, needs_outputs)
            options.on_job_end(result)
            run.jobs.append(result)
            _record(finished, result, job)
            # later legs overwrite earlier ones, as on the hosted runner
            needs_outputs[job_id] = {**needs_outputs.get(job_id, {}), **result.outputs}
            if result.status == "failure" and job.strategy is not None and job.strategy.fail_fast:
                break

    run.duration = time.monotonic() - started
    return run
