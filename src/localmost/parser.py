# parser.py
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from . import git
from ._yaml import YAMLError, load_yaml
from .dag import compute_job_order
from .errors import MissingInputError, ValidationError, WorkflowParseError
from .model import (
    Job,
    ReusableWorkflow,
    RunDefaults,
    Step,
    Strategy,
    Workflow,
    WorkflowInput,
    WorkflowOutput,
)
from .validation import stringify, to_json_array, to_json_object

log = logging.getLogger(__name__)

WORKFLOW_DIR = Path(".github") / "workflows"
DEFAULT_WORKFLOW_NAMES = ("ci", "build", "test", "main")

_SECRET_REF_RE = re.compile(r"\$\{\{\s*secrets\.(\w+)\s*\}\}")


# ----------------------------------------------------------------------
# Field helpers
# ----------------------------------------------------------------------

def _str_map(obj: Any, location: str) -> Dict[str, str]:
    if obj is None:
        return {}
    return {str(k): stringify(v) for k, v in to_json_object(obj, location).items()}


def _bool(obj: Any) -> bool:
    # `continue-on-error: ${{ ... }}` is not evaluated; only literal true counts
    return obj is True or (isinstance(obj, str) and obj.strip().lower() == "true")


def _minutes(obj: Any, location: str) -> float | None:
    if obj is None:
        return None
    if isinstance(obj, bool) or not isinstance(obj, (int, float)):
        raise ValidationError(f"{location} must be a number")
    return float(obj)


def _condition(obj: Any) -> str | None:
    if obj is None:
        return None
    return stringify(obj)


def _parse_defaults(obj: Any, location: str) -> RunDefaults:
    if obj is None:
        return RunDefaults()
    run = to_json_object(obj, location).get("run")
    if run is None:
        return RunDefaults()
    run = to_json_object(run, f"{location}.run")
    shell = run.get("shell")
    wd = run.get("working-directory")
    return RunDefaults(
        shell=str(shell) if shell is not None else None,
        working_directory=str(wd) if wd is not None else None,
    )


def _parse_strategy(obj: Any, location: str) -> Strategy | None:
    if obj is None:
        return None
    raw = to_json_object(obj, location)
    matrix_raw = raw.get("matrix")
    matrix: Dict[str, list] = {}

    if isinstance(matrix_raw, str):
        log.warning("%s.matrix is an expression (%s); matrix expansion skipped", location, matrix_raw)
    elif matrix_raw is not None:
        for key, values in to_json_object(matrix_raw, f"{location}.matrix").items():
            if key in ("include", "exclude"):
                log.warning("%s.matrix.%s is not supported and was ignored", location, key)
                continue
            if not isinstance(values, list):
                values = [values]
            matrix[str(key)] = list(values)

    max_parallel = raw.get("max-parallel")
    return Strategy(
        matrix=matrix,
        fail_fast=raw.get("fail-fast", True) is not False,
        max_parallel=int(max_parallel) if isinstance(max_parallel, int) else None,
    )


def parse_step(obj: Any, job_id: str, index: int) -> Step:
    location = f"jobs.{job_id}.steps[{index}]"
    raw = to_json_object(obj, location)

    run = raw.get("run")
    uses = raw.get("uses")
    if (run is None) == (uses is None):
        raise WorkflowParseError(
            f"Step {index + 1} in job \"{job_id}\" must define exactly one of 'run' or 'uses'"
        )

    step_id = raw.get("id")
    return Step(
        run=stringify(run) if run is not None else None,
        uses=str(uses) if uses is not None else None,
        id=str(step_id) if step_id is not None else None,
        name=stringify(raw["name"]) if raw.get("name") is not None else None,
        if_=_condition(raw.get("if")),
        env=_str_map(raw.get("env"), f"{location}.env"),
        with_=_str_map(raw.get("with"), f"{location}.with"),
        shell=str(raw["shell"]) if raw.get("shell") is not None else None,
        working_directory=(
            str(raw["working-directory"]) if raw.get("working-directory") is not None else None
        ),
        continue_on_error=_bool(raw.get("continue-on-error")),
        timeout_minutes=_minutes(raw.get("timeout-minutes"), f"{location}.timeout-minutes"),
    )


def _parse_needs(obj: Any, location: str) -> List[str]:
    if obj is None:
        return []
    if isinstance(obj, str):
        return [obj]
    return [str(n) for n in to_json_array(obj, location)]


def _parse_job(job_id: str, obj: Any) -> Job:
    location = f"jobs.{job_id}"
    if not isinstance(obj, dict):
        raise WorkflowParseError(f'Job "{job_id}" must be an object')

    uses = obj.get("uses")
    needs = _parse_needs(obj.get("needs"), f"{location}.needs")
    common = dict(
        id=job_id,
        name=stringify(obj["name"]) if obj.get("name") is not None else None,
        needs=needs,
        if_=_condition(obj.get("if")),
        strategy=_parse_strategy(obj.get("strategy"), f"{location}.strategy"),
        outputs=_str_map(obj.get("outputs"), f"{location}.outputs"),
        continue_on_error=_bool(obj.get("continue-on-error")),
    )

    if uses is not None:
        if "runs-on" in obj or "steps" in obj:
            raise WorkflowParseError(
                f"Job \"{job_id}\" cannot combine 'uses' with 'runs-on' or 'steps'"
            )
        with_raw = obj.get("with")
        with_ = dict(to_json_object(with_raw, f"{location}.with")) if with_raw is not None else {}
        secrets = obj.get("secrets")
        if secrets is not None and not isinstance(secrets, str):
            secrets = _str_map(secrets, f"{location}.secrets")
        return Job(uses=str(uses), with_=with_, secrets=secrets, **common)

    if "runs-on" not in obj or obj["runs-on"] is None:
        raise WorkflowParseError(f"Job \"{job_id}\" is missing required 'runs-on' field")

    steps_raw = obj.get("steps")
    if not steps_raw:
        raise WorkflowParseError(f'Job "{job_id}" has no steps defined')
    steps = [
        parse_step(s, job_id, i)
        for i, s in enumerate(to_json_array(steps_raw, f"{location}.steps"))
    ]

    runs_on = obj["runs-on"]
    return Job(
        runs_on=[str(r) for r in runs_on] if isinstance(runs_on, list) else stringify(runs_on),
        steps=steps,
        env=_str_map(obj.get("env"), f"{location}.env"),
        defaults=_parse_defaults(obj.get("defaults"), f"{location}.defaults"),
        timeout_minutes=_minutes(obj.get("timeout-minutes"), f"{location}.timeout-minutes"),
        **common,
    )


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def parse_workflow(content: str, file_path: str | Path) -> Workflow:
    """
    Parse workflow YAML into a Workflow with a computed `job_order`.

    Raises:
      WorkflowParseError (or its CycleError / UnknownDependencyError subclasses)
    """
    path = Path(file_path)
    try:
        doc = load_yaml(content)
    except YAMLError as e:
        raise WorkflowParseError(f"Invalid YAML in {path}: {e}") from e

    if doc is None:
        raise WorkflowParseError(f"Empty workflow file: {path}")
    if not isinstance(doc, dict):
        raise WorkflowParseError(f"Invalid workflow in {path}: top level must be an object")

    jobs_raw = doc.get("jobs")
    if not jobs_raw:
        raise WorkflowParseError(f"No jobs defined in workflow: {path}")
    if not isinstance(jobs_raw, dict):
        raise WorkflowParseError(f"Invalid workflow in {path}: jobs must be an object")

    try:
        jobs = {str(job_id): _parse_job(str(job_id), job) for job_id, job in jobs_raw.items()}
        env = _str_map(doc.get("env"), "env")
        defaults = _parse_defaults(doc.get("defaults"), "defaults")
    except ValidationError as e:
        raise WorkflowParseError(f"Invalid workflow in {path}: {e}") from e

    name = doc.get("name")
    workflow = Workflow(
        name=stringify(name) if name is not None else path.stem,
        jobs=jobs,
        on=doc.get("on"),
        env=env,
        defaults=defaults,
        path=path,
    )
    workflow.job_order = compute_job_order(jobs)
    return workflow


def parse_workflow_file(path: str | Path) -> Workflow:
    p = Path(path)
    if not p.is_file():
        raise WorkflowParseError(f"Workflow file not found: {p}")
    return parse_workflow(p.read_text(encoding="utf-8"), p)


def find_workflow_files(repo_root: str | Path) -> List[Path]:
    """All .yml/.yaml files under .github/workflows, sorted by name."""
    wf_dir = Path(repo_root) / WORKFLOW_DIR
    if not wf_dir.is_dir():
        return []
    return sorted(
        p for p in wf_dir.iterdir()
        if p.is_file() and p.suffix in (".yml", ".yaml")
    )


def find_default_workflow(repo_root: str | Path) -> Optional[Path]:
    """
    Pick the workflow to run when none was named: ci, build, test, main
    (in that order), otherwise the first file alphabetically.
    """
    files = find_workflow_files(repo_root)
    if not files:
        return None
    by_stem = {p.stem: p for p in files}
    for name in DEFAULT_WORKFLOW_NAMES:
        if name in by_stem:
            return by_stem[name]
    return files[0]


def resolve_workflow_path(name: str, repo_root: str | Path) -> Optional[Path]:
    """
    `name` may be a path, or a bare workflow name looked up under
    .github/workflows with or without extension.
    """
    direct = Path(name)
    if direct.is_file():
        return direct
    wf_dir = Path(repo_root) / WORKFLOW_DIR
    for candidate in (wf_dir / name, wf_dir / f"{name}.yml", wf_dir / f"{name}.yaml"):
        if candidate.is_file():
            return candidate
    return None


def _scan(values: Iterable[str], found: set[str]) -> None:
    for value in values:
        found.update(_SECRET_REF_RE.findall(value))


def extract_secret_references(workflow: Workflow) -> List[str]:
    """Names of every `${{ secrets.X }}` used in env, run and with values."""
    found: set[str] = set()
    _scan(workflow.env.values(), found)
    for job in workflow.jobs.values():
        _scan(job.env.values(), found)
        _scan((stringify(v) for v in job.with_.values()), found)
        if isinstance(job.secrets, dict):
            _scan(job.secrets.values(), found)
        for step in job.steps:
            _scan(step.env.values(), found)
            _scan(step.with_.values(), found)
            if step.run:
                _scan([step.run], found)
    return sorted(found)


# ----------------------------------------------------------------------
# Reusable workflows
# ----------------------------------------------------------------------

def is_reusable_workflow_job(job: Job) -> bool:
    return job.is_reusable_call


def _repo_root_for(caller_path: Path) -> Path:
    caller_dir = caller_path.resolve().parent
    if caller_dir.name == "workflows" and caller_dir.parent.name == ".github":
        return caller_dir.parent.parent
    return git.repo_root(caller_dir) or caller_dir


def resolve_reusable_workflow_path(uses: str, caller_path: str | Path) -> Optional[Path]:
    """
    Local references (`./.github/workflows/x.yml`) resolve against the
    caller's repository root. Remote references (`owner/repo/...@ref`)
    return None.
    """
    if not uses.startswith("./"):
        return None
    return _repo_root_for(Path(caller_path)) / uses[2:]


def _parse_inputs(obj: Any, location: str) -> Dict[str, WorkflowInput]:
    inputs: Dict[str, WorkflowInput] = {}
    if obj is None:
        return inputs
    for name, spec in to_json_object(obj, location).items():
        spec = to_json_object(spec or {}, f"{location}.{name}")
        inputs[str(name)] = WorkflowInput(
            type=str(spec.get("type", "string")),
            default=spec.get("default"),
            required=spec.get("required") is True,
            description=spec.get("description"),
        )
    return inputs


def _parse_outputs(obj: Any, location: str) -> Dict[str, WorkflowOutput]:
    outputs: Dict[str, WorkflowOutput] = {}
    if obj is None:
        return outputs
    for name, spec in to_json_object(obj, location).items():
        spec = to_json_object(spec or {}, f"{location}.{name}")
        outputs[str(name)] = WorkflowOutput(
            value=stringify(spec.get("value")),
            description=spec.get("description"),
        )
    return outputs


def parse_reusable_workflow(path: str | Path) -> ReusableWorkflow:
    """
    Parse a workflow that declares `on.workflow_call`, including its
    declared inputs and outputs.
    """
    workflow = parse_workflow_file(path)
    on = workflow.on

    call: Any
    if isinstance(on, dict) and "workflow_call" in on:
        call = on["workflow_call"] or {}
    elif on == "workflow_call" or (isinstance(on, list) and "workflow_call" in on):
        call = {}
    else:
        raise WorkflowParseError(
            f"Workflow {path} is not reusable: it does not declare on.workflow_call"
        )

    try:
        call = to_json_object(call, "on.workflow_call")
        return ReusableWorkflow(
            workflow=workflow,
            inputs=_parse_inputs(call.get("inputs"), "on.workflow_call.inputs"),
            outputs=_parse_outputs(call.get("outputs"), "on.workflow_call.outputs"),
        )
    except ValidationError as e:
        raise WorkflowParseError(f"Invalid workflow in {path}: {e}") from e


def resolve_reusable_workflow_inputs(
    with_: Mapping[str, Any],
    declared: Mapping[str, WorkflowInput],
    workflow_name: str | None = None,
) -> Dict[str, Any]:
    """
    Caller-provided values win, then declared defaults. A required input with
    neither raises MissingInputError. Undeclared caller values pass through.
    """
    resolved: Dict[str, Any] = dict(with_)
    for name, spec in declared.items():
        if name in with_:
            continue
        if spec.default is not None:
            resolved[name] = spec.default
        elif spec.required:
            raise MissingInputError(name, workflow_name)
    return resolved
