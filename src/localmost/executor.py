# executor.py
from __future__ import annotations

import os
import re
import shlex
import subprocess
import time
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from . import config
from .actions import ActionCache, parse_action_ref, read_action_metadata
from .context import ExecutionContext
from .errors import ActionError, LocalmostError
from .expressions import evaluate_condition, expand, expand_map, runner_arch, runner_os
from .intercepts import classify_intercept, run_intercepted
from .model import Job, ReusableWorkflow, Step, StepResult
from .parser import parse_step
from .process import run_in_sandbox
from .validation import stringify

OUTPUT_FILE = ".github-output"
ENV_FILE = ".github-env"
PATH_FILE = ".github-path"
STEP_SUMMARY_FILE = ".github-step-summary"
RUNNER_TEMP_DIR = ".runner-temp"

_HEREDOC_RE = re.compile(r"^([^=]+)<<(.+)$")
_SIMPLE_RE = re.compile(r"^([^=]+)=(.*)$")
_STEP_OUTPUT_REF_RE = re.compile(r"\$\{\{\s*steps\.([^.\s}]+)\.outputs\.([^\s}]+)\s*\}\}")
_JOB_OUTPUT_REF_RE = re.compile(r"\$\{\{\s*jobs\.([^.\s}]+)\.outputs\.([^\s}]+)\s*\}\}")

# Raised while dispatching a step; turned into a failed StepResult.
STEP_ERRORS = (LocalmostError, OSError, subprocess.SubprocessError, ValueError)


# ----------------------------------------------------------------------
# GITHUB_OUTPUT / GITHUB_ENV files
# ----------------------------------------------------------------------

def parse_output_text(text: str) -> Dict[str, str]:
    """
    Parse the GITHUB_OUTPUT protocol:

        name=value
        name<<DELIM
        line 1
        line 2
        DELIM

    Both forms may appear in the same file. An unterminated heredoc takes
    the rest of the file.
    """
    outputs: Dict[str, str] = {}
    # only \n separates lines; heredoc values may hold other line-break characters
    lines = [line.removesuffix("\r") for line in text.split("\n")]
    if lines and lines[-1] == "":
        lines.pop()
    i = 0
    while i < len(lines):
        line = lines[i]
        heredoc = _HEREDOC_RE.match(line)
        if heredoc:
            name, delimiter = heredoc.group(1).strip(), heredoc.group(2).strip()
            body: List[str] = []
            i += 1
            while i < len(lines) and lines[i] != delimiter:
                body.append(lines[i])
                i += 1
            outputs[name] = "\n".join(body)
        else:
            simple = _SIMPLE_RE.match(line)
            if simple:
                outputs[simple.group(1).strip()] = simple.group(2)
        i += 1
    return outputs


def parse_output_file(path: str | Path) -> Dict[str, str]:
    p = Path(path)
    if not p.exists():
        return {}
    return parse_output_text(p.read_text(encoding="utf-8"))


# ----------------------------------------------------------------------
# Environment
# ----------------------------------------------------------------------

def build_step_environment(step: Step, ctx: ExecutionContext, job: Optional[Job] = None) -> Dict[str, str]:
    """
    Full environment for one step, lowest precedence first:
    host basics, GITHUB_* / RUNNER_*, workflow env, job env, step env,
    MATRIX_<NAME>, secrets.
    """
    wd = ctx.work_dir
    host_path = os.environ.get("PATH", "")
    env: Dict[str, str] = {
        "PATH": os.pathsep.join([*ctx.extra_path, host_path]) if ctx.extra_path else host_path,
        "HOME": os.environ.get("HOME", str(Path.home())),
        "USER": os.environ.get("USER", ""),
        "SHELL": os.environ.get("SHELL", "/bin/bash"),
        "TERM": os.environ.get("TERM", "xterm-256color"),
        "LANG": os.environ.get("LANG", "en_US.UTF-8"),

        "CI": "true",
        "GITHUB_ACTIONS": "true",
        "GITHUB_WORKFLOW": ctx.workflow_name,
        "GITHUB_RUN_ID": ctx.run_id,
        "GITHUB_RUN_NUMBER": ctx.run_number,
        "GITHUB_JOB": ctx.job_id,
        "GITHUB_ACTION": step.id or step.name or "step",
        "GITHUB_ACTOR": ctx.actor,
        "GITHUB_REPOSITORY": ctx.repository,
        "GITHUB_EVENT_NAME": "workflow_dispatch",
        "GITHUB_WORKSPACE": str(wd),
        "GITHUB_SHA": ctx.sha,
        "GITHUB_REF": ctx.ref,
        "GITHUB_HEAD_REF": "",
        "GITHUB_BASE_REF": "",
        "GITHUB_SERVER_URL": config.GITHUB_SERVER_URL,
        "GITHUB_API_URL": config.GITHUB_API_URL,
        "GITHUB_GRAPHQL_URL": config.GITHUB_GRAPHQL_URL,
        "GITHUB_ENV": str(wd / ENV_FILE),
        "GITHUB_PATH": str(wd / PATH_FILE),
        "GITHUB_OUTPUT": str(wd / OUTPUT_FILE),
        "GITHUB_STEP_SUMMARY": str(wd / STEP_SUMMARY_FILE),

        "RUNNER_NAME": "localmost",
        "RUNNER_OS": runner_os(),
        "RUNNER_ARCH": runner_arch(),
        "RUNNER_TEMP": str(wd / RUNNER_TEMP_DIR),
        "RUNNER_TOOL_CACHE": str(config.tool_cache_dir()),
        "ImageOS": "macos14",
    }

    env.update(expand_map(ctx.workflow_env, env, ctx))
    env.update(expand_map(ctx.job_env, env, ctx))
    env.update(expand_map(step.env, env, ctx))

    for key, value in ctx.matrix.items():
        env[f"MATRIX_{key.upper()}"] = stringify(value)

    env.update(ctx.secrets)
    return env


# ----------------------------------------------------------------------
# Process steps (run: and node actions)
# ----------------------------------------------------------------------

def _shell_argv(shell: str, script: Path) -> List[str]:
    match shell:
        case "bash":
            return ["bash", "--noprofile", "--norc", "-eo", "pipefail", str(script)]
        case "sh":
            return ["sh", "-e", str(script)]
        case "python":
            return ["python3", str(script)]
        case "pwsh" | "powershell":
            return [shell, "-command", f". '{script}'"]
        case _ if "{0}" in shell:
            return [part.replace("{0}", str(script)) for part in shlex.split(shell)]
        case _:
            return [*shlex.split(shell), str(script)]


def _step_timeout(step: Step, ctx: ExecutionContext) -> Tuple[Optional[float], str]:
    """Seconds the child may run, and which limit that is (for the message)."""
    limits: List[Tuple[float, str]] = []
    if step.timeout_minutes is not None:
        limits.append((step.timeout_minutes * 60, f"timed out after {step.timeout_minutes:g} minutes"))
    remaining = ctx.remaining_seconds()
    if remaining is not None:
        limits.append((max(remaining, 0.0), "job timeout reached"))
    if not limits:
        return None, ""
    return min(limits, key=lambda t: t[0])


def _reset_command_files(env: Mapping[str, str]) -> None:
    for var in ("GITHUB_OUTPUT", "GITHUB_ENV", "GITHUB_PATH"):
        Path(env[var]).write_text("", encoding="utf-8")
    Path(env["RUNNER_TEMP"]).mkdir(parents=True, exist_ok=True)


def _collect_command_files(env: Mapping[str, str], ctx: ExecutionContext) -> Dict[str, str]:
    """Outputs of the step; GITHUB_ENV / GITHUB_PATH additions go into the context."""
    ctx.job_env.update(parse_output_file(env["GITHUB_ENV"]))
    path_file = Path(env["GITHUB_PATH"])
    if path_file.exists():
        for entry in path_file.read_text(encoding="utf-8").splitlines():
            if entry.strip():
                ctx.extra_path.insert(0, entry.strip())
    return parse_output_file(env["GITHUB_OUTPUT"])


def _run_process(
    name: str,
    argv: List[str],
    cwd: Path,
    env: Dict[str, str],
    step: Step,
    ctx: ExecutionContext,
) -> StepResult:
    timeout, timeout_reason = _step_timeout(step, ctx)
    if timeout is not None and timeout <= 0:
        return StepResult(name=name, status="failure", error=timeout_reason)

    _reset_command_files(env)
    result = run_in_sandbox(
        argv[0],
        argv[1:],
        cwd=cwd,
        env=env,
        on_output=ctx.on_output,
        work_dir=ctx.work_dir,
        policy=ctx.policy,
        permissive=ctx.permissive,
        log_destination=ctx.log_destination,
        timeout=timeout,
        cancel=ctx.cancel,
    )
    outputs = _collect_command_files(env, ctx)

    if result.timed_out:
        return StepResult(name=name, status="failure", outputs=outputs, error=timeout_reason,
                          exit_code=result.exit_code)
    if result.cancelled:
        return StepResult(name=name, status="failure", outputs=outputs, error="cancelled",
                          exit_code=result.exit_code)
    if result.exit_code != 0:
        return StepResult(name=name, status="failure", outputs=outputs,
                          error=f"Process completed with exit code {result.exit_code}",
                          exit_code=result.exit_code)
    return StepResult(name=name, status="success", outputs=outputs, exit_code=0)


def _working_directory(step: Step, ctx: ExecutionContext) -> Path:
    rel = step.working_directory or ctx.defaults.working_directory
    if not rel:
        return ctx.work_dir
    cwd = Path(rel)
    cwd = cwd if cwd.is_absolute() else ctx.work_dir / cwd
    if not cwd.is_dir():
        raise FileNotFoundError(f"working-directory not found: {rel}")
    return cwd


def _execute_run(step: Step, ctx: ExecutionContext, job: Optional[Job], name: str) -> StepResult:
    env = build_step_environment(step, ctx, job)
    shell = step.shell or ctx.defaults.shell or "bash"
    cwd = _working_directory(step, ctx)
    script = expand(step.run or "", env, ctx)

    script_file = ctx.work_dir / f".step-{time.time_ns()}.sh"
    try:
        script_file.write_text(script, encoding="utf-8")
        script_file.chmod(0o755)
        return _run_process(name, _shell_argv(shell, script_file), cwd, env, step, ctx)
    finally:
        script_file.unlink(missing_ok=True)


# ----------------------------------------------------------------------
# Actions
# ----------------------------------------------------------------------

def _input_env(inputs: Mapping[str, str]) -> Dict[str, str]:
    return {f"INPUT_{k.upper().replace('-', '_')}": v for k, v in inputs.items()}


def _execute_action_dir(
    action_dir: Path,
    step: Step,
    ctx: ExecutionContext,
    job: Optional[Job],
    name: str,
    env: Dict[str, str],
    with_: Dict[str, str],
) -> StepResult:
    meta = read_action_metadata(action_dir)

    inputs = dict(with_)
    for key, spec in meta.inputs.items():
        if key not in inputs and spec.get("default") is not None:
            inputs[key] = expand(stringify(spec["default"]), env, ctx)

    using = meta.using.lower()
    if using == "composite":
        return _execute_composite(meta.name, meta.steps, meta.outputs, step, ctx, job, name, env, inputs)

    if using.startswith("node"):
        if not meta.main:
            raise ActionError(f"Action {meta.name} has no runs.main")
        action_env = {**env, **_input_env(inputs), "GITHUB_ACTION_PATH": str(action_dir)}
        return _run_process(name, ["node", str(action_dir / meta.main)], ctx.work_dir, action_env, step, ctx)

    if using == "docker":
        return StepResult(name=name, status="failure",
                          error="Docker actions are not supported in local test mode")

    return StepResult(name=name, status="failure", error=f"Unsupported action type: {meta.using}")


def _execute_composite(
    action_name: str,
    raw_steps: List,
    raw_outputs: Dict[str, Dict],
    step: Step,
    ctx: ExecutionContext,
    job: Optional[Job],
    name: str,
    env: Dict[str, str],
    inputs: Dict[str, str],
) -> StepResult:
    nested_ctx = ctx.for_composite(inputs, env=expand_map(step.env, env, ctx))
    nested_steps = [parse_step(raw, action_name, i) for i, raw in enumerate(raw_steps)]

    layered_env = dict(nested_ctx.job_env)
    results, ok = run_steps(nested_steps, nested_ctx, job)
    # GITHUB_ENV writes reach the job the same way GITHUB_PATH entries do
    ctx.job_env.update({k: v for k, v in nested_ctx.job_env.items() if layered_env.get(k) != v})

    outputs: Dict[str, str] = {}
    for key, spec in raw_outputs.items():
        outputs[key] = expand(stringify(spec.get("value")), env, nested_ctx)

    if ok:
        return StepResult(name=name, status="success", outputs=outputs)
    failed = next((r for r in reversed(results) if r.status == "failure"), None)
    error = f"{failed.name}: {failed.error}" if failed and failed.error else "composite step failed"
    return StepResult(name=name, status="failure", outputs=outputs, error=error)


def _execute_uses(step: Step, ctx: ExecutionContext, job: Optional[Job], name: str) -> StepResult:
    uses = step.uses or ""
    env = build_step_environment(step, ctx, job)
    with_ = expand_map(step.with_, env, ctx)

    kind = classify_intercept(uses)
    if kind is not None:
        return run_intercepted(kind, uses, with_, ctx, name)

    if uses.startswith(("./", "../")):
        return _execute_action_dir((ctx.work_dir / uses).resolve(), step, ctx, job, name, env, with_)

    if uses.startswith("docker://"):
        return StepResult(name=name, status="failure",
                          error="Docker actions are not supported in local test mode")

    ref = parse_action_ref(uses)
    if ref is None:
        raise ActionError(f"Cannot parse action reference: {uses}")

    ctx.on_output(f"Fetching action {uses}...", "stdout")
    cache = ctx.action_cache or ActionCache()
    cached = cache.fetch(ref)
    return _execute_action_dir(Path(cached.local_path), step, ctx, job, name, env, with_)


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def execute_step(step: Step, ctx: ExecutionContext, job: Optional[Job] = None) -> StepResult:
    """
    Run one step: pending -> running -> success | failure | skipped.

    Never raises for step-level problems; they come back as a failed
    StepResult carrying the message.
    """
    name = step.display_name
    started = time.monotonic()
    ctx.on_status(name, "running")

    if not evaluate_condition(step.if_):
        ctx.on_status(name, "skipped")
        return StepResult(name=name, status="skipped")

    try:
        if step.uses:
            result = _execute_uses(step, ctx, job, name)
        else:
            result = _execute_run(step, ctx, job, name)
    except STEP_ERRORS as e:
        result = StepResult(name=name, status="failure", error=str(e))

    result.duration = time.monotonic() - started
    if step.id and result.outputs:
        ctx.step_outputs[step.id] = dict(result.outputs)

    ctx.on_status(name, result.status)
    return result


def run_steps(steps: List[Step], ctx: ExecutionContext, job: Optional[Job] = None) -> Tuple[List[StepResult], bool]:
    """
    Run steps in order. A failure stops the sequence unless that step has
    continue-on-error (it is still reported as a failure).

    Returns (results, ok).
    """
    results: List[StepResult] = []
    for step in steps:
        if ctx.cancelled():
            return results, False
        remaining = ctx.remaining_seconds()
        if remaining is not None and remaining <= 0:
            results.append(StepResult(name=step.display_name, status="failure", error="job timeout reached"))
            ctx.on_status(step.display_name, "failure")
            return results, False

        result = execute_step(step, ctx, job)
        results.append(result)
        if result.status == "failure" and not step.continue_on_error:
            return results, False
    return results, True


def _resolve_output(
    value: str,
    ref_re: re.Pattern[str],
    produced_by: Mapping[str, Mapping[str, str]],
) -> Optional[str]:
    """
    `value` with every output reference substituted. None when a referenced
    output was never produced or some other expression is left over.
    """
    missing = False

    def replace(m: re.Match[str]) -> str:
        nonlocal missing
        produced = produced_by.get(m.group(1), {})
        if m.group(2) not in produced:
            missing = True
            return ""
        return produced[m.group(2)]

    resolved = ref_re.sub(replace, value.strip())
    if missing or "${{" in resolved:
        return None
    return resolved


def extract_job_outputs(job: Job, step_outputs: Mapping[str, Mapping[str, str]]) -> Dict[str, str]:
    """
    Resolve `outputs:` of a job. Values referring to `${{ steps.x.outputs.y }}`
    that no step produced are left out; literal text is kept.
    """
    outputs: Dict[str, str] = {}
    for name, value in job.outputs.items():
        resolved = _resolve_output(value, _STEP_OUTPUT_REF_RE, step_outputs)
        if resolved is not None:
            outputs[name] = resolved
    return outputs


def extract_workflow_outputs(
    reusable: ReusableWorkflow,
    job_outputs: Mapping[str, Mapping[str, str]],
) -> Dict[str, str]:
    """Resolve `on.workflow_call.outputs` from `${{ jobs.x.outputs.y }}`."""
    outputs: Dict[str, str] = {}
    for name, spec in reusable.outputs.items():
        resolved = _resolve_output(spec.value, _JOB_OUTPUT_REF_RE, job_outputs)
        if resolved is not None:
            outputs[name] = resolved
    return outputs
