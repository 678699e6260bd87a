# expressions.py
from __future__ import annotations

import enum
import platform
import re
from typing import TYPE_CHECKING, Mapping

from .validation import stringify

if TYPE_CHECKING:
    from .context import ExecutionContext

EXPRESSION_RE = re.compile(r"\$\{\{\s*([^}]+?)\s*\}\}")
_STEPS_RE = re.compile(r"^steps\.([^.]+)\.outputs\.(.+)$")
_NEEDS_RE = re.compile(r"^needs\.([^.]+)\.outputs\.(.+)$")
_PATH_RE = re.compile(r"^[A-Za-z_][\w-]*(\.[\w-]+)+$")

# github.<prop> -> variable in the step environment
GITHUB_PROPERTIES = {
    "sha": "GITHUB_SHA",
    "ref": "GITHUB_REF",
    "repository": "GITHUB_REPOSITORY",
    "workspace": "GITHUB_WORKSPACE",
    "actor": "GITHUB_ACTOR",
    "event_name": "GITHUB_EVENT_NAME",
    "run_id": "GITHUB_RUN_ID",
    "run_number": "GITHUB_RUN_NUMBER",
    "job": "GITHUB_JOB",
    "workflow": "GITHUB_WORKFLOW",
    "server_url": "GITHUB_SERVER_URL",
}


class ExpressionKind(enum.Enum):
    ENV = "env"
    SECRETS = "secrets"
    MATRIX = "matrix"
    STEPS = "steps"
    INPUTS = "inputs"
    NEEDS = "needs"
    GITHUB = "github"
    RUNNER = "runner"
    UNKNOWN = "unknown"


def classify(expression: str) -> ExpressionKind:
    head, dot, _rest = expression.partition(".")
    if not dot:
        return ExpressionKind.UNKNOWN
    try:
        return ExpressionKind(head)
    except ValueError:
        return ExpressionKind.UNKNOWN


def runner_os() -> str:
    return {"Darwin": "macOS", "Linux": "Linux", "Windows": "Windows"}.get(platform.system(), "macOS")


def runner_arch() -> str:
    return "ARM64" if platform.machine().lower() in ("arm64", "aarch64") else "X64"


def _resolve(expression: str, env: Mapping[str, str], ctx: "ExecutionContext") -> str | None:
    """
    Value for one expression, or None to leave the placeholder untouched.
    """
    if not _PATH_RE.match(expression):
        return None
    kind = classify(expression)
    _, _, name = expression.partition(".")

    match kind:
        case ExpressionKind.ENV:
            if name in env:
                return env[name]
            return ctx.job_env.get(name, ctx.workflow_env.get(name, ""))
        case ExpressionKind.SECRETS:
            return ctx.secrets.get(name, "")
        case ExpressionKind.MATRIX:
            return stringify(ctx.matrix.get(name))
        case ExpressionKind.INPUTS:
            return stringify(ctx.inputs.get(name))
        case ExpressionKind.STEPS:
            m = _STEPS_RE.match(expression)
            if not m:
                return None
            return ctx.step_outputs.get(m.group(1), {}).get(m.group(2), "")
        case ExpressionKind.NEEDS:
            m = _NEEDS_RE.match(expression)
            if not m:
                return None
            return ctx.needs.get(m.group(1), {}).get(m.group(2), "")
        case ExpressionKind.GITHUB:
            var = GITHUB_PROPERTIES.get(name)
            return env.get(var, "") if var else ""
        case ExpressionKind.RUNNER:
            return {
                "os": runner_os(),
                "arch": runner_arch(),
                "name": "localmost",
                "temp": env.get("RUNNER_TEMP", ""),
                "tool_cache": env.get("RUNNER_TOOL_CACHE", ""),
            }.get(name, "")
        case ExpressionKind.UNKNOWN:
            return None


def expand(text: str, env: Mapping[str, str], ctx: "ExecutionContext") -> str:
    """
    Substitute every `${{ expr }}` in `text`.

    Known context lookups with no value become "". Anything else
    (functions, operators, unknown contexts) is left verbatim.
    """
    def replace(m: re.Match[str]) -> str:
        value = _resolve(m.group(1).strip(), env, ctx)
        return m.group(0) if value is None else value

    return EXPRESSION_RE.sub(replace, text)


def expand_map(values: Mapping[str, str], env: Mapping[str, str], ctx: "ExecutionContext") -> dict[str, str]:
    return {k: expand(v, env, ctx) for k, v in values.items()}


# ----------------------------------------------------------------------
# Conditions
# ----------------------------------------------------------------------

_WRAPPED_RE = re.compile(r"^\$\{\{\s*(.*?)\s*\}\}$", re.DOTALL)


def evaluate_condition(condition: str | None) -> bool:
    """
    Decide whether a step / job runs.

    Only the status functions are understood. success() is always true and
    failure()/cancelled() always false because the engine stops a job at
    its first hard failure. Any other expression runs (fails open).
    """
    if condition is None:
        return True
    text = condition.strip()
    m = _WRAPPED_RE.match(text)
    if m:
        text = m.group(1).strip()
    if not text:
        return True

    match text:
        case "always()" | "success()":
            return True
        case "failure()" | "cancelled()":
            return False
        case _:
            return True


def runs_always(condition: str | None) -> bool:
    """True when the condition calls always(); such jobs run whatever their dependencies did."""
    return condition is not None and "always()" in condition
