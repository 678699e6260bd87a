# cli.py
from __future__ import annotations

import asyncio
import logging
import sys
import threading
import time
from pathlib import Path

import click

from . import config
from .actions import ActionCache
from .cache import CacheStore
from .errors import LocalmostError, MissingSecretError, WorkflowParseError
from .git import git_info, repository_id
from .model import Workflow
from .parser import (
    WORKFLOW_DIR,
    extract_secret_references,
    find_default_workflow,
    find_workflow_files,
    parse_workflow_file,
    resolve_workflow_path,
)
from .policy import (
    DEFAULT_SANDBOX_POLICY,
    LocalmostrcConfig,
    NetworkPolicy,
    SandboxPolicy,
    SecretsPolicy,
    WorkflowPolicy,
    diff_configs,
    empty_config,
    find_localmostrc,
    format_policy_diff,
    get_effective_policy,
    get_required_secrets,
    read_localmostrc,
    serialize_localmostrc,
)
from .policy_cache import PolicyApprovalRequest, PolicyCache, format_approval_request
from .runner import RunOptions, format_duration, run_workflow
from .secrets import SECRET_MODES, resolve_secrets
from .ui.console import Console, get_console, set_console
from .workspace import cleanup_workspaces, create_workspace

DISCOVERY_ALLOW = ["*.github.com", "github.com", "registry.npmjs.org"]


def discover_workflow(workflow_arg: str | None, repo_root: Path) -> Path:
    """
    Workflow file from the argument, or the default one under .github/workflows.

    Raises:
        SystemExit: the workflow cannot be found
    """
    console = get_console()

    if workflow_arg:
        path = resolve_workflow_path(workflow_arg, repo_root)
        if path is None:
            console.print_error(
                "Workflow not found",
                f"Could not find workflow: {workflow_arg}",
                details=[f"{p.relative_to(repo_root)}" for p in find_workflow_files(repo_root)] or None,
                suggestion="Pass a file path or a name under .github/workflows:\n  localmost test ci",
            )
            sys.exit(1)
        return path

    path = find_default_workflow(repo_root)
    if path is None:
        console.print_error(
            "No workflow file found",
            f"Could not find any workflow files in {WORKFLOW_DIR}/.",
            suggestion="Create .github/workflows/ci.yml or name a workflow explicitly:\n  localmost test path/to/workflow.yml",
        )
        sys.exit(1)
    return path


def _load_workflow(path: Path) -> Workflow:
    try:
        return parse_workflow_file(path)
    except WorkflowParseError as e:
        get_console().print_error("Invalid workflow", str(e))
        sys.exit(1)


def _load_rc(repo_root: Path) -> tuple[Path | None, LocalmostrcConfig | None]:
    """(.localmostrc path, parsed config). Invalid content exits with every error listed."""
    console = get_console()
    path = find_localmostrc(repo_root)
    if path is None:
        return None, None
    result = read_localmostrc(path)
    for warning in result.warnings:
        console.print_warning(warning)
    if not result.ok:
        console.print_error("Invalid .localmostrc", f"{path} has errors:", details=result.errors)
        sys.exit(1)
    return path, result.config


def _repository(repo_root: Path) -> str:
    return repository_id(repo_root) or "local/repo"


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """localmost: run GitHub Actions workflows on this machine, sandboxed."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


# ----------------------------------------------------------------------
# test
# ----------------------------------------------------------------------

@cli.command()
@click.argument("workflow", required=False)
@click.option("--job", "-j", default=None, help="Run only this job id")
@click.option("--matrix", "-m", default=None, help="Matrix combination to run, e.g. os=macos,node=18")
@click.option("--full-matrix", "-F", is_flag=True, default=False, help="Run every matrix combination")
@click.option("--updaterc", "-u", is_flag=True, default=False, help="Discovery mode: permissive run, propose a .localmostrc")
@click.option("--dry-run", "-n", is_flag=True, default=False, help="Show what would run without executing")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Stream step output")
@click.option("--secrets", "secret_mode", type=click.Choice(SECRET_MODES), default="stub", show_default=True,
              help="What to do with secrets missing from the environment")
@click.option("--no-workspace", is_flag=True, default=False, help="Run in the source tree instead of a snapshot")
@click.option("--gate-needs/--no-gate-needs", default=True, show_default=True,
              help="Skip jobs whose dependencies failed")
@click.pass_context
def test(ctx, workflow, job, matrix, full_matrix, updaterc, dry_run, verbose, secret_mode, no_workspace, gate_needs):
    """Run a workflow locally."""
    console = get_console()
    console.verbose = verbose
    repo_root = Path.cwd()
    started = time.monotonic()

    workflow_path = discover_workflow(workflow, repo_root)
    wf = _load_workflow(workflow_path)
    repository = _repository(repo_root)

    try:
        rel = workflow_path.resolve().relative_to(repo_root.resolve())
    except ValueError:
        rel = workflow_path
    console.print_run_started(str(rel), repository, len(wf.jobs))

    # ---- policy ----
    rc_path, rc_config = _load_rc(repo_root)
    required_secrets: list[str] = []
    if rc_config is not None:
        console.print_info(f"Using policy: {rc_path.name}")
        policy = get_effective_policy(rc_config, wf.name)
        permissive = updaterc
        required_secrets = get_required_secrets(rc_config, wf.name)
    else:
        policy = DEFAULT_SANDBOX_POLICY
        permissive = True
        if not updaterc:
            console.print_info("No .localmostrc found. Run with --updaterc to generate.")
            console.print_info("Running in permissive mode.")

    log_destination = None
    if updaterc:
        config.logs_dir().mkdir(parents=True, exist_ok=True)
        log_destination = str(config.logs_dir() / f"sandbox-{time.strftime('%Y%m%d-%H%M%S')}.log")

    try:
        # ---- secrets ----
        names = list(dict.fromkeys([*extract_secret_references(wf), *required_secrets]))
        secrets = {}
        if names:
            console.print_info(f"Secrets required: {', '.join(names)}")
            secrets = resolve_secrets(
                names,
                secret_mode,
                report=lambda name, source: console.print_note(f"{name} ({source})"),
            )

        # ---- workspace ----
        if no_workspace or dry_run:
            work_dir = repo_root
        else:
            ws = create_workspace(repo_root)
            work_dir = ws.path
            console.print_info(f"Workspace: {work_dir}")

        info = git_info(repo_root)
        console.print_debug(f"git sha={info.sha} ref={info.ref} permissive={permissive}")
        cancel = threading.Event()
        options = RunOptions(
            work_dir=work_dir,
            job=job,
            matrix=matrix,
            full_matrix=full_matrix,
            dry_run=dry_run,
            gate_on_needs=gate_needs,
            repository=repository,
            sha=info.sha,
            ref=info.ref,
            secrets=secrets,
            policy=policy,
            permissive=permissive,
            log_destination=log_destination,
            cancel=cancel,
            on_output=console.print_output,
            on_status=console.print_step_status,
            on_job_start=console.print_job_start,
            on_job_end=console.print_job_result,
            on_note=console.print_note,
        )

        try:
            result = run_workflow(wf, options)
        except KeyboardInterrupt:
            cancel.set()
            console.print_info("\nInterrupted by user")
            sys.exit(130)

        if not no_workspace and not dry_run:
            cleanup_workspaces()

        console.print_summary(
            format_duration(time.monotonic() - started),
            passed=result.passed,
            total=len(result.jobs),
            ok=result.ok,
        )

        if updaterc:
            _print_discovery(rc_path, wf, names, log_destination)

        if not result.ok:
            sys.exit(1)

    except MissingSecretError as e:
        console.print_error("Missing secrets", str(e))
        sys.exit(1)
    except (LocalmostError, ValueError) as e:
        console.print_error(type(e).__name__, str(e))
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(1)


def _print_discovery(rc_path: Path | None, wf: Workflow, secret_names: list[str], log_destination: str | None) -> None:
    console = get_console()
    console.print_header("Discovery mode")
    if log_destination:
        console.print_info(f"Sandbox trace: {log_destination}")
    if rc_path is not None:
        console.print_info(f"Would update: {rc_path}")
        return

    proposed = LocalmostrcConfig(
        shared=SandboxPolicy(network=NetworkPolicy(allow=list(DISCOVERY_ALLOW))),
        workflows={
            wf.name: WorkflowPolicy(secrets=SecretsPolicy(require=secret_names) if secret_names else None),
        },
    )
    console.print_policy("Proposed .localmostrc", serialize_localmostrc(proposed))


# ----------------------------------------------------------------------
# policy
# ----------------------------------------------------------------------

@cli.group()
def policy():
    """Inspect, validate and approve .localmostrc policies."""


@policy.command("show")
@click.option("--workflow", "-w", default=None, help="Show the effective policy for this workflow name")
def policy_show(workflow):
    """Show the repository's .localmostrc (or the built-in default)."""
    console = get_console()
    rc_path, rc_config = _load_rc(Path.cwd())

    if rc_config is None:
        console.print_info("No .localmostrc found; the default policy applies:")
        console.print_policy("Default policy", serialize_localmostrc(LocalmostrcConfig(shared=DEFAULT_SANDBOX_POLICY)))
        return

    if workflow:
        effective = LocalmostrcConfig(shared=get_effective_policy(rc_config, workflow))
        console.print_policy(f"Effective policy for {workflow}", serialize_localmostrc(effective))
        secrets = get_required_secrets(rc_config, workflow)
        if secrets:
            console.print_info(f"Required secrets: {', '.join(secrets)}")
        return

    console.print_policy(str(rc_path.name), serialize_localmostrc(rc_config))


@policy.command("diff")
def policy_diff():
    """Diff the repository's .localmostrc against the last approved one."""
    console = get_console()
    repo_root = Path.cwd()
    repository = _repository(repo_root)
    _rc_path, rc_config = _load_rc(repo_root)

    cached = PolicyCache().get(repository)
    if cached is None:
        console.print_info(f"No cached policy for {repository}")
    old = cached.config if cached is not None else empty_config()
    console.print_info(format_policy_diff(diff_configs(old, rc_config or empty_config())))


@policy.command("validate")
def policy_validate():
    """Validate the repository's .localmostrc."""
    console = get_console()
    rc_path, _rc_config = _load_rc(Path.cwd())
    if rc_path is None:
        console.print_error("No .localmostrc found", f"Looked in {Path.cwd()}")
        sys.exit(1)
    console.print_info(f"✓ {rc_path.name} is valid")


@policy.command("init")
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing .localmostrc")
def policy_init(force):
    """Write a .localmostrc holding the default policy."""
    console = get_console()
    repo_root = Path.cwd()
    existing = find_localmostrc(repo_root)
    if existing is not None and not force:
        console.print_error(
            ".localmostrc already exists",
            str(existing),
            suggestion="Use --force to overwrite it.",
        )
        sys.exit(1)

    target = existing or repo_root / ".localmostrc"
    target.write_text(serialize_localmostrc(LocalmostrcConfig(shared=DEFAULT_SANDBOX_POLICY)), encoding="utf-8")
    console.print_info(f"✓ Wrote {target.name}")


@policy.command("approve")
@click.option("--yes", "-y", is_flag=True, default=False, help="Approve without asking")
def policy_approve(yes):
    """Approve the repository's current .localmostrc."""
    console = get_console()
    repo_root = Path.cwd()
    repository = _repository(repo_root)
    rc_path = find_localmostrc(repo_root)
    content = rc_path.read_text(encoding="utf-8") if rc_path is not None else None

    async def ask(request: PolicyApprovalRequest) -> bool:
        console.print_info(format_approval_request(request))
        if yes:
            return True
        return click.confirm("Approve this policy?", default=False)

    cache = PolicyCache(approval_callback=ask)
    approved = asyncio.run(cache.can_run_job(repository, content, commit=git_info(repo_root).sha))
    if approved:
        console.print_info(f"✓ Policy approved for {repository}")
    else:
        console.print_info(f"✗ Policy not approved for {repository}")
        sys.exit(1)


@policy.command("list")
def policy_list():
    """List cached policies."""
    console = get_console()
    cached = PolicyCache().list()
    if not cached:
        console.print_info("No cached policies.")
        return
    for entry in cached:
        console.print_cached_policy(entry)


# ----------------------------------------------------------------------
# actions
# ----------------------------------------------------------------------

@cli.group()
def actions():
    """Manage the local action cache."""


@actions.command("list")
def actions_list():
    """List cached actions."""
    console = get_console()
    cached = ActionCache().list()
    if not cached:
        console.print_info("No cached actions.")
        return
    for entry in sorted(cached, key=lambda c: str(c.ref)):
        fetched = time.strftime("%Y-%m-%d %H:%M", time.localtime(entry.fetched_at))
        console.print_info(f"  {entry.ref} (fetched {fetched})")


@actions.command("clean")
@click.option("--max-age-days", default=30, type=float, show_default=True, help="Remove actions older than this")
def actions_clean(max_age_days):
    """Remove old cached actions."""
    removed, kept = ActionCache().clean(max_age_days=max_age_days)
    get_console().print_info(f"Removed {removed} cached action(s), kept {kept}")


# ----------------------------------------------------------------------
# cache
# ----------------------------------------------------------------------

@cli.group("cache")
def cache_group():
    """Manage the actions/cache store."""


@cache_group.command("prune")
@click.option("--keep", default=50, type=click.IntRange(min=0), show_default=True,
              help="Number of newest entries to keep")
def cache_prune(keep):
    """Remove all but the newest cache entries."""
    removed = CacheStore().prune(keep=keep)
    get_console().print_info(f"Removed {removed} cache entr{'y' if removed == 1 else 'ies'}")


if __name__ == "__main__":
    cli()
