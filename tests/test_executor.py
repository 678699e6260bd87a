"""Tests for step execution: scripts, command files and actions."""

from __future__ import annotations

import shutil
import textwrap
import threading
import time
from pathlib import Path

import pytest

from localmost import process
from localmost.actions import ActionCache, ActionRef, CachedAction
from localmost.executor import (
    _shell_argv,
    build_step_environment,
    execute_step,
    extract_job_outputs,
    extract_workflow_outputs,
    parse_output_file,
    parse_output_text,
    run_steps,
)
from localmost.model import Job, ReusableWorkflow, RunDefaults, Step, Workflow, WorkflowOutput
from localmost.process import run_in_sandbox


def sh(script: str, **kwargs) -> Step:
    return Step(run=textwrap.dedent(script).strip(), shell="sh", **kwargs)


def lines(output, stream="stdout"):
    return [line for line, s in output if s == stream]


def write_action(root, body: str):
    root.mkdir(parents=True, exist_ok=True)
    (root / "action.yml").write_text(textwrap.dedent(body), encoding="utf-8")
    return root


class TestParseOutputText:
    def test_simple(self):
        assert parse_output_text("a=1\nb=two words\nc=x=y\n") == {"a": "1", "b": "two words", "c": "x=y"}

    def test_heredoc_and_simple_mixed(self):
        text = "first=1\nnotes<<EOF\nline one\nline=two\nEOF\nlast=3\n"
        assert parse_output_text(text) == {"first": "1", "notes": "line one\nline=two", "last": "3"}

    def test_unterminated_heredoc_takes_the_rest(self):
        assert parse_output_text("body<<END\nx\ny") == {"body": "x\ny"}

    def test_later_value_wins_and_junk_ignored(self):
        assert parse_output_text("a=1\njunk line\na=2\n") == {"a": "2"}

    def test_missing_file(self, tmp_path):
        assert parse_output_file(tmp_path / "nope") == {}

    def test_only_newline_separates_lines(self):
        text = "note<<EOF\na\x0bb\x0cc\u2028d\nEOF\n"
        assert parse_output_text(text) == {"note": "a\x0bb\x0cc\u2028d"}

    def test_crlf(self):
        assert parse_output_text("a=1\r\nbody<<END\r\nx\r\nEND\r\n") == {"a": "1", "body": "x"}


class TestShellArgv:
    @pytest.mark.parametrize(
        "shell, expected",
        [
            pytest.param("bash", ["bash", "--noprofile", "--norc", "-eo", "pipefail", "/s.sh"], id="bash"),
            pytest.param("sh", ["sh", "-e", "/s.sh"], id="sh"),
            pytest.param("python", ["python3", "/s.sh"], id="python"),
            pytest.param("perl {0}", ["perl", "/s.sh"], id="template"),
            pytest.param("zsh -e", ["zsh", "-e", "/s.sh"], id="custom"),
        ],
    )
    def test_argv(self, shell, expected):
        assert _shell_argv(shell, Path("/s.sh")) == expected


class TestBuildStepEnvironment:
    def test_layers(self, ctx):
        ctx.workflow_env = {"LEVEL": "workflow", "WF_ONLY": "w"}
        ctx.job_env = {"LEVEL": "job", "REF": "${{ env.WF_ONLY }}-job"}
        ctx.matrix = {"node": 18, "debug": True}
        ctx.secrets = {"LEVEL": "secret", "TOKEN": "t"}
        step = Step(run="x", env={"STEP_ONLY": "s", "LEVEL": "step"})

        env = build_step_environment(step, ctx)
        assert env["WF_ONLY"] == "w"
        assert env["REF"] == "w-job"
        assert env["STEP_ONLY"] == "s"
        assert env["MATRIX_NODE"] == "18"
        assert env["MATRIX_DEBUG"] == "true"
        assert env["TOKEN"] == "t"
        # secrets are applied last
        assert env["LEVEL"] == "secret"

    def test_step_env_beats_job_env(self, ctx):
        ctx.job_env = {"LEVEL": "job"}
        env = build_step_environment(Step(run="x", env={"LEVEL": "step"}), ctx)
        assert env["LEVEL"] == "step"

    def test_github_variables(self, ctx, work_dir):
        env = build_step_environment(Step(run="x", id="build-step"), ctx)
        assert env["CI"] == "true"
        assert env["GITHUB_ACTIONS"] == "true"
        assert env["GITHUB_REPOSITORY"] == "octo/repo"
        assert env["GITHUB_SHA"] == "abc123"
        assert env["GITHUB_WORKFLOW"] == "CI"
        assert env["GITHUB_JOB"] == "build"
        assert env["GITHUB_ACTION"] == "build-step"
        assert env["GITHUB_EVENT_NAME"] == "workflow_dispatch"
        assert env["GITHUB_WORKSPACE"] == str(work_dir)
        assert env["GITHUB_OUTPUT"] == str(work_dir / ".github-output")
        assert env["RUNNER_TEMP"] == str(work_dir / ".runner-temp")
        assert env["RUNNER_NAME"] == "localmost"

    def test_extra_path_is_prepended(self, ctx):
        ctx.extra_path = ["/opt/tool/bin"]
        env = build_step_environment(Step(run="x"), ctx)
        assert env["PATH"].startswith("/opt/tool/bin")


class TestRunSteps:
    def test_output_is_streamed(self, ctx, output):
        result = execute_step(sh("""
            echo hello
            echo oops >&2
        """), ctx)
        assert result.status == "success"
        assert result.exit_code == 0
        assert lines(output) == ["hello"]
        assert lines(output, "stderr") == ["oops"]

    def test_nonzero_exit(self, ctx):
        result = execute_step(sh("exit 3"), ctx)
        assert result.status == "failure"
        assert result.exit_code == 3
        assert result.error == "Process completed with exit code 3"

    def test_expressions_are_expanded_in_script(self, ctx, output):
        ctx.matrix = {"node": 20}
        ctx.secrets = {"TOKEN": "xyz"}
        execute_step(sh('echo "node ${{ matrix.node }} token ${{ secrets.TOKEN }}"'), ctx)
        assert lines(output) == ["node 20 token xyz"]

    def test_outputs_recorded_under_step_id(self, ctx):
        step = sh("""
            echo "version=1.2.3" >> "$GITHUB_OUTPUT"
            {
              echo "notes<<EOF"
              echo "first"
              echo "second"
              echo "EOF"
            } >> "$GITHUB_OUTPUT"
        """, id="meta")
        result = execute_step(step, ctx)
        assert result.outputs == {"version": "1.2.3", "notes": "first\nsecond"}
        assert ctx.step_outputs["meta"] == result.outputs

    def test_outputs_flow_to_later_steps(self, ctx, output):
        steps = [
            sh('echo "value=42" >> "$GITHUB_OUTPUT"', id="produce"),
            sh('echo "got ${{ steps.produce.outputs.value }}"'),
        ]
        results, ok = run_steps(steps, ctx)
        assert ok
        assert lines(output) == ["got 42"]

    def test_github_env_and_path(self, ctx, output, work_dir):
        tool_dir = work_dir / "tools"
        tool_dir.mkdir()
        tool = tool_dir / "mytool"
        tool.write_text("#!/bin/sh\necho from-tool\n")
        tool.chmod(0o755)

        steps = [
            sh(f"""
                echo "GREETING=hi there" >> "$GITHUB_ENV"
                echo "{tool_dir}" >> "$GITHUB_PATH"
            """),
            sh('echo "$GREETING"'),
            sh("mytool"),
        ]
        results, ok = run_steps(steps, ctx)
        assert ok, results
        assert lines(output) == ["hi there", "from-tool"]
        assert ctx.job_env["GREETING"] == "hi there"

    def test_script_file_is_removed(self, ctx, work_dir):
        execute_step(sh("echo done"), ctx)
        assert list(work_dir.glob(".step-*")) == []

    def test_script_file_is_removed_when_chmod_fails(self, ctx, work_dir, monkeypatch):
        def refuse(self, mode):
            raise PermissionError("chmod refused")

        monkeypatch.setattr(Path, "chmod", refuse)
        result = execute_step(sh("echo done"), ctx)
        assert result.status == "failure"
        assert result.error == "chmod refused"
        assert list(work_dir.glob(".step-*")) == []

    def test_working_directory(self, ctx, output, work_dir):
        (work_dir / "sub").mkdir()
        execute_step(sh("pwd", working_directory="sub"), ctx)
        assert lines(output)[-1].endswith("/sub")

    def test_missing_working_directory(self, ctx):
        result = execute_step(sh("pwd", working_directory="nope"), ctx)
        assert result.status == "failure"
        assert result.error == "working-directory not found: nope"

    def test_default_shell_from_context(self, ctx, output):
        ctx.defaults = RunDefaults(shell="sh")
        result = execute_step(Step(run="echo via-default"), ctx)
        assert result.status == "success"
        assert lines(output) == ["via-default"]

    @pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")
    def test_bash_uses_pipefail(self, ctx):
        result = execute_step(Step(run="false | true"), ctx)
        assert result.status == "failure"

    @pytest.mark.parametrize(
        "condition, status",
        [
            pytest.param("failure()", "skipped", id="failure"),
            pytest.param("${{ cancelled() }}", "skipped", id="cancelled"),
            pytest.param("always()", "success", id="always"),
        ],
    )
    def test_conditions(self, ctx, condition, status):
        assert execute_step(sh("true", if_=condition), ctx).status == status

    def test_failure_stops_the_job(self, ctx, output):
        results, ok = run_steps([sh("exit 1"), sh("echo never")], ctx)
        assert not ok
        assert [r.status for r in results] == ["failure"]
        assert "never" not in lines(output)

    def test_continue_on_error(self, ctx, output):
        results, ok = run_steps([sh("exit 1", continue_on_error=True), sh("echo after")], ctx)
        assert ok
        assert [r.status for r in results] == ["failure", "success"]
        assert lines(output) == ["after"]

    def test_status_callbacks(self, ctx):
        seen = []
        ctx.on_status = lambda name, status: seen.append((name, status))
        execute_step(sh("true", name="noop"), ctx)
        assert seen == [("noop", "running"), ("noop", "success")]


class TestTimeoutsAndCancellation:
    def test_step_timeout_kills_child(self, ctx):
        started = time.monotonic()
        result = execute_step(sh("sleep 10", timeout_minutes=0.01), ctx)
        assert time.monotonic() - started < 8
        assert result.status == "failure"
        assert result.error == "timed out after 0.01 minutes"

    def test_step_timeout_covers_background_children(self, ctx):
        started = time.monotonic()
        result = execute_step(sh("sleep 20 &\necho started", timeout_minutes=0.01), ctx)
        assert time.monotonic() - started < 5
        assert result.status == "failure"
        assert result.error == "timed out after 0.01 minutes"

    def test_leftover_background_child_is_killed(self, work_dir, monkeypatch):
        monkeypatch.setattr(process, "DRAIN_GRACE_SECONDS", 0.3)
        seen = []
        started = time.monotonic()
        result = run_in_sandbox(
            "/bin/sh", ["-c", "sleep 20 & echo hi"],
            cwd=work_dir, env={"PATH": "/usr/bin:/bin"},
            on_output=lambda line, stream: seen.append(line),
        )
        assert time.monotonic() - started < 5
        assert result.exit_code == 0
        assert not result.timed_out
        assert seen == ["hi"]

    def test_spent_job_budget_stops_remaining_steps(self, ctx):
        ctx.deadline = time.monotonic() - 1
        results, ok = run_steps([sh("echo x", name="late")], ctx)
        assert not ok
        assert results[0].name == "late"
        assert results[0].error == "job timeout reached"

    def test_job_budget_bounds_running_step(self, ctx):
        ctx.deadline = time.monotonic() + 0.5
        result = execute_step(sh("sleep 10"), ctx)
        assert result.status == "failure"
        assert result.error == "job timeout reached"

    def test_cancelled_before_start(self, ctx):
        ctx.cancel = threading.Event()
        ctx.cancel.set()
        results, ok = run_steps([sh("echo x")], ctx)
        assert results == []
        assert not ok

    def test_cancel_while_running(self, ctx):
        ctx.cancel = threading.Event()
        timer = threading.Timer(0.3, ctx.cancel.set)
        timer.start()
        try:
            result = execute_step(sh("sleep 10"), ctx)
        finally:
            timer.cancel()
        assert result.status == "failure"
        assert result.error == "cancelled"


COMPOSITE = """
    name: Greeter
    inputs:
      who:
        default: nobody
      punctuation:
        default: "!"
    outputs:
      greeting:
        value: ${{ steps.greet.outputs.greeting }}
    runs:
      using: composite
      steps:
        - id: greet
          shell: sh
          run: |
            echo "greeting=hello ${{ inputs.who }}${{ inputs.punctuation }}" >> "$GITHUB_OUTPUT"
            echo "composite sees $STEP_VAR"
"""


class TestActions:
    def test_local_composite_action(self, ctx, output, work_dir):
        write_action(work_dir / "greeter", COMPOSITE)
        step = Step(uses="./greeter", id="hi", with_={"who": "world"}, env={"STEP_VAR": "from-step"})
        result = execute_step(step, ctx)
        assert result.status == "success", result.error
        assert result.outputs == {"greeting": "hello world!"}
        assert ctx.step_outputs["hi"] == {"greeting": "hello world!"}
        assert "composite sees from-step" in lines(output)

    def test_composite_input_defaults(self, ctx, work_dir):
        write_action(work_dir / "greeter", COMPOSITE)
        result = execute_step(Step(uses="./greeter"), ctx)
        assert result.outputs == {"greeting": "hello nobody!"}

    def test_composite_failure_names_the_nested_step(self, ctx, work_dir):
        write_action(work_dir / "broken", """
            name: Broken
            runs:
              using: composite
              steps:
                - name: explode
                  shell: sh
                  run: exit 4
        """)
        result = execute_step(Step(uses="./broken"), ctx)
        assert result.status == "failure"
        assert result.error == "explode: Process completed with exit code 4"

    def test_composite_env_exports_reach_later_steps(self, ctx, output, work_dir):
        write_action(work_dir / "exporter", """
            name: Exporter
            runs:
              using: composite
              steps:
                - shell: sh
                  run: echo "FROM_ACTION=yes" >> "$GITHUB_ENV"
        """)
        steps = [
            Step(uses="./exporter", env={"STEP_VAR": "only-for-the-action"}),
            sh('echo "got $FROM_ACTION"'),
        ]
        results, ok = run_steps(steps, ctx)
        assert ok, results
        assert lines(output)[-1] == "got yes"
        assert ctx.job_env["FROM_ACTION"] == "yes"
        assert "STEP_VAR" not in ctx.job_env

    def test_docker_action(self, ctx, work_dir):
        write_action(work_dir / "container", """
            name: Container
            runs:
              using: docker
              image: Dockerfile
        """)
        result = execute_step(Step(uses="./container"), ctx)
        assert result.status == "failure"
        assert result.error == "Docker actions are not supported in local test mode"

    def test_docker_reference(self, ctx):
        result = execute_step(Step(uses="docker://alpine:3"), ctx)
        assert result.error == "Docker actions are not supported in local test mode"

    def test_unsupported_runtime(self, ctx, work_dir):
        write_action(work_dir / "odd", "name: Odd\nruns:\n  using: wasm\n")
        result = execute_step(Step(uses="./odd"), ctx)
        assert result.error == "Unsupported action type: wasm"

    def test_missing_action_metadata(self, ctx, work_dir):
        (work_dir / "empty").mkdir()
        result = execute_step(Step(uses="./empty"), ctx)
        assert result.status == "failure"
        assert result.error.startswith("No action.yml found in")

    def test_unparseable_reference(self, ctx):
        result = execute_step(Step(uses="not-an-action"), ctx)
        assert result.status == "failure"
        assert result.error == "Cannot parse action reference: not-an-action"

    def test_remote_action_from_cache(self, ctx, output, tmp_path):
        action_dir = write_action(tmp_path / "cached" / "octo" / "greeter" / "v1", COMPOSITE)
        cache = ActionCache(tmp_path / "cached")
        cache._save_index({
            "octo/greeter@v1": CachedAction(
                ref=ActionRef("octo", "greeter", "v1"),
                local_path=str(action_dir),
                fetched_at=time.time(),
            ),
        })
        ctx.action_cache = cache

        result = execute_step(Step(uses="octo/greeter@v1", with_={"who": "cache"}), ctx)
        assert result.status == "success", result.error
        assert result.outputs == {"greeting": "hello cache!"}
        assert "Fetching action octo/greeter@v1..." in lines(output)

    def test_intercepted_checkout(self, ctx, output):
        result = execute_step(Step(uses="actions/checkout@v4"), ctx)
        assert result.status == "success"
        assert "Using local working tree (checkout intercepted)" in lines(output)


class TestExtractOutputs:
    def test_job_outputs(self):
        job = Job(
            id="build",
            outputs={
                "version": "${{ steps.meta.outputs.version }}",
                "missing": "${{ steps.meta.outputs.nope }}",
                "other": "${{ steps.ghost.outputs.x }}",
                "literal": "fixed",
                "mixed": "v${{ steps.meta.outputs.version }}-${{ steps.meta.outputs.build }}",
                "mixed-missing": "v${{ steps.meta.outputs.nope }}",
                "other-expression": "${{ matrix.os }}",
            },
        )
        outputs = extract_job_outputs(job, {"meta": {"version": "1.0", "build": "7"}})
        assert outputs == {"version": "1.0", "literal": "fixed", "mixed": "v1.0-7"}

    def test_workflow_outputs(self):
        reusable = ReusableWorkflow(
            workflow=Workflow(name="Deploy", jobs={}),
            outputs={
                "url": WorkflowOutput("${{ jobs.deploy.outputs.url }}"),
                "absent": WorkflowOutput("${{ jobs.deploy.outputs.nope }}"),
                "static": WorkflowOutput("constant"),
                "health": WorkflowOutput("${{ jobs.deploy.outputs.url }}/health"),
            },
        )
        outputs = extract_workflow_outputs(reusable, {"deploy": {"url": "https://x"}})
        assert outputs == {"url": "https://x", "static": "constant", "health": "https://x/health"}
