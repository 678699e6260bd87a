"""Tests for the localmost command line."""

from __future__ import annotations

import pytest
from click.testing import CliRunner

from localmost.cache import CacheStore
from localmost.cli import cli

from .conftest import write_workflow

SIMPLE = """\
name: CI
jobs:
  build:
    runs-on: macos-latest
    steps:
      - name: Say hello
        shell: sh
        run: echo hello-from-step
"""

FAILING = """\
name: CI
jobs:
  build:
    runs-on: macos-latest
    steps:
      - name: Break
        shell: sh
        run: exit 3
  deploy:
    needs: build
    runs-on: macos-latest
    steps:
      - shell: sh
        run: echo deploy
"""

WITH_SECRET = """\
name: CI
jobs:
  build:
    runs-on: macos-latest
    steps:
      - shell: sh
        run: echo "token length ${#API_KEY}"
        env:
          API_KEY: ${{ secrets.LOCALMOST_CLI_TEST_KEY }}
"""

RC = """\
version: 1
shared:
  network:
    allow:
      - github.com
workflows:
  CI:
    secrets:
      require: [LOCALMOST_CLI_TEST_KEY]
"""


@pytest.fixture
def repo(work_dir, monkeypatch):
    monkeypatch.chdir(work_dir)
    monkeypatch.delenv("LOCALMOST_CLI_TEST_KEY", raising=False)
    return work_dir


@pytest.fixture
def runner():
    return CliRunner()


class TestTestCommand:
    def test_passing_workflow(self, repo, runner):
        write_workflow(repo, "ci.yml", SIMPLE)
        result = runner.invoke(cli, ["test", "--no-workspace"])
        assert result.exit_code == 0, result.output
        assert "Running workflow: .github/workflows/ci.yml" in result.output
        assert "No .localmostrc found. Run with --updaterc to generate." in result.output
        assert "▶ build" in result.output
        assert "✓ Say hello" in result.output
        assert "Jobs: 1/1 passed" in result.output
        assert "✓ Workflow passed" in result.output
        assert "hello-from-step" not in result.output

    def test_verbose_streams_output(self, repo, runner):
        write_workflow(repo, "ci.yml", SIMPLE)
        result = runner.invoke(cli, ["test", "--no-workspace", "--verbose"])
        assert result.exit_code == 0, result.output
        assert "    hello-from-step" in result.output

    def test_failing_workflow(self, repo, runner):
        write_workflow(repo, "ci.yml", FAILING)
        result = runner.invoke(cli, ["test", "--no-workspace"])
        assert result.exit_code == 1
        assert "✗ Break" in result.output
        assert "Error: Process completed with exit code 3" in result.output
        assert "skipped: dependency 'build' failed" in result.output
        assert "Jobs: 0/2 passed" in result.output
        assert "✗ Workflow failed" in result.output

    def test_no_gate_needs(self, repo, runner):
        write_workflow(repo, "ci.yml", FAILING)
        result = runner.invoke(cli, ["test", "--no-workspace", "--no-gate-needs"])
        assert result.exit_code == 1
        assert "Jobs: 1/2 passed" in result.output

    def test_runs_in_a_workspace_snapshot(self, repo, runner, app_home):
        write_workflow(repo, "ci.yml", SIMPLE.replace("echo hello-from-step", "touch created-by-step"))
        result = runner.invoke(cli, ["test"])
        assert result.exit_code == 0, result.output
        assert "Workspace: " in result.output
        assert not (repo / "created-by-step").exists()
        snapshots = list((app_home / "workspaces").iterdir())
        assert len(snapshots) == 1
        assert (snapshots[0] / "created-by-step").exists()

    def test_named_job_and_workflow(self, repo, runner):
        write_workflow(repo, "other.yml", FAILING)
        result = runner.invoke(cli, ["test", "other", "--job", "deploy", "--no-workspace"])
        assert result.exit_code == 0, result.output
        assert "Jobs: 1/1 passed" in result.output

    def test_dry_run(self, repo, runner):
        write_workflow(repo, "ci.yml", FAILING)
        result = runner.invoke(cli, ["test", "--dry-run"])
        assert result.exit_code == 0, result.output
        assert "Break (dry run)" in result.output
        assert "skipped: dry run" in result.output

    def test_no_workflow(self, repo, runner):
        result = runner.invoke(cli, ["test"])
        assert result.exit_code == 1
        assert "No workflow file found" in result.output

    def test_unknown_workflow(self, repo, runner):
        write_workflow(repo, "ci.yml", SIMPLE)
        result = runner.invoke(cli, ["test", "nope"])
        assert result.exit_code == 1
        assert "Could not find workflow: nope" in result.output

    def test_invalid_workflow(self, repo, runner):
        write_workflow(repo, "ci.yml", "jobs:\n  build:\n    steps: [{run: x}]\n")
        result = runner.invoke(cli, ["test"])
        assert result.exit_code == 1
        assert "ERROR: Invalid workflow" in result.output
        assert "missing required 'runs-on' field" in result.output

    def test_bad_matrix_spec(self, repo, runner):
        write_workflow(repo, "ci.yml", SIMPLE)
        result = runner.invoke(cli, ["test", "--no-workspace", "--matrix", "oops"])
        assert result.exit_code == 1
        assert "Invalid matrix spec: oops" in result.output

    def test_unknown_job(self, repo, runner):
        write_workflow(repo, "ci.yml", SIMPLE)
        result = runner.invoke(cli, ["test", "--no-workspace", "--job", "ghost"])
        assert result.exit_code == 1
        assert "Job not found: ghost" in result.output


class TestSecretsAndPolicy:
    def test_stubbed_secret(self, repo, runner):
        write_workflow(repo, "ci.yml", WITH_SECRET)
        result = runner.invoke(cli, ["test", "--no-workspace", "--verbose"])
        assert result.exit_code == 0, result.output
        assert "Secrets required: LOCALMOST_CLI_TEST_KEY" in result.output
        assert "LOCALMOST_CLI_TEST_KEY (stubbed)" in result.output
        assert "token length 0" in result.output

    def test_secret_from_environment(self, repo, runner, monkeypatch):
        monkeypatch.setenv("LOCALMOST_CLI_TEST_KEY", "abcd")
        write_workflow(repo, "ci.yml", WITH_SECRET)
        result = runner.invoke(cli, ["test", "--no-workspace", "--verbose"])
        assert "LOCALMOST_CLI_TEST_KEY (environment)" in result.output
        assert "token length 4" in result.output

    def test_abort_on_missing_secret(self, repo, runner):
        write_workflow(repo, "ci.yml", WITH_SECRET)
        result = runner.invoke(cli, ["test", "--no-workspace", "--secrets", "abort"])
        assert result.exit_code == 1
        assert "ERROR: Missing secrets" in result.output
        assert "Missing secrets: LOCALMOST_CLI_TEST_KEY." in result.output

    def test_required_secret_from_policy(self, repo, runner):
        write_workflow(repo, "ci.yml", SIMPLE)
        (repo / ".localmostrc").write_text(RC)
        result = runner.invoke(cli, ["test", "--no-workspace"])
        assert result.exit_code == 0, result.output
        assert "Using policy: .localmostrc" in result.output
        assert "Secrets required: LOCALMOST_CLI_TEST_KEY" in result.output

    def test_invalid_rc(self, repo, runner):
        write_workflow(repo, "ci.yml", SIMPLE)
        (repo / ".localmostrc").write_text("version: 1\nshared:\n  network:\n    allow: github.com\n")
        result = runner.invoke(cli, ["test", "--no-workspace"])
        assert result.exit_code == 1
        assert "ERROR: Invalid .localmostrc" in result.output
        assert "shared.network.allow must be an array" in result.output

    def test_discovery_proposes_policy(self, repo, runner, app_home):
        write_workflow(repo, "ci.yml", WITH_SECRET)
        result = runner.invoke(cli, ["test", "--no-workspace", "--updaterc"])
        assert result.exit_code == 0, result.output
        assert "Discovery mode" in result.output
        assert "Proposed .localmostrc" in result.output
        assert '      - "*.github.com"' in result.output
        assert "        - LOCALMOST_CLI_TEST_KEY" in result.output
        assert f"Sandbox trace: {app_home / 'logs'}" in result.output

    def test_discovery_with_existing_rc(self, repo, runner):
        write_workflow(repo, "ci.yml", SIMPLE)
        (repo / ".localmostrc").write_text(RC)
        result = runner.invoke(cli, ["test", "--no-workspace", "--updaterc"])
        assert f"Would update: {repo / '.localmostrc'}" in result.output


class TestPolicyCommands:
    def test_show_default(self, repo, runner):
        result = runner.invoke(cli, ["policy", "show"])
        assert result.exit_code == 0
        assert "Default policy" in result.output
        assert '- "registry.npmjs.org"' in result.output

    def test_show_effective(self, repo, runner):
        (repo / ".localmostrc").write_text(RC)
        result = runner.invoke(cli, ["policy", "show", "--workflow", "CI"])
        assert result.exit_code == 0
        assert "Effective policy for CI" in result.output
        assert "Required secrets: LOCALMOST_CLI_TEST_KEY" in result.output

    def test_validate(self, repo, runner):
        result = runner.invoke(cli, ["policy", "validate"])
        assert result.exit_code == 1
        assert "No .localmostrc found" in result.output

        (repo / ".localmostrc").write_text(RC)
        result = runner.invoke(cli, ["policy", "validate"])
        assert result.exit_code == 0
        assert "✓ .localmostrc is valid" in result.output

    def test_validate_missing_version_warns(self, repo, runner):
        (repo / ".localmostrc").write_text("shared: {}\n")
        result = runner.invoke(cli, ["policy", "validate"])
        assert result.exit_code == 0
        assert 'Warning: Missing "version" field. Assuming version 1.' in result.output

    def test_init(self, repo, runner):
        result = runner.invoke(cli, ["policy", "init"])
        assert result.exit_code == 0
        assert "✓ Wrote .localmostrc" in result.output
        assert "registry.npmjs.org" in (repo / ".localmostrc").read_text()

        again = runner.invoke(cli, ["policy", "init"])
        assert again.exit_code == 1
        assert "Use --force to overwrite it." in again.output

        forced = runner.invoke(cli, ["policy", "init", "--force"])
        assert forced.exit_code == 0

    def test_approve_list_and_diff(self, repo, runner):
        (repo / ".localmostrc").write_text(RC)

        diff = runner.invoke(cli, ["policy", "diff"])
        assert "No cached policy for local/repo" in diff.output
        assert "+ shared.network.allow: github.com" in diff.output

        approved = runner.invoke(cli, ["policy", "approve", "--yes"])
        assert approved.exit_code == 0, approved.output
        assert "New repository: local/repo" in approved.output
        assert "✓ Policy approved for local/repo" in approved.output

        listed = runner.invoke(cli, ["policy", "list"])
        assert "local/repo: approved" in listed.output

        diff = runner.invoke(cli, ["policy", "diff"])
        assert diff.output.strip() == "No changes"

    def test_approve_declined(self, repo, runner):
        (repo / ".localmostrc").write_text(RC)
        result = runner.invoke(cli, ["policy", "approve"], input="n\n")
        assert result.exit_code == 1
        assert "✗ Policy not approved for local/repo" in result.output

        listed = runner.invoke(cli, ["policy", "list"])
        assert "No cached policies." in listed.output


class TestActionsCommands:
    def test_list_and_clean_empty_cache(self, repo, runner):
        listed = runner.invoke(cli, ["actions", "list"])
        assert listed.exit_code == 0
        assert "No cached actions." in listed.output

        cleaned = runner.invoke(cli, ["actions", "clean", "--max-age-days", "1"])
        assert cleaned.exit_code == 0
        assert "Removed 0 cached action(s), kept 0" in cleaned.output


class TestCacheCommands:
    def test_prune_keeps_newest(self, repo, runner):
        (repo / "lock.txt").write_text("locked\n")
        store = CacheStore()
        for i in range(3):
            store.save(f"npm-{i}", ["lock.txt"], repo)

        result = runner.invoke(cli, ["cache", "prune", "--keep", "1"])
        assert result.exit_code == 0, result.output
        assert "Removed 2 cache entries" in result.output
        assert len(list(store.root.glob("*.manifest.json"))) == 1

    def test_prune_rejects_negative_keep(self, repo, runner):
        result = runner.invoke(cli, ["cache", "prune", "--keep", "-1"])
        assert result.exit_code == 2
