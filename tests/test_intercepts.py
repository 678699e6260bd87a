"""Tests for the locally replaced built-in actions."""

from __future__ import annotations

import pytest

from localmost import intercepts
from localmost.intercepts import ARTIFACTS_DIR, InterceptedAction, classify_intercept, run_intercepted


def run(uses: str, with_: dict, ctx):
    kind = classify_intercept(uses)
    assert kind is not None
    return run_intercepted(kind, uses, with_, ctx, uses)


def stdout(output):
    return [line for line, stream in output if stream == "stdout"]


class TestClassify:
    @pytest.mark.parametrize(
        "uses, kind",
        [
            ("actions/checkout@v4", InterceptedAction.CHECKOUT),
            ("actions/cache@v4", InterceptedAction.CACHE),
            ("actions/cache/restore@v4", InterceptedAction.CACHE_RESTORE),
            ("actions/cache/save@v4", InterceptedAction.CACHE_SAVE),
            ("actions/upload-artifact@v4", InterceptedAction.UPLOAD_ARTIFACT),
            ("actions/download-artifact@v4", InterceptedAction.DOWNLOAD_ARTIFACT),
            ("actions/setup-node@v4", InterceptedAction.SETUP_TOOLCHAIN),
            ("actions/setup-python@v5", InterceptedAction.SETUP_TOOLCHAIN),
        ],
    )
    def test_known(self, uses, kind):
        assert classify_intercept(uses) is kind

    @pytest.mark.parametrize("uses", ["actions/checkout", "octo/checkout@v1", "./actions/checkout@v4"])
    def test_not_intercepted(self, uses):
        assert classify_intercept(uses) is None


class TestCheckout:
    def test_local_tree(self, ctx, output):
        result = run("actions/checkout@v4", {}, ctx)
        assert result.status == "success"
        assert "Using local working tree (checkout intercepted)" in stdout(output)
        assert ctx.sha == "0" * 40

    def test_other_repository_is_a_note(self, ctx, output):
        result = run("actions/checkout@v4", {"repository": "octo/other"}, ctx)
        assert result.status == "success"
        assert stdout(output) == ["Note: Checking out octo/other would require network access"]


class TestCache:
    def test_miss_then_deferred_save_then_hit(self, ctx, work_dir):
        (work_dir / "deps").mkdir()
        (work_dir / "deps" / "lib.txt").write_text("v1\n")
        with_ = {"key": "deps-1", "path": "deps"}

        first = run("actions/cache@v4", with_, ctx)
        assert first.outputs["cache-hit"] == "false"
        assert len(ctx.post_job) == 1
        ctx.post_job[0]()

        (work_dir / "deps" / "lib.txt").unlink()
        ctx.post_job.clear()
        second = run("actions/cache@v4", with_, ctx)
        assert second.outputs["cache-hit"] == "true"
        assert second.outputs["cache-matched-key"] == "deps-1"
        assert ctx.post_job == []
        assert (work_dir / "deps" / "lib.txt").read_text() == "v1\n"

    def test_restore_key_is_a_partial_hit(self, ctx, work_dir):
        (work_dir / "deps").mkdir()
        run("actions/cache/save@v4", {"key": "deps-old", "path": "deps"}, ctx)
        result = run("actions/cache/restore@v4", {"key": "deps-new", "path": "deps", "restore-keys": "deps-\n"}, ctx)
        assert result.outputs["cache-hit"] == "false"
        assert result.outputs["cache-matched-key"] == "deps-old"
        assert ctx.post_job == []

    def test_missing_key(self, ctx, output):
        result = run("actions/cache@v4", {"path": "deps"}, ctx)
        assert result.status == "success"
        assert result.outputs == {"cache-hit": "false"}
        assert "Cache: missing key or path" in stdout(output)


class TestArtifacts:
    def test_upload_then_download(self, ctx, work_dir):
        (work_dir / "dist").mkdir()
        (work_dir / "dist" / "app.tar").write_text("binary")
        (work_dir / "report.txt").write_text("ok")

        result = run("actions/upload-artifact@v4", {"name": "build", "path": "dist\nreport.txt\nnope"}, ctx)
        assert result.status == "success"
        stored = work_dir / ARTIFACTS_DIR / "build"
        assert (stored / "dist" / "app.tar").read_text() == "binary"
        assert (stored / "report.txt").read_text() == "ok"

        result = run("actions/download-artifact@v4", {"name": "build", "path": "restored"}, ctx)
        assert (work_dir / "restored" / "report.txt").read_text() == "ok"
        assert result.outputs == {"download-path": str(work_dir / "restored")}

    def test_download_without_local_copy(self, ctx, output):
        result = run("actions/download-artifact@v4", {"name": "ghost"}, ctx)
        assert result.status == "success"
        assert "Artifact download stubbed: ghost (no local copy)" in stdout(output)


class TestSetupToolchain:
    def test_uses_host_tool(self, ctx, output, monkeypatch):
        monkeypatch.setattr(intercepts.shutil, "which", lambda tool: f"/usr/local/bin/{tool}")
        result = run("actions/setup-node@v4", {"node-version": "20"}, ctx)
        assert result.status == "success"
        assert stdout(output) == [
            "Using host node at /usr/local/bin/node (actions/setup-node intercepted, requested 20)"
        ]

    def test_missing_tool_is_a_warning(self, ctx, output, monkeypatch):
        monkeypatch.setattr(intercepts.shutil, "which", lambda tool: None)
        result = run("actions/setup-go@v5", {}, ctx)
        assert result.status == "success"
        assert output == [("Warning: go not found on PATH (actions/setup-go intercepted)", "stderr")]
