from __future__ import annotations

import shutil

import pytest

from localmost import git


class TestRepoRoot:
    @pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
    def test_outside_a_repository(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
        assert git.repo_root(tmp_path) is None

    def test_git_not_installed(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PATH", str(tmp_path))
        assert git.repo_root(tmp_path) is None
