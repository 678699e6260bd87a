from __future__ import annotations

from pathlib import Path
from typing import List, Tuple

import pytest

from localmost.context import ExecutionContext


@pytest.fixture(autouse=True)
def app_home(tmp_path, monkeypatch) -> Path:
    """Keep every data directory inside the test's tmp dir and run unconfined."""
    home = tmp_path / "localmost-home"
    monkeypatch.setenv("LOCALMOST_CONFIG_DIR", str(home))
    monkeypatch.setenv("LOCALMOST_SANDBOX_EXEC", "")
    return home


@pytest.fixture
def work_dir(tmp_path) -> Path:
    d = tmp_path / "work"
    d.mkdir()
    return d


@pytest.fixture
def output() -> List[Tuple[str, str]]:
    return []


@pytest.fixture
def ctx(work_dir, output) -> ExecutionContext:
    return ExecutionContext(
        work_dir=work_dir,
        workflow_name="CI",
        job_id="build",
        repository="octo/repo",
        sha="abc123",
        on_output=lambda line, stream: output.append((line, stream)),
    )


def write_workflow(root: Path, name: str, content: str) -> Path:
    wf_dir = root / ".github" / "workflows"
    wf_dir.mkdir(parents=True, exist_ok=True)
    path = wf_dir / name
    path.write_text(content, encoding="utf-8")
    return path
