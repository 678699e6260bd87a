from __future__ import annotations

import os
from pathlib import Path


def app_data_dir() -> Path:
    override = os.environ.get("LOCALMOST_CONFIG_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".localmost"


def actions_dir() -> Path:
    return app_data_dir() / "actions"


def workflow_cache_dir() -> Path:
    return app_data_dir() / "workflow-cache"


def policies_dir() -> Path:
    return app_data_dir() / "policies"


def workspaces_dir() -> Path:
    return app_data_dir() / "workspaces"


def tool_cache_dir() -> Path:
    return app_data_dir() / "tool-cache"


def logs_dir() -> Path:
    return app_data_dir() / "logs"


# Read on each call so tests can monkeypatch the environment.
def action_cache_max_age_days() -> float:
    return float(os.environ.get("LOCALMOST_ACTION_CACHE_MAX_AGE_DAYS", "7"))


def sandbox_exec() -> str:
    """Path to sandbox-exec; set LOCALMOST_SANDBOX_EXEC="" to run unconfined."""
    return os.environ.get("LOCALMOST_SANDBOX_EXEC", "/usr/bin/sandbox-exec")


def workspace_keep() -> int:
    return int(os.environ.get("LOCALMOST_WORKSPACE_KEEP", "10"))


GITHUB_SERVER_URL = os.environ.get("LOCALMOST_GITHUB_SERVER_URL", "https://github.com")
GITHUB_API_URL = os.environ.get("LOCALMOST_GITHUB_API_URL", "https://api.github.com")
GITHUB_GRAPHQL_URL = os.environ.get("LOCALMOST_GITHUB_GRAPHQL_URL", "https://api.github.com/graphql")
