"""Path helpers for Shipyard user directories and per-workspace state."""

from __future__ import annotations

import os
from pathlib import Path

from platformdirs import user_config_dir, user_data_dir

WORKSPACE_DIR_NAME = ".shipyard"


def get_config_dir() -> Path:
    """Get the user config directory (config.toml)."""
    override = os.environ.get("SHIPYARD_CONFIG_DIR")
    if override:
        return Path(override).resolve()
    return Path(user_config_dir("shipyard"))


def get_data_dir() -> Path:
    """Get the user data directory (debug log exports)."""
    override = os.environ.get("SHIPYARD_DATA_DIR")
    if override:
        return Path(override).resolve()
    return Path(user_data_dir("shipyard"))


def get_config_path() -> Path:
    """Get the path to the user-level config file."""
    return get_config_dir() / "config.toml"


def get_debug_log_path() -> Path:
    """Get the path to the debug log export file."""
    return get_data_dir() / "debug.log"


def get_state_dir(workspace: Path) -> Path:
    """Per-workspace state directory."""
    return workspace / WORKSPACE_DIR_NAME


def get_workspace_config_path(workspace: Path) -> Path:
    return get_state_dir(workspace) / "config.toml"


def get_loop_state_path(workspace: Path) -> Path:
    return get_state_dir(workspace) / "loop-state.json"


def get_workflow_snapshot_path(workspace: Path) -> Path:
    return get_state_dir(workspace) / "workflow.json"


def get_start_lock_path(workspace: Path) -> Path:
    return get_state_dir(workspace) / "start.lock"


def get_state_lock_path(workspace: Path) -> Path:
    """Lock guarding read-modify-write of the loop state across processes."""
    return get_state_dir(workspace) / "state.lock"


def get_activity_path(workspace: Path) -> Path:
    return get_state_dir(workspace) / "activity.json"


def get_logs_dir(workspace: Path) -> Path:
    return get_state_dir(workspace) / "logs"


def get_event_log_path(workspace: Path, category: str) -> Path:
    """Append-only JSONL event log for one workflow category."""
    return get_logs_dir(workspace) / f"{category}.jsonl"


def get_artifacts_dir(workspace: Path, item_key: str) -> Path:
    """Artifact directory for one work item (issue drafts, plans, reviews)."""
    return get_state_dir(workspace) / "artifacts" / item_key


def ensure_directories() -> None:
    """Create user-level directories if they don't exist."""
    get_config_dir().mkdir(parents=True, exist_ok=True)
    get_data_dir().mkdir(parents=True, exist_ok=True)
