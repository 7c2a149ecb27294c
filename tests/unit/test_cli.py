"""CLI tests for the `shipyard auto` command group."""

from __future__ import annotations

import json
from importlib.metadata import PackageNotFoundError
from typing import TYPE_CHECKING

import pytest
from click.testing import CliRunner

import shipyard
from shipyard import version as version_module
from shipyard.__main__ import cli
from shipyard.adapters.backends import StaticIssueSource
from shipyard.models.entities import LoopState
from shipyard.models.enums import RunStatus, Stage
from shipyard.services.checkpoints import CheckpointStore
from shipyard.services.runs import AutomationService, RunRegistry
from tests.helpers import FakeBackend, make_item, wait_until

if TYPE_CHECKING:
    from pathlib import Path

    from shipyard.config import ShipyardConfig


def _items_file(tmp_path: Path) -> Path:
    path = tmp_path / "items.json"
    path.write_text(
        json.dumps(
            {
                "items": [
                    {"source": "gh", "id": 1, "title": "Add login"},
                    {"source": "gh", "id": 2, "title": "Add logout", "dependsOn": ["1"]},
                    {"source": "jira", "id": "OPS-3", "title": "Rotate keys"},
                ]
            }
        )
    )
    return path


def test_version_flag() -> None:
    """`shipyard --version` prints the package version."""
    result = CliRunner().invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert result.output.startswith("shipyard ")


def test_version_falls_back_to_the_source_tree(monkeypatch: pytest.MonkeyPatch) -> None:
    """Without installed metadata the package's own `__version__` is reported."""

    def _missing(name: str) -> str:
        raise PackageNotFoundError(name)

    monkeypatch.setattr(version_module, "version", _missing)
    version_module.get_shipyard_version.cache_clear()
    try:
        assert version_module.get_shipyard_version() == shipyard.__version__
    finally:
        version_module.get_shipyard_version.cache_clear()


def test_start_runs_the_queue_to_completion(tmp_path: Path, workspace: Path) -> None:
    """`shipyard auto start` with no stage commands completes every item."""
    result = CliRunner().invoke(
        cli,
        [
            "auto",
            "start",
            "--items",
            str(_items_file(tmp_path)),
            "--source",
            "gh",
            "--json",
            "--workspace",
            str(workspace),
        ],
    )

    assert result.exit_code == 0, result.output
    summary = json.loads(result.stdout)
    assert summary["status"] == "completed"
    assert summary["counts"]["total"] == 2
    assert summary["counts"]["completed"] == 2


def test_start_rejects_invalid_max_items(tmp_path: Path, workspace: Path) -> None:
    """A non-positive `--max-items` fails before any state is written."""
    result = CliRunner().invoke(
        cli,
        [
            "auto",
            "start",
            "--items",
            str(_items_file(tmp_path)),
            "--max-items",
            "0",
            "--workspace",
            str(workspace),
        ],
    )

    assert result.exit_code == 1
    assert "max_items must be at least 1" in result.output
    assert CheckpointStore(workspace).load_loop_state().status is RunStatus.IDLE


def test_status_reports_the_recorded_run(tmp_path: Path, workspace: Path) -> None:
    """`shipyard auto status --json` reads the run from disk."""
    runner = CliRunner()
    runner.invoke(
        cli,
        ["auto", "start", "--items", str(_items_file(tmp_path)), "--workspace", str(workspace)],
    )

    result = runner.invoke(cli, ["auto", "status", "--json", "--workspace", str(workspace)])

    assert result.exit_code == 0, result.output
    report = json.loads(result.stdout)
    assert report["run_status"] == "completed"
    assert [entry["ref"] for entry in report["issue_queue"]] == ["gh#1", "jira#OPS-3", "gh#2"]


def test_status_renders_a_table(workspace: Path) -> None:
    """Human status output names each queued item."""
    CheckpointStore(workspace).save_loop_state(
        LoopState(
            run_id="run-1",
            goal="ship",
            status=RunStatus.COMPLETED,
            issue_queue=[make_item(1, title="Add login")],
        )
    )

    result = CliRunner().invoke(cli, ["auto", "status", "--workspace", str(workspace)])

    assert result.exit_code == 0, result.output
    assert "run-1" in result.output
    assert "gh#1" in result.output


def test_cancel_marks_an_orphaned_run(workspace: Path) -> None:
    """`shipyard auto cancel` falls back to the on-disk state."""
    CheckpointStore(workspace).save_loop_state(
        LoopState(run_id="run-1", status=RunStatus.RUNNING, runner_pid=999_999_999)
    )

    result = CliRunner().invoke(cli, ["auto", "cancel", "run-1", "--workspace", str(workspace)])

    assert result.exit_code == 0, result.output
    assert "run-1: cancelled_offline" in result.output
    assert CheckpointStore(workspace).load_loop_state().status is RunStatus.CANCELLED


async def test_pause_and_resume_steer_a_run_started_elsewhere(
    workspace: Path, fast_config: ShipyardConfig
) -> None:
    """`shipyard auto pause/resume` reach a runner that lives in another service."""
    backend = FakeBackend()
    entered, gate = backend.block("gh#1", Stage.DRAFT)
    service = AutomationService(
        workspace,
        config=fast_config,
        issue_source=StaticIssueSource([make_item(1)]),
        backend=backend,
        registry=RunRegistry(),
    )
    run_id = await service.start()
    await entered.wait()
    runner = CliRunner()

    paused = runner.invoke(cli, ["auto", "pause", run_id, "--workspace", str(workspace)])
    gate.set()
    store = CheckpointStore(workspace)
    await wait_until(lambda: store.load_loop_state().status is RunStatus.PAUSED)

    assert paused.exit_code == 0, paused.output
    assert f"{run_id}: pause_requested" in paused.output
    assert backend.stages_for("gh#1") == ["draft"]

    resumed = runner.invoke(cli, ["auto", "resume", run_id, "--workspace", str(workspace)])
    summary = await service.wait(run_id, timeout_seconds=5)

    assert resumed.exit_code == 0, resumed.output
    assert f"{run_id}: resumed" in resumed.output
    assert summary.status is RunStatus.COMPLETED


def test_control_commands_report_unknown_runs(workspace: Path) -> None:
    """Cancel, pause and resume fail cleanly for runs that do not exist."""
    runner = CliRunner()

    for command in ("cancel", "pause", "resume"):
        result = runner.invoke(cli, ["auto", command, "nope", "--workspace", str(workspace)])

        assert result.exit_code == 1
        assert "No active run found: nope" in result.output


def test_events_pages_the_log(tmp_path: Path, workspace: Path) -> None:
    """`shipyard auto events` returns JSON pages with a resume cursor."""
    runner = CliRunner()
    runner.invoke(
        cli,
        ["auto", "start", "--items", str(_items_file(tmp_path)), "--workspace", str(workspace)],
    )

    result = runner.invoke(
        cli, ["auto", "events", "--limit", "2", "--workspace", str(workspace)]
    )

    assert result.exit_code == 0, result.output
    page = json.loads(result.stdout)
    assert [event["seq"] for event in page["events"]] == [1, 2]
    assert page["events"][0]["event"] == "auto_start"
    assert page["next_seq"] == 2


def test_events_rejects_out_of_range_limit(workspace: Path) -> None:
    result = CliRunner().invoke(
        cli, ["auto", "events", "--limit", "9999", "--workspace", str(workspace)]
    )

    assert result.exit_code == 2
    assert "limit must be between 1 and 500" in result.output
