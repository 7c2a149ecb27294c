from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from shipyard.adapters.backends import HygieneFinding, HygieneReport, StageResult
from shipyard.config import ShipyardConfig
from shipyard.errors import (
    HygieneGateError,
    RunCancelledError,
    StageFailedError,
    StagePreconditionError,
    TestInfrastructureError,
)
from shipyard.models.entities import LoopState
from shipyard.models.enums import CheckpointStatus, RunStatus, Stage
from shipyard.services.cancellation import RunControl
from shipyard.services.events import EventLog
from shipyard.services.pipeline import StagePipeline, default_branch_name, normalize_repo_path
from tests.helpers import FakeBackend, FakeHygiene, FakeVcs, make_item, wait_until

if TYPE_CHECKING:
    from pathlib import Path

    from shipyard.adapters.backends import CommitHygieneChecker, VcsHost
    from shipyard.models.entities import WorkItem

ALL_STAGES = ["draft", "plan", "implement", "review", "publish"]


class _Harness:
    def __init__(
        self,
        workspace: Path,
        config: ShipyardConfig,
        backend: FakeBackend | None = None,
        *,
        hygiene: CommitHygieneChecker | None = None,
        vcs: VcsHost | None = None,
    ) -> None:
        self.backend = backend or FakeBackend()
        self.control = RunControl()
        self.events = EventLog(workspace)
        self.persisted: list[tuple[RunStatus, str | None]] = []
        self.state = LoopState(run_id="run-1", goal="ship", status=RunStatus.RUNNING)
        self.pipeline = StagePipeline(
            workspace=workspace,
            config=config,
            backend=self.backend,
            control=self.control,
            events=self.events,
            persist=self._persist,
            hygiene=hygiene,
            vcs=vcs,
        )

    def _persist(self, state: LoopState) -> None:
        self.persisted.append((state.status, state.current_stage))

    async def run(self, item: WorkItem, **kwargs) -> None:
        self.state.issue_queue.append(item)
        await self.pipeline.run_item(self.state, item, **kwargs)

    def event_names(self) -> list[str]:
        return [event["event"] for event in self.events.read_page(limit=500).events]


async def test_stages_run_in_order_and_flags_are_set(
    workspace: Path, fast_config: ShipyardConfig
) -> None:
    harness = _Harness(workspace, fast_config)
    item = make_item(1)

    await harness.run(item)

    assert harness.backend.stages_for("gh#1") == ALL_STAGES
    assert item.steps.completed_stages() == [Stage(name) for name in ALL_STAGES]
    assert item.branch == "branch/gh-1"
    assert [cp.status for cp in harness.state.stage_checkpoints] == [CheckpointStatus.OK] * 5
    assert harness.state.current_stage is None
    assert ("running", "implement") in harness.persisted


async def test_request_carries_goal_branch_and_base(
    workspace: Path, fast_config: ShipyardConfig
) -> None:
    harness = _Harness(workspace, fast_config)

    await harness.run(make_item(2, repo_path="svc"), base_branch="branch/gh-1")

    plan = next(call for call in harness.backend.calls if call.stage is Stage.PLAN)
    assert plan.goal == "ship"
    assert plan.branch == "branch/gh-2"
    assert plan.base_branch == "branch/gh-1"
    assert plan.repo_dir == (workspace / "svc").resolve()
    assert plan.artifacts_dir == workspace / ".shipyard" / "artifacts" / "gh-2"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("svc", "svc"),
        ("./svc/", "svc"),
        ("svc/../api", "api"),
        (".", "."),
        ("", "."),
        ("   ", "."),
        ("..", "."),
        ("../../etc", "."),
        ("svc/../../x", "."),
        ("/etc", "."),
    ],
)
def test_repo_path_is_kept_inside_the_workspace(workspace: Path, raw: str, expected: str) -> None:
    assert normalize_repo_path(raw, workspace) == expected


async def test_escaping_repo_path_never_reaches_the_backend(
    workspace: Path, fast_config: ShipyardConfig
) -> None:
    harness = _Harness(workspace, fast_config)

    await harness.run(make_item(2, repo_path="../outside"))

    assert {call.repo_dir for call in harness.backend.calls} == {workspace.resolve()}


async def test_completed_stages_are_skipped_on_resume(
    workspace: Path, fast_config: ShipyardConfig
) -> None:
    harness = _Harness(workspace, fast_config)
    item = make_item(1, branch="feature/resumed")
    item.steps.drafted = True
    item.steps.planned = True

    await harness.run(item)

    assert harness.backend.stages_for("gh#1") == ["implement", "review", "publish"]
    skipped = [cp.stage for cp in harness.state.stage_checkpoints if cp.status == "skipped"]
    assert skipped == [Stage.DRAFT, Stage.PLAN]
    assert harness.event_names().count("stage_skipped") == 2


async def test_missing_predecessor_is_a_precondition_error(
    workspace: Path, fast_config: ShipyardConfig
) -> None:
    harness = _Harness(workspace, fast_config)
    item = make_item(1)
    item.steps.drafted = True

    with pytest.raises(StagePreconditionError, match="implement requires plan"):
        await harness.pipeline.run_stage(harness.state, item, Stage.IMPLEMENT)

    assert harness.backend.calls == []


async def test_backend_failure_stops_the_item(
    workspace: Path, fast_config: ShipyardConfig
) -> None:
    backend = FakeBackend(
        {("gh#1", Stage.IMPLEMENT): StageResult(success=False, message="tests red")}
    )
    harness = _Harness(workspace, fast_config, backend)
    item = make_item(1)

    with pytest.raises(StageFailedError, match="implement failed: tests red"):
        await harness.run(item)

    assert backend.stages_for("gh#1") == ["draft", "plan", "implement"]
    assert item.steps.implemented is False
    last = harness.state.stage_checkpoints[-1]
    assert (last.stage, last.status) == (Stage.IMPLEMENT, CheckpointStatus.ERROR)
    assert "stage_error" in harness.event_names()
    assert harness.state.current_stage is None


async def test_test_infrastructure_failure_is_distinguished(
    workspace: Path, fast_config: ShipyardConfig
) -> None:
    backend = FakeBackend(
        {
            ("gh#1", Stage.REVIEW): StageResult(
                success=False, message="pytest missing", test_infrastructure_failure=True
            )
        }
    )
    harness = _Harness(workspace, fast_config, backend)

    with pytest.raises(TestInfrastructureError) as exc_info:
        await harness.run(make_item(1))

    assert exc_info.value.item_ref == "gh#1"


async def test_cancel_is_observed_before_the_next_stage(
    workspace: Path, fast_config: ShipyardConfig
) -> None:
    backend = FakeBackend()
    entered, gate = backend.block("gh#1", Stage.PLAN)
    harness = _Harness(workspace, fast_config, backend)
    task = asyncio.create_task(harness.run(make_item(1)))

    await entered.wait()
    harness.control.request_cancel()
    gate.set()

    with pytest.raises(RunCancelledError):
        await task
    assert backend.stages_for("gh#1") == ["draft", "plan"]


async def test_pause_holds_the_next_stage_until_resumed(
    workspace: Path, fast_config: ShipyardConfig
) -> None:
    backend = FakeBackend()
    entered, gate = backend.block("gh#1", Stage.DRAFT)
    harness = _Harness(workspace, fast_config, backend)
    task = asyncio.create_task(harness.run(make_item(1)))

    await entered.wait()
    harness.control.request_pause()
    gate.set()
    await wait_until(lambda: harness.state.status is RunStatus.PAUSED)
    await asyncio.sleep(0.05)

    assert backend.stages_for("gh#1") == ["draft"]

    harness.control.request_resume()
    await task

    assert harness.state.status is RunStatus.RUNNING
    assert backend.stages_for("gh#1") == ALL_STAGES
    assert {"auto_paused", "auto_resumed"} <= set(harness.event_names())


class TestPublish:
    """Publish gating and idempotency."""

    async def test_existing_pr_url_skips_publish_entirely(
        self, workspace: Path, fast_config: ShipyardConfig
    ) -> None:
        vcs = FakeVcs()
        hygiene = FakeHygiene()
        harness = _Harness(workspace, fast_config, hygiene=hygiene, vcs=vcs)

        await harness.run(make_item(1, pr_url="https://example.test/pr/1"))

        assert "publish" not in harness.backend.stages_for("gh#1")
        assert hygiene.checked == []
        assert "find_pull_request" not in vcs.names()
        assert "publish_skipped_existing_pr" in harness.event_names()

    async def test_hygiene_errors_block_publishing(
        self, workspace: Path, fast_config: ShipyardConfig
    ) -> None:
        hygiene = FakeHygiene(
            HygieneReport(
                passed=False,
                findings=[HygieneFinding(level="ERROR", message="secret", file="a.py", line=1)],
            )
        )
        harness = _Harness(workspace, fast_config, hygiene=hygiene)

        with pytest.raises(HygieneGateError) as exc_info:
            await harness.run(make_item(1))

        assert exc_info.value.findings == ["ERROR: secret at a.py:1"]
        assert "publish" not in harness.backend.stages_for("gh#1")

    async def test_hygiene_warnings_are_recorded(
        self, workspace: Path, fast_config: ShipyardConfig
    ) -> None:
        hygiene = FakeHygiene(
            HygieneReport(passed=True, findings=[HygieneFinding(level="WARNING", message="big")])
        )
        harness = _Harness(workspace, fast_config, hygiene=hygiene)

        await harness.run(make_item(1))

        assert "hygiene_warnings" in harness.event_names()

    async def test_backend_pr_url_wins(self, workspace: Path, fast_config: ShipyardConfig) -> None:
        backend = FakeBackend(
            {("gh#1", Stage.PUBLISH): StageResult(success=True, pr_url="https://x.test/pr/9")}
        )
        vcs = FakeVcs()
        harness = _Harness(workspace, fast_config, backend, vcs=vcs)
        item = make_item(1)

        await harness.run(item)

        assert item.pr_url == "https://x.test/pr/9"
        assert vcs.names() == ["ensure_branch"]

    async def test_open_pull_request_is_reused(
        self, workspace: Path, fast_config: ShipyardConfig
    ) -> None:
        vcs = FakeVcs(existing_prs={"branch/gh-1": "https://example.test/pr/existing"})
        harness = _Harness(workspace, fast_config, vcs=vcs)
        item = make_item(1)

        await harness.run(item)

        assert item.pr_url == "https://example.test/pr/existing"
        assert "push" not in vcs.names()
        assert "pr_reused" in harness.event_names()

    async def test_pull_request_is_created_against_base(
        self, workspace: Path, fast_config: ShipyardConfig
    ) -> None:
        vcs = FakeVcs()
        harness = _Harness(workspace, fast_config, vcs=vcs)
        item = make_item(2, title="Add search")

        await harness.run(item, base_branch="branch/gh-1")

        assert vcs.names() == ["ensure_branch", "find_pull_request", "push", "create_pull_request"]
        assert vcs.calls[0] == ("ensure_branch", ("branch/gh-2", "branch/gh-1"))
        assert vcs.calls[-1] == (
            "create_pull_request",
            ("branch/gh-2", "branch/gh-1", "Add search"),
        )
        assert item.pr_url == "https://example.test/pr/branch/gh-2"


def test_default_branch_name_is_slugged() -> None:
    item = make_item("AB-12", source="Jira", title="Fix: the Login page!")

    assert default_branch_name(item) == "shipyard/jira-ab-12-fix-the-login-page"
