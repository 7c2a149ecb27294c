from __future__ import annotations

import os
from datetime import timedelta
from typing import TYPE_CHECKING

import pytest

from shipyard.adapters.backends import StaticIssueSource
from shipyard.errors import InvalidRunRequestError, RunConflictError, RunNotFoundError
from shipyard.models.entities import LoopState
from shipyard.models.enums import ItemStatus, RunStatus, Stage, WorkflowState
from shipyard.services.cancellation import RunControl
from shipyard.services.checkpoints import CheckpointStore
from shipyard.services.machine import Complete, Start, WorkflowMachine
from shipyard.services.runs import ActiveRun, AutomationService, RunRegistry, get_registry
from shipyard.utils import utc_now
from tests.helpers import FakeBackend, make_item, wait_until

if TYPE_CHECKING:
    from pathlib import Path

    from shipyard.config import ShipyardConfig

DEAD_PID = 999_999_999


def _service(
    workspace: Path,
    config: ShipyardConfig,
    backend: FakeBackend | None = None,
    registry: RunRegistry | None = None,
) -> AutomationService:
    return AutomationService(
        workspace,
        config=config,
        issue_source=StaticIssueSource([make_item(1), make_item(2)]),
        backend=backend or FakeBackend(),
        registry=registry,
    )


def _write_active_run(workspace: Path, *, pid: int, heartbeat_age: float = 0) -> LoopState:
    state = LoopState(
        run_id="run-disk",
        goal="ship",
        status=RunStatus.RUNNING,
        issue_queue=[make_item(1, status=ItemStatus.COMPLETED), make_item(2)],
        current_index=1,
        runner_pid=pid,
        started_at=utc_now() - timedelta(seconds=heartbeat_age),
        last_heartbeat_at=utc_now() - timedelta(seconds=heartbeat_age),
    )
    CheckpointStore(workspace).save_loop_state(state)
    return state


async def test_start_runs_in_background_and_reports_status(
    workspace: Path, fast_config: ShipyardConfig
) -> None:
    service = _service(workspace, fast_config)

    run_id = await service.start("ship it")
    summary = await service.wait(run_id, timeout_seconds=5)

    assert summary.status is RunStatus.COMPLETED
    report = service.status(run_id)
    assert report.run_status == "completed"
    assert report.is_stale is False
    assert report.goal == "ship it"
    assert report.counts["completed"] == 2
    assert report.workflow_state == str(WorkflowState.COMPLETED)
    assert [entry["status"] for entry in report.issue_queue] == ["completed", "completed"]
    assert report.to_dict()["raw_run_status"] == "completed"
    assert get_registry().get(run_id) is None


async def test_invalid_max_items_is_rejected(
    workspace: Path, fast_config: ShipyardConfig
) -> None:
    service = _service(workspace, fast_config)

    with pytest.raises(InvalidRunRequestError):
        await service.start(max_items=0)

    assert service.status().raw_run_status is RunStatus.IDLE


class TestStartConflicts:
    """Only one non-terminal run may own a workspace."""

    async def test_second_start_while_live_is_refused(
        self, workspace: Path, fast_config: ShipyardConfig
    ) -> None:
        backend = FakeBackend()
        entered, gate = backend.block("gh#1", Stage.DRAFT)
        service = _service(workspace, fast_config, backend)
        run_id = await service.start()
        await entered.wait()

        with pytest.raises(RunConflictError) as exc_info:
            await service.start()

        assert exc_info.value.run_id == run_id
        gate.set()
        await service.wait(run_id, timeout_seconds=5)

    async def test_healthy_run_on_disk_is_refused(
        self, workspace: Path, fast_config: ShipyardConfig
    ) -> None:
        _write_active_run(workspace, pid=os.getpid())

        with pytest.raises(RunConflictError, match="run-disk"):
            await _service(workspace, fast_config).start()

    async def test_stale_run_requires_explicit_resume(
        self, workspace: Path, fast_config: ShipyardConfig
    ) -> None:
        _write_active_run(workspace, pid=DEAD_PID)

        with pytest.raises(RunConflictError, match="runner_process_not_alive"):
            await _service(workspace, fast_config).start()

    async def test_stale_run_is_resumed_under_its_own_id(
        self, workspace: Path, fast_config: ShipyardConfig
    ) -> None:
        _write_active_run(workspace, pid=DEAD_PID)
        backend = FakeBackend()
        service = _service(workspace, fast_config, backend)

        run_id = await service.start(resume=True)
        summary = await service.wait(run_id, timeout_seconds=5)

        assert run_id == "run-disk"
        assert summary.status is RunStatus.COMPLETED
        assert backend.stages_for("gh#1") == []
        assert backend.stages_for("gh#2") == ["draft", "plan", "implement", "review", "publish"]

    async def test_finished_run_does_not_block_a_new_one(
        self, workspace: Path, fast_config: ShipyardConfig
    ) -> None:
        service = _service(workspace, fast_config)
        first = await service.start()
        await service.wait(first, timeout_seconds=5)

        second = await service.start()
        await service.wait(second, timeout_seconds=5)

        assert first != second


class TestStatus:
    def test_idle_workspace(self, workspace: Path, fast_config: ShipyardConfig) -> None:
        report = _service(workspace, fast_config).status()

        assert report.run_id is None
        assert report.run_status == "idle"
        assert report.workflow_state is None

    def test_unknown_run_id_is_not_found(
        self, workspace: Path, fast_config: ShipyardConfig
    ) -> None:
        _write_active_run(workspace, pid=os.getpid())

        with pytest.raises(RunNotFoundError):
            _service(workspace, fast_config).status("other")

    def test_dead_runner_reports_stale(
        self, workspace: Path, fast_config: ShipyardConfig
    ) -> None:
        _write_active_run(workspace, pid=DEAD_PID)

        report = _service(workspace, fast_config).status("run-disk")

        assert report.run_status == "stale"
        assert report.raw_run_status is RunStatus.RUNNING
        assert report.stale_reason == "runner_process_not_alive"
        assert report.runner_alive is False

    def test_old_heartbeat_reports_stale(
        self, workspace: Path, fast_config: ShipyardConfig
    ) -> None:
        _write_active_run(workspace, pid=os.getpid(), heartbeat_age=120)

        report = _service(workspace, fast_config).status()

        assert report.stale_reason == "heartbeat_stale"
        assert report.heartbeat_age_ms is not None
        assert report.heartbeat_age_ms >= 120_000


class TestControlCommands:
    async def test_cancel_live_run(self, workspace: Path, fast_config: ShipyardConfig) -> None:
        backend = FakeBackend()
        entered, gate = backend.block("gh#1", Stage.PLAN)
        service = _service(workspace, fast_config, backend)
        run_id = await service.start()
        await entered.wait()

        assert service.cancel(run_id) == "cancel_requested"
        gate.set()
        summary = await service.wait(run_id, timeout_seconds=5)

        assert summary.status is RunStatus.CANCELLED
        snapshot = CheckpointStore(workspace).load_workflow_snapshot(run_id)
        assert snapshot is not None
        assert snapshot.value is WorkflowState.CANCELLED

    def test_cancel_without_live_runner_marks_disk(
        self, workspace: Path, fast_config: ShipyardConfig
    ) -> None:
        _write_active_run(workspace, pid=DEAD_PID)
        service = _service(workspace, fast_config)

        assert service.cancel("run-disk") == "cancelled_offline"

        state = CheckpointStore(workspace).load_loop_state()
        assert state.status is RunStatus.CANCELLED
        assert state.runner_pid is None
        assert [e["event"] for e in service.events().events] == ["cancelled_offline"]

    def test_cancel_unknown_run(self, workspace: Path, fast_config: ShipyardConfig) -> None:
        with pytest.raises(RunNotFoundError):
            _service(workspace, fast_config).cancel("nope")

    @pytest.mark.parametrize("command", ["pause", "resume"])
    def test_pause_and_resume_need_a_live_run(
        self, workspace: Path, fast_config: ShipyardConfig, command: str
    ) -> None:
        _write_active_run(workspace, pid=DEAD_PID)

        with pytest.raises(RunNotFoundError):
            getattr(_service(workspace, fast_config), command)("run-disk")

    async def test_pause_and_resume_live_run(
        self, workspace: Path, fast_config: ShipyardConfig
    ) -> None:
        backend = FakeBackend()
        entered, gate = backend.block("gh#1", Stage.DRAFT)
        service = _service(workspace, fast_config, backend)
        run_id = await service.start()
        await entered.wait()

        assert service.pause(run_id) == "pause_requested"
        gate.set()
        await wait_until(lambda: service.status().raw_run_status is RunStatus.PAUSED)
        assert service.status().workflow_state == "paused"

        assert service.resume(run_id) == "resumed"
        summary = await service.wait(run_id, timeout_seconds=5)

        assert summary.status is RunStatus.COMPLETED
        names = [e["event"] for e in service.events(limit=500).events]
        assert {"pause_requested", "auto_paused", "resume_requested", "auto_resumed"} <= set(names)


class TestControlFromAnotherProcess:
    """A second service with its own registry stands in for a separate CLI process."""

    async def test_cancel_reaches_the_live_runner_through_disk(
        self, workspace: Path, fast_config: ShipyardConfig
    ) -> None:
        backend = FakeBackend()
        entered, gate = backend.block("gh#1", Stage.PLAN)
        runner = _service(workspace, fast_config, backend)
        run_id = await runner.start()
        await entered.wait()
        other = _service(workspace, fast_config, registry=RunRegistry())

        assert other.cancel(run_id) == "cancel_requested"
        # The live runner keeps ownership; nothing is marked terminal behind its back.
        await wait_until(lambda: runner.status().workflow_state == "cancelling")
        assert CheckpointStore(workspace).load_loop_state().status is RunStatus.RUNNING

        gate.set()
        summary = await runner.wait(run_id, timeout_seconds=5)

        assert summary.status is RunStatus.CANCELLED
        assert CheckpointStore(workspace).load_loop_state().status is RunStatus.CANCELLED
        assert backend.stages_for("gh#2") == []

    async def test_pause_and_resume_reach_the_live_runner_through_disk(
        self, workspace: Path, fast_config: ShipyardConfig
    ) -> None:
        backend = FakeBackend()
        entered, gate = backend.block("gh#1", Stage.DRAFT)
        runner = _service(workspace, fast_config, backend)
        run_id = await runner.start()
        await entered.wait()
        other = _service(workspace, fast_config, registry=RunRegistry())

        assert other.pause(run_id) == "pause_requested"
        gate.set()
        await wait_until(lambda: other.status().raw_run_status is RunStatus.PAUSED)
        assert backend.stages_for("gh#1") == ["draft"]

        assert other.resume(run_id) == "resumed"
        summary = await runner.wait(run_id, timeout_seconds=5)

        assert summary.status is RunStatus.COMPLETED
        assert backend.stages_for("gh#1") == ["draft", "plan", "implement", "review", "publish"]


async def test_wait_times_out_on_a_blocked_run(
    workspace: Path, fast_config: ShipyardConfig
) -> None:
    backend = FakeBackend()
    entered, gate = backend.block("gh#1", Stage.DRAFT)
    service = _service(workspace, fast_config, backend)
    run_id = await service.start()
    await entered.wait()

    with pytest.raises(TimeoutError):
        await service.wait(run_id, timeout_seconds=0.05)

    gate.set()
    await service.wait(run_id, timeout_seconds=5)


async def test_wait_for_unknown_run(workspace: Path, fast_config: ShipyardConfig) -> None:
    with pytest.raises(RunNotFoundError):
        await _service(workspace, fast_config).wait("nope")


async def test_shutdown_cancels_started_runs(
    workspace: Path, fast_config: ShipyardConfig
) -> None:
    backend = FakeBackend()
    entered, gate = backend.block("gh#1", Stage.DRAFT)
    service = _service(workspace, fast_config, backend)
    run_id = await service.start()
    await entered.wait()

    gate.set()
    await service.shutdown()

    assert CheckpointStore(workspace).load_loop_state().status is RunStatus.CANCELLED
    assert get_registry().get(run_id) is None


def test_events_paging_through_the_service(
    workspace: Path, fast_config: ShipyardConfig
) -> None:
    service = _service(workspace, fast_config)
    for index in range(5):
        service.events_log.append("tick", index=index)

    first = service.events(limit=2)
    second = service.events(after_seq=first.next_seq, limit=10)

    assert [e["index"] for e in first.events] == [0, 1]
    assert [e["seq"] for e in second.events] == [3, 4, 5]
    assert service.events(category="other").events == []


def test_registry_ignores_finished_runs(workspace: Path) -> None:
    registry = RunRegistry()
    machine = WorkflowMachine()
    machine.send(Start(run_id="r1"))
    registry.add(ActiveRun("r1", workspace, RunControl(), machine))

    assert registry.for_workspace(workspace) is not None

    machine.send(Complete())

    assert registry.for_workspace(workspace) is None
    assert len(registry) == 1
