"""Run registry and the control surface used by the CLI.

Live runs are tracked in a process-wide :class:`RunRegistry`. Anything not in
the registry is only known through the workspace's loop-state document, so
cross-process operations (status, offline cancel) work from disk alone.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import anyio
from filelock import Timeout

from shipyard.adapters.backends import CommandStageBackend
from shipyard.adapters.sandbox import SandboxProvider
from shipyard.errors import RunConflictError, RunNotFoundError
from shipyard.models.enums import RunStatus
from shipyard.services.cancellation import RunControl
from shipyard.services.checkpoints import CheckpointStore, assess_staleness, start_lock
from shipyard.services.events import DEFAULT_CATEGORY, EventLog
from shipyard.services.loop import AutonomousLoop, validate_max_items
from shipyard.services.machine import (
    Cancel,
    Cancelled,
    Complete,
    Fail,
    Pause,
    Resume,
    Start,
    WorkflowMachine,
)
from shipyard.services.observers import FileActivityObserver
from shipyard.utils import utc_now

if TYPE_CHECKING:
    from pathlib import Path

    from shipyard.adapters.backends import CommitHygieneChecker, IssueSource, StageBackend, VcsHost
    from shipyard.config import ShipyardConfig
    from shipyard.models.entities import ItemFilters, LoopState
    from shipyard.services.events import EventPage
    from shipyard.services.loop import RunSummary
    from shipyard.services.observers import ActivityObserver

log = logging.getLogger(__name__)


@dataclass(slots=True)
class ActiveRun:
    run_id: str
    workspace: Path
    control: RunControl
    machine: WorkflowMachine
    task: asyncio.Task[RunSummary] | None = None
    done: anyio.Event = field(default_factory=anyio.Event)


class RunRegistry:
    """In-process index of live runs keyed by run id."""

    def __init__(self) -> None:
        self._runs: dict[str, ActiveRun] = {}

    def add(self, run: ActiveRun) -> None:
        self._runs[run.run_id] = run

    def get(self, run_id: str) -> ActiveRun | None:
        return self._runs.get(run_id)

    def remove(self, run_id: str) -> ActiveRun | None:
        return self._runs.pop(run_id, None)

    def for_workspace(self, workspace: Path) -> ActiveRun | None:
        resolved = workspace.resolve()
        for run in self._runs.values():
            if run.workspace.resolve() == resolved and not run.machine.is_terminal:
                return run
        return None

    def runs(self) -> list[ActiveRun]:
        return list(self._runs.values())

    def clear(self) -> None:
        self._runs.clear()

    def __len__(self) -> int:
        return len(self._runs)


_registry = RunRegistry()


def get_registry() -> RunRegistry:
    return _registry


@dataclass(frozen=True, slots=True)
class RunStatusReport:
    run_id: str | None
    run_status: str
    raw_run_status: RunStatus
    is_stale: bool
    stale_reason: str | None
    goal: str
    counts: dict[str, int]
    current_stage: str | None
    active_agent: str | None
    last_heartbeat_at: str | None
    heartbeat_age_ms: int | None
    runner_pid: int | None
    runner_alive: bool | None
    workflow_state: str | None
    error: str | None = None
    issue_queue: list[dict[str, Any]] = field(default_factory=list)
    agent_activity: dict[str, dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "run_status": self.run_status,
            "raw_run_status": str(self.raw_run_status),
            "is_stale": self.is_stale,
            "stale_reason": self.stale_reason,
            "goal": self.goal,
            "counts": self.counts,
            "current_stage": self.current_stage,
            "active_agent": self.active_agent,
            "last_heartbeat_at": self.last_heartbeat_at,
            "heartbeat_age_ms": self.heartbeat_age_ms,
            "runner_pid": self.runner_pid,
            "runner_alive": self.runner_alive,
            "workflow_state": self.workflow_state,
            "error": self.error,
            "issue_queue": self.issue_queue,
            "agent_activity": self.agent_activity,
        }


class AutomationService:
    """Start, observe and steer autonomous runs for one workspace."""

    def __init__(
        self,
        workspace: Path,
        *,
        config: ShipyardConfig,
        issue_source: IssueSource,
        backend: StageBackend | None = None,
        hygiene: CommitHygieneChecker | None = None,
        vcs: VcsHost | None = None,
        registry: RunRegistry | None = None,
        observer: ActivityObserver | None = None,
    ) -> None:
        self.workspace = workspace
        self.config = config
        self.issue_source = issue_source
        self.observer = observer or FileActivityObserver(workspace)
        self.events_log = EventLog(workspace)
        self.backend = backend or self._default_backend()
        self.hygiene = hygiene
        self.vcs = vcs
        self.registry = registry if registry is not None else get_registry()
        self.store = CheckpointStore(workspace)
        self._lock = anyio.Lock()
        self._started: dict[str, ActiveRun] = {}

    def _default_backend(self) -> StageBackend:
        provider = SandboxProvider(
            self.workspace,
            default_timeout=self.config.sandbox.default_timeout_seconds,
        )
        return CommandStageBackend(
            self.config, provider, observer=self.observer, events=self.events_log
        )

    async def start(
        self,
        goal: str | None = None,
        filters: ItemFilters | None = None,
        max_items: int | None = None,
        *,
        resume: bool = False,
        run_id: str | None = None,
    ) -> str:
        """Start (or resume) a run in the background and return its id.

        Raises InvalidRunRequestError for a bad request and RunConflictError
        when another live run owns the workspace.
        """
        validate_max_items(max_items)
        async with self._lock:
            try:
                with start_lock(self.workspace):
                    return self._start_locked(goal, filters, max_items, resume, run_id)
            except Timeout as exc:
                raise RunConflictError(
                    run_id or "", "another process is starting a run in this workspace"
                ) from exc

    def _start_locked(
        self,
        goal: str | None,
        filters: ItemFilters | None,
        max_items: int | None,
        resume: bool,
        run_id: str | None,
    ) -> str:
        live = self.registry.for_workspace(self.workspace)
        if live is not None:
            raise RunConflictError(live.run_id, "a run is already active in this workspace")

        existing = self.store.load_loop_state()
        resume_run = False
        if existing.is_active:
            staleness = assess_staleness(
                existing, stale_after=self.config.loop.stale_heartbeat_seconds
            )
            if not staleness.is_stale:
                raise RunConflictError(
                    existing.run_id or "", "a run is already active in this workspace"
                )
            if not resume:
                raise RunConflictError(
                    existing.run_id or "",
                    f"previous run is stale ({staleness.reason}); pass resume to continue it",
                )
            resume_run = True
            log.info("Resuming stale run %s (%s)", existing.run_id, staleness.reason)

        control = RunControl()
        machine = WorkflowMachine(on_change=self.store.save_workflow_snapshot)
        loop = AutonomousLoop(
            self.workspace,
            config=self.config,
            issue_source=self.issue_source,
            backend=self.backend,
            control=control,
            store=self.store,
            events=self.events_log,
            machine=machine,
            hygiene=self.hygiene,
            vcs=self.vcs,
        )
        state = loop.prepare(
            goal,
            filters=filters,
            max_items=max_items,
            run_id=existing.run_id if resume_run else run_id,
            resume=resume_run,
        )
        new_id = state.run_id or ""
        machine.send(Start(run_id=new_id, workspace=str(self.workspace), goal=state.goal))

        active = ActiveRun(
            run_id=new_id, workspace=self.workspace, control=control, machine=machine
        )
        self.registry.add(active)
        self._started[new_id] = active
        active.task = asyncio.create_task(self._drive(active, loop, state), name=f"run-{new_id}")
        return new_id

    async def _drive(self, active: ActiveRun, loop: AutonomousLoop, state: LoopState) -> RunSummary:
        try:
            summary = await loop.execute(state)
        except Exception as exc:
            active.machine.send(Fail(error=str(exc)))
            self.store.mark_run_terminal(active.run_id, RunStatus.FAILED, error=str(exc))
            raise
        else:
            match summary.status:
                case RunStatus.COMPLETED:
                    active.machine.send(Complete())
                case RunStatus.CANCELLED:
                    active.machine.send(Cancelled())
                case _:
                    active.machine.send(Fail(error=summary.error or "all_items_failed"))
            return summary
        finally:
            self.registry.remove(active.run_id)
            active.done.set()

    def status(self, run_id: str | None = None) -> RunStatusReport:
        state = self.store.load_loop_state()
        if run_id is not None and state.run_id != run_id:
            raise RunNotFoundError(run_id)

        staleness = assess_staleness(state, stale_after=self.config.loop.stale_heartbeat_seconds)
        snapshot = self.store.load_workflow_snapshot(state.run_id)
        return RunStatusReport(
            run_id=state.run_id,
            run_status="stale" if staleness.is_stale else str(state.status),
            raw_run_status=state.status,
            is_stale=staleness.is_stale,
            stale_reason=staleness.reason,
            goal=state.goal,
            counts=state.counts().model_dump(),
            current_stage=state.current_stage,
            active_agent=state.active_agent,
            last_heartbeat_at=(
                state.last_heartbeat_at.isoformat() if state.last_heartbeat_at else None
            ),
            heartbeat_age_ms=staleness.heartbeat_age_ms,
            runner_pid=state.runner_pid,
            runner_alive=staleness.runner_alive,
            workflow_state=str(snapshot.value) if snapshot is not None else None,
            error=state.error,
            issue_queue=[
                {
                    "ref": item.ref,
                    "title": item.title,
                    "status": str(item.status),
                    "branch": item.branch,
                    "pr_url": item.pr_url,
                    "error": item.error,
                }
                for item in state.issue_queue
            ],
            agent_activity={
                name: activity.to_dict() for name, activity in self.observer.snapshot().items()
            },
        )

    def cancel(self, run_id: str) -> str:
        """Cancel a run; returns ``cancel_requested`` or ``cancelled_offline``.

        A run owned by another live process gets a cancel request on disk that
        its runner picks up. Only a run whose runner is gone is marked
        cancelled directly.
        """
        active = self._live(run_id)
        if active is not None:
            active.machine.send(Cancel(reason="user_requested"))
            active.control.request_cancel("user_requested")
            self.events_log.append("cancel_requested", run_id=run_id)
            return "cancel_requested"
        if self._signal_runner(run_id, cancel_requested="user_requested"):
            self.events_log.append("cancel_requested", run_id=run_id, via="disk")
            return "cancel_requested"
        if self.store.mark_run_terminal(run_id, RunStatus.CANCELLED):
            self.events_log.append("cancelled_offline", run_id=run_id, at=utc_now())
            return "cancelled_offline"
        raise RunNotFoundError(run_id)

    def pause(self, run_id: str) -> str:
        """Ask the run's runner to hold at the next stage boundary."""
        active = self._live(run_id)
        if active is not None:
            active.control.request_pause()
            active.machine.send(Pause())
        if not self._signal_runner(run_id, pause_requested=True) and active is None:
            raise RunNotFoundError(run_id)
        self.events_log.append("pause_requested", run_id=run_id)
        return "pause_requested"

    def resume(self, run_id: str) -> str:
        active = self._live(run_id)
        if active is not None:
            active.control.request_resume()
            active.machine.send(Resume())
        if not self._signal_runner(run_id, pause_requested=False) and active is None:
            raise RunNotFoundError(run_id)
        self.events_log.append("resume_requested", run_id=run_id)
        return "resumed"

    def _live(self, run_id: str) -> ActiveRun | None:
        active = self.registry.get(run_id)
        if active is None or active.machine.is_terminal:
            return None
        return active

    def _signal_runner(self, run_id: str, **requests: Any) -> bool:
        """Write control *requests* for a live runner of *run_id*, in any process.

        Returns False when the recorded run is a different one, is not active,
        or has a stale runner that would never read the request.
        """
        with self.store.lock():
            state = self.store.load_loop_state()
            if state.run_id != run_id or not state.is_active or state.runner_pid is None:
                return False
            staleness = assess_staleness(
                state, stale_after=self.config.loop.stale_heartbeat_seconds
            )
            if staleness.is_stale:
                return False
            for name, value in requests.items():
                setattr(state, name, value)
            self.store.save_loop_state(state)
        return True

    def events(
        self,
        after_seq: int = 0,
        limit: int | None = None,
        category: str = DEFAULT_CATEGORY,
    ) -> EventPage:
        event_log = (
            self.events_log
            if category == self.events_log.category
            else EventLog(self.workspace, category)
        )
        if limit is None:
            return event_log.read_page(after_seq)
        return event_log.read_page(after_seq, limit)

    async def wait(self, run_id: str, *, timeout_seconds: float | None = None) -> RunSummary:
        """Wait for a run started by this service to finish and return its summary.

        Raises TimeoutError when *timeout_seconds* passes first. The loop's own
        exception propagates when the run failed unexpectedly.
        """
        active = self._started.get(run_id) or self.registry.get(run_id)
        if active is None or active.task is None:
            raise RunNotFoundError(run_id)
        if timeout_seconds is None:
            await active.done.wait()
        else:
            with anyio.move_on_after(timeout_seconds):
                await active.done.wait()
        if not active.task.done():
            raise TimeoutError(f"Run {run_id} still active after {timeout_seconds}s")
        return active.task.result()

    async def shutdown(self) -> None:
        """Cancel every run this service started and wait for the tasks to finish."""
        pending = [
            (run, run.task)
            for run in self._started.values()
            if run.task is not None and not run.task.done()
        ]
        for run, _task in pending:
            run.control.request_cancel("shutdown")
            run.machine.send(Cancel(reason="shutdown"))
        for run, task in pending:
            try:
                await task
            except Exception:
                log.exception("Run %s raised during shutdown", run.run_id)


__all__ = [
    "ActiveRun",
    "AutomationService",
    "RunRegistry",
    "RunStatusReport",
    "get_registry",
]
