"""Checkpoint store: durable loop state and workflow snapshots per workspace.

Both documents are rewritten whole through :func:`atomic_write`. The runner
owns the loop state, but other processes may write control requests (pause,
cancel) or mark an orphaned run terminal, so every read-modify-write happens
under :meth:`CheckpointStore.lock`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from filelock import FileLock
from pydantic import ValidationError

from shipyard.atomic import atomic_write
from shipyard.limits import (
    START_LOCK_TIMEOUT_SECONDS,
    STALE_HEARTBEAT_SECONDS,
    STATE_LOCK_TIMEOUT_SECONDS,
)
from shipyard.models.entities import LoopState, WorkflowContext, WorkflowSnapshot
from shipyard.models.enums import RunStatus, WorkflowState
from shipyard.paths import (
    get_loop_state_path,
    get_start_lock_path,
    get_state_lock_path,
    get_workflow_snapshot_path,
)
from shipyard.process_liveness import pid_exists
from shipyard.utils import age_ms, utc_now

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime
    from pathlib import Path

log = logging.getLogger(__name__)

_TERMINAL_WORKFLOW_BY_STATUS: dict[RunStatus, WorkflowState] = {
    RunStatus.COMPLETED: WorkflowState.COMPLETED,
    RunStatus.FAILED: WorkflowState.FAILED,
    RunStatus.CANCELLED: WorkflowState.CANCELLED,
}


class CheckpointStore:
    """Loop-state and workflow-snapshot documents for one workspace."""

    def __init__(self, workspace: Path) -> None:
        self.workspace = workspace
        self.loop_state_path = get_loop_state_path(workspace)
        self.workflow_path = get_workflow_snapshot_path(workspace)
        self._lock_path = get_state_lock_path(workspace)
        self._lock = FileLock(str(self._lock_path), timeout=STATE_LOCK_TIMEOUT_SECONDS)

    def lock(self) -> FileLock:
        """Reentrant cross-process lock held around loop-state read-modify-write."""
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        return self._lock

    def load_loop_state(self) -> LoopState:
        """Read the loop state; a missing or unreadable document reads as idle."""
        if not self.loop_state_path.exists():
            return LoopState()
        try:
            return LoopState.model_validate_json(self.loop_state_path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            log.warning("Ignoring unreadable loop state %s: %s", self.loop_state_path, exc)
            return LoopState()

    def save_loop_state(self, state: LoopState) -> None:
        atomic_write(self.loop_state_path, state.model_dump_json(indent=2))

    def update_loop_state(self, mutator: Callable[[LoopState], None]) -> LoopState:
        """Re-read, mutate and rewrite the loop state."""
        with self.lock():
            state = self.load_loop_state()
            mutator(state)
            self.save_loop_state(state)
        return state

    def load_workflow_snapshot(self, run_id: str | None = None) -> WorkflowSnapshot | None:
        """Read the workflow snapshot, optionally requiring it to belong to *run_id*."""
        if not self.workflow_path.exists():
            return None
        try:
            snapshot = WorkflowSnapshot.model_validate_json(
                self.workflow_path.read_text(encoding="utf-8")
            )
        except (OSError, ValidationError) as exc:
            log.warning("Ignoring unreadable workflow snapshot %s: %s", self.workflow_path, exc)
            return None
        if run_id is not None and snapshot.run_id != run_id:
            return None
        return snapshot

    def save_workflow_snapshot(self, snapshot: WorkflowSnapshot) -> None:
        atomic_write(self.workflow_path, snapshot.model_dump_json(indent=2))

    def mark_run_terminal(
        self,
        run_id: str,
        status: RunStatus,
        *,
        error: str | None = None,
    ) -> bool:
        """Mark a running or paused run terminal purely from on-disk state.

        Used when the owning process is gone. Returns False when the stored run
        does not match *run_id* or is not active.
        """
        if not status.is_terminal:
            raise ValueError(f"not a terminal run status: {status}")
        with self.lock():
            state = self.load_loop_state()
            if state.run_id != run_id or not state.is_active:
                return False

            now = utc_now()
            state.status = status
            state.clear_stage()
            state.runner_pid = None
            state.last_heartbeat_at = now
            state.completed_at = now
            state.pause_requested = False
            state.cancel_requested = None
            if status is RunStatus.FAILED:
                state.error = error or state.error or "runner_lost"
            self.save_loop_state(state)

        previous = self.load_workflow_snapshot(run_id)
        context = previous.context if previous is not None else WorkflowContext(
            run_id=run_id,
            workspace=str(self.workspace),
            goal=state.goal,
            started_at=state.started_at,
        )
        context = context.model_copy(
            update={
                "active_agent": None,
                "current_stage": None,
                "completed_at": now,
                "last_heartbeat_at": now,
                "error": state.error if status is RunStatus.FAILED else None,
            }
        )
        self.save_workflow_snapshot(
            WorkflowSnapshot(
                run_id=run_id,
                value=_TERMINAL_WORKFLOW_BY_STATUS[status],
                context=context,
                updated_at=now,
            )
        )
        log.info("Marked run %s %s from disk", run_id, status)
        return True


@dataclass(frozen=True, slots=True)
class Staleness:
    """Liveness verdict for a persisted run."""

    heartbeat_age_ms: int | None
    runner_pid: int | None
    runner_alive: bool | None
    is_stale: bool
    reason: str | None = None


def assess_staleness(
    state: LoopState,
    *,
    now: datetime | None = None,
    stale_after: float = STALE_HEARTBEAT_SECONDS,
    pid_alive: Callable[[int], bool] = pid_exists,
) -> Staleness:
    """Decide whether a run reported running or paused is actually stale.

    A run is stale when its runner pid is no longer alive or its heartbeat is
    older than *stale_after* seconds. Terminal and idle runs are never stale.
    """
    heartbeat_age = age_ms(state.last_heartbeat_at or state.started_at, now=now)
    alive = None if state.runner_pid is None else pid_alive(state.runner_pid)

    reason: str | None = None
    if state.is_active:
        if alive is False:
            reason = "runner_process_not_alive"
        elif heartbeat_age is not None and heartbeat_age > stale_after * 1000:
            reason = "heartbeat_stale"
    return Staleness(
        heartbeat_age_ms=heartbeat_age,
        runner_pid=state.runner_pid,
        runner_alive=alive,
        is_stale=reason is not None,
        reason=reason,
    )


def start_lock(workspace: Path, *, timeout: float = START_LOCK_TIMEOUT_SECONDS) -> FileLock:
    """Lock serialising run creation in *workspace* across processes."""
    path = get_start_lock_path(workspace)
    path.parent.mkdir(parents=True, exist_ok=True)
    return FileLock(str(path), timeout=timeout)


__all__ = ["CheckpointStore", "Staleness", "assess_staleness", "start_lock"]
