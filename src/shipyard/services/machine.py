"""Workflow state machine for one orchestrator run.

idle -> running <-> paused -> cancelling -> {completed, failed, cancelled}.
Running and paused runs may also finish directly. Terminal states absorb
every event: late supervisory signals after a run finished are ignored, never
raised, so they are harmless.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime  # noqa: TC003 - dataclass field types
from typing import TYPE_CHECKING, Any, TypeAlias

from shipyard.models.entities import WorkflowContext, WorkflowSnapshot
from shipyard.models.enums import WorkflowState
from shipyard.utils import utc_now

if TYPE_CHECKING:
    from collections.abc import Callable

    from shipyard.models.entities import LoopState

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Start:
    run_id: str
    workspace: str | None = None
    goal: str | None = None
    occurred_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class Heartbeat:
    occurred_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class StageChanged:
    stage: str | None
    agent: str | None = None
    occurred_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class Sync:
    """Mirror of the loop state's stage, agent and heartbeat fields."""

    current_stage: str | None = None
    active_agent: str | None = None
    last_heartbeat_at: datetime | None = None
    occurred_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_state(cls, state: LoopState) -> Sync:
        return cls(
            current_stage=state.current_stage,
            active_agent=state.active_agent,
            last_heartbeat_at=state.last_heartbeat_at,
        )


@dataclass(frozen=True)
class Pause:
    occurred_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class Resume:
    occurred_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class Cancel:
    reason: str | None = None
    occurred_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class Complete:
    occurred_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class Fail:
    error: str | None = None
    occurred_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class Cancelled:
    occurred_at: datetime = field(default_factory=utc_now)


MachineEvent: TypeAlias = (
    Start
    | Heartbeat
    | StageChanged
    | Sync
    | Pause
    | Resume
    | Cancel
    | Complete
    | Fail
    | Cancelled
)

_FINISH: dict[type[Any], WorkflowState] = {
    Complete: WorkflowState.COMPLETED,
    Fail: WorkflowState.FAILED,
    Cancelled: WorkflowState.CANCELLED,
}

# Accepted events per state; a None target keeps the state and updates context only.
TRANSITIONS: dict[WorkflowState, dict[type[Any], WorkflowState | None]] = {
    WorkflowState.IDLE: {Start: WorkflowState.RUNNING},
    WorkflowState.RUNNING: {
        Heartbeat: None,
        StageChanged: None,
        Sync: None,
        Pause: WorkflowState.PAUSED,
        Cancel: WorkflowState.CANCELLING,
        **_FINISH,
    },
    WorkflowState.PAUSED: {
        Heartbeat: None,
        Sync: None,
        Resume: WorkflowState.RUNNING,
        Cancel: WorkflowState.CANCELLING,
        **_FINISH,
    },
    WorkflowState.CANCELLING: {
        Heartbeat: None,
        Sync: None,
        **_FINISH,
    },
    WorkflowState.COMPLETED: {},
    WorkflowState.FAILED: {},
    WorkflowState.CANCELLED: {},
}


class WorkflowMachine:
    """In-memory lifecycle of one run, mirrored to a snapshot on every change."""

    def __init__(
        self,
        *,
        workflow: str = "auto",
        on_change: Callable[[WorkflowSnapshot], None] | None = None,
        snapshot: WorkflowSnapshot | None = None,
    ) -> None:
        if snapshot is not None:
            self._state = snapshot.value
            self._context = snapshot.context.model_copy(deep=True)
        else:
            self._state = WorkflowState.IDLE
            self._context = WorkflowContext(workflow=workflow)
        self._on_change = on_change

    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def context(self) -> WorkflowContext:
        return self._context.model_copy()

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    def snapshot(self) -> WorkflowSnapshot:
        return WorkflowSnapshot(
            run_id=self._context.run_id,
            value=self._state,
            context=self._context.model_copy(),
            updated_at=utc_now(),
        )

    def can_accept(self, event: MachineEvent) -> bool:
        return type(event) in TRANSITIONS[self._state]

    def send(self, event: MachineEvent) -> bool:
        """Apply *event*; returns False when the current state ignores it."""
        accepted = TRANSITIONS[self._state]
        if type(event) not in accepted:
            log.debug("Workflow in %s ignored %s", self._state, type(event).__name__)
            return False

        target = accepted[type(event)]
        updates = self._context_updates(event)
        if target is not None:
            self._state = target
        if updates:
            self._context = self._context.model_copy(update=updates)
        if self._on_change is not None:
            self._on_change(self.snapshot())
        return True

    def _context_updates(self, event: MachineEvent) -> dict[str, Any]:
        match event:
            case Start():
                return {
                    "run_id": event.run_id,
                    "workspace": event.workspace,
                    "goal": event.goal,
                    "started_at": event.occurred_at,
                    "last_heartbeat_at": event.occurred_at,
                    "completed_at": None,
                    "error": None,
                }
            case Heartbeat():
                return {"last_heartbeat_at": event.occurred_at}
            case StageChanged():
                return {"current_stage": event.stage, "active_agent": event.agent}
            case Sync():
                updates: dict[str, Any] = {
                    "current_stage": event.current_stage,
                    "active_agent": event.active_agent,
                }
                if event.last_heartbeat_at is not None:
                    updates["last_heartbeat_at"] = event.last_heartbeat_at
                return updates
            case Pause():
                return {"pause_requested_at": event.occurred_at}
            case Resume():
                return {"pause_requested_at": None}
            case Cancel():
                return {"cancel_requested_at": event.occurred_at}
            case Fail():
                return {
                    "completed_at": event.occurred_at,
                    "current_stage": None,
                    "active_agent": None,
                    "error": event.error or "unknown_error",
                }
            case Complete() | Cancelled():
                return {
                    "completed_at": event.occurred_at,
                    "current_stage": None,
                    "active_agent": None,
                    "error": None,
                }
        return {}


__all__ = [
    "TRANSITIONS",
    "Cancel",
    "Cancelled",
    "Complete",
    "Fail",
    "Heartbeat",
    "MachineEvent",
    "Pause",
    "Resume",
    "StageChanged",
    "Start",
    "Sync",
    "WorkflowMachine",
]
