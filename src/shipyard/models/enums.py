"""Core domain enums."""

from __future__ import annotations

from enum import StrEnum


class ItemStatus(StrEnum):
    """Lifecycle of one work item inside a run queue."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ITEM_STATUSES


TERMINAL_ITEM_STATUSES = frozenset({ItemStatus.COMPLETED, ItemStatus.FAILED, ItemStatus.SKIPPED})


class RunStatus(StrEnum):
    """Persisted status of a run (loop state)."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_RUN_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


ACTIVE_RUN_STATUSES = frozenset({RunStatus.RUNNING, RunStatus.PAUSED})
TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})


class WorkflowState(StrEnum):
    """State-machine value of one orchestrator run."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_WORKFLOW_STATES


TERMINAL_WORKFLOW_STATES = frozenset(
    {WorkflowState.COMPLETED, WorkflowState.FAILED, WorkflowState.CANCELLED}
)


class Stage(StrEnum):
    """Fixed per-item pipeline stages."""

    DRAFT = "draft"
    PLAN = "plan"
    IMPLEMENT = "implement"
    REVIEW = "review"
    PUBLISH = "publish"


PIPELINE_ORDER: tuple[Stage, ...] = (
    Stage.DRAFT,
    Stage.PLAN,
    Stage.IMPLEMENT,
    Stage.REVIEW,
    Stage.PUBLISH,
)


class AgentRole(StrEnum):
    """Named responsibilities mapped to configurable executors."""

    ISSUE_SELECTOR = "issue_selector"
    PLANNER = "planner"
    PLAN_REVIEWER = "plan_reviewer"
    PROGRAMMER = "programmer"
    REVIEWER = "reviewer"
    COMMITTER = "committer"


STAGE_DEFAULT_ROLES: dict[Stage, AgentRole] = {
    Stage.DRAFT: AgentRole.ISSUE_SELECTOR,
    Stage.PLAN: AgentRole.PLANNER,
    Stage.IMPLEMENT: AgentRole.PROGRAMMER,
    Stage.REVIEW: AgentRole.REVIEWER,
    Stage.PUBLISH: AgentRole.COMMITTER,
}


class CheckpointStatus(StrEnum):
    OK = "ok"
    ERROR = "error"
    SKIPPED = "skipped"


__all__ = [
    "ACTIVE_RUN_STATUSES",
    "PIPELINE_ORDER",
    "STAGE_DEFAULT_ROLES",
    "TERMINAL_ITEM_STATUSES",
    "TERMINAL_RUN_STATUSES",
    "TERMINAL_WORKFLOW_STATES",
    "AgentRole",
    "CheckpointStatus",
    "ItemStatus",
    "RunStatus",
    "Stage",
    "WorkflowState",
]
