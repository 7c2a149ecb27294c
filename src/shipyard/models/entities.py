"""Core domain entities.

These models double as the on-disk documents of the checkpoint store, so every
field must survive a JSON round trip through pydantic.
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - Pydantic needs runtime access

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from shipyard.models.enums import (
    PIPELINE_ORDER,
    CheckpointStatus,
    ItemStatus,
    RunStatus,
    Stage,
    WorkflowState,
)

LOOP_STATE_VERSION = 1


class DomainModel(BaseModel):
    """Base model with common config."""

    model_config = ConfigDict(extra="ignore")


class ItemSteps(DomainModel):
    """Per-stage completion flags; the pipeline's control flow reads only these."""

    drafted: bool = False
    planned: bool = False
    implemented: bool = False
    reviewed: bool = False
    published: bool = False

    def is_done(self, stage: Stage) -> bool:
        return bool(getattr(self, _STEP_FIELDS[stage]))

    def mark_done(self, stage: Stage) -> None:
        setattr(self, _STEP_FIELDS[stage], True)

    def completed_stages(self) -> list[Stage]:
        return [stage for stage in PIPELINE_ORDER if self.is_done(stage)]


_STEP_FIELDS: dict[Stage, str] = {
    Stage.DRAFT: "drafted",
    Stage.PLAN: "planned",
    Stage.IMPLEMENT: "implemented",
    Stage.REVIEW: "reviewed",
    Stage.PUBLISH: "published",
}


class WorkItem(DomainModel):
    """One unit of work carried through the full stage pipeline."""

    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    source: str
    id: str
    title: str = ""
    repo_path: str = "."
    depends_on: list[str] = Field(default_factory=list)
    difficulty: int | None = None
    status: ItemStatus = ItemStatus.PENDING
    branch: str | None = None
    base_branch: str | None = None
    pr_url: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    steps: ItemSteps = Field(default_factory=ItemSteps)
    artifacts: dict[str, str] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: object) -> str:
        """Issue trackers hand out numeric ids; references are always strings."""
        match value:
            case bool():
                raise ValueError("work item id must be a string or integer")
            case int() | str():
                return str(value).strip()
            case _:
                raise ValueError("work item id must be a string or integer")

    @field_validator("depends_on", mode="before")
    @classmethod
    def coerce_depends_on(cls, value: object) -> list[str]:
        match value:
            case None:
                return []
            case str() | int():
                return [str(value)]
            case list() | tuple():
                return [str(entry).strip() for entry in value if str(entry).strip()]
            case _:
                raise ValueError("depends_on must be a list of references")

    @field_validator("difficulty", mode="before")
    @classmethod
    def coerce_difficulty(cls, value: object) -> int | None:
        """Unparseable difficulty estimates degrade to unknown."""
        match value:
            case bool():
                return None
            case int():
                return value
            case float():
                return round(value)
            case str() as text if text.strip().lstrip("-").isdigit():
                return int(text.strip())
            case _:
                return None

    @property
    def ref(self) -> str:
        return f"{self.source}#{self.id}"

    @property
    def key(self) -> str:
        """Filesystem-safe identifier."""
        return f"{self.source}-{self.id}".replace("/", "_").replace("#", "_")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class ItemFilters(DomainModel):
    """Selection applied to the issue source output before ordering."""

    sources: list[str] = Field(default_factory=list)
    item_ids: list[str] = Field(default_factory=list)
    title_contains: str | None = None

    def matches(self, item: WorkItem) -> bool:
        if self.sources and item.source not in self.sources:
            return False
        if self.item_ids and item.id not in self.item_ids and item.ref not in self.item_ids:
            return False
        if self.title_contains and self.title_contains.lower() not in item.title.lower():
            return False
        return True


class StageCheckpoint(DomainModel):
    """Audit record appended as each stage of the current item finishes."""

    item_ref: str
    stage: Stage
    status: CheckpointStatus
    duration_ms: int = 0
    error: str | None = None
    completed_at: datetime


class RunCounts(DomainModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    pending: int = 0
    in_progress: int = 0


class LoopState(DomainModel):
    """The persisted run document used for resume and status reporting."""

    version: int = LOOP_STATE_VERSION
    run_id: str | None = None
    goal: str = ""
    status: RunStatus = RunStatus.IDLE
    filters: ItemFilters = Field(default_factory=ItemFilters)
    max_items: int | None = None
    issue_queue: list[WorkItem] = Field(default_factory=list)
    current_index: int = 0
    current_stage: str | None = None
    current_stage_started_at: datetime | None = None
    active_agent: str | None = None
    last_heartbeat_at: datetime | None = None
    runner_pid: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    stage_checkpoints: list[StageCheckpoint] = Field(default_factory=list)
    # Control requests written by other processes; the runner folds them in.
    pause_requested: bool = False
    cancel_requested: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    def counts(self) -> RunCounts:
        counts = RunCounts(total=len(self.issue_queue))
        for item in self.issue_queue:
            match item.status:
                case ItemStatus.COMPLETED:
                    counts.completed += 1
                case ItemStatus.FAILED:
                    counts.failed += 1
                case ItemStatus.SKIPPED:
                    counts.skipped += 1
                case ItemStatus.IN_PROGRESS:
                    counts.in_progress += 1
                case ItemStatus.PENDING:
                    counts.pending += 1
        return counts

    def find_item(self, ref: str) -> WorkItem | None:
        for item in self.issue_queue:
            if item.ref == ref:
                return item
        return None

    def clear_stage(self) -> None:
        self.current_stage = None
        self.current_stage_started_at = None
        self.active_agent = None


class WorkflowContext(DomainModel):
    """Context carried alongside the state-machine value."""

    workflow: str = "auto"
    run_id: str | None = None
    workspace: str | None = None
    goal: str | None = None
    active_agent: str | None = None
    current_stage: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_heartbeat_at: datetime | None = None
    pause_requested_at: datetime | None = None
    cancel_requested_at: datetime | None = None
    error: str | None = None


class WorkflowSnapshot(DomainModel):
    """State-machine value plus context, keyed by run id on disk."""

    run_id: str | None = None
    value: WorkflowState = WorkflowState.IDLE
    context: WorkflowContext = Field(default_factory=WorkflowContext)
    updated_at: datetime | None = None


__all__ = [
    "LOOP_STATE_VERSION",
    "ItemFilters",
    "ItemSteps",
    "LoopState",
    "RunCounts",
    "StageCheckpoint",
    "WorkItem",
    "WorkflowContext",
    "WorkflowSnapshot",
]
