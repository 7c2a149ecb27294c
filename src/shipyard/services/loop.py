"""Autonomous loop: builds the queue once, then pipelines each item in order.

Failure policy: an item's failure never aborts the run. Items whose
dependencies all failed are skipped; items with some failed dependencies
still run, stacked on a dependency that succeeded. A test-infrastructure
failure aborts the rest of the run because every later item would fail the
same way. Cancellation marks the active item skipped and the run cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from shipyard.errors import InvalidRunRequestError, RunCancelledError, TestInfrastructureError
from shipyard.models.entities import ItemFilters, LoopState, RunCounts
from shipyard.models.enums import AgentRole, ItemStatus, RunStatus
from shipyard.services.checkpoints import CheckpointStore
from shipyard.services.events import EventLog
from shipyard.services.graph import order_work_items, qualify_dependencies
from shipyard.services.machine import Cancel, Heartbeat, Pause, Resume, Sync
from shipyard.services.pipeline import StagePipeline, normalize_repo_path
from shipyard.utils import BackgroundTasks, utc_now

if TYPE_CHECKING:
    from pathlib import Path

    from shipyard.adapters.backends import CommitHygieneChecker, IssueSource, StageBackend, VcsHost
    from shipyard.config import ShipyardConfig
    from shipyard.models.entities import WorkItem
    from shipyard.services.cancellation import RunControl
    from shipyard.services.machine import WorkflowMachine

log = logging.getLogger(__name__)

LISTING_STAGE = "listing_items"


def validate_max_items(value: object) -> int | None:
    """Reject non-integer and non-positive limits; None means unlimited."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidRunRequestError(f"max_items must be a positive integer, got {value!r}")
    if value < 1:
        raise InvalidRunRequestError(f"max_items must be at least 1, got {value}")
    return value


@dataclass(frozen=True, slots=True)
class RunSummary:
    run_id: str
    status: RunStatus
    counts: RunCounts
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": str(self.status),
            "counts": self.counts.model_dump(),
            "error": self.error,
        }


class AutonomousLoop:
    """Composition root for one run over a work-item queue."""

    def __init__(
        self,
        workspace: Path,
        *,
        config: ShipyardConfig,
        issue_source: IssueSource,
        backend: StageBackend,
        control: RunControl,
        store: CheckpointStore | None = None,
        events: EventLog | None = None,
        machine: WorkflowMachine | None = None,
        hygiene: CommitHygieneChecker | None = None,
        vcs: VcsHost | None = None,
        pid: int | None = None,
    ) -> None:
        self.workspace = workspace
        self.config = config
        self.issue_source = issue_source
        self.control = control
        self.store = store or CheckpointStore(workspace)
        self.events = events or EventLog(workspace)
        self.machine = machine
        self.vcs = vcs
        self.pid = os.getpid() if pid is None else pid
        self.pipeline = StagePipeline(
            workspace=workspace,
            config=config,
            backend=backend,
            control=control,
            events=self.events,
            persist=self.persist,
            hygiene=hygiene,
            vcs=vcs,
        )
        self._tasks = BackgroundTasks()
        self._ended_on_disk = False

    def persist(self, state: LoopState) -> None:
        """Write the whole loop state and mirror stage/heartbeat to the machine.

        Control requests other processes wrote since the last save are folded
        in first, so they are never overwritten.
        """
        with self.store.lock():
            self._sync_from_disk(state)
            self.store.save_loop_state(state)
        if self.machine is not None and not self._ended_on_disk:
            self.machine.send(Sync.from_state(state))

    async def run(
        self,
        goal: str | None = None,
        *,
        filters: ItemFilters | None = None,
        max_items: int | None = None,
        run_id: str | None = None,
        resume: bool = False,
    ) -> RunSummary:
        state = self.prepare(
            goal, filters=filters, max_items=max_items, run_id=run_id, resume=resume
        )
        return await self.execute(state)

    def prepare(
        self,
        goal: str | None = None,
        *,
        filters: ItemFilters | None = None,
        max_items: int | None = None,
        run_id: str | None = None,
        resume: bool = False,
    ) -> LoopState:
        """Validate the request and write the run's initial state to disk."""
        max_items = validate_max_items(max_items)
        existing = self.store.load_loop_state()
        if (
            resume
            and existing.is_active
            and existing.issue_queue
            and (run_id is None or existing.run_id == run_id)
        ):
            return self._resume(existing)
        return self._fresh_state(
            run_id or uuid4().hex, goal or self.config.loop.default_goal, filters, max_items
        )

    async def execute(self, state: LoopState) -> RunSummary:
        """Build the queue when needed, then process it to a terminal status."""
        heartbeat = self._tasks.spawn(self._heartbeat(state), name=f"heartbeat-{state.run_id}")
        try:
            if not state.issue_queue and state.current_stage == LISTING_STAGE:
                await self._build_queue(state)
            return await self._process_queue(state)
        except Exception as exc:
            log.exception("Run %s failed", state.run_id)
            if not self._ended_on_disk:
                state.status = RunStatus.FAILED
                state.completed_at = utc_now()
            state.error = str(exc)
            state.clear_stage()
            state.runner_pid = None
            self.persist(state)
            self.events.append("auto_failed", run_id=state.run_id, error=str(exc))
            raise
        finally:
            heartbeat.cancel()
            await self._tasks.shutdown()

    def _fresh_state(
        self,
        run_id: str,
        goal: str,
        filters: ItemFilters | None,
        max_items: int | None,
    ) -> LoopState:
        now = utc_now()
        state = LoopState(
            run_id=run_id,
            goal=goal,
            status=RunStatus.RUNNING,
            filters=filters or ItemFilters(),
            max_items=max_items,
            current_stage=LISTING_STAGE,
            current_stage_started_at=now,
            active_agent=self.config.roles.agent_for(AgentRole.ISSUE_SELECTOR),
            last_heartbeat_at=now,
            runner_pid=self.pid,
            started_at=now,
        )
        self.persist(state)
        self.events.append(
            "auto_start",
            run_id=run_id,
            goal=goal,
            max_items=max_items,
            filters=state.filters.model_dump(),
        )
        return state

    def _resume(self, state: LoopState) -> LoopState:
        state.status = RunStatus.RUNNING
        state.runner_pid = self.pid
        state.last_heartbeat_at = utc_now()
        state.completed_at = None
        state.pause_requested = False
        state.cancel_requested = None
        state.clear_stage()
        with self.store.lock():
            self.store.save_loop_state(state)
        self.events.append(
            "auto_resume",
            run_id=state.run_id,
            current_index=state.current_index,
            counts=state.counts().model_dump(),
        )
        log.info("Resuming run %s at item %d", state.run_id, state.current_index)
        return state

    async def _build_queue(self, state: LoopState) -> None:
        items = [
            item
            for item in await self.issue_source.list_items(state.filters)
            if state.filters.matches(item)
        ]
        qualify_dependencies(items)
        ordered, cycles = order_work_items(items)
        for cycle in cycles:
            self.events.append("dependency_cycle", members=cycle)
        if state.max_items is not None:
            ordered = ordered[: state.max_items]
        for item in ordered:
            normalized = normalize_repo_path(item.repo_path, self.workspace)
            if normalized != item.repo_path:
                log.warning(
                    "Repo path %r of %s normalized to %r", item.repo_path, item.ref, normalized
                )
                self.events.append(
                    "queue_repo_path_normalized",
                    item=item.ref,
                    requested=item.repo_path,
                    repo_path=normalized,
                )
                item.repo_path = normalized

        state.issue_queue = ordered
        state.current_index = 0
        state.clear_stage()
        self.persist(state)
        self.events.append(
            "queue_built",
            count=len(ordered),
            order=[item.ref for item in ordered],
        )
        if ordered:
            await self._reset_repo(ordered[0])

    async def _heartbeat(self, state: LoopState) -> None:
        interval = self.config.loop.heartbeat_interval_seconds
        while True:
            await asyncio.sleep(interval)
            with self.store.lock():
                self._sync_from_disk(state)
                if self._ended_on_disk:
                    return
                state.last_heartbeat_at = utc_now()
                state.runner_pid = self.pid
                self.store.save_loop_state(state)
            if self.machine is not None:
                self.machine.send(Heartbeat())

    def _sync_from_disk(self, state: LoopState) -> None:
        """Fold pause/cancel requests and terminal marks written by other processes.

        Must be called with the store lock held, right before saving *state*.
        """
        if not state.is_active:
            return
        on_disk = self.store.load_loop_state()
        if on_disk.run_id != state.run_id or on_disk.started_at != state.started_at:
            return

        if on_disk.status.is_terminal:
            # Marked terminal from disk while this runner was still alive. The
            # recorded outcome stands; finish the current stage and stop.
            self._ended_on_disk = True
            state.status = on_disk.status
            state.completed_at = on_disk.completed_at
            state.runner_pid = None
            state.pause_requested = False
            state.cancel_requested = None
            self.control.request_cancel("cancelled_offline")
            log.info("Run %s was marked %s from disk", state.run_id, on_disk.status)
            return

        if on_disk.cancel_requested and not state.cancel_requested:
            state.cancel_requested = on_disk.cancel_requested
            self.control.request_cancel(on_disk.cancel_requested)
            if self.machine is not None:
                self.machine.send(Cancel(reason=on_disk.cancel_requested))
            self.events.append("cancel_observed", run_id=state.run_id)

        if on_disk.pause_requested != state.pause_requested:
            state.pause_requested = on_disk.pause_requested
            if on_disk.pause_requested:
                self.control.request_pause()
                if self.machine is not None:
                    self.machine.send(Pause())
            else:
                self.control.request_resume()
                if self.machine is not None:
                    self.machine.send(Resume())

    async def _reset_repo(self, item: WorkItem) -> None:
        if self.vcs is None:
            return
        repo_dir = self.pipeline.repo_dir(item)
        report = await self.vcs.reset(repo_dir, destructive=self.config.loop.destructive_reset)
        if report.warning:
            self.events.append("reset_warning", repo_path=item.repo_path, error=report.warning)
        if report.dirty and not report.cleaned:
            self.events.append(
                "reset_dirty_repo",
                repo_path=item.repo_path,
                message="Repository has uncommitted changes; destructive cleanup disabled",
            )

    async def _process_queue(self, state: LoopState) -> RunSummary:
        queue = state.issue_queue
        qualify_dependencies(queue)
        by_ref = {item.ref: item for item in queue}
        failed_refs = {
            item.ref for item in queue if item.status in {ItemStatus.FAILED, ItemStatus.SKIPPED}
        }
        cancelled = False
        infra_error: str | None = None

        for index in range(state.current_index, len(queue)):
            item = queue[index]
            state.current_index = index
            with self.store.lock():
                self._sync_from_disk(state)
            if self.control.cancel_requested:
                cancelled = True
                break
            if item.is_terminal:
                continue
            try:
                await self.pipeline.wait_if_paused(state, item)
            except RunCancelledError:
                cancelled = True
                break

            failed_deps = [ref for ref in item.depends_on if ref in failed_refs]
            if item.depends_on and len(failed_deps) == len(item.depends_on):
                self._finish_item(
                    item,
                    ItemStatus.SKIPPED,
                    f"Skipped: all dependencies failed ({', '.join(failed_deps)})",
                )
                failed_refs.add(item.ref)
                self.events.append("dependency_skipped", item=item.ref, failed=failed_deps)
                self.persist(state)
                continue
            if failed_deps:
                self.events.append(
                    "dependency_failed_continue", item=item.ref, failed=failed_deps
                )

            base_branch = self._select_base_branch(item, by_ref, failed_refs)

            item.status = ItemStatus.IN_PROGRESS
            item.started_at = item.started_at or utc_now()
            item.error = None
            self.persist(state)
            self.events.append("item_start", item=item.ref, base_branch=base_branch)

            try:
                await self.pipeline.run_item(state, item, base_branch=base_branch)
            except RunCancelledError:
                self._finish_item(item, ItemStatus.SKIPPED, "Skipped: run cancelled")
                self.events.append("item_cancelled", item=item.ref)
                cancelled = True
                self.persist(state)
                break
            except TestInfrastructureError as exc:
                infra_error = f"test infrastructure failure in {item.ref}: {exc}"
                self._finish_item(item, ItemStatus.FAILED, str(exc))
                failed_refs.add(item.ref)
                for other in queue[index + 1 :]:
                    if other.status in {ItemStatus.PENDING, ItemStatus.IN_PROGRESS}:
                        self._finish_item(other, ItemStatus.SKIPPED, f"Skipped: {infra_error}")
                self.events.append("test_infrastructure_abort", item=item.ref, error=str(exc))
                self.persist(state)
                break
            except Exception as exc:
                log.warning("Item %s failed: %s", item.ref, exc, exc_info=True)
                self._finish_item(item, ItemStatus.FAILED, str(exc))
                failed_refs.add(item.ref)
                self.events.append("item_failed", item=item.ref, error=str(exc))
            else:
                self._finish_item(item, ItemStatus.COMPLETED, None)
                self.events.append(
                    "item_done", item=item.ref, branch=item.branch, pr_url=item.pr_url
                )

            state.current_index = index + 1
            self.persist(state)
            if index + 1 < len(queue):
                await self._reset_repo(queue[index + 1])
        else:
            state.current_index = len(queue)

        return self._summarize(state, cancelled=cancelled, infra_error=infra_error)

    def _select_base_branch(
        self,
        item: WorkItem,
        by_ref: dict[str, WorkItem],
        failed_refs: set[str],
    ) -> str | None:
        effective = [ref for ref in item.depends_on if ref not in failed_refs and ref in by_ref]
        unresolved = [ref for ref in effective if by_ref[ref].status is not ItemStatus.COMPLETED]
        if unresolved:
            self.events.append("dependency_unresolved", item=item.ref, pending=unresolved)
        candidates = [
            (ref, by_ref[ref].branch)
            for ref in effective
            if by_ref[ref].status is ItemStatus.COMPLETED and by_ref[ref].branch
        ]
        if not candidates:
            return None
        if len(candidates) > 1:
            self.events.append(
                "multi_dependency_base_selected",
                item=item.ref,
                selected=candidates[0][0],
                base_branch=candidates[0][1],
                candidates=[ref for ref, _branch in candidates],
            )
        return candidates[0][1]

    @staticmethod
    def _finish_item(item: WorkItem, status: ItemStatus, error: str | None) -> None:
        item.status = status
        item.error = error
        item.completed_at = utc_now()

    def _summarize(
        self,
        state: LoopState,
        *,
        cancelled: bool,
        infra_error: str | None,
    ) -> RunSummary:
        counts = state.counts()
        if self._ended_on_disk:
            status = state.status
        elif counts.total == 0:
            status = RunStatus.COMPLETED
        elif cancelled:
            status = RunStatus.CANCELLED
        elif infra_error is not None:
            status = RunStatus.FAILED
        elif counts.failed == counts.total:
            status = RunStatus.FAILED
        else:
            status = RunStatus.COMPLETED

        state.status = status
        state.error = infra_error
        state.clear_stage()
        state.runner_pid = None
        state.pause_requested = False
        state.cancel_requested = None
        state.completed_at = state.completed_at if self._ended_on_disk else utc_now()
        self.persist(state)
        self.events.append(
            "auto_done",
            run_id=state.run_id,
            status=status,
            **counts.model_dump(),
        )
        log.info("Run %s finished %s (%s)", state.run_id, status, counts.model_dump())
        return RunSummary(
            run_id=state.run_id or "",
            status=status,
            counts=counts,
            error=infra_error,
        )


__all__ = ["LISTING_STAGE", "AutonomousLoop", "RunSummary", "validate_max_items"]
