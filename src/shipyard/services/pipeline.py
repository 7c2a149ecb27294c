"""Stage pipeline executor: drives one work item through draft → publish.

Every stage runs inside :meth:`StagePipeline._with_stage`, which observes the
cancellation token, waits out a pause, enforces that earlier stages finished,
skips stages a previous run already completed, and keeps the loop state's
stage/agent fields current on disk around the call.
"""

from __future__ import annotations

import logging
import time
from pathlib import PurePath
from typing import TYPE_CHECKING

from shipyard.adapters.backends import StageRequest
from shipyard.errors import (
    HygieneGateError,
    StageFailedError,
    StagePreconditionError,
    TestInfrastructureError,
)
from shipyard.models.entities import StageCheckpoint
from shipyard.models.enums import PIPELINE_ORDER, CheckpointStatus, RunStatus, Stage
from shipyard.paths import get_artifacts_dir
from shipyard.utils import slugify, utc_now

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from pathlib import Path

    from shipyard.adapters.backends import (
        CommitHygieneChecker,
        StageBackend,
        StageResult,
        VcsHost,
    )
    from shipyard.config import ShipyardConfig
    from shipyard.models.entities import LoopState, WorkItem
    from shipyard.services.cancellation import RunControl
    from shipyard.services.events import EventLog

log = logging.getLogger(__name__)


def default_branch_name(item: WorkItem) -> str:
    source = slugify(item.source, max_length=20)
    ident = slugify(item.id, max_length=20)
    return f"shipyard/{source}-{ident}-{slugify(item.title)}"


def normalize_repo_path(repo_path: str, workspace: Path) -> str:
    """Return *repo_path* as a workspace-relative posix path, or ``"."``.

    Empty, absolute and escaping paths all fall back to the workspace root.
    """
    raw = repo_path.strip()
    if not raw or PurePath(raw).is_absolute():
        return "."
    root = workspace.resolve()
    target = (root / raw).resolve()
    if not target.is_relative_to(root):
        return "."
    return target.relative_to(root).as_posix()


class StagePipeline:
    def __init__(
        self,
        *,
        workspace: Path,
        config: ShipyardConfig,
        backend: StageBackend,
        control: RunControl,
        events: EventLog,
        persist: Callable[[LoopState], None],
        hygiene: CommitHygieneChecker | None = None,
        vcs: VcsHost | None = None,
    ) -> None:
        self.workspace = workspace
        self.config = config
        self.backend = backend
        self.control = control
        self.events = events
        self.persist = persist
        self.hygiene = hygiene
        self.vcs = vcs

    def repo_dir(self, item: WorkItem) -> Path:
        """Resolved repository directory of *item*, never outside the workspace."""
        return (self.workspace / normalize_repo_path(item.repo_path, self.workspace)).resolve()

    async def run_item(
        self,
        state: LoopState,
        item: WorkItem,
        *,
        base_branch: str | None = None,
    ) -> None:
        """Run every stage of *item* in order; stages already flagged done are skipped."""
        if base_branch is not None and item.base_branch is None:
            item.base_branch = base_branch
        for stage in PIPELINE_ORDER:
            await self.run_stage(state, item, stage)

    async def run_stage(self, state: LoopState, item: WorkItem, stage: Stage) -> None:
        """Run a single stage of *item*.

        Raises:
            StagePreconditionError: an earlier stage has not completed.
        """
        handlers: dict[Stage, Callable[[LoopState, WorkItem], Awaitable[None]]] = {
            Stage.DRAFT: self._draft,
            Stage.PLAN: self._plan,
            Stage.IMPLEMENT: self._implement,
            Stage.REVIEW: self._review,
            Stage.PUBLISH: self._publish,
        }
        await self._with_stage(state, item, stage, handlers[stage])

    async def _with_stage(
        self,
        state: LoopState,
        item: WorkItem,
        stage: Stage,
        run: Callable[[LoopState, WorkItem], Awaitable[None]],
    ) -> None:
        self.control.raise_if_cancelled()
        await self.wait_if_paused(state, item, stage)

        for earlier in PIPELINE_ORDER[: PIPELINE_ORDER.index(stage)]:
            if not item.steps.is_done(earlier):
                raise StagePreconditionError(stage, earlier)

        if item.steps.is_done(stage):
            log.info("Skipping %s for %s, already completed", stage, item.ref)
            self._checkpoint(state, item, stage, CheckpointStatus.SKIPPED, 0)
            self.events.append("stage_skipped", item=item.ref, stage=stage)
            self.persist(state)
            return

        agent, _agent_config = self.config.agent_for_stage(stage)
        now = utc_now()
        state.current_stage = stage
        state.current_stage_started_at = now
        state.active_agent = agent
        state.last_heartbeat_at = now
        self.persist(state)
        self.events.append("stage_start", item=item.ref, stage=stage, agent=agent)

        started = time.monotonic()
        status = CheckpointStatus.ERROR
        error: str | None = None
        try:
            await run(state, item)
            item.steps.mark_done(stage)
            status = CheckpointStatus.OK
        except Exception as exc:
            error = str(exc)
            raise
        finally:
            duration_ms = int((time.monotonic() - started) * 1000)
            self._checkpoint(state, item, stage, status, duration_ms, error)
            self.events.append(
                "stage_done" if status is CheckpointStatus.OK else "stage_error",
                item=item.ref,
                stage=stage,
                agent=agent,
                duration_ms=duration_ms,
                **({"error": error} if error else {}),
            )
            state.clear_stage()
            self.persist(state)

    async def wait_if_paused(
        self,
        state: LoopState,
        item: WorkItem,
        stage: Stage | None = None,
    ) -> None:
        """Hold the run in ``paused`` until resumed; raises RunCancelledError on cancel."""
        if not self.control.pause_requested:
            return
        state.status = RunStatus.PAUSED
        self.persist(state)
        self.events.append("auto_paused", item=item.ref, stage=stage)
        await self.control.wait_while_paused(
            poll_interval=self.config.loop.pause_poll_seconds,
            max_wait=self.config.loop.pause_max_seconds,
        )
        state.status = RunStatus.RUNNING
        self.persist(state)
        self.events.append("auto_resumed", item=item.ref, stage=stage)

    def _checkpoint(
        self,
        state: LoopState,
        item: WorkItem,
        stage: Stage,
        status: CheckpointStatus,
        duration_ms: int,
        error: str | None = None,
    ) -> None:
        state.stage_checkpoints.append(
            StageCheckpoint(
                item_ref=item.ref,
                stage=stage,
                status=status,
                duration_ms=duration_ms,
                error=error,
                completed_at=utc_now(),
            )
        )

    async def _invoke(self, state: LoopState, item: WorkItem, stage: Stage) -> StageResult:
        request = StageRequest(
            stage=stage,
            item=item,
            goal=state.goal,
            repo_dir=self.repo_dir(item),
            artifacts_dir=get_artifacts_dir(self.workspace, item.key),
            run_id=state.run_id,
            branch=item.branch,
            base_branch=item.base_branch,
        )
        result = await self.backend.run_stage(request)
        item.artifacts.update(result.artifacts)
        if result.test_infrastructure_failure:
            raise TestInfrastructureError(
                item.ref, result.message or f"test infrastructure failure during {stage}"
            )
        if not result.success:
            raise StageFailedError(stage, result.message or "backend reported failure")
        return result

    async def _draft(self, state: LoopState, item: WorkItem) -> None:
        result = await self._invoke(state, item, Stage.DRAFT)
        item.branch = result.branch or item.branch or default_branch_name(item)
        if self.vcs is not None:
            await self.vcs.ensure_branch(self.repo_dir(item), item.branch, item.base_branch)

    async def _plan(self, state: LoopState, item: WorkItem) -> None:
        await self._invoke(state, item, Stage.PLAN)

    async def _implement(self, state: LoopState, item: WorkItem) -> None:
        await self._invoke(state, item, Stage.IMPLEMENT)

    async def _review(self, state: LoopState, item: WorkItem) -> None:
        await self._invoke(state, item, Stage.REVIEW)

    async def _publish(self, state: LoopState, item: WorkItem) -> None:
        if item.pr_url:
            log.info("%s already published at %s", item.ref, item.pr_url)
            self.events.append("publish_skipped_existing_pr", item=item.ref, pr_url=item.pr_url)
            return

        repo_dir = self.repo_dir(item)
        if self.hygiene is not None:
            report = await self.hygiene.check(repo_dir)
            if not report.passed:
                raise HygieneGateError([str(finding) for finding in report.findings])
            if report.findings:
                self.events.append(
                    "hygiene_warnings",
                    item=item.ref,
                    findings=[str(finding) for finding in report.findings],
                )

        result = await self._invoke(state, item, Stage.PUBLISH)
        if result.pr_url:
            item.pr_url = result.pr_url
            return
        if self.vcs is None or item.branch is None:
            return

        existing = await self.vcs.find_pull_request(repo_dir, item.branch)
        if existing:
            item.pr_url = existing
            self.events.append("pr_reused", item=item.ref, pr_url=existing)
            return
        await self.vcs.push(repo_dir, item.branch)
        item.pr_url = await self.vcs.create_pull_request(
            repo_dir,
            branch=item.branch,
            base_branch=item.base_branch,
            title=item.title or item.ref,
            body=f"Automated change for {item.ref}.\n\nGoal: {state.goal}",
        )
        self.events.append("pr_created", item=item.ref, pr_url=item.pr_url)


__all__ = ["StagePipeline", "default_branch_name", "normalize_repo_path"]
