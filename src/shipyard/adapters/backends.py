"""External collaborators: issue sources, stage backends, hygiene checks, VCS hosting.

The orchestrator depends only on the protocols. The concrete classes drive
configured shell commands through the sandbox and ``git``/``gh`` through the
process adapter.
"""

from __future__ import annotations

import json
import logging
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, Protocol

from pydantic import ValidationError

from shipyard.adapters.process import run_exec_capture, run_exec_checked
from shipyard.adapters.sandbox import build_secrets
from shipyard.errors import StartupPreconditionError
from shipyard.limits import MAX_OUTPUT_TAIL_CHARS
from shipyard.models.entities import ItemFilters, WorkItem
from shipyard.services.observers import NullActivityObserver
from shipyard.services.retry import RetryPolicy, execute_with_retry
from shipyard.utils import truncate_tail

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from shipyard.adapters.sandbox import CommandResult, HostSandbox, SandboxProvider
    from shipyard.config import AgentConfig, ShipyardConfig
    from shipyard.models.enums import Stage
    from shipyard.services.events import EventLog
    from shipyard.services.observers import ActivityObserver
    from shipyard.services.retry import RetryAttempt

log = logging.getLogger(__name__)


# --- Contracts ---------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StageRequest:
    """Everything a backend needs to perform one stage for one item."""

    stage: Stage
    item: WorkItem
    goal: str
    repo_dir: Path
    artifacts_dir: Path
    run_id: str | None = None
    branch: str | None = None
    base_branch: str | None = None


@dataclass(frozen=True, slots=True)
class StageResult:
    success: bool
    branch: str | None = None
    pr_url: str | None = None
    message: str = ""
    artifacts: dict[str, str] = field(default_factory=dict)
    test_infrastructure_failure: bool = False


@dataclass(frozen=True, slots=True)
class HygieneFinding:
    level: Literal["ERROR", "WARNING"]
    message: str
    file: str | None = None
    line: int | None = None

    def __str__(self) -> str:
        location = f" at {self.file}:{self.line}" if self.file else ""
        return f"{self.level}: {self.message}{location}"


@dataclass(frozen=True, slots=True)
class HygieneReport:
    passed: bool
    findings: list[HygieneFinding] = field(default_factory=list)

    @property
    def errors(self) -> list[HygieneFinding]:
        return [finding for finding in self.findings if finding.level == "ERROR"]


@dataclass(frozen=True, slots=True)
class ResetReport:
    checked_out: bool = True
    dirty: bool = False
    cleaned: bool = False
    warning: str | None = None


class IssueSource(Protocol):
    async def list_items(self, filters: ItemFilters) -> list[WorkItem]: ...


class StageBackend(Protocol):
    async def run_stage(self, request: StageRequest) -> StageResult: ...


class CommitHygieneChecker(Protocol):
    async def check(self, repo_dir: Path) -> HygieneReport: ...


class VcsHost(Protocol):
    async def ensure_branch(self, repo_dir: Path, branch: str, base_branch: str | None) -> None: ...

    async def find_pull_request(self, repo_dir: Path, branch: str) -> str | None: ...

    async def push(self, repo_dir: Path, branch: str) -> None: ...

    async def create_pull_request(
        self,
        repo_dir: Path,
        *,
        branch: str,
        base_branch: str | None,
        title: str,
        body: str,
    ) -> str: ...

    async def reset(self, repo_dir: Path, *, destructive: bool) -> ResetReport: ...


# --- Issue sources -----------------------------------------------------------


def parse_work_items(data: object) -> list[WorkItem]:
    """Validate queue input: a list of items or an object with an ``items`` list."""
    match data:
        case {"items": list() as entries}:
            pass
        case list() as entries:
            pass
        case _:
            raise ValueError("work item input must be a list or an object with 'items'")
    try:
        return [WorkItem.model_validate(entry) for entry in entries]
    except ValidationError as exc:
        raise ValueError(f"invalid work item input: {exc}") from exc


class StaticIssueSource:
    """Issue source over an in-memory item list."""

    def __init__(self, items: Sequence[WorkItem]) -> None:
        self._items = list(items)

    async def list_items(self, filters: ItemFilters) -> list[WorkItem]:
        return [item.model_copy(deep=True) for item in self._items if filters.matches(item)]


class JsonFileIssueSource:
    """Issue source reading a JSON file of work items on every listing."""

    def __init__(self, path: Path) -> None:
        self.path = path

    async def list_items(self, filters: ItemFilters) -> list[WorkItem]:
        data = json.loads(self.path.read_text(encoding="utf-8"))
        items = parse_work_items(data)
        log.debug("Loaded %d work items from %s", len(items), self.path)
        return [item for item in items if filters.matches(item)]


# --- Stage backend -----------------------------------------------------------


def parse_output_contract(stdout: str) -> dict[str, Any]:
    """Last stdout line that parses as a JSON object, or an empty dict."""
    for line in reversed(stdout.splitlines()):
        stripped = line.strip()
        if not stripped.startswith("{"):
            continue
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload
    return {}


def _contains_any(text: str, patterns: Sequence[str]) -> str | None:
    lowered = text.lower()
    return next((p for p in patterns if p and p.lower() in lowered), None)


def render_command(template: str, request: StageRequest) -> str:
    """Substitute shell-quoted request fields into a stage command template."""
    values = {
        "goal": request.goal,
        "stage": str(request.stage),
        "item_ref": request.item.ref,
        "source": request.item.source,
        "item_id": request.item.id,
        "title": request.item.title,
        "repo_path": str(request.repo_dir),
        "branch": request.branch or "",
        "base_branch": request.base_branch or "",
        "artifacts_dir": str(request.artifacts_dir),
        "run_id": request.run_id or "",
    }
    fields = {key: shlex.quote(value) for key, value in values.items()}
    try:
        return template.format_map(fields)
    except KeyError as exc:
        raise ValueError(f"unknown placeholder {exc} in stage command template") from exc


class CommandStageBackend:
    """Runs each stage as a configured shell command in a sandbox.

    Retries go through the retry engine. Output follows the JSON-line contract
    read by :func:`parse_output_contract`; without one, the exit status decides.
    """

    def __init__(
        self,
        config: ShipyardConfig,
        provider: SandboxProvider,
        *,
        observer: ActivityObserver | None = None,
        events: EventLog | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.config = config
        self.provider = provider
        self.observer = observer or NullActivityObserver()
        self.events = events
        self._sleep = sleep

    async def run_stage(self, request: StageRequest) -> StageResult:
        stage_config = self.config.stage(request.stage)
        if not stage_config.command:
            log.info("No command configured for %s, treating as done", request.stage)
            return StageResult(success=True, message="no command configured")

        command = render_command(stage_config.command, request)
        agent_name, agent = self.config.agent_for_stage(request.stage)
        env = {
            **agent.env,
            **build_secrets(self.config.sandbox.pass_env),
            "SHIPYARD_STAGE": str(request.stage),
            "SHIPYARD_ITEM_REF": request.item.ref,
            "SHIPYARD_ARTIFACTS_DIR": str(request.artifacts_dir),
        }
        sandbox = self.provider.create(env=env, agent=agent_name, cwd=request.repo_dir)
        remove_listener = sandbox.add_listener(
            lambda _chunk: self.observer.record(agent_name, sandbox.activity())
        )
        timeout = stage_config.timeout_seconds or self.config.sandbox.default_timeout_seconds
        hang = stage_config.hang_timeout_seconds
        if hang is None:
            hang = self.config.sandbox.default_hang_timeout_seconds

        async def attempt() -> CommandResult:
            return await self._attempt(sandbox, command, timeout, hang or None, agent)

        retry_kwargs: dict[str, Any] = {}
        if self._sleep is not None:
            retry_kwargs["sleep"] = self._sleep
        try:
            result = await execute_with_retry(
                attempt,
                policy=RetryPolicy.from_config(self.config.retry, stage_config),
                label=f"{request.stage} {request.item.ref}",
                on_retry=self._record_retry,
                **retry_kwargs,
            )
        finally:
            remove_listener()
            self.observer.record(agent_name, sandbox.activity())

        payload = parse_output_contract(result.stdout)
        success = result.ok and payload.get("success", True) is not False
        message = str(payload.get("message") or "")
        if not message and not success:
            message = truncate_tail(result.output.strip(), 500) or f"exit code {result.exit_code}"
        artifacts = payload.get("artifacts")
        return StageResult(
            success=success,
            branch=payload.get("branch") or None,
            pr_url=payload.get("pr_url") or None,
            message=message,
            artifacts={str(k): str(v) for k, v in artifacts.items()}
            if isinstance(artifacts, dict)
            else {},
            test_infrastructure_failure=bool(payload.get("test_infrastructure_failure")),
        )

    async def _attempt(
        self,
        sandbox: HostSandbox,
        command: str,
        timeout: float,
        hang: float | None,
        agent: AgentConfig,
    ) -> CommandResult:
        result = await sandbox.run(
            command,
            timeout=timeout,
            hang_timeout=hang,
            auth_failure_patterns=agent.auth_failure_patterns,
            hang_reset_on_stderr=agent.hang_reset_on_stderr,
        )
        if not result.ok:
            matched = _contains_any(result.output, agent.startup_failure_patterns)
            if matched is not None:
                raise StartupPreconditionError(
                    command=(command,),
                    returncode=result.exit_code,
                    stderr=truncate_tail(result.stderr, MAX_OUTPUT_TAIL_CHARS) or None,
                    detail=f"{matched}: executor dependency failed to start",
                )
        return result

    def _record_retry(self, attempt: RetryAttempt) -> None:
        if self.events is not None:
            self.events.append(
                "retry",
                label=attempt.label,
                attempt=attempt.attempt,
                error=attempt.error,
                delay_ms=attempt.delay_ms,
                rate_limited=attempt.rate_limited,
            )


# --- Commit hygiene ----------------------------------------------------------

FINDING_RE = re.compile(r"^(ERROR|WARNING):\s*(.*?)(?:\s+at\s+(\S+?):(\d+))?\s*$")


def parse_hygiene_output(output: str) -> list[HygieneFinding]:
    findings: list[HygieneFinding] = []
    for line in output.splitlines():
        match = FINDING_RE.match(line.strip())
        if match is None:
            continue
        level, message, file, line_no = match.groups()
        findings.append(
            HygieneFinding(
                level=level,  # type: ignore[arg-type]
                message=message,
                file=file,
                line=int(line_no) if line_no else None,
            )
        )
    return findings


class CommandHygieneChecker:
    """Runs a commit-hygiene command and parses ``LEVEL: message at file:line`` findings."""

    def __init__(self, command: str, provider: SandboxProvider, *, timeout: float = 120.0) -> None:
        self.command = command
        self.provider = provider
        self.timeout = timeout

    async def check(self, repo_dir: Path) -> HygieneReport:
        sandbox = self.provider.create(agent="hygiene", cwd=repo_dir)
        result = await sandbox.run(self.command, timeout=self.timeout)
        findings = parse_hygiene_output(result.output)
        passed = result.ok and not any(f.level == "ERROR" for f in findings)
        if not passed and not findings:
            findings = [
                HygieneFinding(level="ERROR", message=result.output.strip()[:300] or "failed")
            ]
        return HygieneReport(passed=passed, findings=findings)


# --- VCS hosting -------------------------------------------------------------


class GitCliVcsHost:
    """Branches, pushes and pull requests through the ``git`` and ``gh`` CLIs."""

    def __init__(self, *, remote: str = "origin", default_base_branch: str = "main") -> None:
        self.remote = remote
        self.default_base_branch = default_base_branch

    async def _git(self, repo_dir: Path, *args: str) -> str:
        result = await run_exec_checked("git", *args, cwd=repo_dir)
        return result.stdout_text().strip()

    async def default_branch(self, repo_dir: Path) -> str:
        result = await run_exec_capture(
            "git", "symbolic-ref", "--short", f"refs/remotes/{self.remote}/HEAD", cwd=repo_dir
        )
        ref = result.stdout_text().strip()
        if result.returncode == 0 and ref.startswith(f"{self.remote}/"):
            return ref.removeprefix(f"{self.remote}/")
        return self.default_base_branch

    async def ensure_branch(self, repo_dir: Path, branch: str, base_branch: str | None) -> None:
        exists = await run_exec_capture(
            "git", "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", cwd=repo_dir
        )
        if exists.returncode == 0:
            await self._git(repo_dir, "checkout", branch)
            return
        base = base_branch or await self.default_branch(repo_dir)
        await self._git(repo_dir, "checkout", "-b", branch, base)

    async def push(self, repo_dir: Path, branch: str) -> None:
        await self._git(repo_dir, "push", "-u", self.remote, branch)

    async def find_pull_request(self, repo_dir: Path, branch: str) -> str | None:
        result = await run_exec_checked(
            "gh",
            "pr",
            "list",
            "--head",
            branch,
            "--state",
            "open",
            "--json",
            "url",
            "--limit",
            "1",
            cwd=repo_dir,
        )
        try:
            entries = json.loads(result.stdout_text() or "[]")
        except json.JSONDecodeError:
            return None
        if isinstance(entries, list) and entries and isinstance(entries[0], dict):
            return entries[0].get("url") or None
        return None

    async def create_pull_request(
        self,
        repo_dir: Path,
        *,
        branch: str,
        base_branch: str | None,
        title: str,
        body: str,
    ) -> str:
        base = base_branch or await self.default_branch(repo_dir)
        result = await run_exec_checked(
            "gh",
            "pr",
            "create",
            "--head",
            branch,
            "--base",
            base,
            "--title",
            title,
            "--body",
            body,
            cwd=repo_dir,
        )
        lines = result.stdout_text().strip().splitlines()
        return lines[-1].strip() if lines else ""

    async def reset(self, repo_dir: Path, *, destructive: bool) -> ResetReport:
        """Check out the default branch; discard changes only when *destructive*."""
        if not (repo_dir / ".git").exists():
            return ResetReport(checked_out=False)
        default = await self.default_branch(repo_dir)
        checkout = await run_exec_capture("git", "checkout", default, cwd=repo_dir)
        warning = None
        if checkout.returncode != 0:
            detail = checkout.stderr_text().strip() or checkout.stdout_text().strip()
            warning = f"Could not checkout {default}: {detail}"
        status = await run_exec_capture("git", "status", "--porcelain", cwd=repo_dir)
        dirty = status.returncode == 0 and bool(status.stdout_text().strip())
        cleaned = False
        if dirty and destructive:
            restore = await run_exec_capture(
                "git", "restore", "--staged", "--worktree", ".", cwd=repo_dir
            )
            if restore.returncode != 0:
                await run_exec_capture("git", "checkout", "--", ".", cwd=repo_dir)
            await run_exec_capture("git", "clean", "-fd", cwd=repo_dir)
            cleaned = True
        return ResetReport(
            checked_out=checkout.returncode == 0, dirty=dirty, cleaned=cleaned, warning=warning
        )


__all__ = [
    "CommandHygieneChecker",
    "CommandStageBackend",
    "CommitHygieneChecker",
    "GitCliVcsHost",
    "HygieneFinding",
    "HygieneReport",
    "IssueSource",
    "JsonFileIssueSource",
    "ResetReport",
    "StageBackend",
    "StageRequest",
    "StageResult",
    "StaticIssueSource",
    "VcsHost",
    "parse_output_contract",
    "parse_hygiene_output",
    "parse_work_items",
    "render_command",
]
