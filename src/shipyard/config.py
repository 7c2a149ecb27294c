"""Configuration loader for Shipyard."""

from __future__ import annotations

import asyncio
import logging
import tomllib
from typing import TYPE_CHECKING, Any

import tomlkit
from pydantic import BaseModel, Field, field_validator

from shipyard.atomic import atomic_write
from shipyard.limits import (
    DEFAULT_BACKOFF_MS,
    DEFAULT_COMMAND_TIMEOUT_SECONDS,
    DEFAULT_RETRIES,
    HEARTBEAT_INTERVAL_SECONDS,
    MAX_RATE_LIMIT_WAITS,
    PAUSE_MAX_SECONDS,
    PAUSE_POLL_SECONDS,
    STALE_HEARTBEAT_SECONDS,
)
from shipyard.models.enums import STAGE_DEFAULT_ROLES, AgentRole, Stage
from shipyard.paths import get_config_path, get_workspace_config_path

if TYPE_CHECKING:
    from pathlib import Path

log = logging.getLogger(__name__)

DEFAULT_AGENT_NAME = "default"

# Signatures that mean a stored credential expired; waiting will not help.
DEFAULT_AUTH_FAILURE_PATTERNS: tuple[str, ...] = (
    "rejected stored OAuth token",
    "Please re-authenticate using: /mcp auth",
)
DEFAULT_STARTUP_FAILURE_PATTERNS: tuple[str, ...] = ("MCP startup failure",)


class LoopConfig(BaseModel):
    """Supervision settings for the autonomous loop."""

    heartbeat_interval_seconds: float = Field(
        default=HEARTBEAT_INTERVAL_SECONDS, gt=0, description="Heartbeat period while running"
    )
    stale_heartbeat_seconds: float = Field(
        default=STALE_HEARTBEAT_SECONDS,
        gt=0,
        description="Heartbeat age after which a running run is reported stale",
    )
    pause_poll_seconds: float = Field(
        default=PAUSE_POLL_SECONDS, gt=0, description="Pause-wait polling period"
    )
    pause_max_seconds: float = Field(
        default=PAUSE_MAX_SECONDS,
        gt=0,
        description="Longest a run may stay paused before it is auto-cancelled",
    )
    destructive_reset: bool = Field(
        default=False,
        description="Hard-reset and clean the repository between items",
    )
    default_goal: str = Field(default="Work through the open issue queue")


class RetryConfig(BaseModel):
    """Defaults for the retry/backoff engine."""

    retries: int = Field(default=DEFAULT_RETRIES, ge=0)
    backoff_ms: int = Field(default=DEFAULT_BACKOFF_MS, ge=0)
    max_rate_limit_waits: int = Field(
        default=MAX_RATE_LIMIT_WAITS,
        ge=0,
        description="Rate-limited attempts allowed for free before they consume the budget",
    )


class SandboxConfig(BaseModel):
    """Process sandbox defaults."""

    pass_env: list[str] = Field(
        default_factory=lambda: ["GITHUB_TOKEN", "GH_TOKEN"],
        description="Environment variables forwarded to commands as secrets",
    )
    default_timeout_seconds: float = Field(default=DEFAULT_COMMAND_TIMEOUT_SECONDS, gt=0)
    default_hang_timeout_seconds: float = Field(
        default=0, ge=0, description="Silence window before a command is killed (0 = off)"
    )


class AgentConfig(BaseModel):
    """Per-executor settings referenced by role."""

    env: dict[str, str] = Field(default_factory=dict)
    auth_failure_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_AUTH_FAILURE_PATTERNS)
    )
    startup_failure_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_STARTUP_FAILURE_PATTERNS)
    )
    hang_reset_on_stderr: bool = Field(
        default=True, description="Whether stderr output resets the hang timer"
    )


class RolesConfig(BaseModel):
    """Agent role to agent name mapping."""

    issue_selector: str = DEFAULT_AGENT_NAME
    planner: str = DEFAULT_AGENT_NAME
    plan_reviewer: str = DEFAULT_AGENT_NAME
    programmer: str = DEFAULT_AGENT_NAME
    reviewer: str = DEFAULT_AGENT_NAME
    committer: str = DEFAULT_AGENT_NAME

    @field_validator("*", mode="before")
    @classmethod
    def coerce_agent_name(cls, value: object) -> str:
        """Gracefully coerce blank or non-string agent names to the default agent."""
        match value:
            case str() as name if name.strip():
                return name.strip()
            case _:
                pass
        return DEFAULT_AGENT_NAME

    def agent_for(self, role: AgentRole) -> str:
        return getattr(self, role.value)


class StageCommandConfig(BaseModel):
    """External command run for one pipeline stage.

    ``command`` is a template; ``{goal}``, ``{item_ref}``, ``{source}``,
    ``{item_id}``, ``{title}``, ``{repo_path}``, ``{branch}``,
    ``{base_branch}``, ``{artifacts_dir}`` and ``{stage}`` are substituted
    shell-quoted.
    """

    command: str = ""
    role: AgentRole | None = None
    timeout_seconds: float | None = Field(default=None, gt=0)
    hang_timeout_seconds: float | None = Field(default=None, ge=0)
    retries: int | None = Field(default=None, ge=0)
    backoff_ms: int | None = Field(default=None, ge=0)
    retry_on_rate_limit: bool = True
    retry_on_nonzero: bool = Field(
        default=False, description="Retry non-zero exits that are not rate limited"
    )


class HygieneConfig(BaseModel):
    """Commit-hygiene gate run before publishing."""

    command: str = Field(default="", description="Checker command; empty disables the gate")
    timeout_seconds: float = Field(default=120.0, gt=0)


class VcsConfig(BaseModel):
    enabled: bool = False
    default_base_branch: str = "main"
    remote: str = "origin"


class ShipyardConfig(BaseModel):
    """Root configuration model."""

    loop: LoopConfig = Field(default_factory=LoopConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    roles: RolesConfig = Field(default_factory=RolesConfig)
    agents: dict[str, AgentConfig] = Field(default_factory=dict)
    stages: dict[Stage, StageCommandConfig] = Field(default_factory=dict)
    hygiene: HygieneConfig = Field(default_factory=HygieneConfig)
    vcs: VcsConfig = Field(default_factory=VcsConfig)

    @classmethod
    def load(
        cls,
        config_path: Path | None = None,
        *,
        workspace: Path | None = None,
    ) -> ShipyardConfig:
        """Load configuration from the first TOML file found, or use defaults.

        Lookup order: explicit path, workspace ``.shipyard/config.toml``, user
        config dir. Files are not merged.
        """
        candidates: list[Path] = []
        if config_path is not None:
            candidates.append(config_path)
        else:
            if workspace is not None:
                candidates.append(get_workspace_config_path(workspace))
            candidates.append(get_config_path())

        for candidate in candidates:
            if candidate.exists():
                with open(candidate, "rb") as f:
                    data = tomllib.load(f)
                log.debug("Loaded config from %s", candidate)
                return cls.model_validate(data)

        return cls()

    def agent(self, name: str) -> AgentConfig:
        """Agent configuration by name; unknown agents get defaults."""
        return self.agents.get(name) or AgentConfig()

    def agent_for_stage(self, stage: Stage) -> tuple[str, AgentConfig]:
        stage_config = self.stage(stage)
        role = stage_config.role or STAGE_DEFAULT_ROLES[stage]
        name = self.roles.agent_for(role)
        return name, self.agent(name)

    def stage(self, stage: Stage) -> StageCommandConfig:
        return self.stages.get(stage) or StageCommandConfig()

    async def save(self, path: Path) -> None:
        """Serialize current config to TOML file.

        Args:
            path: Path to write config file (created if missing)
        """
        doc = tomlkit.document()

        for section in ("loop", "retry", "sandbox", "roles", "hygiene", "vcs"):
            model: BaseModel = getattr(self, section)
            doc[section] = _table(model.model_dump(mode="json"))

        if self.agents:
            agents_table = tomlkit.table()
            for agent_name, agent_cfg in self.agents.items():
                agents_table[agent_name] = _table(agent_cfg.model_dump(mode="json"))
            doc["agents"] = agents_table

        if self.stages:
            stages_table = tomlkit.table()
            for stage, stage_cfg in self.stages.items():
                stages_table[stage.value] = _table(stage_cfg.model_dump(mode="json"))
            doc["stages"] = stages_table

        content = tomlkit.dumps(doc)
        await asyncio.to_thread(atomic_write, path, content)


def _table(values: dict[str, Any]) -> Any:
    table = tomlkit.table()
    for key, value in values.items():
        if value is not None and value != {}:
            table[key] = value
    return table


__all__ = [
    "AgentConfig",
    "HygieneConfig",
    "LoopConfig",
    "RetryConfig",
    "RolesConfig",
    "SandboxConfig",
    "ShipyardConfig",
    "StageCommandConfig",
    "VcsConfig",
]
