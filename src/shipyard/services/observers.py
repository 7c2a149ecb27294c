"""Optional activity observers for executor health snapshots.

Absence of an observer is the documented no-op :class:`NullActivityObserver`.
The file-backed observer keeps ``.shipyard/activity.json`` current so status
readers in other processes can see which agent is busy.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from shipyard.atomic import atomic_write
from shipyard.limits import ACTIVITY_IDLE_SECONDS, ACTIVITY_WRITE_THROTTLE_SECONDS
from shipyard.paths import get_activity_path

if TYPE_CHECKING:
    from pathlib import Path

    from shipyard.adapters.sandbox import SandboxActivity

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AgentActivity:
    agent: str
    last_activity_at: str | None
    idle_seconds: float | None
    current_command: str | None
    is_running: bool
    recorded_at: float

    @classmethod
    def from_sandbox(cls, agent: str, activity: SandboxActivity) -> AgentActivity:
        return cls(
            agent=agent,
            last_activity_at=(
                activity.last_activity_at.isoformat() if activity.last_activity_at else None
            ),
            idle_seconds=activity.idle_seconds,
            current_command=activity.current_command,
            is_running=activity.is_running,
            recorded_at=time.time(),
        )

    def status(self, *, now: float | None = None, idle_after: float = ACTIVITY_IDLE_SECONDS) -> str:
        """``active`` while output keeps flowing, ``idle`` after a quiet spell."""
        if not self.is_running:
            return "stopped"
        if self.last_activity_at is None:
            return "idle"
        current = time.time() if now is None else now
        quiet = current - datetime.fromisoformat(self.last_activity_at).timestamp()
        return "idle" if quiet > idle_after else "active"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status()
        return data


class ActivityObserver(Protocol):
    """Write/read contract for agent activity snapshots."""

    def record(self, agent: str, activity: SandboxActivity) -> None: ...

    def snapshot(self) -> dict[str, AgentActivity]: ...


class NullActivityObserver:
    """Observer used when activity tracking is not wanted; records nothing."""

    def record(self, agent: str, activity: SandboxActivity) -> None:
        return None

    def snapshot(self) -> dict[str, AgentActivity]:
        return {}


class FileActivityObserver:
    """Activity snapshot persisted atomically, at most once per throttle window per agent."""

    def __init__(
        self,
        workspace: Path,
        *,
        throttle_seconds: float = ACTIVITY_WRITE_THROTTLE_SECONDS,
    ) -> None:
        self.path = get_activity_path(workspace)
        self.throttle_seconds = throttle_seconds
        self._entries: dict[str, AgentActivity] = {}
        self._last_write: dict[str, float] = {}

    def record(self, agent: str, activity: SandboxActivity) -> None:
        entry = AgentActivity.from_sandbox(agent, activity)
        self._entries[agent] = entry
        now = time.monotonic()
        previous = self._last_write.get(agent)
        transition = not activity.is_running
        if previous is not None and now - previous < self.throttle_seconds and not transition:
            return
        self._last_write[agent] = now
        payload = {name: asdict(value) for name, value in self._entries.items()}
        atomic_write(self.path, json.dumps(payload, indent=2))

    def snapshot(self) -> dict[str, AgentActivity]:
        if not self.path.exists():
            return dict(self._entries)
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            log.warning("Ignoring unreadable activity snapshot %s: %s", self.path, exc)
            return dict(self._entries)
        entries: dict[str, AgentActivity] = {}
        for name, value in raw.items() if isinstance(raw, dict) else ():
            try:
                entries[name] = AgentActivity(**value)
            except TypeError:
                log.debug("Skipping malformed activity entry for %s", name)
        return entries


__all__ = [
    "ActivityObserver",
    "AgentActivity",
    "FileActivityObserver",
    "NullActivityObserver",
]
