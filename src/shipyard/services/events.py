"""Append-only JSONL event log, one file per workflow category."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from shipyard.atomic import append_line
from shipyard.limits import EVENTS_DEFAULT_LIMIT, EVENTS_MAX_LIMIT
from shipyard.paths import get_event_log_path
from shipyard.utils import utc_now

if TYPE_CHECKING:
    from pathlib import Path

log = logging.getLogger(__name__)

DEFAULT_CATEGORY = "auto"


@dataclass(frozen=True, slots=True)
class EventPage:
    events: list[dict[str, Any]] = field(default_factory=list)
    next_seq: int = 0
    total_lines: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"events": self.events, "next_seq": self.next_seq, "total_lines": self.total_lines}


class EventLog:
    """Structured run events, separate from diagnostic logging."""

    def __init__(self, workspace: Path, category: str = DEFAULT_CATEGORY) -> None:
        self.workspace = workspace
        self.category = category
        self.path = get_event_log_path(workspace, category)

    def append(self, event: str, **fields: Any) -> dict[str, Any]:
        record: dict[str, Any] = {"ts": utc_now().isoformat(), "event": event, **fields}
        append_line(self.path, json.dumps(record, default=str))
        log.debug("event %s %s", event, fields)
        return record

    def read_page(
        self,
        after_seq: int = 0,
        limit: int = EVENTS_DEFAULT_LIMIT,
    ) -> EventPage:
        """Page through events from a 0-based line offset.

        Each event carries ``seq`` (its 1-based line number); lines that are not
        valid JSON objects come back as ``{"seq", "raw"}``.
        """
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise ValueError("limit must be an integer")
        if not 1 <= limit <= EVENTS_MAX_LIMIT:
            raise ValueError(f"limit must be between 1 and {EVENTS_MAX_LIMIT}")
        if isinstance(after_seq, bool) or not isinstance(after_seq, int) or after_seq < 0:
            raise ValueError("after_seq must be a non-negative integer")

        if not self.path.exists():
            return EventPage(next_seq=after_seq)

        lines = [
            line for line in self.path.read_text(encoding="utf-8").splitlines() if line.strip()
        ]
        end = min(len(lines), after_seq + limit)
        events: list[dict[str, Any]] = []
        for index in range(after_seq, end):
            line = lines[index]
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                events.append({"seq": index + 1, **parsed})
            else:
                events.append({"seq": index + 1, "raw": line})
        return EventPage(events=events, next_seq=max(end, after_seq), total_lines=len(lines))


__all__ = ["DEFAULT_CATEGORY", "EventLog", "EventPage"]
