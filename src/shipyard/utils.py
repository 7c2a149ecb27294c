"""Small shared helpers: clocks and background task tracking."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from collections.abc import Coroutine

log = logging.getLogger(__name__)

_SLUG_RE = re.compile(r"[^a-z0-9]+")

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(UTC)


def age_ms(since: datetime | None, *, now: datetime | None = None) -> int | None:
    """Milliseconds elapsed since *since*, or None when it was never set."""
    if since is None:
        return None
    current = now or utc_now()
    return max(0, int((current - since).total_seconds() * 1000))


def slugify(text: str, *, max_length: int = 40) -> str:
    slug = _SLUG_RE.sub("-", text.lower()).strip("-")
    return slug[:max_length].rstrip("-") or "item"


def truncate_tail(text: str, limit: int) -> str:
    """Keep the last *limit* characters of *text*."""
    if len(text) <= limit:
        return text
    return text[-limit:]


class BackgroundTasks:
    """Track lightweight background tasks and shut them down gracefully."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def register(self, task: asyncio.Task[T]) -> asyncio.Task[T]:
        """Register an existing task and remove it once it completes."""
        self._tasks.add(task)

        def _on_done(done_task: asyncio.Task[object]) -> None:
            self._tasks.discard(done_task)
            if done_task.cancelled():
                return
            exc = done_task.exception()
            if exc is None:
                return
            log.error(
                "Background task %s failed",
                done_task.get_name(),
                exc_info=(type(exc), exc, exc.__traceback__),
            )

        task.add_done_callback(_on_done)
        return task

    def spawn(
        self,
        coro: Coroutine[Any, Any, T],
        *,
        name: str | None = None,
    ) -> asyncio.Task[T]:
        """Create and register a background task."""
        return self.register(asyncio.create_task(coro, name=name))

    def __len__(self) -> int:
        return len(self._tasks)

    async def shutdown(self, *, timeout: float = 2.0) -> None:
        """Cancel tracked tasks and wait briefly for graceful completion."""
        pending = [task for task in self._tasks if not task.done()]
        if not pending:
            return

        for task in pending:
            task.cancel()

        done, _pending = await asyncio.wait(pending, timeout=timeout)
        if done:
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.gather(*done, return_exceptions=True)
