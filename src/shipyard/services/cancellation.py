"""Cooperative cancellation and pause token passed into every stage call."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

from shipyard.errors import RunCancelledError
from shipyard.limits import PAUSE_MAX_SECONDS, PAUSE_POLL_SECONDS

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

log = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Run cancelled"


class RunControl:
    """Flags observed only at stage boundaries and inside the pause wait.

    Nothing here interrupts a stage in flight; the sandbox's own timeouts
    bound how long a running command can take.
    """

    def __init__(
        self,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cancel_reason: str | None = None
        self._pause_requested = False
        self._sleep = sleep
        self._clock = clock

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_reason is not None

    @property
    def cancel_reason(self) -> str | None:
        return self._cancel_reason

    @property
    def pause_requested(self) -> bool:
        return self._pause_requested

    def request_cancel(self, reason: str = "user_requested") -> None:
        if self._cancel_reason is None:
            self._cancel_reason = reason
            log.info("Cancellation requested (%s)", reason)

    def request_pause(self) -> None:
        self._pause_requested = True

    def request_resume(self) -> None:
        self._pause_requested = False

    def raise_if_cancelled(self) -> None:
        if self._cancel_reason is not None:
            raise RunCancelledError(CANCELLED_MESSAGE)

    async def wait_while_paused(
        self,
        *,
        poll_interval: float = PAUSE_POLL_SECONDS,
        max_wait: float = PAUSE_MAX_SECONDS,
    ) -> None:
        """Block cooperatively until resumed.

        Raises RunCancelledError when cancellation arrives during the wait or
        when the pause outlives *max_wait*, which auto-cancels the run.
        """
        deadline = self._clock() + max_wait
        while self._pause_requested:
            self.raise_if_cancelled()
            if self._clock() >= deadline:
                log.warning("Pause exceeded %.0fs, cancelling run", max_wait)
                self.request_cancel("pause_timeout")
                break
            await self._sleep(poll_interval)
        self.raise_if_cancelled()


__all__ = ["CANCELLED_MESSAGE", "RunControl"]
